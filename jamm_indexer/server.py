"""
HTTP trigger surface: one POST endpoint per job.
"""

import logging

from flask import Flask, jsonify, request
from werkzeug.exceptions import BadRequest

from jamm_indexer.errors import LockBusy, ProviderUnavailable, UnknownToken
from jamm_indexer.jobs import JobRunner

logger = logging.getLogger(__name__)


def create_app(runner: JobRunner) -> Flask:
    """
    Build the Flask app around a job runner.

    Args:
        runner: JobRunner executing the jobs

    Returns:
        Flask application
    """
    app = Flask(__name__)

    @app.get("/health")
    def health():
        return jsonify({"status": "ok", "jobs": sorted(runner.jobs)})

    @app.post("/functions/<job>")
    def run_job(job: str):
        if job not in runner.jobs:
            return jsonify({"success": False, "error": f"Unknown job {job}"}), 404
        try:
            body = request.get_json(force=True) if request.get_data() else {}
        except BadRequest:
            return jsonify({"success": False, "error": "Request body is not valid JSON"}), 400
        return jsonify(runner.run(job, body))

    @app.errorhandler(LockBusy)
    def lock_busy(error: LockBusy):
        logger.info(f"{error}; caller should retry")
        return (
            jsonify(
                {
                    "success": False,
                    "busy": True,
                    "retryable": True,
                    "error": str(error),
                    "queuePosition": error.queue_position,
                }
            ),
            409,
        )

    @app.errorhandler(ProviderUnavailable)
    def provider_unavailable(error: ProviderUnavailable):
        logger.error(str(error))
        return jsonify({"success": False, "retryable": True, "error": str(error)}), 503

    @app.errorhandler(UnknownToken)
    def unknown_token(error: UnknownToken):
        return jsonify({"success": False, "error": str(error)}), 404

    @app.errorhandler(ValueError)
    def bad_request(error: ValueError):
        return jsonify({"success": False, "error": str(error)}), 400

    return app
