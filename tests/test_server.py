import pytest

from fakes import token_address
from jamm_indexer.jobs import MIRROR_LOCK_KEY
from jamm_indexer.server import create_app


@pytest.fixture
def client(runner):
    app = create_app(runner)
    app.config["TESTING"] = True
    return app.test_client()


def test_health(client):
    response = client.get("/health")

    assert response.status_code == 200
    assert "event-indexer" in response.get_json()["jobs"]


def test_job_runs_and_returns_summary(client):
    response = client.post("/functions/track-eth-price", json={})

    assert response.status_code == 200
    body = response.get_json()
    assert body["success"] is True
    assert body["priceUsd"] == 3100.0
    assert "executionTimeMs" in body


def test_job_without_body(client):
    response = client.post("/functions/update-activity-tiers")

    assert response.status_code == 200
    assert response.get_json()["tiers"] == {"hot": 0, "warm": 0, "cold": 0, "dormant": 0}


def test_unknown_job_is_404(client):
    response = client.post("/functions/mine-bitcoin", json={})

    assert response.status_code == 404
    assert response.get_json()["success"] is False


def test_invalid_parameters_are_400(client):
    response = client.post("/functions/event-indexer", json={"fromBlock": "latest"})

    assert response.status_code == 400
    assert "fromBlock" in response.get_json()["error"]


def test_malformed_json_is_400(client):
    response = client.post("/functions/event-indexer", data="{not json", content_type="application/json")

    assert response.status_code == 400


def test_untracked_token_is_404(client):
    response = client.post("/functions/detect-indexer-gaps", json={"tokenAddress": token_address(9)})

    assert response.status_code == 404


def test_busy_lock_is_409(client, runner):
    runner.settings.lock_wait_seconds = 1
    runner.locks.acquire(MIRROR_LOCK_KEY)

    response = client.post("/functions/event-indexer", json={})

    assert response.status_code == 409
    body = response.get_json()
    assert body["busy"] is True
    assert body["retryable"] is True
    assert body["queuePosition"] == 1


def test_provider_outage_is_503(client, chain):
    chain.failing_ranges.append((0, 10**9))

    response = client.post("/functions/event-indexer", json={"fromBlock": 100})

    assert response.status_code == 503
    assert response.get_json()["retryable"] is True
