"""
Main CLI entry point for the JAMM ledger indexer.
"""

import json
import logging

import click
from rich.console import Console
from rich.table import Table

from jamm_indexer.config import Config
from jamm_indexer.database import SKIP_BLOCK_TYPES, Database
from jamm_indexer.errors import IndexerError, LockBusy
from jamm_indexer.jobs import JobRunner
from jamm_indexer.node_pool import NodeClientPool
from jamm_indexer.price_feed import PriceFeed
from jamm_indexer.server import create_app
from jamm_indexer.tiers import TIERS, TierScheduler
from jamm_indexer.utils import SystemClock, setup_logging, truncate_address

console = Console()


def build_runner() -> JobRunner:
    settings = Config.settings()
    db = Database(Config.database_url())
    db.create_tables()
    price_feed = PriceFeed(
        database=db,
        api_key=Config.COINGECKO_API_KEY,
        cache_ttl=settings.price_cache_ttl,
        default_price=settings.default_eth_price_usd,
    )
    return JobRunner(db, settings, price_feed=price_feed)


@click.group()
@click.option("--debug", is_flag=True, help="Enable debug logging")
def cli(debug):
    """JAMM Indexer - mirror launches, swaps, locks and burns into a database."""
    log_level = "DEBUG" if debug else Config.LOG_LEVEL
    setup_logging(log_level, Config.LOG_FILE)


@cli.command()
def setup():
    """Initialize database and test RPC endpoints."""
    console.print("[bold]Setting up JAMM Indexer...[/bold]\n")

    errors = Config.validate()
    if errors:
        console.print("[bold red]Configuration errors:[/bold red]")
        for error in errors:
            console.print(f"  ❌ {error}")
        return

    console.print("✅ Configuration valid")

    db = Database(Config.database_url())
    db.create_tables()
    console.print(f"✅ Database initialized: {db.url}")

    try:
        pool = NodeClientPool(Config.settings())
        block = pool.height()
        console.print(f"✅ Connected to RPC (block: {block})")
    except IndexerError as e:
        console.print(f"[red]❌ RPC connection failed: {e}[/red]")
        return

    console.print("\n[bold green]Setup complete! Ready to index.[/bold green]")


@cli.command()
@click.argument("job")
@click.option("--from-block", type=int, help="First block")
@click.option("--to-block", type=int, help="Last block")
@click.option("--tier", type=click.Choice(TIERS), help="Only tokens in this activity tier")
@click.option("--token", "token_address", help="Only this token")
@click.option("--no-launches", is_flag=True, help="Skip launch indexing")
@click.option("--no-swaps", is_flag=True, help="Skip swap indexing")
@click.option("--force", is_flag=True, help="Overwrite existing rows")
@click.option("--skip-reorg-check", is_flag=True, help="Do not verify the cursor hash")
@click.option("--block-range-size", type=int, help="Blocks per scan window")
@click.option("--max-tokens", type=int, help="Maximum tokens to process")
def run(job, from_block, to_block, tier, token_address, no_launches, no_swaps, force, skip_reorg_check, block_range_size, max_tokens):
    """Run one indexing job (e.g. event-indexer, detect-indexer-gaps)."""
    runner = build_runner()
    if job not in runner.jobs:
        raise click.BadParameter(f"choose from {', '.join(sorted(runner.jobs))}", param_hint="JOB")

    body = {
        "fromBlock": from_block,
        "toBlock": to_block,
        "tier": tier,
        "tokenAddress": token_address,
        "indexTokenLaunches": not no_launches,
        "indexSwaps": not no_swaps,
        "force": force,
        "skipReorgCheck": skip_reorg_check,
        "blockRangeSize": block_range_size,
        "maxTokens": max_tokens,
    }
    body = {key: value for key, value in body.items() if value is not None}

    try:
        summary = runner.run(job, body)
    except LockBusy as e:
        console.print(f"[yellow]⏳ {e} (queue position {e.queue_position}); try again later[/yellow]")
        return
    except (IndexerError, ValueError) as e:
        console.print(f"[red]❌ {job} failed: {e}[/red]")
        logging.exception("Job error")
        return

    console.print_json(json.dumps(summary, default=str))
    if summary.get("errors"):
        console.print(f"[yellow]⚠️  {len(summary['errors'])} errors recorded[/yellow]")


@cli.command()
@click.option("--host", default=Config.HTTP_HOST, help="Bind address")
@click.option("--port", default=Config.HTTP_PORT, type=int, help="Bind port")
def serve(host, port):
    """Serve the HTTP job endpoints."""
    app = create_app(build_runner())
    console.print(f"[bold]Serving jobs on http://{host}:{port}/functions/<job>[/bold]")
    app.run(host=host, port=port)


@cli.command()
@click.option("--tick", default=5.0, help="Seconds between scheduler checks")
def schedule(tick):
    """Run tier-scheduled indexing in a loop."""
    runner = build_runner()
    scheduler = TierScheduler(runner.settings)
    clock = SystemClock()
    console.print("[bold]Starting tier scheduler (Ctrl+C to stop)[/bold]")

    try:
        while True:
            now = clock.now()
            if scheduler.recompute_due(now):
                _run_quietly(runner, "update-activity-tiers", {})
                scheduler.mark_run("recompute", now)
            for tier in scheduler.due_tiers(now):
                # Launches are picked up alongside the most frequent tier only.
                body = {"tier": tier, "indexTokenLaunches": tier == "hot"}
                summary = _run_quietly(runner, "event-indexer", body)
                scheduler.mark_run(tier, now)
                if summary:
                    console.print(
                        f"[cyan]{tier}[/cyan] blocks {summary['fromBlock']}-{summary['toBlock']}: "
                        f"{summary['launchesIndexed']} launches, {summary['swapsIndexed']} swaps"
                    )
            clock.sleep(tick)
    except KeyboardInterrupt:
        console.print("\n[yellow]Scheduler stopped[/yellow]")


def _run_quietly(runner: JobRunner, job: str, body: dict):
    try:
        return runner.run(job, body)
    except LockBusy as e:
        logging.info(f"{job} skipped: {e}")
    except IndexerError as e:
        console.print(f"[red]❌ {job} failed: {e}[/red]")
    return None


@cli.group("skip-block")
def skip_block():
    """Manage blocks excluded from ingestion."""


@skip_block.command("add")
@click.argument("block_number", type=int)
@click.option("--type", "indexer_type", type=click.Choice(SKIP_BLOCK_TYPES), default="all")
@click.option("--reason", help="Why the block is excluded")
@click.option("--by", "created_by", help="Operator name")
def skip_block_add(block_number, indexer_type, reason, created_by):
    """Exclude a block."""
    db = Database(Config.database_url())
    db.create_tables()
    if db.add_skip_block(block_number, indexer_type, reason, created_by):
        console.print(f"✅ Block {block_number} excluded for {indexer_type}")
    else:
        console.print(f"[yellow]Block {block_number} already excluded for {indexer_type}[/yellow]")


@skip_block.command("remove")
@click.argument("block_number", type=int)
@click.option("--type", "indexer_type", type=click.Choice(SKIP_BLOCK_TYPES), default="all")
def skip_block_remove(block_number, indexer_type):
    """Stop excluding a block."""
    db = Database(Config.database_url())
    if db.remove_skip_block(block_number, indexer_type):
        console.print(f"✅ Block {block_number} no longer excluded for {indexer_type}")
    else:
        console.print(f"[yellow]Block {block_number} was not excluded for {indexer_type}[/yellow]")


@skip_block.command("list")
def skip_block_list():
    """List excluded blocks."""
    db = Database(Config.database_url())
    table = Table(title="Skip Blocks")
    table.add_column("Block", justify="right")
    table.add_column("Indexer")
    table.add_column("Reason")
    table.add_column("By")
    for row in db.list_skip_blocks():
        table.add_row(str(row.block_number), row.indexer_type, row.reason or "", row.created_by or "")
    console.print(table)


@cli.command()
def status():
    """Show cursors, tier distribution and recent runs."""
    db = Database(Config.database_url())
    db.create_tables()

    cursors = Table(title="Cursors")
    cursors.add_column("Stream")
    cursors.add_column("Last Block", justify="right")
    cursors.add_column("Hash")
    cursors.add_column("Updated")
    for cursor in db.get_cursors():
        cursors.add_row(
            cursor.stream_id,
            str(cursor.last_indexed_block),
            truncate_address(cursor.last_block_hash or "-"),
            str(cursor.updated_at),
        )
    console.print(cursors)

    tiers = Table(title="Activity Tiers")
    tiers.add_column("Tier")
    tiers.add_column("Tokens", justify="right")
    for tier in TIERS:
        tiers.add_row(tier, str(len(db.get_tokens(tier=tier))))
    console.print(tiers)

    runs = Table(title="Recent Runs")
    runs.add_column("Job")
    runs.add_column("Records", justify="right")
    runs.add_column("RPC Calls", justify="right")
    runs.add_column("Errors", justify="right")
    runs.add_column("Time (ms)", justify="right")
    runs.add_column("At")
    for metric in db.get_recent_metrics(10):
        runs.add_row(
            metric.run_type,
            str(metric.records_found),
            str(metric.rpc_calls_made),
            str(metric.errors_count),
            str(metric.processing_time_ms),
            str(metric.created_at),
        )
    console.print(runs)


if __name__ == "__main__":
    cli()
