"""
Command-line interface for the insider wallet finder.

Usage:
    insider-finder init-db
    insider-finder scan --trades trades.jsonl --resolutions resolutions.jsonl
    insider-finder query --badges BIG_BET,LONG_SHOT --timeframe 7
    insider-finder wallet 0x1234...
    insider-finder config
"""

import asyncio
import json
import logging
from pathlib import Path
from typing import Any, Optional

import typer
from redis.asyncio import Redis
from rich.console import Console
from rich.table import Table

from polymarket_insider_finder.config import Settings, get_settings
from polymarket_insider_finder.detector.evaluator import BadgeEvaluator
from polymarket_insider_finder.detector.models import BadgeThresholds
from polymarket_insider_finder.ingestor.models import (
    MarketObservationEvent,
    ResolutionEvent,
    TradeEvent,
)
from polymarket_insider_finder.ingestor.reader import read_jsonl
from polymarket_insider_finder.query.service import WalletQueryService
from polymarket_insider_finder.scan.checkpoints import CheckpointStore
from polymarket_insider_finder.scan.progress import ProgressLine, default_progress_enabled
from polymarket_insider_finder.scan.runner import ScanConfig, ScanRunner, ScanSummary
from polymarket_insider_finder.storage.database import DatabaseManager
from polymarket_insider_finder.storage.store import InsiderWalletStore

app = typer.Typer(
    name="insider-finder",
    help="Flag prediction-market wallets whose trading resembles informed behavior",
    add_completion=False,
)

console = Console(stderr=True)
logger = logging.getLogger(__name__)


def setup_logging(settings: Settings, debug: bool = False) -> None:
    """Configure logging."""
    level = logging.DEBUG if debug else settings.get_logging_level()
    logging.basicConfig(
        level=level,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )
    # Quiet noisy loggers
    logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)
    logging.getLogger("aiosqlite").setLevel(logging.WARNING)


def _load_settings(command: str) -> Settings:
    settings = get_settings()
    try:
        settings.validate_requirements(command=command)  # type: ignore[arg-type]
    except ValueError as e:
        console.print(f"[red]Configuration error:[/red] {e}")
        raise typer.Exit(code=2) from e
    return settings


def _echo_json(payload: Any) -> None:
    typer.echo(json.dumps(payload, indent=2, default=str))


@app.command("init-db")
def init_db(debug: bool = typer.Option(False, "--debug", "-d", help="Enable debug logging")) -> None:
    """Create the database schema (use alembic for managed deployments)."""
    settings = _load_settings("init-db")
    setup_logging(settings, debug)

    async def run() -> None:
        db = DatabaseManager(settings.database.url)
        try:
            await db.init_schema_async()
        finally:
            await db.dispose_async()

    asyncio.run(run())
    console.print("[green]Schema ready[/green]")


async def _run_scan(
    settings: Settings,
    trades: list[TradeEvent],
    resolutions: list[ResolutionEvent],
    observations: list[MarketObservationEvent],
    *,
    full_recompute: bool,
) -> ScanSummary:
    db = DatabaseManager(settings.database.url)
    redis = Redis.from_url(settings.redis.url) if settings.redis.url else None
    try:
        store = InsiderWalletStore(
            db,
            max_retries=settings.scan.store_max_retries,
            retry_delay_seconds=settings.scan.store_retry_delay_seconds,
        )
        progress_enabled = settings.scan.progress
        if progress_enabled is None:
            progress_enabled = default_progress_enabled()
        runner = ScanRunner(
            store,
            evaluator=BadgeEvaluator(thresholds=BadgeThresholds.from_settings(settings.badges)),
            config=ScanConfig.from_settings(settings),
            checkpoints=(
                CheckpointStore(redis, key_prefix=settings.scan.checkpoint_key_prefix) if redis else None
            ),
            progress=ProgressLine(enabled=progress_enabled),
        )
        return await runner.run(trades, resolutions, observations, full_recompute=full_recompute)
    finally:
        if redis is not None:
            await redis.aclose()
        await db.dispose_async()


@app.command()
def scan(
    trades: Path = typer.Option(..., "--trades", "-t", exists=True, dir_okay=False, help="Trades (JSON lines)"),
    resolutions: Optional[Path] = typer.Option(
        None, "--resolutions", "-r", exists=True, dir_okay=False, help="Market resolutions (JSON lines)"
    ),
    observations: Optional[Path] = typer.Option(
        None, "--observations", "-o", exists=True, dir_okay=False, help="Market snapshots (JSON lines)"
    ),
    full_recompute: bool = typer.Option(
        False, "--full-recompute", help="Ignore checkpoints and re-evaluate every input trade"
    ),
    debug: bool = typer.Option(False, "--debug", "-d", help="Enable debug logging"),
) -> None:
    """
    Process a batch of trades into wallet rollups and badges.
    """
    settings = _load_settings("scan")
    setup_logging(settings, debug)

    trade_events, rejected = read_jsonl(trades, TradeEvent.from_dict)
    resolution_events: list[ResolutionEvent] = []
    observation_events: list[MarketObservationEvent] = []
    if resolutions is not None:
        resolution_events, res_rejected = read_jsonl(resolutions, ResolutionEvent.from_dict)
        rejected += res_rejected
    if observations is not None:
        observation_events, obs_rejected = read_jsonl(observations, MarketObservationEvent.from_dict)
        rejected += obs_rejected

    summary = asyncio.run(
        _run_scan(
            settings,
            trade_events,
            resolution_events,
            observation_events,
            full_recompute=full_recompute,
        )
    )

    table = Table(title="Scan Summary" + (" (dry run)" if summary.dry_run else ""), show_header=True)
    table.add_column("Metric", style="cyan")
    table.add_column("Count", justify="right")
    table.add_row("input lines rejected", str(rejected))
    for key, value in summary.to_dict().items():
        if isinstance(value, int) and not isinstance(value, bool):
            table.add_row(key.replace("_", " "), f"{value:,}")
    console.print(table)


@app.command()
def query(
    timeframe: Optional[int] = typer.Option(None, "--timeframe", help="Lookback window in days"),
    badges: Optional[str] = typer.Option(None, "--badges", help="Comma-separated badge types"),
    categories: Optional[str] = typer.Option(None, "--categories", help="Comma-separated categories"),
    min_size: Optional[str] = typer.Option(None, "--min-size", help="Minimum total volume"),
    max_size: Optional[str] = typer.Option(None, "--max-size", help="Maximum total volume"),
    page: Optional[int] = typer.Option(None, "--page"),
    limit: Optional[int] = typer.Option(None, "--limit"),
    sort: Optional[str] = typer.Option(None, "--sort", help="firstTradeAt|totalVolume|totalTrades|winRate"),
    order: Optional[str] = typer.Option(None, "--order", help="asc|desc"),
    debug: bool = typer.Option(False, "--debug", "-d"),
) -> None:
    """
    List tracked wallets matching the filters (JSON).
    """
    settings = _load_settings("query")
    setup_logging(settings, debug)
    params = {
        "timeframe": timeframe,
        "badges": badges,
        "categories": categories,
        "minSize": min_size,
        "maxSize": max_size,
        "page": page,
        "limit": limit,
        "sort": sort,
        "order": order,
    }

    async def run() -> dict[str, Any]:
        db = DatabaseManager(settings.database.url)
        try:
            return await WalletQueryService(db, settings=settings.query).query_wallets(params)
        finally:
            await db.dispose_async()

    response = asyncio.run(run())
    _echo_json(response)
    if not response["success"]:
        raise typer.Exit(code=1)


@app.command()
def wallet(
    address: str = typer.Argument(..., help="Wallet address or id"),
    debug: bool = typer.Option(False, "--debug", "-d"),
) -> None:
    """
    Show everything stored about one wallet (JSON).
    """
    settings = _load_settings("wallet")
    setup_logging(settings, debug)

    async def run() -> dict[str, Any]:
        db = DatabaseManager(settings.database.url)
        try:
            return await WalletQueryService(db, settings=settings.query).wallet_detail_response(address)
        finally:
            await db.dispose_async()

    response = asyncio.run(run())
    _echo_json(response)
    if not response["success"]:
        raise typer.Exit(code=1)


@app.command("config")
def show_config() -> None:
    """
    Print the effective configuration with secrets redacted.
    """
    _echo_json(get_settings().redacted_summary())


def main() -> None:
    """Entry point."""
    app()


if __name__ == "__main__":
    main()
