import asyncio
import sys
import logging
from typing import Optional, Tuple

import click
import uvicorn

from snapshot_collector.application.snapshot_collector import SnapshotCollector
from snapshot_collector.config import Settings, load_settings
from snapshot_collector.domain.exceptions import CollectorException, ConfigurationException
from snapshot_collector.domain.models import RunOutcome
from snapshot_collector.infrastructure.database import PostgresRepository

logger = logging.getLogger(__name__)


def configure_logging(level: str = "INFO") -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s [%(levelname)s] %(message)s",
        handlers=[
            logging.StreamHandler(sys.stdout)
        ]
    )


def _settings_or_exit() -> Settings:
    try:
        settings = load_settings()
    except ConfigurationException as e:
        configure_logging()
        logger.error(str(e))
        sys.exit(1)
    configure_logging(settings.log_level)
    return settings


async def _collect(settings: Settings, limit: int) -> int:
    collector = SnapshotCollector.from_settings(settings)
    try:
        summary = await collector.run(limit)
    finally:
        await collector.close()

    click.echo(summary.model_dump_json(indent=2))
    # distinct code for a skipped run
    return 2 if summary.outcome is RunOutcome.LOW_BUDGET else 0


async def _seed(settings: Settings, full_names: Tuple[str, ...], source: Optional[str]) -> int:
    db_repository = PostgresRepository(db_url=settings.database_url)
    try:
        context = {"source": source} if source else {}
        inserted = await db_repository.add_stubs(full_names, context)
    finally:
        await db_repository.dispose()
    logger.info(f"Added {inserted} new stub(s) out of {len(full_names)} name(s).")
    return 0


async def _reset(settings: Settings, full_name: str) -> int:
    db_repository = PostgresRepository(db_url=settings.database_url)
    try:
        found = await db_repository.reset_fetch_status(full_name)
    finally:
        await db_repository.dispose()
    if not found:
        logger.error(f"{full_name} is not tracked.")
        return 1
    logger.info(f"{full_name} will be collected again.")
    return 0


async def _init_db(settings: Settings) -> int:
    db_repository = PostgresRepository(db_url=settings.database_url)
    try:
        await db_repository.create_schema()
    finally:
        await db_repository.dispose()
    logger.info("Database schema is up to date.")
    return 0


def _run(coro) -> None:
    try:
        exit_code = asyncio.run(coro)
    except KeyboardInterrupt:
        logger.info("Interrupted by user. Exiting gracefully.")
        exit_code = 130
    except CollectorException as e:
        logger.error(f"{e}")
        exit_code = 1
    sys.exit(exit_code)


@click.group()
def cli():
    """Collects time-series popularity snapshots of tracked GitHub repositories."""


@cli.command()
@click.option("--limit", type=click.IntRange(min=1), default=None,
              help="Maximum repositories to snapshot (defaults to SNAPSHOT_LIMIT).")
def collect(limit):
    """Run one prioritized snapshot collection."""
    settings = _settings_or_exit()
    _run(_collect(settings, limit or settings.snapshot_limit))


@cli.command()
@click.argument("full_names", nargs=-1, required=True)
@click.option("--source", default=None, help="Discovery source stored with the new stubs.")
def seed(full_names, source):
    """Track repositories by owner/name; they are resolved on the next collection."""
    settings = _settings_or_exit()
    _run(_seed(settings, full_names, source))


@cli.command()
@click.argument("full_name")
def reset(full_name):
    """Clear the failure status of a repository that was given up on."""
    settings = _settings_or_exit()
    _run(_reset(settings, full_name))


@cli.command("init-db")
def init_db():
    """Create the repos and snapshots tables."""
    settings = _settings_or_exit()
    _run(_init_db(settings))


@cli.command()
@click.option("--host", default="0.0.0.0", show_default=True)
@click.option("--port", type=int, default=8000, show_default=True)
def serve(host, port):
    """Serve the HTTP trigger (POST /collect)."""
    configure_logging()
    uvicorn.run("snapshot_collector.api:app", host=host, port=port)


if __name__ == "__main__":
    cli()
