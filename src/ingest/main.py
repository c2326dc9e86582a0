import sys
import os

if "-t" in sys.argv or "--test" in sys.argv:
    os.environ["TEST_MODE"] = "true"


import logging
from logger import setup_logging, parse_level

log_level = logging.INFO
if "-ll" in sys.argv:
    idx = sys.argv.index("-ll") + 1
    if idx >= len(sys.argv): raise ValueError("Expected log level value after -ll, one of ([d]ebug, [i]nfo, [w]arning, [e]rror).")
    log_level = parse_level(sys.argv[idx])
setup_logging(console_level=log_level)

LOGGER = logging.getLogger(__name__)
import traceback

if os.getenv("TEST_MODE"):
    LOGGER.info("Test mode initiated, using test DB.")

import asyncio
import signal
from datetime import datetime, timedelta

from apscheduler.schedulers.asyncio import AsyncIOScheduler

from config import Settings
from db import DatabaseManager
from repository import Repository
from ingest.backfill import BackfillWalker
from ingest.cycle import CollectionCycle
from ingest.enrichment import GenreBackfillQueue
from ingest.rate_limiter import RateLimiter
from ingest.scheduler import AdaptiveScheduler, log_collection_stats
from ingest.spotify import SpotifyClient
from ingest.tokens import TokenManager, build_oauth
from models import utc_now


def parse_since(argv: list[str]) -> datetime | None:
    if "--backfill-since" not in argv:
        return None

    idx = argv.index("--backfill-since") + 1
    if idx >= len(argv): raise ValueError("Expected a date (YYYY-MM-DD) after --backfill-since.")

    try:
        return datetime.strptime(argv[idx], "%Y-%m-%d")
    except ValueError:
        raise ValueError(f"Expected a date (YYYY-MM-DD) after --backfill-since, not {argv[idx]}")


async def seed_credential(repo: Repository, settings: Settings) -> None:
    if await repo.get_credential():
        return

    if not settings.seed_refresh_token:
        raise RuntimeError("No refresh token stored and SPOTIFY_REFRESH_TOKEN is not set, " \
                           "run sp_tokens.py first.")

    LOGGER.info("Seeding stored refresh token from SPOTIFY_REFRESH_TOKEN.")
    await repo.set_credential(settings.seed_refresh_token)


def build_pipeline(repo: Repository, settings: Settings) -> AdaptiveScheduler:
    limiter = RateLimiter(max_per_minute=settings.rate_limit_per_minute,
                          min_interval=settings.min_request_interval,
                          backoff_base=settings.backoff_base,
                          max_backoff=settings.max_backoff)
    tokens = TokenManager(build_oauth(settings))
    client = SpotifyClient()

    return AdaptiveScheduler(
        repo=repo,
        tokens=tokens,
        client=client,
        cycle=CollectionCycle(repo, client, tokens, limiter, page_size=settings.recent_page_size),
        walker=BackfillWalker(repo, client, limiter),
        enrichment=GenreBackfillQueue(repo, client, limiter, batch_size=settings.genre_batch_size),
        limiter=limiter,
        settings=settings
    )


async def main():
    LOGGER.info("=== Listening History Collector Starting ===")
    LOGGER.info(f"Python PID: {os.getpid()}")

    since = parse_since(sys.argv)
    settings = Settings.from_env()

    db = DatabaseManager()
    await db.setup_tables()
    repo = Repository(db)

    stats_scheduler = None
    try:
        await seed_credential(repo, settings)
        scheduler = build_pipeline(repo, settings)

        if await repo.has_activity():
            count = await repo.count_activity_since(utc_now() - timedelta(days=30))
            LOGGER.info(f"{count} plays collected in the last 30 days.")
        else:
            LOGGER.info("No listening history yet, recently played only reaches back ~50 tracks " \
                        "so history builds up from here.")

        if since is not None:
            access_token = await scheduler.tokens.obtain(repo)
            await scheduler.walker.backfill_since(access_token, since)

        if "--once" in sys.argv:
            # Counts as an enrichment tick.
            await scheduler.tick(settings.enrich_every)
            await log_collection_stats(repo)
            return

        stop = asyncio.Event()
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.add_signal_handler(sig, stop.set)

        stats_scheduler = AsyncIOScheduler()
        stats_scheduler.add_job(log_collection_stats, 'interval',
                                minutes=settings.stats_interval_minutes, args=(repo,))
        stats_scheduler.start()

        await scheduler.run(stop)
    except Exception:
        LOGGER.error(f"Main loop error: {traceback.format_exc()}")
        raise
    finally:
        if stats_scheduler:
            stats_scheduler.shutdown(wait=False)

        await db.cleanup()

if __name__ == "__main__":
    asyncio.run(main())
