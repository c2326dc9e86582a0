import asyncio
from datetime import datetime, timedelta
from typing import Callable

import traceback
import logging
LOGGER = logging.getLogger(__name__)

from config import Settings
from errors import AuthError, UpstreamError, RetriesExhaustedError
from ingest.backfill import BackfillWalker
from ingest.cycle import CollectionCycle
from ingest.enrichment import GenreBackfillQueue
from ingest.rate_limiter import RateLimiter
from ingest.spotify import SpotifyClient, NowPlaying
from ingest.tokens import TokenManager
from models import EPOCH, utc_now


class AdaptiveScheduler:
    """
    Polls Spotify every few minutes during listening hours and less often at night.
    Each tick runs its steps one after the other with a single access token.
    """

    def __init__(self, repo, tokens: TokenManager, client: SpotifyClient,
                 cycle: CollectionCycle, walker: BackfillWalker, enrichment: GenreBackfillQueue,
                 limiter: RateLimiter, settings: Settings,
                 now: Callable[[], datetime] = datetime.now):
        self.repo = repo
        self.tokens = tokens
        self.client = client
        self.cycle = cycle
        self.walker = walker
        self.enrichment = enrichment
        self.limiter = limiter
        self.settings = settings
        self.now = now

        self.now_playing: NowPlaying | None = None
        self.iterations = 0

    def interval_for(self, hour: int) -> float:
        if self.settings.active_start_hour <= hour <= self.settings.active_end_hour:
            return self.settings.active_interval
        return self.settings.idle_interval

    async def run(self, stop: asyncio.Event, max_iterations: int | None = None) -> None:
        LOGGER.info("Starting collection loop.")

        while not stop.is_set():
            if max_iterations is not None and self.iterations >= max_iterations:
                break

            interval = self.interval_for(self.now().hour)
            LOGGER.debug(f"Next tick in {interval:.0f}s.")
            try:
                await asyncio.wait_for(stop.wait(), timeout=interval)
                break
            except asyncio.TimeoutError:
                pass

            self.iterations += 1
            try:
                await self.tick(self.iterations)
            except Exception:
                LOGGER.error(f"Tick {self.iterations} failed: {traceback.format_exc()}")

        LOGGER.info(f"Collection loop stopped after {self.iterations} ticks.")

    async def _step(self, name: str, coro):
        try:
            return await coro
        except Exception:
            LOGGER.error(f"{name} failed: {traceback.format_exc()}")
            return None

    async def tick(self, iteration: int) -> None:
        try:
            access_token = await self.tokens.obtain(self.repo)
        except AuthError as e:
            LOGGER.error(f"Skipping tick {iteration}: {e}")
            return

        await self._step("Collection cycle", self.cycle.run(access_token))
        await self._step("Saved tracks pass", self.walker.collect_saved_items(
            access_token,
            page_size=self.settings.saved_page_size,
            page_delay=self.settings.saved_page_delay,
            max_consecutive_errors=1
        ))
        await self._step("Currently playing", self._update_now_playing(access_token))

        if iteration % self.settings.enrich_every == 0:
            await self._step("Saved-item genres", self.enrichment.run_batch(access_token))
            await self._step("Play genres", self.enrichment.run_activity_batch(access_token))

    async def _update_now_playing(self, access_token: str) -> None:
        try:
            self.now_playing = await self.limiter.run_with_retry(
                lambda: self.client.get_currently_playing(access_token),
                1,
                what="currently playing"
            )
        except (RetriesExhaustedError, UpstreamError) as e:
            LOGGER.warning(f"Could not check what's playing: {e}")
            return

        if self.now_playing:
            LOGGER.debug(f"Now playing: {self.now_playing.track_name} by {self.now_playing.artist_name}")


STATS_PERIODS = [("last 24 hours", timedelta(days=1)),
                 ("last week", timedelta(weeks=1)),
                 ("last month", timedelta(days=30)),
                 ("last 3 months", timedelta(days=90))]

async def log_collection_stats(repo, now: Callable[[], datetime] = utc_now) -> dict[str, int]:
    """Log how many plays were collected per period. Run periodically from the entry point."""
    current = now()
    stats = {}
    for label, span in STATS_PERIODS:
        stats[label] = await repo.count_activity_since(current - span)
    stats["all time"] = await repo.count_activity_since(EPOCH)

    listening_hours = await repo.listening_ms_since(EPOCH) / 3_600_000

    LOGGER.info("Collection stats: " + ", ".join(f"{label}: {count}" for label, count in stats.items()) +
                f" ({listening_hours:.1f} hours listened in total)")
    return stats
