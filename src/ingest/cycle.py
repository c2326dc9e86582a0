from dataclasses import dataclass
from enum import Enum

import traceback
import logging
LOGGER = logging.getLogger(__name__)

from errors import AuthError, UpstreamError, RetriesExhaustedError, PersistenceError, DuplicateKeyError
from ingest.enrichment import resolve_genre
from ingest.rate_limiter import RateLimiter
from ingest.spotify import SpotifyClient, PlayedItem
from ingest.tokens import TokenManager
from models import Genre, ActivitySource


class CyclePhase(Enum):
    idle = "idle"
    refreshing = "refreshing"
    fetching = "fetching"
    reconciling = "reconciling"
    enriching = "enriching"
    persisting = "persisting"


@dataclass
class CycleReport:
    fetched: int = 0
    known: int = 0
    stored: int = 0
    duplicates: int = 0
    failed: int = 0


class CollectionCycle:
    """
    One pass over the newest page of recently played tracks:
    refresh -> fetch -> drop what we already have -> look up genres -> store.
    """

    def __init__(self, repo, client: SpotifyClient, tokens: TokenManager, limiter: RateLimiter,
                 page_size: int = 50, fetch_retries: int = 2, genre_retries: int = 1):
        self.repo = repo
        self.client = client
        self.tokens = tokens
        self.limiter = limiter
        self.page_size = page_size
        self.fetch_retries = fetch_retries
        self.genre_retries = genre_retries
        self.phase = CyclePhase.idle

    async def run(self, access_token: str | None = None) -> CycleReport | None:
        """Returns None when the cycle was aborted (auth or fetch failure)."""
        try:
            return await self._run(access_token)
        finally:
            self.phase = CyclePhase.idle

    async def _run(self, access_token: str | None) -> CycleReport | None:
        if access_token is None:
            self.phase = CyclePhase.refreshing
            try:
                access_token = await self.tokens.obtain(self.repo)
            except AuthError as e:
                LOGGER.error(f"Skipping collection cycle: {e}")
                return None

        self.phase = CyclePhase.fetching
        try:
            items = await self.limiter.run_with_retry(
                lambda: self.client.list_recent_activity(access_token, self.page_size),
                self.fetch_retries,
                what="recently played"
            )
        except RetriesExhaustedError:
            LOGGER.warning("Skipping collection cycle, recently played stayed throttled.")
            return None
        except UpstreamError as e:
            LOGGER.error(f"Skipping collection cycle, could not fetch recently played: {e}")
            return None

        report = CycleReport(fetched=len(items))

        self.phase = CyclePhase.reconciling
        watermark = await self.repo.latest_activity_watermark()
        new_items = [item for item in items if item.played_at > watermark]
        report.known = len(items) - len(new_items)

        if not new_items:
            LOGGER.debug(f"Nothing new since {watermark}.")
            return report

        self.phase = CyclePhase.enriching
        enriched = await self._enrich(access_token, new_items)

        self.phase = CyclePhase.persisting
        for item, genre in enriched:
            try:
                await self.repo.upsert_activity(item, genre, ActivitySource.poll)
                report.stored += 1
            except DuplicateKeyError:
                report.duplicates += 1
            except PersistenceError:
                LOGGER.error(f"Could not store play of '{item.track_name}': {traceback.format_exc()}")
                report.failed += 1

        LOGGER.info(f"Collection cycle done: {report}")
        return report

    async def _enrich(self, access_token: str, items: list[PlayedItem]) -> list[tuple[PlayedItem, Genre]]:
        cache: dict[str | None, Genre] = {}
        enriched = []

        for item in items:
            if item.artist_id in cache:
                genre = cache[item.artist_id]
            else:
                genre = await resolve_genre(self.client, self.limiter, access_token,
                                            item.artist_id, self.genre_retries)
                if genre.terminal:
                    cache[item.artist_id] = genre
                else:
                    LOGGER.info(f"Genre for '{item.artist_name}' throttled, leaving it for the backlog.")

            enriched.append((item, genre))

        return enriched
