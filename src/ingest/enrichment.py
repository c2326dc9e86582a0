from dataclasses import dataclass

import traceback
import logging
LOGGER = logging.getLogger(__name__)

from errors import UpstreamError, RetriesExhaustedError, PersistenceError
from ingest.rate_limiter import RateLimiter
from ingest.spotify import SpotifyClient
from models import Genre


async def resolve_genre(client: SpotifyClient, limiter: RateLimiter, access_token: str,
                        artist_id: str | None, max_retries: int) -> Genre:
    """
    Look up the artist's genres.
    Running out of retries is the only non-final outcome (throttled), every
    other failure counts as the artist having no genre.
    """
    if not artist_id:
        return Genre.no_genre()

    try:
        artist = await limiter.run_with_retry(
            lambda: client.get_artist(access_token, artist_id),
            max_retries,
            what=f"artist {artist_id}"
        )
    except RetriesExhaustedError:
        return Genre.throttled()
    except UpstreamError as e:
        LOGGER.warning(f"Genre lookup for artist {artist_id} failed, marking as without genre: {e}")
        return Genre.no_genre()

    genres = [g for g in artist.genres if g]
    if not genres:
        return Genre.no_genre()

    return Genre.resolved(", ".join(genres))


@dataclass
class EnrichmentReport:
    selected: int = 0
    resolved: int = 0
    no_genre: int = 0
    throttled: int = 0
    skipped: int = 0  # Row got a final genre elsewhere in the meantime.
    failed: int = 0

    def count(self, genre: Genre):
        match genre.status.name:
            case "resolved": self.resolved += 1
            case "no_genre": self.no_genre += 1
            case "throttled": self.throttled += 1


class GenreBackfillQueue:
    """Works off rows whose genre is still unset or was throttled last time."""

    def __init__(self, repo, client: SpotifyClient, limiter: RateLimiter,
                 batch_size: int = 50, max_retries: int = 2):
        self.repo = repo
        self.client = client
        self.limiter = limiter
        self.batch_size = batch_size
        self.max_retries = max_retries

    async def _resolve_cached(self, cache: dict, access_token: str, artist_id: str | None) -> Genre:
        if artist_id in cache:
            return cache[artist_id]

        genre = await resolve_genre(self.client, self.limiter, access_token, artist_id, self.max_retries)
        if genre.terminal:
            cache[artist_id] = genre
        return genre

    async def run_batch(self, access_token: str) -> EnrichmentReport:
        backlog = await self.repo.select_genre_backlog(self.batch_size)
        report = EnrichmentReport(selected=len(backlog))
        if not backlog:
            LOGGER.debug("No saved items waiting for a genre.")
            return report

        cache: dict[str | None, Genre] = {}
        for item_id, artist_id in backlog:
            genre = await self._resolve_cached(cache, access_token, artist_id)

            try:
                updated = await self.repo.update_genre(item_id, genre)
            except PersistenceError:
                LOGGER.error(f"Could not store genre of saved item {item_id}: {traceback.format_exc()}")
                report.failed += 1
                continue

            if updated:
                report.count(genre)
            else:
                report.skipped += 1

        LOGGER.info(f"Saved-item genres: {report}")
        return report

    async def run_activity_batch(self, access_token: str) -> EnrichmentReport:
        artist_ids = await self.repo.select_activity_genre_backlog(self.batch_size)
        report = EnrichmentReport(selected=len(artist_ids))
        if not artist_ids:
            LOGGER.debug("No plays waiting for a genre.")
            return report

        cache: dict[str | None, Genre] = {}
        for artist_id in artist_ids:
            genre = await self._resolve_cached(cache, access_token, artist_id)

            try:
                updated = await self.repo.update_activity_genre(artist_id, genre)
            except PersistenceError:
                LOGGER.error(f"Could not store genre of plays by artist {artist_id}: {traceback.format_exc()}")
                report.failed += 1
                continue

            if updated:
                report.count(genre)
            else:
                report.skipped += 1

        LOGGER.info(f"Play genres: {report}")
        return report
