import asyncio
from dataclasses import dataclass, field
from datetime import datetime

import traceback
import logging
LOGGER = logging.getLogger(__name__)

from errors import UpstreamError, RetriesExhaustedError, PersistenceError, DuplicateKeyError
from ingest.rate_limiter import RateLimiter
from ingest.spotify import SpotifyClient
from models import Genre, ActivitySource


@dataclass
class SavedItemsReport:
    pages: int = 0
    stored: int = 0
    duplicates: int = 0
    skipped: int = 0
    failed: int = 0
    page_errors: int = 0
    reached_watermark: bool = False
    aborted: bool = False
    truncated: bool = False

@dataclass
class BackfillReport:
    since: datetime
    fetched: int = 0
    stored: int = 0
    duplicates: int = 0
    failed: int = 0
    pages: int = 0
    truncated: bool = False
    saved: SavedItemsReport = field(default_factory=SavedItemsReport)


class BackfillWalker:
    def __init__(self, repo, client: SpotifyClient, limiter: RateLimiter,
                 page_retries: int = 2,
                 max_pages: int = 1000,
                 sleep=asyncio.sleep):
        self.repo = repo
        self.client = client
        self.limiter = limiter
        self.page_retries = page_retries
        self.max_pages = max_pages
        self._sleep = sleep

    async def collect_saved_items(self, access_token: str,
                                  page_size: int = 50,
                                  page_delay: float = 0.3,
                                  max_pages: int | None = None,
                                  max_consecutive_errors: int = 1,
                                  error_pause: float = 30.0) -> SavedItemsReport:
        """
        Walk saved tracks newest first and store everything added after the newest one we have.
        Stops at the first already-known item, an empty page, the page ceiling (truncated), or once
        `max_consecutive_errors` pages in a row could not be fetched.
        """
        max_pages = max_pages or self.max_pages
        watermark = await self.repo.latest_saved_item_watermark()
        report = SavedItemsReport()
        offset = 0
        consecutive_errors = 0

        while report.pages < max_pages:
            try:
                page = await self.limiter.run_with_retry(
                    lambda o=offset: self.client.list_saved_items_page(access_token, o, page_size),
                    self.page_retries,
                    what=f"saved tracks at offset {offset}"
                )
            except (RetriesExhaustedError, UpstreamError) as e:
                consecutive_errors += 1
                report.page_errors += 1

                if consecutive_errors >= max_consecutive_errors:
                    LOGGER.error(f"Stopping saved tracks walk after {consecutive_errors} failed " \
                                 f"page(s) at offset {offset}: {e}")
                    report.aborted = True
                    break

                LOGGER.warning(f"Saved tracks page at offset {offset} failed " \
                               f"({consecutive_errors}/{max_consecutive_errors}), " \
                               f"retrying in {error_pause}s.")
                await self._sleep(error_pause)
                continue

            consecutive_errors = 0
            report.pages += 1

            if not page.items:
                break

            for track in page.items:
                if track.added_at <= watermark:
                    report.reached_watermark = True
                    break

                if not track.artist_id or not track.album_cover_url:
                    LOGGER.debug(f"Skipping saved track '{track.track_name}' without artist or cover.")
                    report.skipped += 1
                    continue

                try:
                    await self.repo.upsert_saved_item(track, Genre.unset())
                    report.stored += 1
                except DuplicateKeyError:
                    report.duplicates += 1
                except PersistenceError:
                    LOGGER.error(f"Could not store saved track '{track.track_name}': {traceback.format_exc()}")
                    report.failed += 1

            if report.reached_watermark:
                break

            offset += page_size
            if page.total and offset >= page.total:
                break

            await self._sleep(page_delay)
        else:
            LOGGER.warning(f"Stopped saved tracks walk at the {max_pages} page ceiling.")
            report.truncated = True

        if report.stored or report.aborted or report.truncated:
            LOGGER.info(f"Saved tracks pass done: {report}")
        return report

    async def backfill_since(self, access_token: str, since: datetime,
                             page_size: int = 50) -> BackfillReport:
        """
        One-shot catch-up of everything played since `since`, then saved tracks.
        Safe to re-run, rows that are already stored count as duplicates.
        """
        LOGGER.info(f"Backfilling plays since {since}.")
        report = BackfillReport(since=since)

        walk = await self.client.list_recent_activity_since(
            access_token, since, self.limiter,
            limit=page_size,
            max_pages=self.max_pages,
            page_retries=self.page_retries
        )
        report.fetched = len(walk.items)
        report.pages = walk.pages
        report.truncated = walk.truncated

        # Genres are left to the activity backlog.
        for item in walk.items:
            try:
                await self.repo.upsert_activity(item, Genre.unset(), ActivitySource.backfill)
                report.stored += 1
            except DuplicateKeyError:
                report.duplicates += 1
            except PersistenceError:
                LOGGER.error(f"Could not store play of '{item.track_name}': {traceback.format_exc()}")
                report.failed += 1

        report.saved = await self.collect_saved_items(
            access_token,
            page_size=20,
            page_delay=2.0,
            max_consecutive_errors=5,
            error_pause=30.0
        )

        LOGGER.info(f"Backfill done: {report.stored} stored, {report.duplicates} already known, " \
                    f"{report.failed} failed over {report.pages} pages" \
                    f"{' (truncated)' if report.truncated else ''}; saved tracks: {report.saved}")
        return report
