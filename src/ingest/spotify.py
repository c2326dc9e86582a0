import asyncio
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable

import requests
import spotipy
from requests.exceptions import RequestException
from spotipy.exceptions import SpotifyException

import logging
LOGGER = logging.getLogger(__name__)

from errors import (
    UpstreamError, RateLimitError, TransientUpstreamError, RetriesExhaustedError
)
from models import as_naive_utc


@dataclass(frozen=True)
class PlayedItem:
    spotify_id: str
    track_name: str
    artist_name: str
    artist_id: str | None
    album_name: str
    album_cover_url: str | None
    duration_ms: int | None
    played_at: datetime

@dataclass(frozen=True)
class SavedTrack:
    spotify_id: str
    track_name: str
    added_at: datetime
    track_popularity: int | None = None

    album_name: str | None = None
    album_type: str | None = None
    album_total_tracks: int | None = None
    album_release_date: str | None = None
    album_release_date_precision: str | None = None

    album_cover_url: str | None = None
    album_cover_height: int | None = None
    album_cover_width: int | None = None

    artist_id: str | None = None
    artist_name: str | None = None
    artist_href: str | None = None
    artist_uri: str | None = None

@dataclass(frozen=True)
class ArtistInfo:
    id: str
    name: str
    genres: list[str] = field(default_factory=list)

@dataclass(frozen=True)
class NowPlaying:
    spotify_id: str
    track_name: str
    artist_name: str
    is_playing: bool
    progress_ms: int | None
    duration_ms: int | None

@dataclass
class ActivityPage:
    items: list[PlayedItem]
    before: str | None  # Cursor for the next (older) page.

@dataclass
class SavedPage:
    items: list[SavedTrack]
    total: int
    offset: int
    limit: int

@dataclass
class ActivityWalk:
    items: list[PlayedItem]
    pages: int
    truncated: bool


def parse_timestamp(value: str) -> datetime:
    return as_naive_utc(datetime.fromisoformat(value.replace("Z", "+00:00")))

def _retry_after(headers) -> float | None:
    if not headers:
        return None

    value = headers.get("Retry-After") or headers.get("retry-after")
    try:
        return float(value) if value is not None else None
    except ValueError:
        return None

def classify_error(e: Exception, what: str) -> UpstreamError:
    """Map spotipy/requests failures onto the pipeline's error types."""
    if isinstance(e, SpotifyException):
        status = e.http_status
        if status == 429:
            return RateLimitError(f"Throttled on {what}.", retry_after=_retry_after(e.headers))
        if status is not None and status >= 500:
            return TransientUpstreamError(f"Spotify returned {status} for {what}: {e.msg}", status)
        return UpstreamError(f"Spotify returned {status} for {what}: {e.msg}", status)

    if isinstance(e, (requests.ConnectionError, requests.Timeout)):
        return TransientUpstreamError(f"Network trouble on {what}: {e}")

    return UpstreamError(f"Request for {what} failed: {e}")


def _first_artist(track: dict) -> dict:
    artists = track.get("artists") or []
    return artists[0] or {} if artists else {}

def _first_image(album: dict) -> dict:
    images = album.get("images") or []
    return images[0] or {} if images else {}

def decode_played_item(raw: dict) -> PlayedItem | None:
    track = raw.get("track") or {}
    if not track.get("id") or not raw.get("played_at"):
        return None

    artist = _first_artist(track)
    album = track.get("album") or {}

    return PlayedItem(
        spotify_id=track["id"],
        track_name=track.get("name") or "",
        artist_name=artist.get("name") or "",
        artist_id=artist.get("id"),
        album_name=album.get("name") or "",
        album_cover_url=_first_image(album).get("url"),
        duration_ms=track.get("duration_ms"),
        played_at=parse_timestamp(raw["played_at"])
    )

def decode_saved_track(raw: dict) -> SavedTrack | None:
    track = raw.get("track") or {}
    if not track.get("id") or not raw.get("added_at"):
        return None

    artist = _first_artist(track)
    album = track.get("album") or {}
    image = _first_image(album)

    return SavedTrack(
        spotify_id=track["id"],
        track_name=track.get("name") or "",
        added_at=parse_timestamp(raw["added_at"]),
        track_popularity=track.get("popularity"),
        album_name=album.get("name"),
        album_type=album.get("album_type"),
        album_total_tracks=album.get("total_tracks"),
        album_release_date=album.get("release_date"),
        album_release_date_precision=album.get("release_date_precision"),
        album_cover_url=image.get("url"),
        album_cover_height=image.get("height"),
        album_cover_width=image.get("width"),
        artist_id=artist.get("id"),
        artist_name=artist.get("name"),
        artist_href=artist.get("href"),
        artist_uri=artist.get("uri")
    )

def _decode_all(raw_items, decoder) -> list:
    items = []
    for raw in raw_items or []:
        if (item := decoder(raw or {})) is None:
            LOGGER.debug("Dropping item without track id or timestamp.")
            continue
        items.append(item)
    return items


class SpotifyClient:
    """
    Thin async wrapper around spotipy. Decodes responses and classifies errors,
    retrying is left to the caller (see RateLimiter.run_with_retry).
    """

    def __init__(self,
                 factory: Callable[[str], spotipy.Spotify] | None = None,
                 session: requests.Session | None = None,
                 page_delay: float = 0.2,
                 sleep=asyncio.sleep):
        # A plain session keeps spotipy's urllib3 retries out of the way, so 429s reach us with headers.
        self.session = session or requests.Session()
        self.factory = factory or self._default_factory
        self.page_delay = page_delay
        self._sleep = sleep

    def _default_factory(self, access_token: str) -> spotipy.Spotify:
        return spotipy.Spotify(auth=access_token,
                               requests_session=self.session,
                               requests_timeout=10,
                               retries=0,
                               status_retries=0)

    async def _call(self, access_token: str, what: str, call: Callable):
        sp = self.factory(access_token)
        try:
            return await asyncio.to_thread(call, sp)
        except (SpotifyException, RequestException) as e:
            raise classify_error(e, what) from e

    async def recent_activity_page(self, access_token: str, limit: int = 50,
                                   before: str | None = None) -> ActivityPage:
        raw = await self._call(
            access_token, "recently played",
            lambda sp: sp.current_user_recently_played(limit=limit, before=before)
        ) or {}

        cursors = raw.get("cursors") or {}
        return ActivityPage(_decode_all(raw.get("items"), decode_played_item), cursors.get("before"))

    async def list_recent_activity(self, access_token: str, limit: int = 50) -> list[PlayedItem]:
        """Newest page of recently played tracks, newest first."""
        page = await self.recent_activity_page(access_token, limit)
        return page.items

    async def list_recent_activity_since(self, access_token: str, since: datetime, limiter,
                                         limit: int = 50,
                                         max_pages: int = 1000,
                                         page_retries: int = 2) -> ActivityWalk:
        """
        Walk recently played backwards in time until we pass `since`.

        Stops once a page reaches back before `since` (without fetching the next one),
        when there is no further cursor, or after `max_pages` pages. A page that keeps
        failing ends the walk early; what was collected so far is returned as truncated.
        """
        items: list[PlayedItem] = []
        pages = 0
        before = None

        while True:
            if pages >= max_pages:
                LOGGER.warning(f"Stopped activity walk at the {max_pages} page ceiling.")
                return ActivityWalk(items, pages, truncated=True)

            try:
                page = await limiter.run_with_retry(
                    lambda b=before: self.recent_activity_page(access_token, limit, b),
                    page_retries,
                    what=f"recently played page {pages + 1}"
                )
            except (RetriesExhaustedError, UpstreamError) as e:
                LOGGER.warning(f"Activity walk ended early at page {pages + 1} ({e}), " \
                               f"keeping {len(items)} items.")
                return ActivityWalk(items, pages, truncated=True)

            pages += 1
            if not page.items:
                break

            fresh = [item for item in page.items if item.played_at >= since]
            items.extend(fresh)

            if len(fresh) < len(page.items) or not page.before:
                break

            before = page.before
            await self._sleep(self.page_delay)

        LOGGER.info(f"Activity walk since {since} done: {len(items)} items over {pages} pages.")
        return ActivityWalk(items, pages, truncated=False)

    async def list_saved_items_page(self, access_token: str, offset: int = 0, limit: int = 50) -> SavedPage:
        raw = await self._call(
            access_token, f"saved tracks at offset {offset}",
            lambda sp: sp.current_user_saved_tracks(limit=limit, offset=offset)
        ) or {}

        return SavedPage(
            items=_decode_all(raw.get("items"), decode_saved_track),
            total=raw.get("total") or 0,
            offset=raw.get("offset", offset),
            limit=raw.get("limit", limit)
        )

    async def get_artist(self, access_token: str, artist_id: str) -> ArtistInfo:
        raw = await self._call(access_token, f"artist {artist_id}", lambda sp: sp.artist(artist_id)) or {}
        return ArtistInfo(
            id=raw.get("id") or artist_id,
            name=raw.get("name") or "",
            genres=list(raw.get("genres") or [])
        )

    async def get_currently_playing(self, access_token: str) -> NowPlaying | None:
        raw = await self._call(access_token, "currently playing",
                               lambda sp: sp.current_user_playing_track())
        if not raw:
            return None

        item = raw.get("item")
        if not item or raw.get("currently_playing_type", "track") != "track" or not item.get("id"):
            return None

        return NowPlaying(
            spotify_id=item["id"],
            track_name=item.get("name") or "",
            artist_name=_first_artist(item).get("name") or "",
            is_playing=bool(raw.get("is_playing")),
            progress_ms=raw.get("progress_ms"),
            duration_ms=item.get("duration_ms")
        )
