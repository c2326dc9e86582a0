import contextlib
from datetime import datetime, timedelta

from sqlalchemy import select, update, func, case
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.exc import SQLAlchemyError

import logging
LOGGER = logging.getLogger(__name__)

from db import DatabaseManager
from errors import PersistenceError, DuplicateKeyError
from ingest.spotify import PlayedItem, SavedTrack
from models import (
    EPOCH, OPEN_GENRE_STATES, utc_now,
    Genre, GenreStatus, ActivitySource,
    Credential, ActivityRecord, SavedItem
)


class Repository:
    """
    Everything the pipeline reads from or writes to the database.
    All datetimes going in and out are naive UTC.
    """

    def __init__(self, db: DatabaseManager):
        self.db = db

    async def _insert(self, model):
        await self.db.initialize()
        match self.db.dialect:
            case "postgresql": return postgresql.insert(model)
            case "sqlite": return sqlite.insert(model)
            case other: raise PersistenceError(f"Unsupported database dialect '{other}'.")

    @contextlib.asynccontextmanager
    async def _session(self, what: str):
        try:
            async with self.db.get_session() as s:
                yield s
        except SQLAlchemyError as e:
            raise PersistenceError(f"Could not {what}: {e}") from e

    async def _insert_unique(self, stmt, what: str) -> None:
        async with self._session(f"store {what}") as s:
            result = await s.execute(stmt)
            inserted = result.rowcount > 0

        # Raised outside the session, a conflict is an expected outcome.
        if not inserted:
            raise DuplicateKeyError(f"{what} already stored.")

    async def upsert_activity(self, item: PlayedItem, genre: Genre | None = None,
                              source: ActivitySource = ActivitySource.poll) -> None:
        genre = genre or Genre.unset()

        stmt = (await self._insert(ActivityRecord)).values(
            spotify_id=item.spotify_id,
            track_name=item.track_name,
            artist_name=item.artist_name,
            artist_id=item.artist_id,
            album_name=item.album_name,
            album_cover_url=item.album_cover_url,
            genre=genre.value,
            genre_status=genre.status,
            duration_ms=item.duration_ms,
            played_at=item.played_at,
            source=source
        ).on_conflict_do_nothing(index_elements=['spotify_id', 'played_at'])

        await self._insert_unique(stmt, f"Play of '{item.track_name}' at {item.played_at}")

    async def upsert_saved_item(self, item: SavedTrack, genre: Genre | None = None) -> None:
        genre = genre or Genre.unset()

        stmt = (await self._insert(SavedItem)).values(
            spotify_id=item.spotify_id,
            track_name=item.track_name,
            track_popularity=item.track_popularity,
            album_name=item.album_name,
            album_type=item.album_type,
            album_total_tracks=item.album_total_tracks,
            album_release_date=item.album_release_date,
            album_release_date_precision=item.album_release_date_precision,
            album_cover_url=item.album_cover_url,
            album_cover_height=item.album_cover_height,
            album_cover_width=item.album_cover_width,
            artist_id=item.artist_id,
            artist_name=item.artist_name,
            artist_href=item.artist_href,
            artist_uri=item.artist_uri,
            genre=genre.value,
            genre_status=genre.status,
            added_at=item.added_at
        ).on_conflict_do_nothing(index_elements=['spotify_id'])

        await self._insert_unique(stmt, f"Saved track '{item.track_name}' ({item.spotify_id})")

    async def _max(self, column) -> datetime:
        async with self._session(f"read newest {column.key}") as s:
            result = await s.execute(select(func.max(column)))
            return result.scalar() or EPOCH

    async def latest_activity_watermark(self) -> datetime:
        return await self._max(ActivityRecord.played_at)

    async def latest_saved_item_watermark(self) -> datetime:
        return await self._max(SavedItem.added_at)

    async def get_credential(self) -> str | None:
        async with self._session("read refresh token") as s:
            result = await s.execute(
                select(Credential.refresh_token).where(Credential.id == 1)
            )
            return result.scalar_one_or_none()

    async def set_credential(self, refresh_token: str) -> None:
        if not refresh_token:
            raise ValueError("Refusing to store an empty refresh token.")

        now = utc_now()
        stmt = (await self._insert(Credential)).values(id=1, refresh_token=refresh_token, updated_at=now)
        stmt = stmt.on_conflict_do_update(
            index_elements=['id'],
            set_={"refresh_token": refresh_token, "updated_at": now}
        )

        async with self._session("store refresh token") as s:
            await s.execute(stmt)

        LOGGER.info("Stored refresh token.")

    async def select_genre_backlog(self, batch_size: int) -> list[tuple[int, str | None]]:
        """Saved items still waiting for a genre, throttled ones first."""
        throttled_first = case((SavedItem.genre_status == GenreStatus.throttled, 0), else_=1)

        async with self._session("select saved item genre backlog") as s:
            result = await s.execute(
                select(SavedItem.id, SavedItem.artist_id)
                .where(SavedItem.genre_status.in_(OPEN_GENRE_STATES))
                .order_by(throttled_first, SavedItem.id)
                .limit(batch_size)
            )
            return [(row.id, row.artist_id) for row in result]

    async def update_genre(self, item_id: int, genre: Genre) -> bool:
        """Returns False when the row is gone or already has a final genre."""
        async with self._session(f"update genre of saved item {item_id}") as s:
            result = await s.execute(
                update(SavedItem)
                .where(SavedItem.id == item_id,
                       SavedItem.genre_status.in_(OPEN_GENRE_STATES))
                .values(genre=genre.value, genre_status=genre.status)
            )
            return result.rowcount > 0

    async def select_activity_genre_backlog(self, batch_size: int) -> list[str | None]:
        """Distinct artist ids of plays still waiting for a genre, throttled ones first."""
        throttled_first = func.min(
            case((ActivityRecord.genre_status == GenreStatus.throttled, 0), else_=1)
        )

        async with self._session("select play genre backlog") as s:
            result = await s.execute(
                select(ActivityRecord.artist_id)
                .where(ActivityRecord.genre_status.in_(OPEN_GENRE_STATES))
                .group_by(ActivityRecord.artist_id)
                .order_by(throttled_first, func.min(ActivityRecord.id))
                .limit(batch_size)
            )
            return list(result.scalars())

    async def update_activity_genre(self, artist_id: str | None, genre: Genre) -> int:
        artist_match = ActivityRecord.artist_id.is_(None) if artist_id is None \
                       else ActivityRecord.artist_id == artist_id

        async with self._session(f"update genre of plays by artist {artist_id}") as s:
            result = await s.execute(
                update(ActivityRecord)
                .where(artist_match,
                       ActivityRecord.genre_status.in_(OPEN_GENRE_STATES))
                .values(genre=genre.value, genre_status=genre.status)
            )
            return result.rowcount

    async def count_activity_since(self, since: datetime) -> int:
        async with self._session("count plays") as s:
            result = await s.execute(
                select(func.count(ActivityRecord.id)).where(ActivityRecord.played_at >= since)
            )
            return result.scalar() or 0

    async def listening_ms_since(self, since: datetime) -> int:
        async with self._session("sum listening time") as s:
            result = await s.execute(
                select(func.coalesce(func.sum(ActivityRecord.duration_ms), 0))
                .where(ActivityRecord.played_at >= since)
            )
            return int(result.scalar() or 0)

    async def daily_activity_counts(self, days: int, now: datetime | None = None) -> list[tuple[str, int]]:
        """Plays per calendar day (UTC) for the last `days` days, oldest day first."""
        now = now or utc_now()
        since = (now - timedelta(days=days - 1)).replace(hour=0, minute=0, second=0, microsecond=0)
        day = func.date(ActivityRecord.played_at)

        async with self._session("count plays per day") as s:
            result = await s.execute(
                select(day, func.count(ActivityRecord.id))
                .where(ActivityRecord.played_at >= since)
                .group_by(day)
                .order_by(day)
            )
            return [(str(d), count) for d, count in result]

    async def has_activity(self) -> bool:
        async with self._session("check for plays") as s:
            result = await s.execute(select(ActivityRecord.id).limit(1))
            return result.scalar() is not None
