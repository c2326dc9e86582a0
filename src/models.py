from sqlalchemy import (
    Column, Integer, String, DateTime,
    Enum as SQLEnum, Index,
    CheckConstraint, UniqueConstraint
)
from sqlalchemy.orm import declarative_base
from sqlalchemy.sql import func

from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum


EPOCH = datetime(1970, 1, 1)

def utc_now() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)

def as_naive_utc(dt: datetime) -> datetime:
    if dt.tzinfo is None:
        return dt
    return dt.astimezone(timezone.utc).replace(tzinfo=None)


class GenreStatus(Enum):
    unset = "unset"
    resolved = "resolved"
    no_genre = "no_genre"
    throttled = "throttled"

class ActivitySource(Enum):
    poll = "poll"
    backfill = "backfill"


OPEN_GENRE_STATES = (GenreStatus.unset, GenreStatus.throttled)

@dataclass(frozen=True)
class Genre:
    """
    Enrichment state of a row's genre field.
        unset -> resolved | no_genre | throttled
        throttled -> resolved | no_genre | throttled
    resolved and no_genre are terminal.
    """
    status: GenreStatus
    value: str | None = None

    def __post_init__(self):
        if (self.status is GenreStatus.resolved) != bool(self.value):
            raise ValueError(f"Genre value '{self.value}' does not fit status {self.status.name}.")

    @classmethod
    def unset(cls) -> "Genre": return cls(GenreStatus.unset)

    @classmethod
    def resolved(cls, value: str) -> "Genre": return cls(GenreStatus.resolved, value)

    @classmethod
    def no_genre(cls) -> "Genre": return cls(GenreStatus.no_genre)

    @classmethod
    def throttled(cls) -> "Genre": return cls(GenreStatus.throttled)

    @property
    def terminal(self) -> bool:
        return self.status not in OPEN_GENRE_STATES


Base = declarative_base()

class Credential(Base):
    __tablename__ = 'spotify_auth'

    id = Column(Integer, primary_key=True, default=1)
    refresh_token = Column(String(1024), nullable=False)
    updated_at = Column(DateTime, default=func.now(), onupdate=func.now())

    __table_args__ = (
        CheckConstraint('id = 1', name='chk_spotify_auth_single_row'),
    )

class ActivityRecord(Base):
    __tablename__ = 'recently_played'

    id = Column(Integer, primary_key=True, autoincrement=True)
    spotify_id = Column(String(64), nullable=False)
    track_name = Column(String(512), nullable=False)
    artist_name = Column(String(512), nullable=False, default="")
    artist_id = Column(String(64))
    album_name = Column(String(512), nullable=False, default="")
    album_cover_url = Column(String(1024))
    genre = Column(String(1024))
    genre_status = Column(SQLEnum(GenreStatus, name="genre_status"),
                          default=GenreStatus.unset,
                          nullable=False)
    duration_ms = Column(Integer)
    played_at = Column(DateTime, nullable=False)
    source = Column(SQLEnum(ActivitySource, name="activity_source"),
                    default=ActivitySource.poll,
                    nullable=False)

    __table_args__ = (
        # Same track can be played many times, a play is unique by its timestamp.
        UniqueConstraint('spotify_id', 'played_at', name='uq_recently_played_track_played_at'),
        Index('idx_recently_played_played_at', 'played_at'),
        Index('idx_recently_played_artist_id', 'artist_id'),
        Index('idx_recently_played_genre_status', 'genre_status'),
        CheckConstraint('duration_ms IS NULL OR duration_ms >= 0', name='chk_recently_played_duration_positive'),
    )

class SavedItem(Base):
    __tablename__ = 'recently_liked'

    id = Column(Integer, primary_key=True, autoincrement=True)
    spotify_id = Column(String(64), unique=True, nullable=False)
    track_name = Column(String(512), nullable=False)
    track_popularity = Column(Integer)

    album_name = Column(String(512))
    album_type = Column(String(64))
    album_total_tracks = Column(Integer)
    album_release_date = Column(String(32))
    album_release_date_precision = Column(String(16))

    album_cover_url = Column(String(1024))
    album_cover_height = Column(Integer)
    album_cover_width = Column(Integer)

    artist_id = Column(String(64))
    artist_name = Column(String(512))
    artist_href = Column(String(1024))
    artist_uri = Column(String(128))

    genre = Column(String(1024))
    genre_status = Column(SQLEnum(GenreStatus, name="genre_status"),
                          default=GenreStatus.unset,
                          nullable=False)
    added_at = Column(DateTime, nullable=False)

    __table_args__ = (
        Index('idx_recently_liked_added_at', 'added_at'),
        Index('idx_recently_liked_genre_status', 'genre_status'),
    )
