"""listening history, saved tracks and stored credential

Revision ID: 001
Create Date: 2026-10-19 12:00:00.000000

"""
from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

revision = '001'
down_revision = None
branch_labels = None
depends_on = None

GENRE_STATUS = ('unset', 'resolved', 'no_genre', 'throttled')
ACTIVITY_SOURCE = ('poll', 'backfill')


def upgrade() -> None:
    genre_status = postgresql.ENUM(*GENRE_STATUS, name='genre_status', create_type=False)
    activity_source = postgresql.ENUM(*ACTIVITY_SOURCE, name='activity_source', create_type=False)
    genre_status.create(op.get_bind(), checkfirst=True)
    activity_source.create(op.get_bind(), checkfirst=True)

    op.create_table(
        'spotify_auth',
        sa.Column('id', sa.Integer, primary_key=True),
        sa.Column('refresh_token', sa.String(1024), nullable=False),
        sa.Column('updated_at', sa.DateTime, server_default=sa.func.now()),
        sa.CheckConstraint('id = 1', name='chk_spotify_auth_single_row'),
    )

    op.create_table(
        'recently_played',
        sa.Column('id', sa.Integer, primary_key=True, autoincrement=True),
        sa.Column('spotify_id', sa.String(64), nullable=False),
        sa.Column('track_name', sa.String(512), nullable=False),
        sa.Column('artist_name', sa.String(512), nullable=False, server_default=''),
        sa.Column('artist_id', sa.String(64)),
        sa.Column('album_name', sa.String(512), nullable=False, server_default=''),
        sa.Column('album_cover_url', sa.String(1024)),
        sa.Column('genre', sa.String(1024)),
        sa.Column('genre_status', genre_status, nullable=False, server_default='unset'),
        sa.Column('duration_ms', sa.Integer),
        sa.Column('played_at', sa.DateTime, nullable=False),
        sa.Column('source', activity_source, nullable=False, server_default='poll'),
        sa.UniqueConstraint('spotify_id', 'played_at', name='uq_recently_played_track_played_at'),
        sa.CheckConstraint('duration_ms IS NULL OR duration_ms >= 0', name='chk_recently_played_duration_positive'),
    )
    op.create_index('idx_recently_played_played_at', 'recently_played', ['played_at'])
    op.create_index('idx_recently_played_artist_id', 'recently_played', ['artist_id'])
    op.create_index('idx_recently_played_genre_status', 'recently_played', ['genre_status'])

    op.create_table(
        'recently_liked',
        sa.Column('id', sa.Integer, primary_key=True, autoincrement=True),
        sa.Column('spotify_id', sa.String(64), nullable=False, unique=True),
        sa.Column('track_name', sa.String(512), nullable=False),
        sa.Column('track_popularity', sa.Integer),
        sa.Column('album_name', sa.String(512)),
        sa.Column('album_type', sa.String(64)),
        sa.Column('album_total_tracks', sa.Integer),
        sa.Column('album_release_date', sa.String(32)),
        sa.Column('album_release_date_precision', sa.String(16)),
        sa.Column('album_cover_url', sa.String(1024)),
        sa.Column('album_cover_height', sa.Integer),
        sa.Column('album_cover_width', sa.Integer),
        sa.Column('artist_id', sa.String(64)),
        sa.Column('artist_name', sa.String(512)),
        sa.Column('artist_href', sa.String(1024)),
        sa.Column('artist_uri', sa.String(128)),
        sa.Column('genre', sa.String(1024)),
        sa.Column('genre_status', genre_status,
                  nullable=False, server_default='unset'),
        sa.Column('added_at', sa.DateTime, nullable=False),
    )
    op.create_index('idx_recently_liked_added_at', 'recently_liked', ['added_at'])
    op.create_index('idx_recently_liked_genre_status', 'recently_liked', ['genre_status'])


def downgrade() -> None:
    op.drop_table('recently_liked')
    op.drop_table('recently_played')
    op.drop_table('spotify_auth')

    postgresql.ENUM(name='activity_source').drop(op.get_bind(), checkfirst=True)
    postgresql.ENUM(name='genre_status').drop(op.get_bind(), checkfirst=True)
