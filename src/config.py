import os
from dataclasses import dataclass, fields

from dotenv import load_dotenv
load_dotenv()

import logging
LOGGER = logging.getLogger(__name__)


def _env(env, key: str, default, cast):
    raw = env.get(key)
    if raw is None or raw == "":
        return default

    try:
        return cast(raw)
    except ValueError:
        LOGGER.warning(f"Ignoring invalid value '{raw}' for {key}, using {default}.")
        return default


@dataclass(frozen=True)
class Settings:
    spotify_client_id: str
    spotify_client_secret: str
    spotify_redirect_uri: str = "http://127.0.0.1:8888/callback"
    seed_refresh_token: str | None = None

    # Spotify allows roughly 100 requests a minute, stay well below that.
    rate_limit_per_minute: int = 60
    min_request_interval: float = 0.1
    backoff_base: float = 2.0
    max_backoff: float = 60.0

    active_start_hour: int = 6
    active_end_hour: int = 23
    active_interval: float = 300.0
    idle_interval: float = 900.0
    enrich_every: int = 6
    genre_batch_size: int = 50

    recent_page_size: int = 50
    saved_page_size: int = 50
    saved_page_delay: float = 0.3
    stats_interval_minutes: int = 60

    @classmethod
    def from_env(cls, env=None) -> "Settings":
        env = os.environ if env is None else env

        casts = {int: int, float: float, str: str}
        values = {}
        for f in fields(cls):
            key = f.name.upper()
            if f.name == "spotify_client_id":
                values[f.name] = env["SPOTIFY_CLIENT_ID"]
            elif f.name == "spotify_client_secret":
                values[f.name] = env["SPOTIFY_CLIENT_SECRET"]
            elif f.name == "seed_refresh_token":
                values[f.name] = env.get("SPOTIFY_REFRESH_TOKEN") or None
            elif f.name == "spotify_redirect_uri":
                values[f.name] = env.get("SPOTIFY_REDIRECT_URI") or f.default
            else:
                values[f.name] = _env(env, key, f.default, casts[type(f.default)])

        settings = cls(**values)
        if not 0 <= settings.active_start_hour <= settings.active_end_hour <= 23:
            raise ValueError(f"Active hours must satisfy 0 <= start <= end <= 23, got " \
                             f"{settings.active_start_hour}-{settings.active_end_hour}.")
        if settings.enrich_every < 1:
            raise ValueError("ENRICH_EVERY must be at least 1.")

        return settings
