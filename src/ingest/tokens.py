import asyncio
from dataclasses import dataclass

import requests
from requests.exceptions import RequestException
from spotipy.cache_handler import MemoryCacheHandler
from spotipy.exceptions import SpotifyException
from spotipy.oauth2 import SpotifyOAuth, SpotifyOauthError

import logging
LOGGER = logging.getLogger(__name__)

from config import Settings
from errors import AuthError

SCOPES = ['user-read-recently-played',
          'user-library-read',
          'user-read-currently-playing',
          'user-read-playback-state']


def build_oauth(settings: Settings) -> SpotifyOAuth:
    # Nothing gets cached on disk, the refresh token lives in the database.
    return SpotifyOAuth(
        client_id=settings.spotify_client_id,
        client_secret=settings.spotify_client_secret,
        redirect_uri=settings.spotify_redirect_uri,
        scope=SCOPES,
        cache_handler=MemoryCacheHandler(),
        open_browser=False,
        requests_session=requests.Session()
    )


@dataclass(frozen=True)
class TokenGrant:
    access_token: str
    rotated_refresh_token: str | None = None


class TokenManager:
    def __init__(self, oauth: SpotifyOAuth):
        self.oauth = oauth

    async def refresh(self, stored: str) -> TokenGrant:
        """Trade the stored refresh token for a short-lived access token."""
        try:
            token_info = await asyncio.to_thread(self.oauth.refresh_access_token, stored)
        except (SpotifyOauthError, SpotifyException, RequestException) as e:
            raise AuthError(f"Could not refresh access token: {e}") from e

        access_token = (token_info or {}).get("access_token")
        if not access_token:
            raise AuthError("Token endpoint answered without an access token.")

        new_refresh = token_info.get("refresh_token")
        rotated = new_refresh if new_refresh and new_refresh != stored else None

        return TokenGrant(access_token, rotated)

    async def obtain(self, repo) -> str:
        stored = await repo.get_credential()
        if not stored:
            raise AuthError("No refresh token stored, run sp_tokens.py --store first.")

        grant = await self.refresh(stored)

        if grant.rotated_refresh_token:
            await repo.set_credential(grant.rotated_refresh_token)
            LOGGER.info("Spotify rotated the refresh token, stored the new one.")

        LOGGER.debug("Obtained fresh access token.")
        return grant.access_token
