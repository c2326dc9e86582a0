import sys
import asyncio

from spotipy.oauth2 import SpotifyOAuth

from dotenv import load_dotenv
load_dotenv()

import logging
from logger import setup_logging
LOGGER = logging.getLogger(__name__)

from config import Settings
from ingest.tokens import SCOPES


def authorize(settings: Settings) -> dict:
    """Run the browser authorization flow once and return the token info."""
    sp_oauth = SpotifyOAuth(
        client_id=settings.spotify_client_id,
        client_secret=settings.spotify_client_secret,
        redirect_uri=settings.spotify_redirect_uri,
        scope=SCOPES
    )

    # This will open your browser for authentication
    return sp_oauth.get_access_token(as_dict=True)


async def store(refresh_token: str) -> None:
    from db import DatabaseManager
    from repository import Repository

    db = DatabaseManager()
    try:
        await Repository(db).set_credential(refresh_token)
    finally:
        await db.cleanup()


if __name__ == "__main__":
    setup_logging()

    token_info = authorize(Settings.from_env())
    print(f"Refresh Token: {token_info['refresh_token']}")

    if "--store" in sys.argv:
        asyncio.run(store(token_info['refresh_token']))
        LOGGER.info("Refresh token written to the database.")
