import os
import sys
import asyncio
import contextlib
import subprocess
from typing import AsyncGenerator

from sqlalchemy import URL, event, make_url, text
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import AsyncAdaptedQueuePool

import traceback
import logging
LOGGER = logging.getLogger(__name__)

from dotenv import load_dotenv
load_dotenv()


def create_database_url() -> URL:
    """DATABASE_URL when set, otherwise assembled from the POSTGRES_* variables."""
    if url := os.environ.get("DATABASE_URL"):
        return make_url(url)

    name = os.environ.get("TEST_DATABASE_NAME") \
           or ("test_db" if os.getenv("TEST_MODE") else os.environ.get("POSTGRES_DB", "db"))

    return URL.create(
        drivername="postgresql+asyncpg",
        username=os.environ["POSTGRES_USER"],
        password=os.environ["POSTGRES_PASSWORD"],
        host=os.environ["POSTGRES_HOST"],
        port=int(os.environ["DB_PORT"]),
        database=name
    )


class DatabaseManager:
    """
    Owns the async engine and the session factory.
    Build one per process and hand it to whoever needs the database.
    """

    def __init__(self, url: URL | str | None = None, engine: AsyncEngine | None = None):
        self._url = make_url(url) if isinstance(url, str) else url
        self._engine = engine
        self._sessions: async_sessionmaker | None = None

    @property
    def ready(self) -> bool:
        return self._sessions is not None

    @property
    def dialect(self) -> str:
        if self._engine is None:
            raise RuntimeError("Database engine not created yet.")
        return self._engine.dialect.name

    @staticmethod
    def _build_engine(url: URL) -> AsyncEngine:
        if url.get_backend_name() == "sqlite":
            return create_async_engine(url)

        engine = create_async_engine(
            url,
            poolclass=AsyncAdaptedQueuePool,
            pool_size=5,
            max_overflow=5,
            pool_timeout=30,
            pool_pre_ping=True,
            pool_recycle=3600,
            connect_args={
                "server_settings": {"application_name": "listenlog", "jit": "off"},
                "command_timeout": 60,
            }
        )

        @event.listens_for(engine.sync_engine, "connect")
        def on_connect(dbapi_connection, connection_record):
            LOGGER.debug("Opened new database connection.")

        return engine

    async def initialize(self) -> None:
        if self.ready:
            return

        try:
            if self._engine is None:
                url = self._url or create_database_url()
                LOGGER.info(f"Connecting to database '{url.database}'.")
                self._engine = self._build_engine(url)

            async with self._engine.connect() as conn:
                await conn.execute(text("SELECT 1"))

            self._sessions = async_sessionmaker(bind=self._engine, class_=AsyncSession, expire_on_commit=False)
            LOGGER.info(f"Database '{self._engine.url.database}' ready ({self.dialect}).")
        except Exception as e:
            LOGGER.error(f"Database initialization failed: {traceback.format_exc()}")
            await self.cleanup()
            raise RuntimeError(f"Database initialization failed: {e}") from e

    @contextlib.asynccontextmanager
    async def get_session(self) -> AsyncGenerator[AsyncSession, None]:
        """Commits when the block finishes, rolls back and logs when it raises."""
        await self.initialize()

        session = self._sessions()
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            LOGGER.error(f"Rolled back session: {traceback.format_exc()}")
            raise
        finally:
            await session.close()

    async def cleanup(self) -> None:
        if self._engine is not None:
            await self._engine.dispose()
            LOGGER.debug("Database engine disposed.")

        self._engine = None
        self._sessions = None

    async def setup_tables(self) -> None:
        """Migrate the schema to the newest Alembic revision."""
        await self.initialize()

        try:
            result = subprocess.run([sys.executable, "-m", "alembic", "upgrade", "head"],
                                    check=True, capture_output=True, text=True)
        except subprocess.CalledProcessError as e:
            LOGGER.error(f"Alembic upgrade failed: {e.stderr}")
            raise

        LOGGER.info(f"Schema up to date. {result.stdout.strip()}")


if __name__ == "__main__":
    async def main():
        if "-t" in sys.argv or "--test" in sys.argv:
            os.environ["TEST_MODE"] = "true"

        db = DatabaseManager()
        try:
            await db.setup_tables()
        finally:
            await db.cleanup()

    asyncio.run(main())
