import os
os.environ["TEST_MODE"] = "true"

import pytest

from ingest.backfill import BackfillWalker
from ingest.cycle import CollectionCycle
from ingest.enrichment import GenreBackfillQueue
from ingest.rate_limiter import RateLimiter
from ingest.spotify import SpotifyClient
from ingest.tokens import TokenManager
from repository import Repository

from tests.mocks.db import make_test_db
from tests.mocks.spotify import FakeSpotify, FakeOAuth, FakeClock


@pytest.fixture
async def db(tmp_path):
    """Fresh sqlite database per test."""
    manager = await make_test_db(tmp_path / "test.db")
    yield manager
    await manager.cleanup()

@pytest.fixture
def repo(db):
    return Repository(db)

@pytest.fixture
async def stored_credential(repo):
    await repo.set_credential("refresh-0")
    return "refresh-0"

@pytest.fixture
def fake_spotify():
    return FakeSpotify()

@pytest.fixture
def fake_oauth():
    return FakeOAuth()

@pytest.fixture
def clock():
    return FakeClock()

@pytest.fixture
def limiter(clock):
    return RateLimiter(max_per_minute=60, min_interval=0.0, clock=clock, sleep=clock.sleep)

@pytest.fixture
def client(fake_spotify, clock):
    return SpotifyClient(factory=lambda token: fake_spotify, sleep=clock.sleep)

@pytest.fixture
def tokens(fake_oauth):
    return TokenManager(fake_oauth)

@pytest.fixture
def cycle(repo, client, tokens, limiter):
    return CollectionCycle(repo, client, tokens, limiter)

@pytest.fixture
def walker(repo, client, limiter, clock):
    return BackfillWalker(repo, client, limiter, sleep=clock.sleep)

@pytest.fixture
def enrichment(repo, client, limiter):
    return GenreBackfillQueue(repo, client, limiter, batch_size=50, max_retries=2)
