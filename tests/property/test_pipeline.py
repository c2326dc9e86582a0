import asyncio
from datetime import datetime, timedelta

import pytest
from hypothesis import given, settings

from errors import AuthError, PersistenceError
from ingest.backfill import BackfillWalker
from ingest.cycle import CollectionCycle, CyclePhase
from ingest.enrichment import resolve_genre
from ingest.rate_limiter import RateLimiter
from ingest.spotify import SpotifyClient, PlayedItem, decode_saved_track
from ingest.tokens import TokenManager
from models import Genre, GenreStatus, ActivitySource, ActivityRecord, SavedItem

from tests.mocks.db import all_rows, row_count
from tests.mocks.spotify import FakeSpotify, FakeOAuth, FakeClock, played_raw, saved_raw, spotify_error
from tests.strategies.apis import genre_list_strat

pytestmark = pytest.mark.ingest

T = datetime(2024, 5, 1, 12, 0, 0)


async def _store_play_at(repo, played_at: datetime, track_id: str = "old"):
    await repo.upsert_activity(PlayedItem(spotify_id=track_id, track_name="Old", artist_name="Artist",
                                          artist_id="artist-1", album_name="Album", album_cover_url=None,
                                          duration_ms=1000, played_at=played_at),
                               Genre.resolved("rock"))


# Collection cycle

async def test_only_plays_after_the_watermark_are_stored(repo, db, cycle, fake_spotify, stored_credential):
    await _store_play_at(repo, T)
    fake_spotify.artists = {"artist-1": ["rock", "indie rock"]}
    fake_spotify.plays = [played_raw("next2", T + timedelta(minutes=2)),
                          played_raw("next1", T + timedelta(minutes=1)),
                          played_raw("before", T - timedelta(minutes=1))]

    report = await cycle.run()

    assert (report.fetched, report.known, report.stored, report.duplicates, report.failed) == (3, 1, 2, 0, 0)
    rows = await all_rows(db, ActivityRecord)
    assert {r.spotify_id for r in rows} == {"old", "next1", "next2"}
    assert [r.genre for r in rows if r.spotify_id != "old"] == ["rock, indie rock"] * 2
    assert all(r.source is ActivitySource.poll for r in rows)
    assert cycle.phase is CyclePhase.idle

async def test_plays_at_exactly_the_watermark_are_known(repo, db, cycle, fake_spotify, stored_credential):
    await _store_play_at(repo, T)
    fake_spotify.plays = [played_raw("same-time", T)]

    report = await cycle.run()

    assert (report.known, report.stored) == (1, 0)
    assert await row_count(db, ActivityRecord) == 1

async def test_duplicates_in_one_page_are_swallowed(db, cycle, fake_spotify, stored_credential):
    fake_spotify.artists = {"artist-1": []}
    fake_spotify.plays = [played_raw("t1", T), played_raw("t1", T)]

    report = await cycle.run()

    assert (report.stored, report.duplicates, report.failed) == (1, 1, 0)
    [row] = await all_rows(db, ActivityRecord)
    assert row.genre_status is GenreStatus.no_genre

async def test_auth_failure_aborts_before_any_fetch(repo, db, client, limiter, fake_spotify, stored_credential):
    cycle = CollectionCycle(repo, client, TokenManager(FakeOAuth(fail=True)), limiter)
    fake_spotify.plays = [played_raw("t1", T)]

    assert await cycle.run() is None
    assert fake_spotify.calls["recently_played"] == []
    assert await row_count(db, ActivityRecord) == 0

async def test_missing_credential_aborts(cycle, fake_spotify):
    assert await cycle.run() is None
    assert fake_spotify.calls["recently_played"] == []

async def test_rotated_credential_is_stored_even_if_the_fetch_fails(repo, client, limiter, fake_spotify,
                                                                    stored_credential):
    oauth = FakeOAuth(rotate_to="refresh-1")
    cycle = CollectionCycle(repo, client, TokenManager(oauth), limiter)
    fake_spotify.fail_always("recently_played", spotify_error(404))

    assert await cycle.run() is None
    assert oauth.refreshed_with == ["refresh-0"]
    assert await repo.get_credential() == "refresh-1"

async def test_fetch_exhaustion_aborts_the_cycle(db, cycle, fake_spotify, stored_credential):
    fake_spotify.plays = [played_raw("t1", T)]
    fake_spotify.fail_always("recently_played", spotify_error(429))

    assert await cycle.run() is None
    # Budget of two retries.
    assert len(fake_spotify.calls["recently_played"]) == 3
    assert await row_count(db, ActivityRecord) == 0

async def test_passed_token_skips_the_refresh(repo, client, limiter, fake_spotify):
    oauth = FakeOAuth()
    cycle = CollectionCycle(repo, client, TokenManager(oauth), limiter)

    report = await cycle.run(access_token="already-fresh")

    assert report.fetched == 0
    assert oauth.refreshed_with == []

async def test_throttled_genre_leaves_the_row_for_the_backlog(db, cycle, enrichment, fake_spotify,
                                                              stored_credential):
    fake_spotify.artists = {"artist-1": ["jazz"]}
    fake_spotify.plays = [played_raw("t1", T)]
    fake_spotify.fail_always("artist", spotify_error(429))

    report = await cycle.run()

    assert report.stored == 1
    # Inline lookups only get one retry.
    assert len(fake_spotify.calls["artist"]) == 2
    [row] = await all_rows(db, ActivityRecord)
    assert (row.genre, row.genre_status) == (None, GenreStatus.throttled)

    fake_spotify.fail_always("artist", None)
    batch = await enrichment.run_activity_batch("token")

    assert batch.resolved == 1
    [row] = await all_rows(db, ActivityRecord)
    assert (row.genre, row.genre_status) == ("jazz", GenreStatus.resolved)

async def test_one_artist_is_looked_up_once_per_cycle(cycle, fake_spotify, stored_credential):
    fake_spotify.artists = {"artist-1": ["rock"]}
    fake_spotify.plays = [played_raw(f"t{i}", T - timedelta(minutes=i)) for i in range(5)]

    await cycle.run()

    assert fake_spotify.calls["artist"] == ["artist-1"]


# Genre resolution and backlog

@pytest.mark.parametrize("genres, expected", [
    (["rock", "pop"], Genre.resolved("rock, pop")),
    ([], Genre.no_genre()),
])
async def test_resolve_genre(client, limiter, fake_spotify, genres, expected):
    fake_spotify.artists = {"a": genres}

    assert await resolve_genre(client, limiter, "token", "a", max_retries=2) == expected

@given(genres=genre_list_strat())
@settings(max_examples=30, deadline=None)
def test_resolved_genre_is_the_joined_list(genres):
    clock = FakeClock()
    fake = FakeSpotify(artists={"a": genres})
    client = SpotifyClient(factory=lambda token: fake, sleep=clock.sleep)
    limiter = RateLimiter(min_interval=0.0, clock=clock, sleep=clock.sleep)

    genre = asyncio.run(resolve_genre(client, limiter, "token", "a", max_retries=0))

    if genres:
        assert genre == Genre.resolved(", ".join(genres))
    else:
        assert genre == Genre.no_genre()

async def test_resolve_genre_outcomes_on_failure(client, limiter, fake_spotify):
    # Unknown artist answers 404.
    assert await resolve_genre(client, limiter, "token", "missing", 2) == Genre.no_genre()
    assert await resolve_genre(client, limiter, "token", None, 2) == Genre.no_genre()

    fake_spotify.artists = {"a": ["rock"]}
    fake_spotify.fail_always("artist", spotify_error(503))
    assert await resolve_genre(client, limiter, "token", "a", 2) == Genre.throttled()

def _saved(track_id, added_at, artist_id):
    return decode_saved_track(saved_raw(track_id, added_at, artist_id=artist_id))

async def _seed_saved(repo, artist_ids: list[str]):
    for i, artist_id in enumerate(artist_ids):
        await repo.upsert_saved_item(_saved(f"s{i}", T - timedelta(days=i), artist_id))

async def test_backlog_batch_resolves_marks_and_retries(repo, db, enrichment, fake_spotify):
    await _seed_saved(repo, ["rock-artist", "quiet-artist", "gone-artist", "busy-artist"])
    fake_spotify.artists = {"rock-artist": ["rock"], "quiet-artist": [], "busy-artist": ["pop"]}
    fake_spotify.fail_always("artist", spotify_error(429), after=3)

    report = await enrichment.run_batch("token")

    assert (report.resolved, report.no_genre, report.throttled) == (1, 2, 1)
    rows = {r.artist_id: r for r in await all_rows(db, SavedItem)}
    assert rows["rock-artist"].genre == "rock"
    assert rows["quiet-artist"].genre_status is GenreStatus.no_genre
    assert rows["gone-artist"].genre_status is GenreStatus.no_genre
    assert rows["busy-artist"].genre_status is GenreStatus.throttled

    # Next batch starts with the throttled row and only that one is still open.
    assert await repo.select_genre_backlog(10) == [(rows["busy-artist"].id, "busy-artist")]

    fake_spotify.fail_always("artist", None)
    report = await enrichment.run_batch("token")

    assert report.resolved == 1
    assert await repo.select_genre_backlog(10) == []

async def test_backlog_batch_caches_artists(repo, enrichment, fake_spotify):
    await _seed_saved(repo, ["a", "a", "b", "a"])
    fake_spotify.artists = {"a": ["rock"], "b": []}

    report = await enrichment.run_batch("token")

    assert (report.resolved, report.no_genre) == (3, 1)
    assert sorted(fake_spotify.calls["artist"]) == ["a", "b"]

async def test_empty_backlog_does_no_requests(enrichment, fake_spotify):
    report = await enrichment.run_batch("token")

    assert report.selected == 0
    assert fake_spotify.calls["artist"] == []

async def test_genre_throttled_within_budget_is_resolved(repo, db, enrichment, fake_spotify):
    await _seed_saved(repo, ["a"])
    fake_spotify.artists = {"a": ["indie rock", "shoegaze"]}
    fake_spotify.fail_next("artist", spotify_error(429), spotify_error(429))

    report = await enrichment.run_batch("token")

    assert (report.resolved, report.throttled) == (1, 0)
    [row] = await all_rows(db, SavedItem)
    assert row.genre_status is GenreStatus.resolved
    assert row.genre == "indie rock, shoegaze"
    assert len(fake_spotify.calls["artist"]) == 3
    assert await repo.select_genre_backlog(10) == []

async def test_failed_genre_write_does_not_stop_the_batch(repo, db, enrichment, fake_spotify, monkeypatch):
    await _seed_saved(repo, ["a", "b", "c"])
    fake_spotify.artists = {"a": ["rock"], "b": ["pop"], "c": ["jazz"]}
    update_genre = repo.update_genre

    async def locked_first_row(item_id, genre):
        if item_id == 1:
            raise PersistenceError("database is locked")
        return await update_genre(item_id, genre)

    monkeypatch.setattr(repo, "update_genre", locked_first_row)
    report = await enrichment.run_batch("token")

    assert (report.failed, report.resolved) == (1, 2)
    statuses = [r.genre_status for r in await all_rows(db, SavedItem)]
    assert statuses == [GenreStatus.unset, GenreStatus.resolved, GenreStatus.resolved]

async def test_failed_play_genre_write_does_not_stop_the_batch(repo, db, enrichment, fake_spotify, monkeypatch):
    for i, artist_id in enumerate(["a", "b"]):
        await repo.upsert_activity(PlayedItem(spotify_id=f"t{i}", track_name="Track", artist_name="Artist",
                                              artist_id=artist_id, album_name="Album", album_cover_url=None,
                                              duration_ms=1000, played_at=T - timedelta(minutes=i)))
    fake_spotify.artists = {"a": ["rock"], "b": ["pop"]}
    update_activity_genre = repo.update_activity_genre

    async def locked_artist_a(artist_id, genre):
        if artist_id == "a":
            raise PersistenceError("database is locked")
        return await update_activity_genre(artist_id, genre)

    monkeypatch.setattr(repo, "update_activity_genre", locked_artist_a)
    report = await enrichment.run_activity_batch("token")

    assert (report.failed, report.resolved) == (1, 1)
    rows = {r.artist_id: r for r in await all_rows(db, ActivityRecord)}
    assert rows["a"].genre_status is GenreStatus.unset
    assert rows["b"].genre == "pop"


# Saved items and backfill

async def test_saved_walk_stops_at_the_watermark(repo, db, walker, fake_spotify):
    await repo.upsert_saved_item(_saved("known", T, "a"))
    fake_spotify.saved = [saved_raw("new2", T + timedelta(days=2), artist_id="a"),
                          saved_raw("new1", T + timedelta(days=1), artist_id="a"),
                          saved_raw("known", T, artist_id="a"),
                          saved_raw("older", T - timedelta(days=1), artist_id="a")] + \
                         [saved_raw(f"x{i}", T - timedelta(days=10 + i), artist_id="a") for i in range(10)]

    report = await walker.collect_saved_items("token", page_size=2, page_delay=0.0)

    assert report.stored == 2
    assert report.reached_watermark
    assert not report.truncated
    assert [c["offset"] for c in fake_spotify.calls["saved_tracks"]] == [0, 2]
    assert {r.spotify_id for r in await all_rows(db, SavedItem)} == {"known", "new1", "new2"}

async def test_saved_walk_skips_partial_items(db, walker, fake_spotify):
    fake_spotify.saved = [saved_raw("ok", T, artist_id="a"),
                          saved_raw("no-artist", T - timedelta(days=1), artist_id=None),
                          saved_raw("no-cover", T - timedelta(days=2), artist_id="a", cover=False)]

    report = await walker.collect_saved_items("token")

    assert (report.stored, report.skipped) == (1, 2)
    assert [r.spotify_id for r in await all_rows(db, SavedItem)] == ["ok"]

async def test_steady_state_walk_aborts_on_first_page_failure(walker, fake_spotify, clock):
    fake_spotify.saved = [saved_raw("ok", T, artist_id="a")]
    fake_spotify.fail_always("saved_tracks", spotify_error(500))

    report = await walker.collect_saved_items("token", max_consecutive_errors=1)

    assert report.aborted
    assert report.stored == 0
    assert 30.0 not in clock.sleeps

async def test_failed_page_is_retried_at_the_same_offset(db, walker, fake_spotify, clock):
    fake_spotify.saved = [saved_raw(f"s{i}", T - timedelta(days=i), artist_id="a") for i in range(3)]
    # First page attempt burns its whole retry budget, the pause then gets it through.
    fake_spotify.fail_next("saved_tracks", *[spotify_error(502)] * 3)

    report = await walker.collect_saved_items("token", page_size=20, max_consecutive_errors=5,
                                              error_pause=30.0)

    assert not report.aborted
    assert report.page_errors == 1
    assert report.stored == 3
    assert clock.sleeps.count(30.0) == 1
    assert {c["offset"] for c in fake_spotify.calls["saved_tracks"]} == {0}

async def test_backfill_gives_up_after_five_failed_pages(repo, walker, fake_spotify, clock):
    fake_spotify.fail_always("saved_tracks", spotify_error(503))

    report = await walker.backfill_since("token", T - timedelta(days=7))

    assert report.saved.aborted
    assert report.saved.page_errors == 5
    assert clock.sleeps.count(30.0) == 4

async def test_backfill_stores_plays_for_the_backlog(repo, db, walker, fake_spotify):
    fake_spotify.plays = [played_raw(f"t{i}", T - timedelta(days=i)) for i in range(10)]
    fake_spotify.saved = [saved_raw("s1", T, artist_id="a")]

    report = await walker.backfill_since("token", T - timedelta(days=4, hours=12), page_size=3)

    assert (report.fetched, report.stored, report.duplicates) == (5, 5, 0)
    assert not report.truncated
    assert report.saved.stored == 1

    rows = await all_rows(db, ActivityRecord)
    assert all(r.source is ActivitySource.backfill for r in rows)
    assert all(r.genre_status is GenreStatus.unset for r in rows)
    assert fake_spotify.calls["artist"] == []

async def test_backfill_can_be_rerun(repo, db, walker, fake_spotify):
    fake_spotify.plays = [played_raw(f"t{i}", T - timedelta(days=i)) for i in range(4)]

    await walker.backfill_since("token", T - timedelta(days=30))
    again = await walker.backfill_since("token", T - timedelta(days=30))

    assert (again.stored, again.duplicates) == (0, 4)
    assert await row_count(db, ActivityRecord) == 4

async def test_backfill_reports_truncation(repo, client, limiter, fake_spotify, clock):
    walker = BackfillWalker(repo, client, limiter, max_pages=3, sleep=clock.sleep)
    fake_spotify.endless = True

    report = await walker.backfill_since("token", datetime(2000, 1, 1), page_size=5)

    assert report.truncated
    assert (report.pages, report.stored) == (3, 15)

async def test_backfill_keeps_pages_fetched_before_a_rejected_one(db, walker, fake_spotify):
    fake_spotify.plays = [played_raw(f"t{i}", T - timedelta(hours=i)) for i in range(10)]
    fake_spotify.fail_always("recently_played", spotify_error(404), after=2)

    report = await walker.backfill_since("token", datetime(2000, 1, 1), page_size=3)

    assert report.truncated
    assert (report.pages, report.fetched, report.stored) == (2, 6, 6)
    assert await row_count(db, ActivityRecord) == 6

async def test_saved_walk_reports_the_page_ceiling(db, walker, fake_spotify):
    fake_spotify.saved = [saved_raw(f"s{i}", T - timedelta(days=i), artist_id="a") for i in range(10)]

    report = await walker.collect_saved_items("token", page_size=2, page_delay=0.0, max_pages=3)

    assert report.truncated
    assert not report.aborted
    assert (report.pages, report.stored) == (3, 6)
    assert await row_count(db, SavedItem) == 6


# Tokens

async def test_obtain_without_rotation_keeps_credential(repo, stored_credential):
    oauth = FakeOAuth()

    assert await TokenManager(oauth).obtain(repo) == "access-1"
    assert await repo.get_credential() == "refresh-0"

async def test_refresh_failure_is_an_auth_error():
    with pytest.raises(AuthError):
        await TokenManager(FakeOAuth(fail=True)).refresh("refresh-0")

async def test_rotation_is_reported_only_when_the_token_changes():
    same = await TokenManager(FakeOAuth()).refresh("refresh-0")
    rotated = await TokenManager(FakeOAuth(rotate_to="refresh-1")).refresh("refresh-0")

    assert same.rotated_refresh_token is None
    assert rotated.rotated_refresh_token == "refresh-1"
