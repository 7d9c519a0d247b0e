"""Tests for database operations."""

import tempfile
from datetime import UTC, datetime
from pathlib import Path

import pytest

from herd_sync.database import Database, to_played_at
from herd_sync.models import ListeningEvent


@pytest.fixture
async def db():
    """Create a temporary database for testing."""
    with tempfile.NamedTemporaryFile(suffix=".db", delete=False) as f:
        db_path = Path(f.name)

    database = Database(db_path)
    await database.connect()
    yield database
    await database.close()
    db_path.unlink(missing_ok=True)


def make_event(
    key: str,
    user_id: str = "user-1",
    artist_id: str = "artist-1",
    played_at: str | None = None,
    duration_ms: int = 180000,
) -> ListeningEvent:
    return ListeningEvent(
        user_id=user_id,
        artist_id=artist_id,
        artist_name=f"Artist {artist_id}",
        track_id=f"track-{key}",
        track_name=f"Track {key}",
        played_at=played_at or f"2024-05-01T10:00:0{key}.000Z",
        duration_ms=duration_ms,
    )


async def set_profile(db: Database, user_id: str, username: str) -> None:
    assert db._db is not None
    await db._db.execute(
        "INSERT INTO users (id, username) VALUES (?, ?) ON CONFLICT(id) DO UPDATE SET username = excluded.username",
        (user_id, username),
    )
    await db._db.commit()


@pytest.mark.asyncio
async def test_database_connection(db: Database):
    """Test database connects and creates tables."""
    assert db._db is not None
    assert db.connected


def test_to_played_at_format():
    """Test range bounds use Spotify's played_at format."""
    assert to_played_at(datetime(2024, 5, 1, 10, 0, 0, 589000, tzinfo=UTC)) == "2024-05-01T10:00:00.589Z"
    assert to_played_at(datetime(2024, 5, 1, 10, 0, 0)) == "2024-05-01T10:00:00.000Z"


# ========== Credentials ==========


@pytest.mark.asyncio
async def test_save_credentials(db: Database):
    """Test saving credentials creates the user row."""
    user = await db.save_credentials("user-1", "access-1", "refresh-1", "spotify-1")

    assert user.user_id == "user-1"
    assert user.access_token == "access-1"
    assert user.refresh_token == "refresh-1"
    assert user.spotify_user_id == "spotify-1"


@pytest.mark.asyncio
async def test_save_credentials_updates_existing(db: Database):
    """Test relinking replaces tokens and keeps profile columns."""
    await set_profile(db, "user-1", "alice")
    await db.save_credentials("user-1", "access-1", "refresh-1", "unknown")
    user = await db.save_credentials("user-1", "access-2", "refresh-2", "spotify-1")

    assert user.access_token == "access-2"
    assert user.refresh_token == "refresh-2"
    assert user.spotify_user_id == "spotify-1"
    assert user.username == "alice"


@pytest.mark.asyncio
async def test_get_user_not_found(db: Database):
    """Test unknown user returns None."""
    assert await db.get_user("nobody") is None


@pytest.mark.asyncio
async def test_update_access_token(db: Database):
    """Test a refreshed access token replaces the stored one only."""
    await db.save_credentials("user-1", "old-access", "refresh-1")

    assert await db.update_access_token("user-1", "new-access") is True
    user = await db.get_user("user-1")
    assert user is not None
    assert user.access_token == "new-access"
    assert user.refresh_token == "refresh-1"

    assert await db.update_access_token("nobody", "x") is False


@pytest.mark.asyncio
async def test_get_linked_users(db: Database):
    """Test only users with both tokens are returned."""
    await db.save_credentials("user-1", "a1", "r1")
    await db.save_credentials("user-2", "a2", "r2")
    await set_profile(db, "user-3", "no-spotify")

    users = await db.get_linked_users()
    assert [u.user_id for u in users] == ["user-1", "user-2"]
    assert all(u.is_linked for u in users)


# ========== Listening Data ==========


@pytest.mark.asyncio
async def test_upsert_listening_events_is_idempotent(db: Database):
    """Test re-inserting the same events writes nothing new."""
    events = [make_event(k) for k in "12345"]

    assert await db.upsert_listening_events(events) == 5
    assert await db.upsert_listening_events(events) == 0
    assert (await db.get_user_stats("user-1")).total_songs == 5


@pytest.mark.asyncio
async def test_upsert_listening_events_partial_overlap(db: Database):
    """Test overlapping windows only count the new rows."""
    assert await db.upsert_listening_events([make_event(k) for k in "123"]) == 3
    assert await db.upsert_listening_events([make_event(k) for k in "2345"]) == 2
    assert (await db.get_user_stats("user-1")).total_songs == 5


@pytest.mark.asyncio
async def test_same_track_different_user_is_distinct(db: Database):
    """Test the natural key includes the user."""
    assert await db.upsert_listening_events([make_event("1", user_id="user-1")]) == 1
    assert await db.upsert_listening_events([make_event("1", user_id="user-2")]) == 1
    assert (await db.get_user_stats("user-1")).total_songs == 1
    assert (await db.get_user_stats("user-2")).total_songs == 1


@pytest.mark.asyncio
async def test_upsert_empty(db: Database):
    """Test empty input writes nothing."""
    assert await db.upsert_listening_events([]) == 0


# ========== Leaderboards ==========


@pytest.mark.asyncio
async def test_user_stats(db: Database):
    """Test total songs and minutes."""
    await db.upsert_listening_events(
        [
            make_event("1", duration_ms=120000),
            make_event("2", duration_ms=240000),
            make_event("3", duration_ms=60000),
        ]
    )

    stats = await db.get_user_stats("user-1")
    assert stats.total_songs == 3
    assert stats.total_minutes == 7


@pytest.mark.asyncio
async def test_user_stats_empty(db: Database):
    """Test stats for a user without data."""
    stats = await db.get_user_stats("nobody")
    assert stats.total_songs == 0
    assert stats.total_minutes == 0


@pytest.mark.asyncio
async def test_user_stats_time_range(db: Database):
    """Test stats respect since/until bounds."""
    await db.upsert_listening_events(
        [
            make_event("1", played_at="2024-01-10T12:00:00.000Z"),
            make_event("2", played_at="2024-02-10T12:00:00.000Z"),
            make_event("3", played_at="2024-03-10T12:00:00.000Z"),
        ]
    )

    stats = await db.get_user_stats(
        "user-1",
        since=datetime(2024, 2, 1, tzinfo=UTC),
        until=datetime(2024, 3, 1, tzinfo=UTC),
    )
    assert stats.total_songs == 1
    assert stats.total_minutes == 3


@pytest.mark.asyncio
async def test_user_top_artists(db: Database):
    """Test top artists are ordered by minutes."""
    await db.upsert_listening_events(
        [
            make_event("1", artist_id="a", duration_ms=60000),
            make_event("2", artist_id="b", duration_ms=300000),
            make_event("3", artist_id="a", duration_ms=60000),
        ]
    )

    artists = await db.get_user_top_artists("user-1")
    assert [a.artist_id for a in artists] == ["b", "a"]
    assert artists[0].total_minutes == 5
    assert artists[1].total_songs == 2
    assert artists[1].artist_name == "Artist a"

    limited = await db.get_user_top_artists("user-1", limit=1)
    assert len(limited) == 1


@pytest.mark.asyncio
async def test_artist_leaderboard(db: Database):
    """Test listeners are ranked by minutes with profile info."""
    await set_profile(db, "user-1", "alice")
    await set_profile(db, "user-2", "bob")
    await db.upsert_listening_events(
        [
            make_event("1", user_id="user-1", duration_ms=120000),
            make_event("1", user_id="user-2", duration_ms=120000),
            make_event("2", user_id="user-2", duration_ms=120000),
            make_event("3", user_id="user-3", duration_ms=60000),
            make_event("4", user_id="user-1", artist_id="other", duration_ms=900000),
        ]
    )

    board = await db.get_artist_leaderboard("artist-1")
    assert [(e.rank, e.user_id) for e in board] == [(1, "user-2"), (2, "user-1"), (3, "user-3")]
    assert board[0].username == "bob"
    assert board[0].total_minutes == 4
    assert board[0].total_songs == 2
    # Listeners without a profile row still appear
    assert board[2].username is None


@pytest.mark.asyncio
async def test_artist_leaderboard_unknown_artist(db: Database):
    """Test an artist nobody listened to has an empty leaderboard."""
    assert await db.get_artist_leaderboard("nobody") == []
