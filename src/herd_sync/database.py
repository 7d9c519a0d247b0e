"""SQLite database operations for credentials, listening events and leaderboards."""

import logging
from datetime import UTC, datetime
from pathlib import Path

import aiosqlite

from .config import get_config
from .models import ArtistTotal, LeaderboardEntry, ListeningEvent, ListeningStats, UserCredential

logger = logging.getLogger(__name__)

MS_PER_MINUTE = 60000


def to_played_at(dt: datetime) -> str:
    """Format a datetime the way Spotify formats played_at (millisecond ISO-8601, Z suffix).

    Events store played_at verbatim, so range bounds must use the same format
    for string comparison to order correctly.
    """
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=UTC)
    return dt.astimezone(UTC).strftime("%Y-%m-%dT%H:%M:%S.%f")[:-3] + "Z"


def _to_minutes(total_ms: int | None) -> int:
    return round((total_ms or 0) / MS_PER_MINUTE)


class Database:
    """Async SQLite database for users and listening data."""

    def __init__(self, db_path: str | Path | None = None, journal_mode: str | None = None):
        self._config_db_path = db_path
        self._config_journal_mode = journal_mode
        self._db: aiosqlite.Connection | None = None

    @property
    def db_path(self) -> str:
        """Get database path from config or override."""
        if self._config_db_path:
            return str(self._config_db_path)
        return get_config().database.path

    @property
    def journal_mode(self) -> str:
        """Get journal mode from config or override."""
        if self._config_journal_mode:
            return self._config_journal_mode.upper()
        try:
            return get_config().database.journal_mode.upper()
        except RuntimeError:
            return "WAL"  # Default if config not loaded (tests)

    @property
    def connected(self) -> bool:
        return self._db is not None

    async def connect(self) -> None:
        """Connect to the database and create tables."""
        db_path = Path(self.db_path)
        db_path.parent.mkdir(parents=True, exist_ok=True)

        logger.info("Connecting to database: %s (journal_mode=%s)", db_path, self.journal_mode)
        self._db = await aiosqlite.connect(self.db_path)
        self._db.row_factory = aiosqlite.Row

        if self.journal_mode in ("WAL", "DELETE", "TRUNCATE", "MEMORY", "OFF"):
            await self._db.execute(f"PRAGMA journal_mode={self.journal_mode}")

        await self._create_tables()
        logger.info("Database connected successfully")

    async def close(self) -> None:
        """Close the database connection."""
        if self._db:
            logger.info("Closing database connection")
            await self._db.close()
            self._db = None

    async def _create_tables(self) -> None:
        """Create database tables if they don't exist."""
        assert self._db is not None

        # Profile columns (username, avatar) are owned by the identity system
        await self._db.execute(
            """
            CREATE TABLE IF NOT EXISTS users (
                id TEXT PRIMARY KEY,
                username TEXT,
                avatar TEXT,
                spotify_access_token TEXT,
                spotify_refresh_token TEXT,
                spotify_user_id TEXT,
                created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
                updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
            )
        """
        )

        await self._db.execute(
            """
            CREATE TABLE IF NOT EXISTS listening_data (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                user_id TEXT NOT NULL,
                artist_id TEXT NOT NULL,
                artist_name TEXT NOT NULL,
                track_id TEXT NOT NULL,
                track_name TEXT NOT NULL,
                played_at TEXT NOT NULL,
                duration_ms INTEGER NOT NULL DEFAULT 0,
                created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
                UNIQUE(user_id, artist_id, track_id, played_at)
            )
        """
        )

        await self._db.execute(
            """
            CREATE INDEX IF NOT EXISTS idx_listening_data_artist
            ON listening_data(artist_id, played_at)
        """
        )

        await self._db.execute(
            """
            CREATE INDEX IF NOT EXISTS idx_listening_data_user
            ON listening_data(user_id, played_at)
        """
        )

        await self._db.commit()

    # ========== Credentials ==========

    @staticmethod
    def _row_to_credential(row: aiosqlite.Row) -> UserCredential:
        return UserCredential(
            user_id=row["id"],
            access_token=row["spotify_access_token"],
            refresh_token=row["spotify_refresh_token"],
            spotify_user_id=row["spotify_user_id"],
            username=row["username"],
            avatar=row["avatar"],
            updated_at=row["updated_at"],
        )

    async def get_user(self, user_id: str) -> UserCredential | None:
        """Get a user's stored credentials."""
        assert self._db is not None

        async with self._db.execute(
            """
            SELECT id, username, avatar, spotify_access_token, spotify_refresh_token,
                   spotify_user_id, updated_at
            FROM users
            WHERE id = ?
            """,
            (user_id,),
        ) as cursor:
            row = await cursor.fetchone()
            if row is None:
                logger.debug("[user %s] Not found", user_id)
                return None
            return self._row_to_credential(row)

    async def save_credentials(
        self,
        user_id: str,
        access_token: str,
        refresh_token: str,
        spotify_user_id: str | None = None,
    ) -> UserCredential:
        """Insert or update a user's Spotify credentials after linking."""
        assert self._db is not None

        logger.debug("[user %s] Saving Spotify credentials (spotify_user_id=%s)", user_id, spotify_user_id)
        await self._db.execute(
            """
            INSERT INTO users (id, spotify_access_token, spotify_refresh_token, spotify_user_id, updated_at)
            VALUES (?, ?, ?, ?, CURRENT_TIMESTAMP)
            ON CONFLICT(id)
            DO UPDATE SET spotify_access_token = excluded.spotify_access_token,
                          spotify_refresh_token = excluded.spotify_refresh_token,
                          spotify_user_id = excluded.spotify_user_id,
                          updated_at = CURRENT_TIMESTAMP
            """,
            (user_id, access_token, refresh_token, spotify_user_id),
        )
        await self._db.commit()

        user = await self.get_user(user_id)
        assert user is not None
        logger.info("[user %s] Spotify credentials saved", user_id)
        return user

    async def update_access_token(self, user_id: str, access_token: str) -> bool:
        """Store a refreshed access token. Returns True if the user exists."""
        assert self._db is not None

        cursor = await self._db.execute(
            """
            UPDATE users
            SET spotify_access_token = ?, updated_at = CURRENT_TIMESTAMP
            WHERE id = ?
            """,
            (access_token, user_id),
        )
        await self._db.commit()
        updated = cursor.rowcount > 0
        if updated:
            logger.debug("[user %s] Access token updated", user_id)
        else:
            logger.warning("[user %s] Cannot update access token: user not found", user_id)
        return updated

    async def get_linked_users(self) -> list[UserCredential]:
        """Get all users with both access and refresh tokens (the sync fleet)."""
        assert self._db is not None

        users = []
        async with self._db.execute(
            """
            SELECT id, username, avatar, spotify_access_token, spotify_refresh_token,
                   spotify_user_id, updated_at
            FROM users
            WHERE spotify_access_token IS NOT NULL
              AND spotify_refresh_token IS NOT NULL
            ORDER BY created_at, id
            """
        ) as cursor:
            async for row in cursor:
                users.append(self._row_to_credential(row))
        logger.debug("Found %d users with Spotify linked", len(users))
        return users

    # ========== Listening Data ==========

    async def upsert_listening_events(self, events: list[ListeningEvent]) -> int:
        """Insert listening events, ignoring natural-key duplicates.

        Returns the number of rows newly written (not the number submitted).
        """
        assert self._db is not None

        if not events:
            return 0

        cursor = await self._db.executemany(
            """
            INSERT INTO listening_data
            (user_id, artist_id, artist_name, track_id, track_name, played_at, duration_ms)
            VALUES (?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(user_id, artist_id, track_id, played_at) DO NOTHING
            """,
            [
                (
                    e.user_id,
                    e.artist_id,
                    e.artist_name,
                    e.track_id,
                    e.track_name,
                    e.played_at,
                    e.duration_ms,
                )
                for e in events
            ],
        )
        await self._db.commit()
        # executemany sums modifications; skipped conflicts are not counted
        inserted = max(cursor.rowcount, 0)
        logger.debug("Upserted listening events: submitted=%d, new=%d", len(events), inserted)
        return inserted

    # ========== Leaderboards ==========

    @staticmethod
    def _range_clause(since: datetime | None, until: datetime | None) -> tuple[str, list[str]]:
        """Build a played_at range filter."""
        clause = ""
        params: list[str] = []
        if since is not None:
            clause += " AND l.played_at >= ?"
            params.append(to_played_at(since))
        if until is not None:
            clause += " AND l.played_at <= ?"
            params.append(to_played_at(until))
        return clause, params

    async def get_user_stats(
        self,
        user_id: str,
        since: datetime | None = None,
        until: datetime | None = None,
    ) -> ListeningStats:
        """Total songs and minutes listened by a user in a time range."""
        assert self._db is not None

        range_sql, range_params = self._range_clause(since, until)
        async with self._db.execute(
            f"""
            SELECT COUNT(*) AS total_songs, SUM(l.duration_ms) AS total_ms
            FROM listening_data l
            WHERE l.user_id = ?{range_sql}
            """,
            (user_id, *range_params),
        ) as cursor:
            row = await cursor.fetchone()

        return ListeningStats(
            total_songs=row["total_songs"] if row else 0,
            total_minutes=_to_minutes(row["total_ms"] if row else 0),
        )

    async def get_user_top_artists(
        self,
        user_id: str,
        since: datetime | None = None,
        until: datetime | None = None,
        limit: int = 10,
    ) -> list[ArtistTotal]:
        """A user's most listened artists by minutes."""
        assert self._db is not None

        range_sql, range_params = self._range_clause(since, until)
        artists = []
        async with self._db.execute(
            f"""
            SELECT l.artist_id, MAX(l.artist_name) AS artist_name,
                   COUNT(*) AS total_songs, SUM(l.duration_ms) AS total_ms
            FROM listening_data l
            WHERE l.user_id = ?{range_sql}
            GROUP BY l.artist_id
            ORDER BY total_ms DESC, l.artist_id
            LIMIT ?
            """,
            (user_id, *range_params, limit),
        ) as cursor:
            async for row in cursor:
                artists.append(
                    ArtistTotal(
                        artist_id=row["artist_id"],
                        artist_name=row["artist_name"],
                        total_minutes=_to_minutes(row["total_ms"]),
                        total_songs=row["total_songs"],
                    )
                )
        return artists

    async def get_artist_leaderboard(
        self,
        artist_id: str,
        since: datetime | None = None,
        until: datetime | None = None,
        limit: int = 10,
    ) -> list[LeaderboardEntry]:
        """Top listeners of an artist by minutes, ranked from 1."""
        assert self._db is not None

        range_sql, range_params = self._range_clause(since, until)
        entries = []
        async with self._db.execute(
            f"""
            SELECT l.user_id, u.username, u.avatar,
                   COUNT(*) AS total_songs, SUM(l.duration_ms) AS total_ms
            FROM listening_data l
            LEFT JOIN users u ON u.id = l.user_id
            WHERE l.artist_id = ?{range_sql}
            GROUP BY l.user_id
            ORDER BY total_ms DESC, l.user_id
            LIMIT ?
            """,
            (artist_id, *range_params, limit),
        ) as cursor:
            rank = 0
            async for row in cursor:
                rank += 1
                entries.append(
                    LeaderboardEntry(
                        rank=rank,
                        user_id=row["user_id"],
                        username=row["username"],
                        avatar=row["avatar"],
                        total_minutes=_to_minutes(row["total_ms"]),
                        total_songs=row["total_songs"],
                    )
                )
        return entries


# Global database instance
_db: Database | None = None


async def get_db() -> Database:
    """Get the global database instance."""
    global _db
    if _db is None:
        _db = Database()
        await _db.connect()
    return _db


async def close_db() -> None:
    """Close the global database connection."""
    global _db
    if _db:
        await _db.close()
        _db = None
