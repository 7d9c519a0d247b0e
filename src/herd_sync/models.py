"""Data models for herd-sync."""

from datetime import UTC, datetime
from enum import Enum

from pydantic import BaseModel, Field

UNKNOWN_ARTIST_ID = "unknown"
UNKNOWN_ARTIST_NAME = "Unknown Artist"
UNKNOWN_SPOTIFY_USER_ID = "unknown"


class UserCredential(BaseModel):
    """Spotify credentials stored for a Herd user."""

    user_id: str
    access_token: str | None = None
    refresh_token: str | None = None
    spotify_user_id: str | None = None
    username: str | None = None
    avatar: str | None = None
    updated_at: datetime | None = None

    @property
    def is_linked(self) -> bool:
        """A user is eligible for sync only when both tokens are present."""
        return bool(self.access_token and self.refresh_token)


class ListeningEvent(BaseModel):
    """A single play of a track, keyed by (user_id, artist_id, track_id, played_at)."""

    user_id: str
    artist_id: str
    artist_name: str
    track_id: str
    track_name: str
    played_at: str  # ISO-8601 as supplied by Spotify
    duration_ms: int = 0

    @property
    def natural_key(self) -> tuple[str, str, str, str]:
        return (self.user_id, self.artist_id, self.track_id, self.played_at)


class TokenGrant(BaseModel):
    """Tokens returned by the Spotify accounts service."""

    access_token: str
    refresh_token: str | None = None  # Only issued for authorization_code grants
    expires_in: int = 3600


class SyncErrorKind(str, Enum):
    """Classification of a failed per-user sync."""

    UNAUTHORIZED = "unauthorized"
    RATE_LIMITED = "rate_limited"
    REFRESH_FAILED = "refresh_failed"
    STORE_ERROR = "store_error"
    ACCESS_DENIED = "access_denied"
    UPSTREAM_OTHER = "upstream_other"


class SyncOutcome(BaseModel):
    """Result of syncing one user."""

    success: bool
    synced: int = 0
    error: str | None = None
    error_kind: SyncErrorKind | None = None
    token_refreshed: bool = False
    retry_after: int | None = None

    @classmethod
    def failure(cls, kind: SyncErrorKind, error: str, **kwargs: object) -> "SyncOutcome":
        return cls(success=False, synced=0, error=error, error_kind=kind, **kwargs)


class SyncTrigger(str, Enum):
    """What started a batch run."""

    SCHEDULED = "scheduled"
    MANUAL = "manual"
    STARTUP = "startup"


class UserSyncResult(BaseModel):
    """Outcome of one user inside a batch run."""

    user_id: str
    outcome: SyncOutcome


class BatchSyncStatus(BaseModel):
    """Status of the most recent batch run.

    A fresh instance is created at the start of every run, so counters
    never mix two runs. ``success`` means the batch ran to completion;
    per-user failures are in ``fail_count`` and ``errors``.
    """

    last_run: datetime | None = None
    trigger: SyncTrigger | None = None
    in_progress: bool = False
    success: bool = False
    users_processed: int = 0
    tracks_synced: int = 0
    success_count: int = 0
    fail_count: int = 0
    errors: list[str] = Field(default_factory=list)
    duration_seconds: float | None = None
    results: list[UserSyncResult] = Field(default_factory=list)

    @classmethod
    def started(cls, trigger: SyncTrigger) -> "BatchSyncStatus":
        return cls(last_run=datetime.now(UTC), trigger=trigger, in_progress=True)


class TimeRange(str, Enum):
    """Built-in leaderboard time ranges."""

    ALL_TIME = "all-time"
    PAST_WEEK = "past-week"
    THIS_MONTH = "this-month"


class ListeningStats(BaseModel):
    """Aggregate listening for one user."""

    total_songs: int
    total_minutes: int


class ArtistTotal(BaseModel):
    """Listening totals for one artist (a user's top artists)."""

    artist_id: str
    artist_name: str
    total_minutes: int
    total_songs: int


class LeaderboardEntry(BaseModel):
    """One row of an artist leaderboard."""

    rank: int
    user_id: str
    username: str | None = None
    avatar: str | None = None
    total_minutes: int
    total_songs: int
