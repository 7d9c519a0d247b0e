"""Custom exceptions for herd-sync."""


class HerdSyncError(Exception):
    """Base exception for all herd-sync errors."""

    pass


class SpotifyError(HerdSyncError):
    """Spotify request failed."""

    def __init__(self, message: str, status_code: int | None = None):
        self.status_code = status_code
        super().__init__(message)


class SpotifyUnauthorizedError(SpotifyError):
    """Access token expired or invalid (401)."""

    def __init__(self, message: str = "Spotify access token expired"):
        super().__init__(message, status_code=401)


class SpotifyAccessDeniedError(SpotifyError):
    """Spotify refused access (403), e.g. user not registered on the app."""

    def __init__(self, message: str = "Spotify access denied"):
        super().__init__(message, status_code=403)


class SpotifyRateLimitError(SpotifyError):
    """Rate limited by Spotify (429)."""

    def __init__(self, retry_after: int):
        self.retry_after = retry_after
        super().__init__(f"Rate limited. Retry after {retry_after}s", status_code=429)


class SpotifyAPIError(SpotifyError):
    """Unclassified Spotify failure (other status codes, transport errors)."""

    pass


class TokenRefreshError(SpotifyError):
    """Refresh token could not be exchanged for a new access token."""

    pass


class StoreError(HerdSyncError):
    """Persistence operation failed."""

    pass


class SyncInProgressError(HerdSyncError):
    """A batch sync is already running."""

    pass
