"""Spotify Web API client for listening-history sync."""

import logging
from typing import Any
from urllib.parse import urlencode

import httpx

from ..config import SpotifyConfig
from ..exceptions import (
    SpotifyAccessDeniedError,
    SpotifyAPIError,
    SpotifyRateLimitError,
    SpotifyUnauthorizedError,
    TokenRefreshError,
)
from ..models import TokenGrant

logger = logging.getLogger(__name__)

DEFAULT_LIMITS = httpx.Limits(max_connections=10, max_keepalive_connections=5)
DEFAULT_RETRY_AFTER_SECONDS = 60


def parse_retry_after(value: str | None) -> int:
    """Parse a Retry-After header (seconds), falling back to the default."""
    if not value:
        return DEFAULT_RETRY_AFTER_SECONDS
    try:
        return max(int(float(value)), 0)
    except (ValueError, OverflowError):
        return DEFAULT_RETRY_AFTER_SECONDS


def _error_detail(response: httpx.Response) -> str:
    """Extract a human-readable message from a Spotify error response."""
    try:
        data = response.json()
    except ValueError:
        return response.text or f"HTTP {response.status_code}"
    error = data.get("error") if isinstance(data, dict) else None
    if isinstance(error, dict):
        return error.get("message") or f"HTTP {response.status_code}"
    if isinstance(error, str):
        return error
    return response.text or f"HTTP {response.status_code}"


def _json_object(response: httpx.Response) -> dict[str, Any]:
    """Decode a successful response body, which must be a JSON object."""
    try:
        data = response.json()
    except ValueError as e:
        raise SpotifyAPIError(f"Malformed Spotify response: {e}", status_code=response.status_code) from e
    if not isinstance(data, dict):
        raise SpotifyAPIError("Malformed Spotify response: expected a JSON object", status_code=response.status_code)
    return data


class SpotifyClient:
    """Async client for the Spotify Web API and accounts service."""

    AUTH_URL = "https://accounts.spotify.com/authorize"
    TOKEN_URL = "https://accounts.spotify.com/api/token"
    API_BASE = "https://api.spotify.com/v1"

    SCOPES = [
        "user-read-private",
        "user-read-email",
        "user-read-recently-played",
        "user-top-read",
        "user-read-playback-state",
    ]

    def __init__(
        self,
        settings: SpotifyConfig,
        redirect_uri: str | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.settings = settings
        self.client_id = settings.client_id
        self.client_secret = settings.client_secret
        self.redirect_uri = redirect_uri or settings.redirect_uri or ""
        self.timeout = httpx.Timeout(settings.request_timeout_seconds, connect=10.0)
        self._transport = transport
        self._client: httpx.AsyncClient | None = None

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create the shared HTTP client."""
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(
                timeout=self.timeout,
                limits=DEFAULT_LIMITS,
                transport=self._transport,
            )
        return self._client

    async def close(self) -> None:
        """Close the HTTP client."""
        if self._client is not None and not self._client.is_closed:
            await self._client.aclose()
            self._client = None

    # ========== OAuth ==========

    def build_authorize_url(self) -> str:
        """Build the authorization URL, forcing the consent dialog."""
        params = {
            "client_id": self.client_id,
            "response_type": "code",
            "redirect_uri": self.redirect_uri,
            "scope": " ".join(self.SCOPES),
            "show_dialog": "true",
        }
        return f"{self.AUTH_URL}?{urlencode(params)}"

    async def _token_request(self, data: dict[str, str]) -> dict[str, Any]:
        """POST to the accounts token endpoint.

        Raises SpotifyAPIError whose message is the OAuth error code when
        Spotify supplies one.
        """
        client = await self._get_client()
        try:
            response = await client.post(
                self.TOKEN_URL,
                data={**data, "client_id": self.client_id, "client_secret": self.client_secret},
                headers={"Content-Type": "application/x-www-form-urlencoded"},
            )
        except httpx.HTTPError as e:
            raise SpotifyAPIError(f"Token request failed: {e}") from e

        if response.status_code != 200:
            detail = _error_detail(response)
            logger.error("Token request (%s) failed: %s %s", data.get("grant_type"), response.status_code, detail)
            raise SpotifyAPIError(detail, status_code=response.status_code)

        return _json_object(response)

    async def exchange_code(self, code: str) -> TokenGrant:
        """Exchange an authorization code for access and refresh tokens."""
        logger.debug("Exchanging authorization code (redirect_uri=%s)", self.redirect_uri)
        data = await self._token_request(
            {
                "grant_type": "authorization_code",
                "code": code,
                "redirect_uri": self.redirect_uri,
            }
        )
        try:
            return TokenGrant.model_validate(data)
        except ValueError as e:
            raise SpotifyAPIError(f"Malformed token response: {e}", status_code=200) from e

    async def refresh_access_token(self, refresh_token: str) -> TokenGrant:
        """Exchange a refresh token for a new access token.

        The refresh token itself is not rotated.
        """
        try:
            data = await self._token_request({"grant_type": "refresh_token", "refresh_token": refresh_token})
            grant = TokenGrant.model_validate(data)
        except SpotifyAPIError as e:
            raise TokenRefreshError(str(e), status_code=e.status_code) from e
        except ValueError as e:
            raise TokenRefreshError(f"Malformed token response: {e}") from e
        logger.debug("Access token refreshed (expires_in=%d)", grant.expires_in)
        return grant

    # ========== Web API ==========

    async def _api_request(
        self,
        method: str,
        endpoint: str,
        access_token: str,
        params: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        """Make an authenticated API request, classifying failures."""
        client = await self._get_client()
        try:
            response = await client.request(
                method,
                f"{self.API_BASE}{endpoint}",
                headers={"Authorization": f"Bearer {access_token}"},
                params=params,
            )
        except httpx.HTTPError as e:
            logger.warning("Spotify %s %s failed: %s", method, endpoint, e)
            raise SpotifyAPIError(f"Spotify request failed: {e}") from e

        if response.status_code == 401:
            raise SpotifyUnauthorizedError(_error_detail(response))

        if response.status_code == 403:
            raise SpotifyAccessDeniedError(_error_detail(response))

        if response.status_code == 429:
            retry_after = parse_retry_after(response.headers.get("Retry-After"))
            logger.warning("Spotify rate limit hit on %s, retry after %ds", endpoint, retry_after)
            raise SpotifyRateLimitError(retry_after)

        if response.status_code >= 400:
            detail = _error_detail(response)
            logger.warning("Spotify %s %s returned %d: %s", method, endpoint, response.status_code, detail)
            raise SpotifyAPIError(detail, status_code=response.status_code)

        if response.status_code == 204 or not response.content:
            return {}
        return _json_object(response)

    async def get_current_user_id(self, access_token: str) -> str:
        """Get the Spotify account id for an access token."""
        data = await self._api_request("GET", "/me", access_token)
        user_id = data.get("id")
        if not user_id:
            raise SpotifyAPIError("Spotify profile response has no id")
        return str(user_id)

    async def get_recently_played(self, access_token: str, limit: int = 50) -> list[dict[str, Any]]:
        """Get the user's recently played tracks (raw play records)."""
        data = await self._api_request(
            "GET",
            "/me/player/recently-played",
            access_token,
            params={"limit": min(limit, 50)},
        )
        items = data.get("items") or []
        if not isinstance(items, list):
            raise SpotifyAPIError("Malformed recently played response: items is not a list")
        logger.debug("Fetched %d recently played items", len(items))
        return items

    async def get_top_artists(
        self,
        access_token: str,
        time_range: str = "medium_term",
        limit: int = 20,
    ) -> dict[str, Any]:
        """Get the user's top artists (raw payload)."""
        return await self._api_request(
            "GET",
            "/me/top/artists",
            access_token,
            params={"time_range": time_range, "limit": limit},
        )
