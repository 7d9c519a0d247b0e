"""Spotify proxy, per-user sync and batch sync endpoints."""

import logging
from datetime import UTC, datetime, timedelta
from typing import Any

import aiosqlite
from fastapi import APIRouter, Query, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from ..exceptions import SpotifyError, SyncInProgressError, TokenRefreshError
from ..models import BatchSyncStatus, SyncErrorKind, SyncOutcome, SyncTrigger
from ..sync import SyncEngine
from .deps import error_response, get_engine

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/spotify", tags=["spotify"])


class RefreshTokenRequest(BaseModel):
    refresh_token: str | None = Field(alias="refreshToken", default=None)

    model_config = {"populate_by_name": True}


class SyncListeningDataRequest(BaseModel):
    user_id: str | None = Field(alias="userId", default=None)
    access_token: str | None = Field(alias="accessToken", default=None)

    model_config = {"populate_by_name": True}


class LastSync(BaseModel):
    """Most recent batch run, as reported by the status endpoint."""

    run_time: datetime | None = Field(alias="runTime", default=None)
    time_ago: str | None = Field(alias="timeAgo", default=None)
    trigger: SyncTrigger | None = None
    in_progress: bool = Field(alias="inProgress", default=False)
    success: bool
    users_processed: int = Field(alias="usersProcessed")
    tracks_synced: int = Field(alias="tracksSynced")
    success_count: int = Field(alias="successCount")
    fail_count: int = Field(alias="failCount")
    duration: str | None = None
    errors: list[str]

    model_config = {"populate_by_name": True}


class SyncStatusResponse(BaseModel):
    scheduled_sync_enabled: bool = Field(alias="scheduledSyncEnabled")
    interval: str
    last_sync: LastSync = Field(alias="lastSync")
    next_sync: str = Field(alias="nextSync")
    server_time: datetime = Field(alias="serverTime")

    model_config = {"populate_by_name": True}


TOKEN_EXPIRED_MESSAGE = "Spotify token expired. Please reconnect your Spotify account."
ACCESS_DENIED_MESSAGE = "Spotify access denied. Please check your Spotify app settings."

# Outcome kind -> (HTTP status, machine-readable code, user-facing message)
ERROR_RESPONSES: dict[SyncErrorKind, tuple[int, str, str | None]] = {
    SyncErrorKind.REFRESH_FAILED: (401, "TOKEN_EXPIRED", TOKEN_EXPIRED_MESSAGE),
    SyncErrorKind.UNAUTHORIZED: (401, "TOKEN_EXPIRED", TOKEN_EXPIRED_MESSAGE),
    SyncErrorKind.ACCESS_DENIED: (403, "ACCESS_DENIED", ACCESS_DENIED_MESSAGE),
}


def outcome_error_response(outcome: SyncOutcome) -> JSONResponse:
    """Map a failed sync outcome to an HTTP error response."""
    mapped = ERROR_RESPONSES.get(outcome.error_kind) if outcome.error_kind else None
    status_code, code, message = mapped or (500, "SYNC_FAILED", None)
    extra: dict[str, object] = {"code": code}
    if outcome.retry_after is not None:
        extra["retryAfter"] = outcome.retry_after
    return error_response(status_code, message or outcome.error or "Failed to sync listening data", **extra)


def format_time_ago(then: datetime, now: datetime) -> str:
    """Whole minutes elapsed, e.g. '5 minutes ago'."""
    minutes = int((now - then).total_seconds() // 60)
    return f"{max(minutes, 0)} minutes ago"


def build_sync_status(engine: SyncEngine, now: datetime | None = None) -> SyncStatusResponse:
    """Assemble the status view of the most recent batch."""
    now = now or datetime.now(UTC)
    status: BatchSyncStatus = engine.status
    worker = engine.get_worker_status()

    next_run_at: datetime | None = worker.get("next_run_at")
    if next_run_at is None and status.last_run is not None:
        next_run_at = status.last_run + timedelta(seconds=engine.interval_seconds)

    return SyncStatusResponse(
        scheduled_sync_enabled=bool(worker.get("worker_running")),
        interval=f"{engine.config.sync.interval_minutes:g} minutes",
        last_sync=LastSync(
            run_time=status.last_run,
            time_ago=format_time_ago(status.last_run, now) if status.last_run else None,
            trigger=status.trigger,
            in_progress=status.in_progress,
            success=status.success,
            users_processed=status.users_processed,
            tracks_synced=status.tracks_synced,
            success_count=status.success_count,
            fail_count=status.fail_count,
            duration=f"{status.duration_seconds:.1f}s" if status.duration_seconds is not None else None,
            errors=list(status.errors),
        ),
        next_sync=next_run_at.isoformat() if next_run_at else "Not yet run",
        server_time=now,
    )


@router.post("/refresh-token", response_model=None)
async def refresh_token(request: Request, body: RefreshTokenRequest) -> dict[str, Any] | JSONResponse:
    """Exchange a refresh token for a new access token."""
    if not body.refresh_token:
        return error_response(400, "Refresh token required")

    engine = get_engine(request)
    try:
        grant = await engine.client.refresh_access_token(body.refresh_token)
    except TokenRefreshError as e:
        logger.error("Token refresh error: %s", e)
        return error_response(500, "Failed to refresh token")

    return {"access_token": grant.access_token, "expires_in": grant.expires_in}


@router.post("/sync-listening-data", response_model=None)
async def sync_listening_data(
    request: Request, body: SyncListeningDataRequest
) -> dict[str, Any] | JSONResponse:
    """Sync one user's recently played tracks on demand."""
    if not body.user_id or not body.access_token:
        return error_response(400, "User ID and access token required")

    engine = get_engine(request)
    try:
        db = await engine.get_database()
        user = await db.get_user(body.user_id)
    except aiosqlite.Error as e:
        logger.error("[user %s] Failed to load stored tokens: %s", body.user_id, e)
        return error_response(400, "User Spotify tokens not found")

    if user is None or not user.is_linked:
        return error_response(400, "User Spotify tokens not found")

    try:
        outcome = await engine.sync_user(body.user_id, body.access_token, user.refresh_token)
    except Exception as e:
        logger.exception("[user %s] Sync endpoint error", body.user_id)
        return error_response(500, str(e) or "Failed to sync listening data", code="SYNC_FAILED")

    if not outcome.success:
        return outcome_error_response(outcome)

    message = f"Synced {outcome.synced} listening events" if outcome.synced > 0 else "No new tracks to sync"
    return {
        "success": True,
        "synced": outcome.synced,
        "message": message,
        "tokenRefreshed": outcome.token_refreshed,
    }


@router.get("/top-artists", response_model=None)
async def top_artists(
    request: Request,
    access_token: str | None = Query(default=None, alias="accessToken"),
    time_range: str = Query(default="medium_term", alias="timeRange"),
    limit: int = 20,
) -> dict[str, Any] | JSONResponse:
    """Proxy the user's top artists from Spotify."""
    if not access_token:
        return error_response(400, "Access token required")

    engine = get_engine(request)
    try:
        return await engine.client.get_top_artists(access_token, time_range=time_range, limit=limit)
    except SpotifyError as e:
        logger.error("Top artists error: %s", e)
        return error_response(500, "Failed to fetch top artists")


@router.get("/sync-status", response_model=SyncStatusResponse)
async def sync_status(request: Request) -> SyncStatusResponse:
    """Report the most recent batch run, scheduled or manual."""
    return build_sync_status(get_engine(request))


@router.post("/sync-all-users", response_model=None)
async def sync_all_users(request: Request) -> dict[str, Any] | JSONResponse:
    """Start a batch sync in the background and acknowledge immediately."""
    engine = get_engine(request)
    try:
        engine.trigger_batch(SyncTrigger.MANUAL)
    except SyncInProgressError as e:
        return JSONResponse(status_code=409, content={"success": False, "error": str(e)})
    except Exception as e:
        logger.exception("Failed to start sync job")
        return error_response(500, str(e))

    return {"success": True, "message": "Sync job started"}
