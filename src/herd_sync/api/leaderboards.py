"""Listening stats and artist leaderboards computed from synced listening data."""

import calendar
from datetime import UTC, datetime, timedelta
from typing import Any

from fastapi import APIRouter, Query, Request
from fastapi.responses import JSONResponse

from ..config import Config
from ..models import TimeRange
from .deps import error_response, get_engine

router = APIRouter(prefix="/api", tags=["leaderboards"])


def _one_month_before(now: datetime) -> datetime:
    """Same day-of-month one calendar month earlier, clamped to that month's length."""
    year, month = (now.year, now.month - 1) if now.month > 1 else (now.year - 1, 12)
    day = min(now.day, calendar.monthrange(year, month)[1])
    return now.replace(year=year, month=month, day=day)


def resolve_time_range(
    value: str | None,
    config: Config,
    now: datetime | None = None,
) -> tuple[datetime | None, datetime | None]:
    """Translate a timeRange value into a (since, until) pair.

    Accepts the built-in ranges or the name of a configured competition
    window. Raises ValueError for anything else.
    """
    now = now or datetime.now(UTC)
    if not value or value == TimeRange.ALL_TIME.value:
        return None, None
    if value == TimeRange.PAST_WEEK.value:
        return now - timedelta(days=7), None
    if value == TimeRange.THIS_MONTH.value:
        return _one_month_before(now), None

    window = config.get_competition(value)
    if window is None:
        raise ValueError(f"Unknown time range: {value}")
    return window.start, window.end


@router.get("/users/{user_id}/stats", response_model=None)
async def user_stats(
    request: Request,
    user_id: str,
    time_range: str | None = Query(default=None, alias="timeRange"),
) -> dict[str, Any] | JSONResponse:
    """Total songs and minutes a user listened to."""
    engine = get_engine(request)
    try:
        since, until = resolve_time_range(time_range, engine.config)
    except ValueError as e:
        return error_response(400, str(e))

    db = await engine.get_database()
    stats = await db.get_user_stats(user_id, since=since, until=until)
    return {"totalSongs": stats.total_songs, "totalMinutes": stats.total_minutes}


@router.get("/users/{user_id}/top-artists", response_model=None)
async def user_top_artists(
    request: Request,
    user_id: str,
    time_range: str | None = Query(default=None, alias="timeRange"),
    limit: int = Query(default=10, ge=1, le=100),
) -> list[dict[str, Any]] | JSONResponse:
    """A user's most listened artists, by minutes."""
    engine = get_engine(request)
    try:
        since, until = resolve_time_range(time_range, engine.config)
    except ValueError as e:
        return error_response(400, str(e))

    db = await engine.get_database()
    artists = await db.get_user_top_artists(user_id, since=since, until=until, limit=limit)
    return [
        {
            "artistId": a.artist_id,
            "artistName": a.artist_name,
            "totalMinutes": a.total_minutes,
            "totalSongs": a.total_songs,
        }
        for a in artists
    ]


@router.get("/leaderboards/artists/{artist_id}", response_model=None)
async def artist_leaderboard(
    request: Request,
    artist_id: str,
    time_range: str | None = Query(default=None, alias="timeRange"),
    limit: int = Query(default=10, ge=1, le=100),
) -> list[dict[str, Any]] | JSONResponse:
    """Top listeners of an artist, ranked by minutes."""
    engine = get_engine(request)
    try:
        since, until = resolve_time_range(time_range, engine.config)
    except ValueError as e:
        return error_response(400, str(e))

    db = await engine.get_database()
    entries = await db.get_artist_leaderboard(artist_id, since=since, until=until, limit=limit)
    return [
        {
            "rank": e.rank,
            "userId": e.user_id,
            "username": e.username,
            "avatar": e.avatar,
            "totalMinutes": e.total_minutes,
            "totalSongs": e.total_songs,
        }
        for e in entries
    ]
