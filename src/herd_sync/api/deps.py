"""Shared helpers for API routers."""

from fastapi import Request
from fastapi.responses import JSONResponse

from ..sync import SyncEngine


def get_engine(request: Request) -> SyncEngine:
    """Get the sync engine from app state."""
    engine = getattr(request.app.state, "engine", None)
    if engine is None:
        raise RuntimeError("SyncEngine not initialized in app state")
    return engine


def error_response(status_code: int, error: str, **extra: object) -> JSONResponse:
    """JSON error body in the {"error": ..., ...} shape clients expect."""
    return JSONResponse(status_code=status_code, content={"error": error, **extra})
