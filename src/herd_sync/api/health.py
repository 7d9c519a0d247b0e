"""Health check endpoints."""

from datetime import UTC, datetime
from typing import Any

from fastapi import APIRouter, Request, Response

from ..sync import SyncEngine

router = APIRouter(tags=["health"])


@router.get("/api/health")
async def health() -> dict[str, Any]:
    """Liveness probe for the frontend and uptime monitors."""
    return {"status": "ok", "timestamp": datetime.now(UTC).isoformat()}


@router.get("/healthz")
async def healthz() -> Response:
    """
    Liveness probe for Kubernetes.

    Returns 200 if the service is alive.
    This should be a simple check - if the process is running, it's alive.
    """
    return Response(content="ok", media_type="text/plain")


@router.get("/readyz")
async def readyz(request: Request) -> Response:
    """
    Readiness probe for Kubernetes.

    Returns 200 if the service is ready to accept traffic.
    Checks:
    - Engine is initialized
    - Database is connected
    - Scheduled sync worker is running (when enabled)
    """
    engine: SyncEngine | None = getattr(request.app.state, "engine", None)
    if engine is None:
        return Response(content="engine not initialized", status_code=503, media_type="text/plain")

    try:
        db = await engine.get_database()
    except Exception as e:
        return Response(content=f"error: {e}", status_code=503, media_type="text/plain")

    if not db.connected:
        return Response(content="database not connected", status_code=503, media_type="text/plain")

    if engine.config.sync.enabled and not engine.get_worker_status().get("worker_running"):
        return Response(content="worker not running", status_code=503, media_type="text/plain")

    return Response(content="ok", media_type="text/plain")
