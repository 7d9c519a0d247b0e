"""Main entry point for herd-sync."""

import logging
import os
import sys
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager
from pathlib import Path

import uvicorn
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from .api import auth_router, health_router, leaderboards_router, spotify_router
from .config import Config, get_config, load_config
from .database import close_db, get_db
from .sync import SyncEngine


def setup_logging(level: str = "INFO") -> None:
    """Configure logging."""
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        handlers=[logging.StreamHandler(sys.stdout)],
    )
    # Silence noisy third-party loggers
    logging.getLogger("aiosqlite").setLevel(logging.WARNING)
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)


def init_config() -> Config:
    """Initialize configuration.

    Loads config from CONFIG_PATH env var, /config/config.yaml, or ./config.yaml.
    Without a file, settings come from defaults and environment variables only.
    Sets up logging based on config.
    """
    config_path: str | None = os.environ.get("CONFIG_PATH", "/config/config.yaml")

    # Allow local development with config.yaml in current directory
    if not Path(config_path).exists():
        local_config = Path("config.yaml")
        config_path = str(local_config) if local_config.exists() else None

    config = load_config(config_path)
    setup_logging(config.logging.level)

    logger = logging.getLogger(__name__)
    logger.info("Loaded configuration from %s", config_path or "environment")
    logger.info("Frontend URL: %s", config.frontend_url)
    logger.info("Spotify client id: %s", "set" if config.spotify.client_id else "MISSING")
    logger.info("Database: %s", config.database.path)
    return config


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application lifespan handler."""
    logger = logging.getLogger(__name__)

    # Startup
    logger.info("Starting herd-sync...")

    db = await get_db()
    logger.info("Database initialized")

    config = get_config()
    engine = SyncEngine(config, db=db)

    if config.sync.enabled:
        await engine.start_worker()
    else:
        logger.info("Scheduled sync disabled")

    # Store engine in app state for access by routers
    app.state.engine = engine

    yield

    # Shutdown
    logger.info("Shutting down herd-sync...")
    await engine.close()
    await close_db()


def create_app() -> FastAPI:
    """Create and configure the FastAPI application."""
    # Initialize config before creating app
    config = init_config()

    app = FastAPI(
        title="herd-sync",
        description="Spotify listening-history sync and leaderboards for Herd",
        version="0.1.0",
        lifespan=lifespan,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=config.allowed_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(health_router)  # /api/health, /healthz, /readyz
    app.include_router(auth_router)  # /api/auth/spotify/...
    app.include_router(spotify_router)  # /api/spotify/...
    app.include_router(leaderboards_router)  # /api/users/..., /api/leaderboards/...

    return app


def main() -> None:
    """Main entry point."""
    app = create_app()
    config = get_config()

    uvicorn.run(
        app,
        host=config.server.host,
        port=config.server.port,
        log_level=config.logging.level.lower(),
    )


if __name__ == "__main__":
    main()
