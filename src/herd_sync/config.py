"""Configuration models for herd-sync."""

import os
from datetime import datetime
from pathlib import Path

import yaml
from pydantic import BaseModel, Field


class SpotifyConfig(BaseModel):
    """Spotify application credentials and API behavior."""

    client_id: str = ""
    client_secret: str = ""
    redirect_uri: str | None = None  # Defaults to {frontend_url}/auth/spotify/callback
    request_timeout_seconds: float = 15.0
    recently_played_limit: int = 50  # Spotify caps this at 50


class SyncConfig(BaseModel):
    """Scheduled sync configuration."""

    enabled: bool = True
    interval_minutes: float = 60.0
    user_delay_seconds: float = 3.0  # Spacing between users to respect per-app rate limits
    run_on_startup: bool = False


class DatabaseConfig(BaseModel):
    """Database configuration."""

    path: str = "/data/herd.db"
    journal_mode: str = "WAL"  # WAL, DELETE, TRUNCATE, MEMORY, OFF


class ServerSettings(BaseModel):
    """HTTP server configuration."""

    host: str = "0.0.0.0"
    port: int = 3001
    frontend_url: str = "http://localhost:3000"
    cors_origins: list[str] = Field(default_factory=lambda: ["http://localhost:3000", "http://localhost:3001"])


class LoggingConfig(BaseModel):
    """Logging configuration."""

    level: str = "INFO"


class CompetitionWindow(BaseModel):
    """Named time window usable as a leaderboard time range.

    Example: a listening competition running over a weekend.
    """

    name: str
    start: datetime
    end: datetime


class LeaderboardConfig(BaseModel):
    """Leaderboard configuration."""

    competitions: list[CompetitionWindow] = Field(default_factory=list)


# Environment variable -> (section, field)
ENV_OVERRIDES: dict[str, tuple[str, str]] = {
    "FRONTEND_URL": ("server", "frontend_url"),
    "PORT": ("server", "port"),
    "SPOTIFY_CLIENT_ID": ("spotify", "client_id"),
    "SPOTIFY_CLIENT_SECRET": ("spotify", "client_secret"),
    "SPOTIFY_REDIRECT_URI": ("spotify", "redirect_uri"),
    "DATABASE_PATH": ("database", "path"),
    "LOG_LEVEL": ("logging", "level"),
}


class Config(BaseModel):
    """Root configuration model."""

    spotify: SpotifyConfig = Field(default_factory=SpotifyConfig)
    sync: SyncConfig = Field(default_factory=SyncConfig)
    database: DatabaseConfig = Field(default_factory=DatabaseConfig)
    server: ServerSettings = Field(default_factory=ServerSettings)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)
    leaderboard: LeaderboardConfig = Field(default_factory=LeaderboardConfig)

    @classmethod
    def from_yaml(cls, path: str | Path, environ: dict[str, str] | None = None) -> "Config":
        """Load configuration from a YAML file, applying environment overrides."""
        with open(path) as f:
            data = yaml.safe_load(f)
        return cls.from_dict(data, environ)

    @classmethod
    def from_dict(cls, data: dict | None, environ: dict[str, str] | None = None) -> "Config":
        """Build configuration from a dict, applying environment overrides on top."""
        data = dict(data or {})
        environ = os.environ if environ is None else environ
        for env_name, (section, field) in ENV_OVERRIDES.items():
            value = environ.get(env_name)
            if value:
                data[section] = {**(data.get(section) or {}), field: value}
        return cls.model_validate(data)

    @property
    def frontend_url(self) -> str:
        """Frontend base URL without trailing slash."""
        return self.server.frontend_url.rstrip("/")

    @property
    def spotify_redirect_uri(self) -> str:
        """Redirect URI registered with the Spotify application."""
        return self.spotify.redirect_uri or f"{self.frontend_url}/auth/spotify/callback"

    @property
    def allowed_origins(self) -> list[str]:
        """Origins allowed by CORS (frontend first, duplicates removed)."""
        origins = [self.frontend_url, *self.server.cors_origins]
        return list(dict.fromkeys(o.rstrip("/") for o in origins if o))

    def get_competition(self, name: str) -> CompetitionWindow | None:
        """Get a competition window by name."""
        for window in self.leaderboard.competitions:
            if window.name == name:
                return window
        return None


# Global config instance
_config: Config | None = None


def get_config() -> Config:
    """Get the global configuration instance."""
    if _config is None:
        raise RuntimeError("Configuration not loaded. Call load_config() first.")
    return _config


def load_config(path: str | Path | None = None) -> Config:
    """Load configuration from file (if given) plus environment, and set as global."""
    global _config
    _config = Config.from_yaml(path) if path is not None else Config.from_dict(None)
    return _config
