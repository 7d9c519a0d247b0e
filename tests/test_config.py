"""Tests for configuration loading."""

import tempfile
from pathlib import Path

import yaml

from herd_sync.config import Config, ServerSettings, SpotifyConfig, SyncConfig


def test_sync_config_defaults():
    """Test SyncConfig default values."""
    sync = SyncConfig()
    assert sync.enabled is True
    assert sync.interval_minutes == 60
    assert sync.user_delay_seconds == 3
    assert sync.run_on_startup is False


def test_spotify_config_defaults():
    """Test SpotifyConfig default values."""
    spotify = SpotifyConfig()
    assert spotify.recently_played_limit == 50
    assert spotify.request_timeout_seconds == 15
    assert spotify.redirect_uri is None


def test_redirect_uri_defaults_to_frontend_callback():
    """Test redirect URI is derived from the frontend URL when not configured."""
    config = Config(server=ServerSettings(frontend_url="https://herd.example.com/"))
    assert config.frontend_url == "https://herd.example.com"
    assert config.spotify_redirect_uri == "https://herd.example.com/auth/spotify/callback"


def test_redirect_uri_explicit():
    """Test an explicit redirect URI wins."""
    config = Config(spotify=SpotifyConfig(redirect_uri="https://api.example.com/api/auth/spotify/callback"))
    assert config.spotify_redirect_uri == "https://api.example.com/api/auth/spotify/callback"


def test_allowed_origins_dedup():
    """Test CORS origins include the frontend first without duplicates."""
    config = Config(
        server=ServerSettings(
            frontend_url="http://localhost:3000/",
            cors_origins=["http://localhost:3000", "http://localhost:3001"],
        )
    )
    assert config.allowed_origins == ["http://localhost:3000", "http://localhost:3001"]


def test_env_overrides():
    """Test environment variables override file values."""
    config = Config.from_dict(
        {"server": {"port": 8080}, "spotify": {"client_id": "from-file"}},
        environ={
            "SPOTIFY_CLIENT_ID": "from-env",
            "SPOTIFY_CLIENT_SECRET": "secret",
            "FRONTEND_URL": "https://herd.example.com",
            "PORT": "9000",
            "DATABASE_PATH": "/tmp/herd-test.db",
        },
    )
    assert config.spotify.client_id == "from-env"
    assert config.spotify.client_secret == "secret"
    assert config.server.frontend_url == "https://herd.example.com"
    assert config.server.port == 9000
    assert config.database.path == "/tmp/herd-test.db"


def test_env_overrides_with_empty_section():
    """Test overrides apply when the YAML section is present but empty."""
    config = Config.from_dict({"server": None}, environ={"PORT": "4000"})
    assert config.server.port == 4000


def test_config_from_yaml():
    """Test loading config from YAML file."""
    config_data = {
        "spotify": {
            "client_id": "abc",
            "client_secret": "def",
        },
        "sync": {
            "interval_minutes": 30,
            "user_delay_seconds": 1.5,
        },
        "database": {
            "path": "/tmp/test.db",
        },
        "leaderboard": {
            "competitions": [
                {
                    "name": "superbowl-competition",
                    "start": "2026-02-05T18:00:00Z",
                    "end": "2026-02-08T18:00:00Z",
                }
            ]
        },
    }

    with tempfile.NamedTemporaryFile(mode="w", suffix=".yaml", delete=False) as f:
        yaml.dump(config_data, f)
        config_path = Path(f.name)

    try:
        config = Config.from_yaml(config_path, environ={})
        assert config.spotify.client_id == "abc"
        assert config.sync.interval_minutes == 30
        assert config.sync.user_delay_seconds == 1.5
        window = config.get_competition("superbowl-competition")
        assert window is not None
        assert window.start.year == 2026
        assert config.get_competition("unknown") is None
    finally:
        config_path.unlink()
