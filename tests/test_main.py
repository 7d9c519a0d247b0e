"""Tests for application startup."""

import pytest
from fastapi.testclient import TestClient

from herd_sync.main import create_app


@pytest.fixture
def app_env(tmp_path, monkeypatch):
    """Run the app from an empty directory with env-only configuration."""
    monkeypatch.chdir(tmp_path)
    monkeypatch.setenv("CONFIG_PATH", str(tmp_path / "missing.yaml"))
    monkeypatch.setenv("DATABASE_PATH", str(tmp_path / "herd.db"))
    monkeypatch.setenv("FRONTEND_URL", "https://herd.example.com")
    monkeypatch.setenv("SPOTIFY_CLIENT_ID", "cid")
    monkeypatch.setenv("SPOTIFY_CLIENT_SECRET", "secret")
    return tmp_path


def test_create_app_routes(app_env):
    """Test every router is mounted."""
    app = create_app()
    paths = {route.path for route in app.routes}

    assert "/api/health" in paths
    assert "/readyz" in paths
    assert "/api/auth/spotify/callback" in paths
    assert "/api/spotify/sync-listening-data" in paths
    assert "/api/spotify/sync-all-users" in paths
    assert "/api/leaderboards/artists/{artist_id}" in paths


def test_lifespan_starts_engine(app_env):
    """Test startup connects the database and starts the scheduled worker."""
    app = create_app()

    with TestClient(app) as client:
        response = client.get("/readyz")
        assert response.status_code == 200

        engine = app.state.engine
        assert engine.config.frontend_url == "https://herd.example.com"
        assert engine.client.redirect_uri == "https://herd.example.com/auth/spotify/callback"
        assert engine.get_worker_status()["worker_running"] is True

        response = client.get("/api/auth/spotify", follow_redirects=False)
        assert response.status_code == 302
        assert response.headers["location"].startswith("https://accounts.spotify.com/authorize?")

    assert (app_env / "herd.db").exists()


def test_cors_allows_frontend(app_env):
    """Test the frontend origin passes CORS preflight."""
    app = create_app()
    client = TestClient(app)

    response = client.options(
        "/api/health",
        headers={"Origin": "https://herd.example.com", "Access-Control-Request-Method": "GET"},
    )

    assert response.status_code == 200
    assert response.headers["access-control-allow-origin"] == "https://herd.example.com"
