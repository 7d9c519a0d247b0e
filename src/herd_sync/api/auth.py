"""Spotify account linking (OAuth authorization code flow)."""

import logging
from typing import Any
from urllib.parse import urlencode

import aiosqlite
from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse, RedirectResponse
from pydantic import BaseModel, Field

from ..exceptions import SpotifyError
from ..models import UNKNOWN_SPOTIFY_USER_ID
from .deps import error_response, get_engine

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/auth/spotify", tags=["auth"])


class SaveTokensRequest(BaseModel):
    """Tokens handed back by the frontend after a successful link."""

    user_id: str | None = Field(alias="userId", default=None)
    access_token: str | None = Field(alias="accessToken", default=None)
    refresh_token: str | None = Field(alias="refreshToken", default=None)
    spotify_user_id: str | None = Field(alias="spotifyUserId", default=None)

    model_config = {"populate_by_name": True}


def _connect_error_redirect(frontend_url: str, error: str) -> RedirectResponse:
    return RedirectResponse(f"{frontend_url}/spotify-connect?{urlencode({'error': error})}", status_code=302)


@router.get("")
async def authorize(request: Request) -> RedirectResponse:
    """Redirect to Spotify's consent screen."""
    engine = get_engine(request)
    return RedirectResponse(engine.client.build_authorize_url(), status_code=302)


@router.get("/callback")
async def callback(request: Request, code: str | None = None, error: str | None = None) -> RedirectResponse:
    """
    Exchange the authorization code for tokens and hand them to the frontend.

    Always answers with a redirect: to the success page carrying the tokens,
    or to the connect page carrying an error code.
    """
    engine = get_engine(request)
    frontend_url = engine.config.frontend_url

    if error:
        logger.warning("Spotify authorization denied: %s", error)
        return _connect_error_redirect(frontend_url, error)

    if not code:
        return _connect_error_redirect(frontend_url, "no_code")

    client = engine.client
    try:
        logger.info("Exchanging authorization code for tokens (redirect_uri=%s)", client.redirect_uri)
        grant = await client.exchange_code(code)
    except SpotifyError as e:
        logger.error("Spotify OAuth token exchange failed: %s", e)
        return _connect_error_redirect(frontend_url, str(e) or "token_exchange_failed")

    # Users not yet allow-listed on a development-mode app cannot read /me;
    # linking still succeeds and the id can be filled in later.
    spotify_user_id = UNKNOWN_SPOTIFY_USER_ID
    try:
        spotify_user_id = await client.get_current_user_id(grant.access_token)
        logger.info("Spotify user info retrieved: %s", spotify_user_id)
    except SpotifyError as e:
        logger.warning("Failed to get Spotify user info, proceeding without user id: %s", e)

    params = {
        "access_token": grant.access_token,
        "refresh_token": grant.refresh_token or "",
        "spotify_user_id": spotify_user_id,
    }
    return RedirectResponse(f"{frontend_url}/auth/spotify/success?{urlencode(params)}", status_code=302)


@router.post("/save-tokens", response_model=None)
async def save_tokens(request: Request, body: SaveTokensRequest) -> dict[str, Any] | JSONResponse:
    """Persist a user's Spotify credentials after linking."""
    if not body.user_id or not body.access_token or not body.refresh_token:
        logger.error(
            "Missing required fields: userId=%s, accessToken=%s, refreshToken=%s",
            bool(body.user_id),
            bool(body.access_token),
            bool(body.refresh_token),
        )
        return error_response(400, "Missing required fields")

    engine = get_engine(request)
    db = await engine.get_database()
    try:
        user = await db.save_credentials(
            user_id=body.user_id,
            access_token=body.access_token,
            refresh_token=body.refresh_token,
            spotify_user_id=body.spotify_user_id,
        )
    except aiosqlite.Error as e:
        logger.error("Error saving tokens for user %s: %s", body.user_id, e)
        return error_response(500, str(e))

    return {
        "success": True,
        "data": {
            "id": user.user_id,
            "spotify_access_token": user.access_token,
            "spotify_refresh_token": user.refresh_token,
            "spotify_user_id": user.spotify_user_id,
        },
    }
