"""Spotify API module."""

from .client import SpotifyClient

__all__ = ["SpotifyClient"]
