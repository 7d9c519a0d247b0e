"""Spotify listening-history sync service for Herd."""

__version__ = "0.1.0"
