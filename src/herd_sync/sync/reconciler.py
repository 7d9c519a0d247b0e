"""Map raw Spotify play records to listening events and store them idempotently."""

import logging
from typing import Any

import aiosqlite

from ..database import Database
from ..exceptions import StoreError
from ..models import UNKNOWN_ARTIST_ID, UNKNOWN_ARTIST_NAME, ListeningEvent

logger = logging.getLogger(__name__)


def to_listening_event(user_id: str, item: dict[str, Any]) -> ListeningEvent | None:
    """Convert one recently-played item into a ListeningEvent.

    Missing artist data falls back to sentinels. Returns None when the item
    has no track id or played_at, since those are part of the natural key.
    """
    if not isinstance(item, dict):
        return None
    track = item.get("track")
    if not isinstance(track, dict):
        return None
    track_id = track.get("id")
    played_at = item.get("played_at")
    if not track_id or not played_at:
        return None

    artists = track.get("artists") or []
    artist = (artists[0] if artists else None) or {}

    return ListeningEvent(
        user_id=user_id,
        artist_id=artist.get("id") or UNKNOWN_ARTIST_ID,
        artist_name=artist.get("name") or UNKNOWN_ARTIST_NAME,
        track_id=track_id,
        track_name=track.get("name") or "",
        played_at=played_at,
        duration_ms=track.get("duration_ms") or 0,
    )


class EventReconciler:
    """Writes a user's play history without creating duplicates."""

    def __init__(self, db: Database):
        self.db = db

    async def reconcile(self, user_id: str, raw_events: list[dict[str, Any]]) -> int:
        """Persist raw play records for a user.

        Returns the number of rows newly written. Re-submitting events that
        are already stored yields 0. Raises StoreError if the write fails.
        """
        if not raw_events:
            return 0

        # Keyed by natural key so repeats within one submission collapse
        by_key: dict[tuple[str, str, str, str], ListeningEvent] = {}
        for item in raw_events:
            event = to_listening_event(user_id, item)
            if event is None:
                logger.debug("[user %s] Skipping play record without track id or played_at", user_id)
                continue
            by_key.setdefault(event.natural_key, event)
        events = list(by_key.values())

        if not events:
            return 0

        try:
            inserted = await self.db.upsert_listening_events(events)
        except aiosqlite.Error as e:
            logger.error("[user %s] Database error storing %d events: %s", user_id, len(events), e)
            raise StoreError(str(e)) from e

        logger.debug("[user %s] Reconciled %d events, %d new", user_id, len(events), inserted)
        return inserted
