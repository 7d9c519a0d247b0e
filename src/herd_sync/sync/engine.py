"""Sync engine: per-user Spotify history sync and the scheduled batch over all users."""

import asyncio
import contextlib
import logging
import time
from datetime import UTC, datetime, timedelta
from typing import Any

import aiosqlite

from ..config import Config, get_config
from ..database import Database, get_db
from ..exceptions import (
    SpotifyAccessDeniedError,
    SpotifyAPIError,
    SpotifyRateLimitError,
    SpotifyUnauthorizedError,
    StoreError,
    SyncInProgressError,
    TokenRefreshError,
)
from ..models import BatchSyncStatus, SyncErrorKind, SyncOutcome, SyncTrigger, UserSyncResult
from ..spotify import SpotifyClient
from .reconciler import EventReconciler

logger = logging.getLogger(__name__)


class SyncEngine:
    """Engine for importing Spotify listening history for all linked users.

    Architecture:
    1. Worker loop (every interval) or manual trigger → run_batch()
    2. run_batch() → sync_user() for each linked user, sequentially with spacing
    3. sync_user() → Spotify (fetch, refresh-and-retry once) → EventReconciler → listening_data
    """

    def __init__(
        self,
        config: Config | None = None,
        db: Database | None = None,
        client: SpotifyClient | None = None,
    ):
        self.config = config or get_config()
        self._db = db
        self.client = client or SpotifyClient(self.config.spotify, redirect_uri=self.config.spotify_redirect_uri)
        self._status = BatchSyncStatus()
        self._batch_lock = asyncio.Lock()
        self._batch_task: asyncio.Task[BatchSyncStatus | None] | None = None
        self._running = False
        self._worker_task: asyncio.Task[None] | None = None
        self.next_run_at: datetime | None = None

    async def get_database(self) -> Database:
        """Database used by this engine (injected, or the global one)."""
        if self._db is not None:
            return self._db
        return await get_db()

    @property
    def status(self) -> BatchSyncStatus:
        """Status of the most recent (or currently running) batch."""
        return self._status

    @property
    def is_batch_running(self) -> bool:
        if self._batch_lock.locked():
            return True
        return self._batch_task is not None and not self._batch_task.done()

    @property
    def interval_seconds(self) -> float:
        return self.config.sync.interval_minutes * 60

    # ========== Per-user sync ==========

    async def _store_refreshed_token(self, user_id: str, access_token: str) -> None:
        """Persist a refreshed access token before using it.

        A failed write is logged and the run continues with the new token;
        the next run will simply refresh again.
        """
        db = await self.get_database()
        try:
            await db.update_access_token(user_id, access_token)
        except aiosqlite.Error as e:
            logger.warning("[user %s] Failed to store refreshed access token: %s", user_id, e)

    async def sync_user(self, user_id: str, access_token: str, refresh_token: str) -> SyncOutcome:
        """Import one user's recently played tracks.

        On an expired access token the refresh token is exchanged once, the
        new access token is stored, and the fetch is retried exactly once.
        Rate limits are reported, never waited out inline.
        """
        limit = self.config.spotify.recently_played_limit
        token_refreshed = False

        try:
            try:
                items = await self.client.get_recently_played(access_token, limit=limit)
            except SpotifyUnauthorizedError:
                logger.info("[user %s] Access token expired, refreshing", user_id)
                try:
                    grant = await self.client.refresh_access_token(refresh_token)
                except TokenRefreshError as e:
                    logger.error("[user %s] Failed to refresh token: %s", user_id, e)
                    return SyncOutcome.failure(SyncErrorKind.REFRESH_FAILED, "Token refresh failed")

                token_refreshed = True
                await self._store_refreshed_token(user_id, grant.access_token)
                items = await self.client.get_recently_played(grant.access_token, limit=limit)

        except SpotifyUnauthorizedError as e:
            # Only reachable from the retry: never refresh twice in one run
            logger.error("[user %s] Access token rejected after refresh: %s", user_id, e)
            return SyncOutcome.failure(
                SyncErrorKind.UNAUTHORIZED,
                f"Spotify rejected refreshed token: {e}",
                token_refreshed=token_refreshed,
            )
        except SpotifyRateLimitError as e:
            logger.warning("[user %s] Rate limit hit. Retry after %d seconds", user_id, e.retry_after)
            return SyncOutcome.failure(
                SyncErrorKind.RATE_LIMITED,
                f"Rate limit exceeded, retry in {e.retry_after}s",
                retry_after=e.retry_after,
                token_refreshed=token_refreshed,
            )
        except SpotifyAccessDeniedError as e:
            logger.error("[user %s] Spotify access denied: %s", user_id, e)
            return SyncOutcome.failure(
                SyncErrorKind.ACCESS_DENIED,
                f"Spotify access denied: {e}",
                token_refreshed=token_refreshed,
            )
        except SpotifyAPIError as e:
            logger.error("[user %s] Spotify error: %s", user_id, e)
            return SyncOutcome.failure(SyncErrorKind.UPSTREAM_OTHER, str(e), token_refreshed=token_refreshed)

        if not items:
            logger.info("[user %s] No recent tracks found", user_id)
        else:
            logger.debug("[user %s] Found %d recent tracks from Spotify", user_id, len(items))

        reconciler = EventReconciler(await self.get_database())
        try:
            synced = await reconciler.reconcile(user_id, items)
        except StoreError as e:
            return SyncOutcome.failure(SyncErrorKind.STORE_ERROR, str(e), token_refreshed=token_refreshed)

        return SyncOutcome(success=True, synced=synced, token_refreshed=token_refreshed)

    # ========== Batch ==========

    async def run_batch(self, trigger: SyncTrigger = SyncTrigger.MANUAL) -> BatchSyncStatus:
        """Sync every linked user and record the aggregate status.

        Raises SyncInProgressError if another batch is running.
        """
        if self._batch_lock.locked():
            raise SyncInProgressError("A sync batch is already running")

        async with self._batch_lock:
            status = BatchSyncStatus.started(trigger)
            self._status = status
            started = time.monotonic()
            logger.info("Starting %s sync for all users", trigger.value)
            try:
                await self._sync_all(status)
            finally:
                status.duration_seconds = round(time.monotonic() - started, 1)
                status.in_progress = False

            logger.info(
                "Sync completed in %.1fs. Success: %d, Failed: %d, Total tracks synced: %d",
                status.duration_seconds,
                status.success_count,
                status.fail_count,
                status.tracks_synced,
            )
            return status

    async def _sync_all(self, status: BatchSyncStatus) -> None:
        db = await self.get_database()
        try:
            users = await db.get_linked_users()
        except aiosqlite.Error as e:
            logger.error("Error fetching users: %s", e)
            status.errors.append(f"Failed to fetch users: {e}")
            return

        if not users:
            logger.info("No users with Spotify connected")
            return

        logger.info("Found %d users with Spotify connected", len(users))
        delay = self.config.sync.user_delay_seconds

        for index, user in enumerate(users):
            if index > 0 and delay > 0:
                await asyncio.sleep(delay)

            try:
                outcome = await self.sync_user(user.user_id, user.access_token or "", user.refresh_token or "")
            except Exception as e:
                logger.exception("[user %s] Exception during sync", user.user_id)
                outcome = SyncOutcome(success=False, error=f"Unexpected error: {e}")

            status.users_processed += 1
            status.results.append(UserSyncResult(user_id=user.user_id, outcome=outcome))
            if outcome.success:
                status.success_count += 1
                status.tracks_synced += outcome.synced
                if outcome.synced > 0:
                    logger.info("[user %s] Synced %d tracks", user.user_id, outcome.synced)
            else:
                status.fail_count += 1
                status.errors.append(f"User {user.user_id}: {outcome.error or 'Sync failed'}")
                logger.warning("[user %s] %s", user.user_id, outcome.error or "Sync failed")

        status.success = True

    async def _run_guarded(self, trigger: SyncTrigger) -> BatchSyncStatus | None:
        """Run a batch, logging instead of raising (for background tasks)."""
        try:
            return await self.run_batch(trigger)
        except SyncInProgressError:
            logger.warning("Skipping %s sync: previous batch still running", trigger.value)
        except Exception as e:
            logger.exception("Error in %s sync: %s", trigger.value, e)
        return None

    def trigger_batch(self, trigger: SyncTrigger = SyncTrigger.MANUAL) -> asyncio.Task[BatchSyncStatus | None]:
        """Start a batch in the background and return immediately."""
        if self.is_batch_running:
            raise SyncInProgressError("A sync batch is already running")
        self._batch_task = asyncio.create_task(self._run_guarded(trigger))
        logger.info("Manual sync-all triggered")
        return self._batch_task

    # ========== Scheduler ==========

    async def start_worker(self, interval_seconds: float | None = None) -> None:
        """Start the background worker that runs a batch every interval."""
        if self._running:
            return

        self._running = True
        interval = interval_seconds if interval_seconds is not None else self.interval_seconds
        self._worker_task = asyncio.create_task(self._worker_loop(interval))
        logger.info("Scheduled sync configured: every %.0f minutes", interval / 60)

    async def stop_worker(self) -> None:
        """Stop the background worker and any running batch."""
        self._running = False
        for task in (self._worker_task, self._batch_task):
            if task and not task.done():
                task.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await task
        self._worker_task = None
        self._batch_task = None
        self.next_run_at = None
        logger.info("Sync worker stopped")

    async def _worker_loop(self, interval_seconds: float) -> None:
        """Run a batch at a fixed rate; missed ticks are skipped, not queued."""
        loop = asyncio.get_running_loop()

        if self.config.sync.run_on_startup:
            await self._run_guarded(SyncTrigger.STARTUP)

        next_tick = loop.time() + interval_seconds
        while self._running:
            wait = max(next_tick - loop.time(), 0.0)
            self.next_run_at = datetime.now(UTC) + timedelta(seconds=wait)
            await asyncio.sleep(wait)

            logger.info("Scheduled sync triggered")
            await self._run_guarded(SyncTrigger.SCHEDULED)

            next_tick += interval_seconds
            while next_tick <= loop.time():
                next_tick += interval_seconds

    def get_worker_status(self) -> dict[str, Any]:
        """Get scheduler state."""
        return {
            "worker_running": self._running,
            "batch_running": self.is_batch_running,
            "next_run_at": self.next_run_at,
        }

    async def close(self) -> None:
        """Stop the worker and release the HTTP client."""
        await self.stop_worker()
        await self.client.close()
