"""Periodic purge of authorization requests nobody will poll again."""

from __future__ import annotations

import asyncio
import logging

import anyio

from backchannel.core.stores import AuthorizationRequestStore

logger = logging.getLogger(__name__)


class SweepWorker:
    """Deletes requests whose TTL ran out more than ``grace_seconds`` ago.

    Expiry itself is applied lazily on read; the grace period leaves a late
    poller time to observe ``expired`` before the entry disappears.
    """

    def __init__(self, store: AuthorizationRequestStore, grace_seconds: float = 60.0) -> None:
        self.store = store
        self.grace_seconds = grace_seconds
        self._running = False

    async def run_forever(self, interval_seconds: float = 60.0) -> None:
        self._running = True
        while self._running:
            try:
                deleted = await anyio.to_thread.run_sync(self.sweep)
                if deleted > 0:
                    logger.info("Purged %d expired authorization requests", deleted)
            except Exception:
                logger.exception("Authorization sweep failed")
            await asyncio.sleep(interval_seconds)

    def sweep(self) -> int:
        return self.store.purge_expired(self.grace_seconds)

    def stop(self) -> None:
        self._running = False
