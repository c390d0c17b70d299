"""Periodic sweep of expired tokens, bound to the runtime's lifecycle.

The sweep is best-effort: ``TokenValidator`` performs its own expiry check,
so a validation racing the sweep by a few milliseconds is still safe.
"""

from __future__ import annotations

import asyncio
import logging

from bonuscard.constants import CLEANUP_INTERVAL_SECS
from bonuscard.token_store import TokenStore

logger = logging.getLogger(__name__)


class TokenSweeper:
    """Background task that removes expired ``TokenStore`` entries.

    - ``cleanup_expired()`` runs one idempotent sweep synchronously.
    - ``start()`` launches the periodic loop; ``stop()`` cancels it.
    """

    def __init__(
        self,
        store: TokenStore,
        interval_secs: float = CLEANUP_INTERVAL_SECS,
    ) -> None:
        self._store = store
        self._interval = interval_secs
        self._task: asyncio.Task[None] | None = None
        self._total_removed = 0
        self._sweeps = 0

    def cleanup_expired(self) -> int:
        """Remove every expired token. Returns the number removed."""
        removed = self._store.sweep_expired()
        self._sweeps += 1
        self._total_removed += removed
        if removed:
            logger.info("Token sweep removed %d expired token(s).", removed)
        return removed

    async def start(self) -> None:
        """Start the periodic sweep task (no-op if already running)."""
        if self._task is not None:
            return
        self._task = asyncio.create_task(self._sweep_loop())

    async def _sweep_loop(self) -> None:
        logger.info("Token sweeper started (interval=%ss).", self._interval)
        cycles = 0
        try:
            while True:
                await asyncio.sleep(self._interval)
                self.cleanup_expired()
                cycles += 1
                if cycles % 12 == 0:
                    logger.info(
                        "Token sweeper heartbeat: cycle %d, live tokens %d, total removed %d.",
                        cycles, self._store.size, self._total_removed,
                    )
        except asyncio.CancelledError:
            logger.info("Token sweeper stopped after %d cycle(s).", cycles)
            raise

    async def stop(self) -> None:
        """Cancel the sweep task and wait for it to finish."""
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def health(self) -> dict[str, object]:
        return {
            "sweeper_running": self.running,
            "sweep_interval_secs": self._interval,
            "sweeps": self._sweeps,
            "total_removed": self._total_removed,
            "live_tokens": self._store.size,
        }
