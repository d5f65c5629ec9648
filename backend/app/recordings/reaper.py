"""Background reclamation of abandoned upload sessions.

A sweep expires every session idle for longer than the threshold of its
kind (short upload-stream sessions: 1 hour, long-form recordings: 24 hours).
Expiry is decided under the session lock, so it cannot interleave with a
finalize transition: whichever takes the lock first wins, and a session with
a finalize still running is never reaped.
"""
from __future__ import annotations

import asyncio
import logging
from typing import Dict, List, Optional

from .chunk_store import ChunkStore
from .registry import SessionRegistry, UploadSession
from .schemas import SessionKind, SessionStatus

logger = logging.getLogger(__name__)

_REAPABLE = (SessionStatus.ACTIVE, SessionStatus.FINALIZING, SessionStatus.ERROR)


class SessionReaper:
    """Periodic sweep task, started and stopped with the application."""

    def __init__(
        self,
        registry: SessionRegistry,
        chunk_store: ChunkStore,
        ttl_seconds: Dict[SessionKind, float],
        interval_seconds: float = 300,
    ) -> None:
        self._registry = registry
        self._chunk_store = chunk_store
        self._ttl_seconds = dict(ttl_seconds)
        self._interval = interval_seconds
        self._sweep_task: Optional[asyncio.Task] = None  # type: ignore[type-arg]

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    @property
    def running(self) -> bool:
        return self._sweep_task is not None and not self._sweep_task.done()

    async def start(self) -> None:
        """Start background sweep task."""
        if self.running:
            return
        self._sweep_task = asyncio.create_task(self._sweep_loop())
        logger.info(
            "SessionReaper started (interval=%ss, ttl=%s)",
            self._interval,
            {kind.value: ttl for kind, ttl in self._ttl_seconds.items()},
        )

    async def stop(self) -> None:
        """Cancel the sweep task."""
        if self._sweep_task:
            self._sweep_task.cancel()
            try:
                await self._sweep_task
            except asyncio.CancelledError:
                pass
            self._sweep_task = None
        logger.info("SessionReaper stopped")

    # ------------------------------------------------------------------
    # Sweep
    # ------------------------------------------------------------------

    def ttl_for(self, session: UploadSession) -> float:
        return self._ttl_seconds[session.kind]

    async def _sweep_loop(self) -> None:
        while True:
            await asyncio.sleep(self._interval)
            try:
                await self.sweep_once()
            except Exception as exc:  # pylint: disable=broad-except
                logger.error("SessionReaper sweep failed: %s", exc)

    async def sweep_once(self, now: Optional[float] = None) -> List[str]:
        """Expire every idle session; return the ids that were reaped."""
        if now is None:
            now = self._registry.clock()
        reaped: List[str] = []
        for session in await self._registry.list_sessions():
            try:
                if await self._reap(session, now):
                    reaped.append(session.id)
            except Exception as exc:  # pylint: disable=broad-except
                logger.error("Failed to reap session %s: %s", session.id, exc)
        if reaped:
            logger.info("SessionReaper sweep: expired %d sessions", len(reaped))
        return reaped

    async def _reap(self, session: UploadSession, now: float) -> bool:
        async with session.lock:
            if session.status not in _REAPABLE or session.finalize_running:
                return False
            idle = session.idle_seconds(now)
            if idle <= self.ttl_for(session):
                return False
            previous = session.status
            session.status = SessionStatus.EXPIRED

        await self._registry.remove(session.id)
        logger.info(
            "Session %s expired after %.0fs idle (was %s, %d chunks)",
            session.id, idle, previous.value, session.chunk_count,
        )
        try:
            await asyncio.to_thread(self._chunk_store.remove_session_dir, session.id)
        except OSError as exc:
            logger.warning("Could not delete staged chunks for session %s: %s", session.id, exc)
        return True
