"""In-memory directory of active upload sessions.

The registry map is guarded by one asyncio lock; each session carries its own
lock so that "check status, then transition" and chunk insert/replace are
linearizable per session.  Lock order is always session lock first, registry
lock second.

Thread Safety:
    Designed for a single asyncio event loop.  Blocking disk I/O never runs
    while the registry lock is held.
"""
from __future__ import annotations

import asyncio
import logging
import time
import uuid
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Dict, List, Optional

from .chunk_store import ChunkStore
from .errors import UnknownSessionError
from .schemas import RecordingType, SessionKind, SessionStatus, default_title

logger = logging.getLogger(__name__)

# Attempts at drawing an unused session id before giving up
_MAX_ID_ATTEMPTS = 8


@dataclass
class ChunkRecord:
    index:        int
    size_bytes:   int
    storage_path: Path
    uploaded_at:  float


@dataclass
class UploadSession:
    """State of one recording's upload, from start to finalize or expiry."""
    id:               str
    owner:            str
    room:             str
    recording_type:   RecordingType
    title:            str
    kind:             SessionKind
    created_at:       float
    last_activity_at: float
    status:           SessionStatus = SessionStatus.ACTIVE
    chunks:           Dict[int, ChunkRecord] = field(default_factory=dict)
    total_size:       int = 0
    error:            Optional[str] = None
    final_filename:   Optional[str] = None
    finalize_task:    Optional[asyncio.Task] = field(default=None, repr=False)  # type: ignore[type-arg]
    lock:             asyncio.Lock = field(default_factory=asyncio.Lock, repr=False)

    @property
    def chunk_count(self) -> int:
        return len(self.chunks)

    @property
    def finalize_running(self) -> bool:
        return self.finalize_task is not None and not self.finalize_task.done()

    def put_chunk(self, record: ChunkRecord) -> None:
        """Insert or replace the chunk at ``record.index``; call with ``lock`` held."""
        self.chunks[record.index] = record
        self.total_size = sum(c.size_bytes for c in self.chunks.values())

    def sorted_chunks(self) -> List[ChunkRecord]:
        return [self.chunks[i] for i in sorted(self.chunks)]

    def idle_seconds(self, now: float) -> float:
        return now - self.last_activity_at


class SessionRegistry:
    """Concurrency-safe map of session id to UploadSession."""

    def __init__(
        self,
        chunk_store: ChunkStore,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._chunk_store = chunk_store
        self._clock = clock
        self._sessions: Dict[str, UploadSession] = {}
        self._lock = asyncio.Lock()

    @property
    def clock(self) -> Callable[[], float]:
        return self._clock

    def __len__(self) -> int:
        return len(self._sessions)

    async def create_session(
        self,
        owner: str,
        room: str,
        recording_type: RecordingType,
        title: Optional[str] = None,
        kind: SessionKind = SessionKind.LONG,
    ) -> UploadSession:
        """Allocate a fresh ACTIVE session and its staging directory."""
        now = self._clock()
        async with self._lock:
            for _ in range(_MAX_ID_ATTEMPTS):
                session_id = str(uuid.uuid4())
                if session_id not in self._sessions:
                    break
            else:
                raise RuntimeError("Could not allocate a unique session id")
            session = UploadSession(
                id=session_id,
                owner=owner,
                room=room,
                recording_type=recording_type,
                title=title or default_title(recording_type),
                kind=kind,
                created_at=now,
                last_activity_at=now,
            )
            # Reserve the id; the staging directory is created outside the lock.
            self._sessions[session_id] = session

        try:
            await asyncio.to_thread(self._chunk_store.create_session_dir, session_id)
        except OSError:
            await self.remove(session_id)
            raise
        logger.info(
            "Upload session %s started (owner=%s, room=%s, type=%s, kind=%s)",
            session_id, owner, room, recording_type.value, kind.value,
        )
        return session

    async def get(self, session_id: str) -> UploadSession:
        async with self._lock:
            session = self._sessions.get(session_id)
        if session is None:
            raise UnknownSessionError(f"Recording session not found: {session_id}", session_id)
        return session

    async def touch(self, session_id: str) -> None:
        session = await self.get(session_id)
        session.last_activity_at = self._clock()

    async def remove(self, session_id: str) -> Optional[UploadSession]:
        """Drop a session from the registry (no-op if absent)."""
        async with self._lock:
            session = self._sessions.pop(session_id, None)
        if session is not None:
            logger.debug("Session %s removed from registry (status=%s)", session_id, session.status.value)
        return session

    async def list_sessions(self) -> List[UploadSession]:
        async with self._lock:
            return list(self._sessions.values())

    async def session_ids(self) -> List[str]:
        async with self._lock:
            return list(self._sessions)
