"""PartialStreamer — download of everything a session has received so far.

The snapshot is taken under the session lock: the chunk table is sorted by
index and every chunk file is hard-linked into a per-request snapshot
directory right there.  The links pin the exact bytes of the snapshot, so a
later replacement of a chunk, or its deletion by the finalizer or reaper,
cannot change or truncate the stream.  Chunks accepted after the snapshot are
not included.

Only one file is open at a time while streaming, however many chunks a
multi-hour recording has.  The snapshot directory is deleted once the stream
ends or is closed.
"""
import asyncio
import logging
from pathlib import Path
from typing import AsyncIterator, List

from .chunk_store import DEFAULT_BLOCK_SIZE, ChunkStore
from .errors import InvalidStateError, NoDataError, UnknownSessionError
from .registry import SessionRegistry
from .schemas import SessionStatus, content_type_for

logger = logging.getLogger(__name__)


class PartialStream:
    """Byte stream over a fixed snapshot of chunk files."""

    def __init__(
        self,
        session_id: str,
        content_type: str,
        chunk_store: ChunkStore,
        snapshot_dir: Path,
        parts: List[Path],
        sizes: List[int],
        block_size: int = DEFAULT_BLOCK_SIZE,
    ) -> None:
        self.session_id = session_id
        self.content_type = content_type
        self.filename = f"partial-{session_id[:8]}.webm"
        self.chunk_count = len(parts)
        self.content_length = sum(sizes)
        self._chunk_store = chunk_store
        self._snapshot_dir = snapshot_dir
        self._parts = parts
        self._sizes = sizes
        self._block_size = block_size
        self._closed = False

    @property
    def snapshot_dir(self) -> Path:
        return self._snapshot_dir

    async def iter_bytes(self) -> AsyncIterator[bytes]:
        try:
            for part, size in zip(self._parts, self._sizes):
                handle = await asyncio.to_thread(self._chunk_store.open_chunk, part)
                try:
                    remaining = size
                    while remaining > 0:
                        block = await asyncio.to_thread(handle.read, min(self._block_size, remaining))
                        if not block:
                            break
                        remaining -= len(block)
                        yield block
                finally:
                    handle.close()
        finally:
            await self.aclose()

    async def aclose(self) -> None:
        """Delete the snapshot directory (idempotent)."""
        if self._closed:
            return
        self._closed = True
        try:
            await asyncio.to_thread(self._chunk_store.remove_snapshot, self._snapshot_dir)
        except OSError as exc:
            logger.warning("Could not remove partial snapshot %s: %s", self._snapshot_dir, exc)


class PartialStreamer:
    """Produces best-effort snapshots of in-progress recordings."""

    def __init__(
        self,
        registry: SessionRegistry,
        chunk_store: ChunkStore,
        block_size: int = DEFAULT_BLOCK_SIZE,
    ) -> None:
        self._registry = registry
        self._chunk_store = chunk_store
        self._block_size = block_size

    async def open_partial(self, session_id: str) -> PartialStream:
        """Snapshot the current chunks of *session_id*.

        Raises:
            UnknownSessionError: Session not in the registry.
            InvalidStateError: Session is being finalized.
            NoDataError: No chunks received yet.
        """
        session = await self._registry.get(session_id)
        async with session.lock:
            if session.status in (SessionStatus.COMPLETED, SessionStatus.EXPIRED):
                raise UnknownSessionError(f"Recording session not found: {session_id}", session_id)
            if session.status == SessionStatus.FINALIZING:
                raise InvalidStateError(
                    f"Session {session_id} is being finalized; download the final recording",
                    session_id,
                )
            chunks = session.sorted_chunks()
            if not chunks:
                raise NoDataError("No recording data available yet", session_id)

            snapshot_dir, parts = await asyncio.to_thread(
                self._chunk_store.link_snapshot,
                [c.storage_path for c in chunks],
            )

        stream = PartialStream(
            session_id=session_id,
            content_type=content_type_for(session.recording_type),
            chunk_store=self._chunk_store,
            snapshot_dir=snapshot_dir,
            parts=parts,
            sizes=[c.size_bytes for c in chunks],
            block_size=self._block_size,
        )
        logger.info(
            "Partial download for session %s: %d chunks, %d bytes",
            session_id, stream.chunk_count, stream.content_length,
        )
        return stream
