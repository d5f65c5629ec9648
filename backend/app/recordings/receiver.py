"""ChunkReceiver — validates incoming chunks and records them on a session.

The payload is written to a staging file with no lock held.  The per-session
lock is then taken only to re-check the session state, rename the staged file
onto its chunk path and update the chunk table, so a reader never sees a
chunk record whose file is still being written.

A retried final chunk (the client did not see the first acknowledgment) is
not stored again: it joins the running finalize, or is answered from the
finalizer's completed results, with the same filename.
"""
import asyncio
import logging
from dataclasses import dataclass
from typing import Optional

from .chunk_store import ChunkStore, Payload
from .errors import InvalidChunkError, InvalidStateError, UnknownSessionError
from .finalizer import Finalizer
from .registry import ChunkRecord, SessionRegistry, UploadSession
from .schemas import SessionStatus

logger = logging.getLogger(__name__)

_FINALIZE_STARTED = (SessionStatus.FINALIZING, SessionStatus.COMPLETED)


@dataclass
class ChunkAck:
    """Result of an accepted chunk."""
    session_id:  str
    index:       int
    total_size:  int
    chunk_count: int
    finalizing:  bool = False
    filename:    Optional[str] = None


class ChunkReceiver:
    """Routes chunk payloads into the ChunkStore and the session's bookkeeping."""

    def __init__(
        self,
        registry: SessionRegistry,
        chunk_store: ChunkStore,
        finalizer: Finalizer,
    ) -> None:
        self._registry = registry
        self._chunk_store = chunk_store
        self._finalizer = finalizer

    async def accept(
        self,
        session_id: str,
        index: int,
        payload: Payload,
        is_final: bool = False,
    ) -> ChunkAck:
        """Store chunk *index* for *session_id*, replacing any earlier upload of it.

        An empty payload is only allowed with ``is_final``; it then just
        triggers finalization.  A final chunk starts finalization in the
        background and returns without waiting for it.  Repeating a final
        chunk after finalization started returns the same acknowledgment.

        Raises:
            UnknownSessionError: Session is not in the registry.
            InvalidStateError: Session is no longer ACTIVE.
            InvalidChunkError: Bad index or empty non-final payload.
            ChunkTooLargeError: Payload over the configured maximum.
            NoDataError: Final trigger for a session with no chunks.
        """
        if isinstance(index, bool) or not isinstance(index, int) or index < 0:
            raise InvalidChunkError(f"Chunk index must be a non-negative integer, got {index!r}", session_id)

        try:
            session = await self._registry.get(session_id)
        except UnknownSessionError:
            if is_final:
                ack = self._completed_ack(session_id, index)
                if ack is not None:
                    return ack
            raise

        if is_final and session.status in _FINALIZE_STARTED:
            return await self._join_finalize(session, index)
        self._require_active(session)

        try:
            staged, size = await asyncio.to_thread(self._chunk_store.stage, session_id, payload)
        except OSError as exc:
            await self._fail_write(session, exc)
            raise

        committed = False
        retried = False
        if size > 0:
            async with session.lock:
                if session.status != SessionStatus.ACTIVE:
                    self._chunk_store.discard(staged)
                    if not (is_final and session.status in _FINALIZE_STARTED):
                        self._require_active(session)
                    retried = True
                else:
                    try:
                        path = self._chunk_store.commit(staged, session_id, index)
                    except OSError as exc:
                        self._chunk_store.discard(staged)
                        session.status = SessionStatus.ERROR
                        session.error = str(exc)
                        logger.error("Failed to commit chunk %d for session %s: %s", index, session_id, exc)
                        raise
                    replaced = index in session.chunks
                    session.put_chunk(ChunkRecord(
                        index=index,
                        size_bytes=size,
                        storage_path=path,
                        uploaded_at=self._registry.clock(),
                    ))
                    await self._registry.touch(session_id)
                    committed = True
                    logger.debug(
                        "Chunk %d %s for session %s (%d bytes, total=%d)",
                        index, "replaced" if replaced else "stored", session_id, size, session.total_size,
                    )
        else:
            self._chunk_store.discard(staged)
            if not is_final:
                raise InvalidChunkError("Chunk payload is empty", session_id)

        if retried:
            return await self._join_finalize(session, index)

        if not is_final:
            return ChunkAck(
                session_id=session_id,
                index=index,
                total_size=session.total_size,
                chunk_count=session.chunk_count,
            )

        await self._finalizer.trigger(session_id)
        logger.info(
            "Final chunk %d received for session %s (stored=%s); processing recording",
            index, session_id, committed,
        )
        return self._final_ack(session, index)

    @staticmethod
    def _final_ack(session: UploadSession, index: int) -> ChunkAck:
        return ChunkAck(
            session_id=session.id,
            index=index,
            total_size=session.total_size,
            chunk_count=session.chunk_count,
            finalizing=True,
            filename=session.final_filename,
        )

    async def _join_finalize(self, session: UploadSession, index: int) -> ChunkAck:
        """Answer a repeated final chunk from the finalize already under way."""
        await self._finalizer.trigger(session.id)
        logger.info("Final chunk %d repeated for session %s; joining finalize", index, session.id)
        return self._final_ack(session, index)

    def _completed_ack(self, session_id: str, index: int) -> Optional[ChunkAck]:
        recording = self._finalizer.get_completed(session_id)
        if recording is None:
            return None
        logger.info("Final chunk %d repeated for completed session %s", index, session_id)
        return ChunkAck(
            session_id=session_id,
            index=index,
            total_size=recording.sizeBytes,
            chunk_count=recording.chunkCount,
            finalizing=True,
            filename=recording.filename,
        )

    @staticmethod
    def _require_active(session: UploadSession) -> None:
        if session.status == SessionStatus.EXPIRED:
            raise UnknownSessionError(f"Recording session expired: {session.id}", session.id)
        if session.status != SessionStatus.ACTIVE:
            raise InvalidStateError(
                f"Session {session.id} is {session.status.value}; chunks are no longer accepted",
                session.id,
            )

    async def _fail_write(self, session: UploadSession, exc: OSError) -> None:
        """Mark the session ERROR after a chunk write failure, unless it already moved on."""
        async with session.lock:
            if session.status != SessionStatus.ACTIVE:
                # Expired or finalizing underneath us; the state error is the real answer.
                self._require_active(session)
            session.status = SessionStatus.ERROR
            session.error = str(exc)
        logger.error("Failed to write chunk for session %s: %s", session.id, exc)
