"""Finalizer — turns a session's chunks into one permanent recording.

State machine:
    ACTIVE -> FINALIZING -> COMPLETED   (success)
    FINALIZING -> ERROR                 (failure; session kept for inspection)

Finalize is single-flight per session: the checked ACTIVE -> FINALIZING
transition happens under the session lock and stores the running task on the
session, so a concurrent or retried trigger joins that task instead of
starting another one.  Results of recently completed sessions are kept in a
small LRU so a retry that arrives after the session left the registry still
gets the same answer.

Concatenation streams one chunk at a time into the output file and deletes
each chunk once appended, so memory use is bounded by the copy buffer no
matter how long the recording is.

Note: byte concatenation of independently started recorder segments is
assumed to be playable media.  Nothing here checks that.
"""
from __future__ import annotations

import asyncio
import logging
import re
import shutil
from collections import OrderedDict
from pathlib import Path
from typing import Awaitable, Callable, List, Optional, Set, Union

from .chunk_store import DEFAULT_BLOCK_SIZE, ChunkStore
from .errors import InvalidStateError, NoDataError, UnknownSessionError
from .registry import ChunkRecord, SessionRegistry, UploadSession
from .schemas import FinalizedRecording, SessionStatus

logger = logging.getLogger(__name__)

RecordingHandler = Callable[[FinalizedRecording], Awaitable[None]]

DOWNLOAD_PREFIX = "/api/recordings/download"

_UNSAFE_FILENAME_CHARS = re.compile(r"[^A-Za-z0-9_-]+")


def download_url_for(filename: str) -> str:
    return f"{DOWNLOAD_PREFIX}/{filename}"


def _safe_owner(owner: str) -> str:
    cleaned = _UNSAFE_FILENAME_CHARS.sub("_", owner).strip("_")
    return cleaned[:64] or "user"


def build_filename(session: UploadSession, now: float) -> str:
    """``{type}-{owner}-{epochMillis}-{id[:8]}.webm`` with *owner* made path-safe."""
    return (
        f"{session.recording_type.value}-{_safe_owner(session.owner)}-"
        f"{int(now * 1000)}-{session.id[:8]}.webm"
    )


def _consume_task_result(task: "asyncio.Task[FinalizedRecording]") -> None:
    # Failures are logged inside _run; retrieve them so asyncio does not warn.
    if not task.cancelled():
        task.exception()


class Finalizer:
    """Drives sessions from receiving to a completed recording file."""

    def __init__(
        self,
        registry: SessionRegistry,
        chunk_store: ChunkStore,
        recordings_dir: Union[str, Path],
        on_finalized: Optional[RecordingHandler] = None,
        completed_cache_size: int = 256,
        block_size: int = DEFAULT_BLOCK_SIZE,
    ) -> None:
        self._registry = registry
        self._chunk_store = chunk_store
        self._recordings_dir = Path(recordings_dir)
        self._on_finalized = on_finalized
        self._block_size = block_size
        self._completed_cache_size = completed_cache_size
        # session_id -> FinalizedRecording (LRU of recent completions)
        self._completed: "OrderedDict[str, FinalizedRecording]" = OrderedDict()
        self._tasks: Set[asyncio.Task] = set()  # type: ignore[type-arg]

    @property
    def recordings_dir(self) -> Path:
        return self._recordings_dir

    def ensure_dir(self) -> None:
        self._recordings_dir.mkdir(parents=True, exist_ok=True)

    def get_completed(self, session_id: str) -> Optional[FinalizedRecording]:
        recording = self._completed.get(session_id)
        if recording is not None:
            self._completed.move_to_end(session_id)
        return recording

    def _remember(self, recording: FinalizedRecording) -> None:
        if self._completed_cache_size <= 0:
            return
        self._completed[recording.sessionId] = recording
        self._completed.move_to_end(recording.sessionId)
        while len(self._completed) > self._completed_cache_size:
            self._completed.popitem(last=False)

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def trigger(self, session_id: str) -> "asyncio.Future[FinalizedRecording]":
        """Start (or join) finalization of *session_id* and return its task.

        Raises:
            UnknownSessionError: Session absent and not recently completed.
            InvalidStateError: Session already failed.
            NoDataError: Session has no chunks; it is moved to ERROR.
        """
        try:
            session = await self._registry.get(session_id)
        except UnknownSessionError:
            return self._completed_future(session_id)

        async with session.lock:
            if session.status == SessionStatus.FINALIZING and session.finalize_task is not None:
                logger.info("Finalize already running for session %s; joining it", session_id)
                return session.finalize_task
            if session.status == SessionStatus.COMPLETED:
                return self._completed_future(session_id)
            if session.status == SessionStatus.EXPIRED:
                raise UnknownSessionError(f"Recording session expired: {session_id}", session_id)
            if session.status != SessionStatus.ACTIVE:
                raise InvalidStateError(
                    f"Session {session_id} cannot be finalized in state {session.status.value}",
                    session_id,
                )

            chunks = session.sorted_chunks()
            if not chunks:
                session.status = SessionStatus.ERROR
                session.error = "No chunks uploaded"
            else:
                now = self._registry.clock()
                session.status = SessionStatus.FINALIZING
                filename = build_filename(session, now)
                session.final_filename = filename
                task = asyncio.create_task(self._run(session, chunks, filename))
                task.add_done_callback(_consume_task_result)
                self._tasks.add(task)
                task.add_done_callback(self._tasks.discard)
                session.finalize_task = task
                logger.info(
                    "Finalizing session %s: %d chunks, %d bytes -> %s",
                    session_id, len(chunks), session.total_size, filename,
                )
                return task

        logger.warning("Finalize requested for session %s with no chunks", session_id)
        try:
            await asyncio.to_thread(self._chunk_store.remove_session_dir, session_id)
        except OSError as exc:
            logger.warning("Could not remove empty staging dir for %s: %s", session_id, exc)
        raise NoDataError(f"No recording data for session {session_id}", session_id)

    async def finalize(self, session_id: str) -> FinalizedRecording:
        """Finalize *session_id* and wait for the resulting recording."""
        task = await self.trigger(session_id)
        return await asyncio.shield(task)

    async def drain(self) -> None:
        """Wait for every running finalize, including its store hand-off."""
        tasks = list(self._tasks)
        if not tasks:
            return
        logger.info("Waiting for %d running finalize task(s)", len(tasks))
        await asyncio.gather(*tasks, return_exceptions=True)

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _completed_future(self, session_id: str) -> "asyncio.Future[FinalizedRecording]":
        recording = self.get_completed(session_id)
        if recording is None:
            raise UnknownSessionError(f"Recording session not found: {session_id}", session_id)
        future: asyncio.Future = asyncio.get_running_loop().create_future()
        future.set_result(recording)
        return future

    async def _run(
        self,
        session: UploadSession,
        chunks: List[ChunkRecord],
        filename: str,
    ) -> FinalizedRecording:
        output = self._recordings_dir / filename
        try:
            size = await asyncio.to_thread(self._concatenate, chunks, output)
        except Exception as exc:
            async with session.lock:
                session.status = SessionStatus.ERROR
                session.error = str(exc)
            logger.error(
                "Finalize failed for session %s (remaining chunks kept in %s): %s",
                session.id, self._chunk_store.session_dir(session.id), exc,
            )
            raise

        completed_at = self._registry.clock()
        recording = FinalizedRecording(
            sessionId=session.id,
            filename=filename,
            storagePath=str(output.resolve()),
            downloadUrl=download_url_for(filename),
            sizeBytes=size,
            durationSeconds=max(0, int(completed_at - session.created_at)),
            chunkCount=len(chunks),
            recordingType=session.recording_type,
            owner=session.owner,
            room=session.room,
            title=session.title,
            createdAt=session.created_at,
            completedAt=completed_at,
        )

        try:
            await asyncio.to_thread(self._chunk_store.remove_session_dir, session.id)
        except OSError as exc:
            logger.warning("Could not remove staging dir for session %s: %s", session.id, exc)

        async with session.lock:
            session.status = SessionStatus.COMPLETED
            self._remember(recording)
        await self._registry.remove(session.id)

        logger.info(
            "Recording finalized: %s (%d bytes, %d chunks, %ds)",
            recording.filename, recording.sizeBytes, recording.chunkCount, recording.durationSeconds,
        )
        await self._hand_off(recording)
        return recording

    def _concatenate(self, chunks: List[ChunkRecord], output: Path) -> int:
        """Append chunks to *output* in order, deleting each one once written."""
        output.parent.mkdir(parents=True, exist_ok=True)
        size = 0
        with output.open("xb") as out:
            for chunk in chunks:
                with self._chunk_store.open_chunk(chunk.storage_path) as src:
                    shutil.copyfileobj(src, out, self._block_size)
                size += chunk.size_bytes
                self._chunk_store.delete_chunk(chunk.storage_path)
        return size

    async def _hand_off(self, recording: FinalizedRecording) -> None:
        if self._on_finalized is None:
            return
        try:
            await self._on_finalized(recording)
        except Exception as exc:  # pylint: disable=broad-except
            logger.error("Failed to record finalized recording %s: %s", recording.filename, exc)
