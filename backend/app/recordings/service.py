"""RecordingUploadService — wiring and lifecycle for the upload pipeline.

Composes ChunkStore, SessionRegistry, ChunkReceiver, Finalizer,
PartialStreamer, SessionReaper and RecordingStore.  A module-level singleton
is initialised in ``app/main.py`` from config and started/stopped with the
application lifespan.
"""
import asyncio
import logging
from pathlib import Path
from typing import List, Optional

from app.config import RecordingSettings

from .chunk_store import ChunkStore
from .finalizer import Finalizer
from .partial import PartialStreamer
from .reaper import SessionReaper
from .receiver import ChunkReceiver
from .registry import SessionRegistry, UploadSession
from .schemas import (
    ActiveSessionInfo,
    FinalizedRecording,
    RecordingType,
    SessionKind,
    SessionStatus,
)
from .store import RecordingStore

logger = logging.getLogger(__name__)

PARTIAL_PREFIX = "/api/recordings/long/partial"

# ---------------------------------------------------------------------------
# Singleton
# ---------------------------------------------------------------------------

_service: Optional["RecordingUploadService"] = None


def get_upload_service() -> Optional["RecordingUploadService"]:
    """Return the global RecordingUploadService, or None if not yet initialised."""
    return _service


def set_upload_service(service: Optional["RecordingUploadService"]) -> None:
    """Set (or clear) the global RecordingUploadService instance."""
    global _service
    _service = service


def partial_url_for(session_id: str) -> str:
    return f"{PARTIAL_PREFIX}/{session_id}"


# ---------------------------------------------------------------------------
# Service
# ---------------------------------------------------------------------------

class RecordingUploadService:
    """Facade over the chunked upload components."""

    def __init__(self, settings: RecordingSettings, store: Optional[RecordingStore] = None) -> None:
        self.settings = settings
        self.chunk_store = ChunkStore(settings.staging_dir, settings.max_chunk_bytes)
        self.registry = SessionRegistry(self.chunk_store)
        self.store = store if store is not None else RecordingStore(settings.db_path)
        self.finalizer = Finalizer(
            registry=self.registry,
            chunk_store=self.chunk_store,
            recordings_dir=settings.recordings_dir,
            on_finalized=self._record,
            completed_cache_size=settings.completed_cache_size,
        )
        self.receiver = ChunkReceiver(self.registry, self.chunk_store, self.finalizer)
        self.partials = PartialStreamer(self.registry, self.chunk_store)
        self.reaper = SessionReaper(
            registry=self.registry,
            chunk_store=self.chunk_store,
            ttl_seconds={
                SessionKind.STREAM: settings.stream_session_ttl_seconds,
                SessionKind.LONG: settings.long_session_ttl_seconds,
            },
            interval_seconds=settings.sweep_interval_seconds,
        )

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        """Create directories, purge leftovers of a previous run, start the reaper."""
        self.chunk_store.ensure_root()
        self.finalizer.ensure_dir()
        await asyncio.to_thread(self.chunk_store.clear_snapshots)
        await asyncio.to_thread(
            self.chunk_store.purge_orphans,
            await self.registry.session_ids(),
            self.settings.stream_session_ttl_seconds,
        )
        await self.reaper.start()
        logger.info(
            "RecordingUploadService started (staging=%s, recordings=%s)",
            self.chunk_store.root,
            self.finalizer.recordings_dir,
        )

    async def stop(self) -> None:
        """Stop the reaper and let running finalizes finish before closing the store."""
        await self.reaper.stop()
        await self.finalizer.drain()
        self.store.close()
        logger.info("RecordingUploadService stopped")

    # ------------------------------------------------------------------
    # Operations
    # ------------------------------------------------------------------

    async def start_session(
        self,
        owner: str,
        room: str,
        recording_type: RecordingType = RecordingType.SCREEN,
        title: Optional[str] = None,
        kind: SessionKind = SessionKind.LONG,
    ) -> UploadSession:
        return await self.registry.create_session(owner, room, recording_type, title, kind)

    async def active_sessions(self) -> List[ActiveSessionInfo]:
        now = self.registry.clock()
        return [
            ActiveSessionInfo(
                sessionId=s.id,
                username=s.owner,
                recordingType=s.recording_type,
                title=s.title,
                startedAt=s.created_at,
                chunkCount=s.chunk_count,
                totalSize=s.total_size,
                duration=max(0, int(now - s.created_at)),
                partialUrl=partial_url_for(s.id),
            )
            for s in await self.registry.list_sessions()
            if s.status == SessionStatus.ACTIVE
        ]

    def recording_path(self, filename: str) -> Optional[Path]:
        """Path of a finalized recording file, or None if missing or not a plain filename."""
        if not filename or Path(filename).name != filename or filename.startswith("."):
            return None
        path = self.finalizer.recordings_dir / filename
        return path if path.is_file() else None

    async def _record(self, recording: FinalizedRecording) -> None:
        await asyncio.to_thread(self.store.save_recording, recording)
