"""Chunked recording upload module for Chatreel.

Screen and voice recordings arrive as indexed chunks over an unreliable,
possibly out-of-order transport.  Chunks are staged on disk per session,
concatenated in index order into one permanent file when the final chunk
arrives, and reclaimed by a background sweep when a session is abandoned.

Chunks are staged in:     {staging_dir}/{session_id}/chunk-{index:06d}
Recordings are stored in: {recordings_dir}/{type}-{owner}-{millis}-{id8}.webm
"""

from .errors import (
    ChunkTooLargeError,
    InvalidChunkError,
    InvalidStateError,
    NoDataError,
    UnknownSessionError,
    UploadError,
)
from .router import router, uploads_router
from .service import RecordingUploadService, get_upload_service, set_upload_service

__all__ = [
    "ChunkTooLargeError",
    "InvalidChunkError",
    "InvalidStateError",
    "NoDataError",
    "UnknownSessionError",
    "UploadError",
    "RecordingUploadService",
    "get_upload_service",
    "set_upload_service",
    "router",
    "uploads_router",
]
