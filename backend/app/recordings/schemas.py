"""Pydantic schemas for chunked recording uploads.

This module defines the data models exchanged with clients and handed to the
recording store:
- RecordingType: screen or voice capture
- SessionStatus: lifecycle state of an upload session
- SessionKind: which upload path created the session (drives expiry)
- FinalizedRecording: the permanent artifact produced by finalize
- Request/response models for both upload paths

Field names on the wire are camelCase to match the browser client.
"""
import time
from datetime import datetime
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, Field, field_validator


class RecordingType(str, Enum):
    """Kind of capture being uploaded."""
    SCREEN = "screen"
    VOICE = "voice"


class SessionStatus(str, Enum):
    """Upload session lifecycle.

    ACTIVE -> FINALIZING -> COMPLETED on success, FINALIZING -> ERROR on
    failure, ACTIVE/FINALIZING/ERROR -> EXPIRED via the reaper.
    """
    ACTIVE = "active"
    FINALIZING = "finalizing"
    COMPLETED = "completed"
    EXPIRED = "expired"
    ERROR = "error"


class SessionKind(str, Enum):
    """Upload path that created the session.

    STREAM: short upload-stream sessions (1 hour idle expiry).
    LONG: long-form recording sessions (24 hour idle expiry).
    """
    STREAM = "stream"
    LONG = "long"


# Content types served for partial and final downloads
CONTENT_TYPES = {
    RecordingType.SCREEN: "video/webm",
    RecordingType.VOICE: "audio/webm",
}


def content_type_for(recording_type: RecordingType) -> str:
    return CONTENT_TYPES[recording_type]


def default_title(recording_type: RecordingType) -> str:
    return f"{recording_type.value} recording"


class FinalizedRecording(BaseModel):
    """Permanent recording produced by finalizing an upload session.

    Handed to the recording store, which persists it and creates the chat
    entry that references it.
    """
    sessionId: str = Field(..., description="Session the recording came from")
    filename: str = Field(..., description="Filename in the recordings directory")
    storagePath: str = Field(..., description="Absolute path of the permanent file")
    downloadUrl: str = Field(..., description="URL the file is served from")
    sizeBytes: int = Field(..., description="Total size in bytes")
    durationSeconds: int = Field(..., description="completedAt - createdAt, in seconds")
    chunkCount: int = Field(..., description="Number of chunks concatenated")
    recordingType: RecordingType
    owner: str
    room: str
    title: str
    createdAt: float = Field(..., description="Session start, seconds since epoch")
    completedAt: float = Field(default_factory=time.time, description="Finalize time")


class RecordingMessage(BaseModel):
    """Chat entry that references a finalized recording."""
    id: str
    room: str
    username: str
    text: str
    videoUrl: str
    downloadUrl: str
    fileSize: int
    duration: int
    recordingType: RecordingType
    timestamp: datetime


# ---------------------------------------------------------------------------
# Long-form recording path
# ---------------------------------------------------------------------------


class StartRecordingRequest(BaseModel):
    """Body of POST /api/recordings/long/start."""
    username: str = Field(..., min_length=1)
    room: str = Field(..., min_length=1)
    recordingType: RecordingType = RecordingType.SCREEN
    title: Optional[str] = None

    @field_validator("title")
    @classmethod
    def _blank_title_is_none(cls, value: Optional[str]) -> Optional[str]:
        if value is not None and not value.strip():
            return None
        return value


class StartRecordingResponse(BaseModel):
    success: bool = True
    sessionId: str
    message: str = "Long recording session started"
    maxChunkSize: int
    recommendedChunkDuration: int


class ChunkUploadResponse(BaseModel):
    """Acknowledgment for an accepted chunk.

    For the final chunk, ``filename`` and ``downloadUrl`` describe where the
    recording will be served once processing finishes.
    """
    success: bool = True
    message: str
    chunkIndex: int
    totalSize: int
    chunkCount: int
    partialUrl: str
    filename: Optional[str] = None
    downloadUrl: Optional[str] = None


class ActiveSessionInfo(BaseModel):
    sessionId: str
    username: str
    recordingType: RecordingType
    title: str
    startedAt: float
    chunkCount: int
    totalSize: int
    duration: int
    partialUrl: str


class ActiveSessionsResponse(BaseModel):
    success: bool = True
    sessions: List[ActiveSessionInfo]


class RecordingInfo(BaseModel):
    """Metadata of a finalized recording as served to clients."""
    filename: str
    title: str
    recordingType: RecordingType
    uploadedBy: str
    room: str
    fileSize: int
    duration: int
    chunkCount: int
    downloadUrl: str
    completedAt: datetime


class RecordingListResponse(BaseModel):
    success: bool = True
    count: int
    recordings: List[RecordingInfo]


class RoomMessagesResponse(BaseModel):
    """Chat entries that reference finalized recordings in one room, oldest first."""
    success: bool = True
    room: str
    messages: List[RecordingMessage]


# ---------------------------------------------------------------------------
# Short upload-stream path
# ---------------------------------------------------------------------------


class StartUploadRequest(BaseModel):
    """Body of POST /api/uploads/start-session."""
    username: str = Field(..., min_length=1)
    room: str = Field(..., min_length=1)
    text: str = "Screen recording"


class StartUploadResponse(BaseModel):
    success: bool = True
    sessionId: str
    message: str = "Upload session started"


class UploadChunkResponse(BaseModel):
    success: bool = True
    chunkIndex: int
    totalSize: int
    message: str = "Chunk uploaded successfully"


class FinalizeUploadRequest(BaseModel):
    sessionId: str = Field(..., min_length=1)


class FinalizeUploadResponse(BaseModel):
    success: bool = True
    videoUrl: str
    filename: str
    size: int
    duration: int
