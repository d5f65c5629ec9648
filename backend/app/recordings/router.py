"""FastAPI routers for chunked recording uploads.

Long-form recordings (``/api/recordings``):
    POST /long/start               — Start a session
    POST /long/chunk               — Upload one indexed chunk (isFinal triggers finalize)
    GET  /long/partial/{sessionId} — Download what has been received so far
    GET  /long/active              — Active sessions (diagnostics)
    GET  /list                     — Finalized recordings
    GET  /messages/{room}          — Recording chat entries of a room
    GET  /metadata/{filename}      — Metadata of a finalized recording
    GET  /download/{filename}      — The recording file

Short upload-stream sessions (``/api/uploads``):
    POST /start-session
    POST /upload-chunk
    POST /finalize-upload          — Synchronous finalize
"""
import asyncio
import logging
from typing import Optional

from fastapi import APIRouter, Depends, File, Form, HTTPException, UploadFile
from fastapi.responses import FileResponse, StreamingResponse
from starlette.background import BackgroundTask

from .errors import NoDataError, UploadError
from .finalizer import download_url_for
from .schemas import (
    ActiveSessionsResponse,
    ChunkUploadResponse,
    FinalizeUploadRequest,
    FinalizeUploadResponse,
    RecordingInfo,
    RecordingListResponse,
    RecordingType,
    RoomMessagesResponse,
    SessionKind,
    StartRecordingRequest,
    StartRecordingResponse,
    StartUploadRequest,
    StartUploadResponse,
    UploadChunkResponse,
    content_type_for,
)
from .service import RecordingUploadService, get_upload_service, partial_url_for

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/recordings", tags=["recordings"])
uploads_router = APIRouter(prefix="/api/uploads", tags=["uploads"])


def get_service() -> RecordingUploadService:
    """Dependency returning the configured upload service (503 if not started)."""
    service = get_upload_service()
    if service is None:
        raise HTTPException(status_code=503, detail="Recording service not initialised")
    return service


def _http_error(exc: UploadError, status_code: Optional[int] = None) -> HTTPException:
    return HTTPException(status_code=status_code or exc.status_code, detail=str(exc))


# ---------------------------------------------------------------------------
# Long-form recordings
# ---------------------------------------------------------------------------


@router.post("/long/start", response_model=StartRecordingResponse)
async def start_long_recording(
    body: StartRecordingRequest,
    service: RecordingUploadService = Depends(get_service),
) -> StartRecordingResponse:
    """Start a long recording session.

    Returns:
        The session id plus the chunk size and duration the client should use.
    """
    try:
        session = await service.start_session(
            owner=body.username,
            room=body.room,
            recording_type=body.recordingType,
            title=body.title,
            kind=SessionKind.LONG,
        )
    except Exception as e:
        logger.error(f"Error starting long recording: {e}")
        raise HTTPException(status_code=500, detail="Failed to start recording session")

    return StartRecordingResponse(
        sessionId=session.id,
        maxChunkSize=service.settings.max_chunk_bytes,
        recommendedChunkDuration=service.settings.recommended_chunk_seconds,
    )


@router.post("/long/chunk", response_model=ChunkUploadResponse)
async def upload_long_chunk(
    sessionId: str = Form(..., min_length=1),
    chunkIndex: int = Form(..., ge=0),
    isFinal: bool = Form(False),
    chunk: UploadFile = File(...),
    service: RecordingUploadService = Depends(get_service),
) -> ChunkUploadResponse:
    """Upload one chunk of a long recording.

    Re-uploading an index replaces the earlier payload.  When ``isFinal`` is
    set the recording is assembled in the background and the response carries
    the filename and download URL it will be served from.

    Raises:
        HTTPException 404: Unknown or expired session
        HTTPException 409: Session no longer accepts chunks
        HTTPException 413: Chunk exceeds the size limit
    """
    try:
        ack = await service.receiver.accept(sessionId, chunkIndex, chunk.file, isFinal)
    except UploadError as e:
        logger.warning(f"Chunk {chunkIndex} rejected for session {sessionId}: {e}")
        raise _http_error(e)
    except Exception as e:
        logger.error(f"Chunk upload error: {e}")
        raise HTTPException(status_code=500, detail=f"Chunk upload failed: {str(e)}")
    finally:
        await chunk.close()

    if ack.finalizing:
        return ChunkUploadResponse(
            message="Final chunk received. Processing recording...",
            chunkIndex=ack.index,
            totalSize=ack.total_size,
            chunkCount=ack.chunk_count,
            partialUrl=partial_url_for(sessionId),
            filename=ack.filename,
            downloadUrl=download_url_for(ack.filename) if ack.filename else None,
        )
    return ChunkUploadResponse(
        message="Chunk uploaded successfully",
        chunkIndex=ack.index,
        totalSize=ack.total_size,
        chunkCount=ack.chunk_count,
        partialUrl=partial_url_for(sessionId),
    )


@router.get("/long/partial/{session_id}")
async def download_partial(
    session_id: str,
    service: RecordingUploadService = Depends(get_service),
) -> StreamingResponse:
    """Stream everything received so far for an in-progress recording.

    Raises:
        HTTPException 404: Unknown session or no data yet
        HTTPException 409: Session is being finalized
    """
    try:
        stream = await service.partials.open_partial(session_id)
    except NoDataError as e:
        raise _http_error(e, status_code=404)
    except UploadError as e:
        raise _http_error(e)

    return StreamingResponse(
        stream.iter_bytes(),
        media_type=stream.content_type,
        background=BackgroundTask(stream.aclose),
        headers={
            "Content-Length": str(stream.content_length),
            "Content-Disposition": f'attachment; filename="{stream.filename}"',
        },
    )


@router.get("/long/active", response_model=ActiveSessionsResponse)
async def list_active_sessions(
    service: RecordingUploadService = Depends(get_service),
) -> ActiveSessionsResponse:
    """List sessions that are still receiving chunks."""
    return ActiveSessionsResponse(sessions=await service.active_sessions())


@router.get("/list", response_model=RecordingListResponse)
async def list_recordings(
    room: Optional[str] = None,
    service: RecordingUploadService = Depends(get_service),
) -> RecordingListResponse:
    """List finalized recordings, newest first."""
    recordings = service.store.list_recordings(room=room)
    return RecordingListResponse(count=len(recordings), recordings=recordings)


@router.get("/messages/{room}", response_model=RoomMessagesResponse)
async def room_recording_messages(
    room: str,
    service: RecordingUploadService = Depends(get_service),
) -> RoomMessagesResponse:
    """Chat entries announcing the finalized recordings of *room*."""
    messages = await asyncio.to_thread(service.store.get_room_messages, room)
    return RoomMessagesResponse(room=room, messages=messages)


@router.get("/metadata/{filename}", response_model=RecordingInfo)
async def recording_metadata(
    filename: str,
    service: RecordingUploadService = Depends(get_service),
) -> RecordingInfo:
    """Metadata of a finalized recording; 404 until processing has finished."""
    info = service.store.get_recording(filename)
    if info is None:
        raise HTTPException(status_code=404, detail="Recording not found")
    return info


@router.get("/download/{filename}")
async def download_recording(
    filename: str,
    service: RecordingUploadService = Depends(get_service),
) -> FileResponse:
    """Download a finalized recording file."""
    path = service.recording_path(filename)
    if path is None:
        raise HTTPException(status_code=404, detail="File not found")

    info = service.store.get_recording(filename)
    media_type = content_type_for(info.recordingType if info else RecordingType.SCREEN)
    logger.info(f"Serving download: {filename}")
    return FileResponse(path=path, filename=filename, media_type=media_type)


# ---------------------------------------------------------------------------
# Short upload-stream sessions
# ---------------------------------------------------------------------------


@uploads_router.post("/start-session", response_model=StartUploadResponse)
async def start_upload_session(
    body: StartUploadRequest,
    service: RecordingUploadService = Depends(get_service),
) -> StartUploadResponse:
    """Start a short upload-stream session (expires after 1 hour idle)."""
    try:
        session = await service.start_session(
            owner=body.username,
            room=body.room,
            recording_type=RecordingType.SCREEN,
            title=body.text,
            kind=SessionKind.STREAM,
        )
    except Exception as e:
        logger.error(f"Error starting upload session: {e}")
        raise HTTPException(status_code=500, detail="Failed to start upload session")
    return StartUploadResponse(sessionId=session.id)


@uploads_router.post("/upload-chunk", response_model=UploadChunkResponse)
async def upload_stream_chunk(
    sessionId: str = Form(..., min_length=1),
    chunkIndex: int = Form(..., ge=0),
    chunk: UploadFile = File(...),
    service: RecordingUploadService = Depends(get_service),
) -> UploadChunkResponse:
    """Upload one chunk of a short upload-stream session."""
    try:
        ack = await service.receiver.accept(sessionId, chunkIndex, chunk.file)
    except UploadError as e:
        logger.warning(f"Chunk {chunkIndex} rejected for session {sessionId}: {e}")
        raise _http_error(e)
    except Exception as e:
        logger.error(f"Error uploading chunk: {e}")
        raise HTTPException(status_code=500, detail=f"Chunk upload failed: {str(e)}")
    finally:
        await chunk.close()
    return UploadChunkResponse(chunkIndex=ack.index, totalSize=ack.total_size)


@uploads_router.post("/finalize-upload", response_model=FinalizeUploadResponse)
async def finalize_upload(
    body: FinalizeUploadRequest,
    service: RecordingUploadService = Depends(get_service),
) -> FinalizeUploadResponse:
    """Combine all chunks of a session and wait for the finished file.

    Raises:
        HTTPException 404: Unknown or expired session
        HTTPException 409: Session already failed
        HTTPException 422: No chunks were uploaded
    """
    try:
        recording = await service.finalizer.finalize(body.sessionId)
    except UploadError as e:
        logger.warning(f"Finalize rejected for session {body.sessionId}: {e}")
        raise _http_error(e)
    except Exception as e:
        logger.error(f"Error finalizing upload: {e}")
        raise HTTPException(status_code=500, detail=f"Finalize failed: {str(e)}")

    return FinalizeUploadResponse(
        videoUrl=recording.downloadUrl,
        filename=recording.filename,
        size=recording.sizeBytes,
        duration=recording.durationSeconds,
    )
