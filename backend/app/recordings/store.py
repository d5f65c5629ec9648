"""DuckDB-backed store for finalized recordings.

Receives each FinalizedRecording from the Finalizer, persists it, and creates
the chat entry that references the media.

Database Schema:
    recordings table:
        - session_id: Upload session the recording came from (primary key)
        - filename: Filename in the recordings directory (unique)
        - storage_path / download_url: Where the file lives and is served from
        - recording_type, title, owner, room
        - size_bytes, duration_seconds, chunk_count
        - started_at / completed_at: UTC timestamps
    recording_messages table:
        - one chat entry per recording, keyed by a UUID

Thread Safety:
    The DuckDB connection is NOT thread-safe.  Calls arrive from worker
    threads (``asyncio.to_thread``), so every statement runs under a lock.
"""
import logging
import threading
import uuid
from datetime import datetime, timezone
from typing import List, Optional

import duckdb

from .schemas import FinalizedRecording, RecordingInfo, RecordingMessage, RecordingType

logger = logging.getLogger(__name__)


def _utc(ts: float) -> datetime:
    return datetime.fromtimestamp(ts, tz=timezone.utc).replace(tzinfo=None)


def message_text(recording: FinalizedRecording) -> str:
    return f"{recording.title} ({recording.durationSeconds // 60} minutes)"


class RecordingStore:
    """Persists finalized recordings and their chat entries."""

    def __init__(self, db_path: str = "recordings.duckdb") -> None:
        self._db_path = db_path
        self._connection: Optional[duckdb.DuckDBPyConnection] = None
        self._lock = threading.Lock()
        self._initialize_db()

    def _get_connection(self) -> duckdb.DuckDBPyConnection:
        """Get or create database connection."""
        if self._connection is None:
            self._connection = duckdb.connect(self._db_path)
        return self._connection

    def _initialize_db(self) -> None:
        """Create tables if they don't exist (idempotent)."""
        with self._lock:
            conn = self._get_connection()
            conn.execute("""
                CREATE TABLE IF NOT EXISTS recordings (
                    session_id VARCHAR PRIMARY KEY,
                    filename VARCHAR NOT NULL UNIQUE,
                    storage_path VARCHAR NOT NULL,
                    download_url VARCHAR NOT NULL,
                    recording_type VARCHAR NOT NULL,
                    title VARCHAR NOT NULL,
                    owner VARCHAR NOT NULL,
                    room VARCHAR NOT NULL,
                    size_bytes BIGINT NOT NULL,
                    duration_seconds INTEGER NOT NULL,
                    chunk_count INTEGER NOT NULL,
                    started_at TIMESTAMP NOT NULL,
                    completed_at TIMESTAMP NOT NULL
                )
            """)
            conn.execute("""
                CREATE TABLE IF NOT EXISTS recording_messages (
                    id VARCHAR PRIMARY KEY,
                    session_id VARCHAR NOT NULL,
                    room VARCHAR NOT NULL,
                    username VARCHAR NOT NULL,
                    text VARCHAR NOT NULL,
                    video_url VARCHAR NOT NULL,
                    download_url VARCHAR NOT NULL,
                    file_size BIGINT NOT NULL,
                    duration INTEGER NOT NULL,
                    recording_type VARCHAR NOT NULL,
                    timestamp TIMESTAMP NOT NULL
                )
            """)
            conn.execute("""
                CREATE INDEX IF NOT EXISTS idx_recording_messages_room ON recording_messages(room)
            """)

    def save_recording(self, recording: FinalizedRecording) -> RecordingMessage:
        """Persist *recording* and create the chat entry that references it.

        Returns:
            The created RecordingMessage.
        """
        message = RecordingMessage(
            id=str(uuid.uuid4()),
            room=recording.room,
            username=recording.owner,
            text=message_text(recording),
            videoUrl=recording.downloadUrl,
            downloadUrl=recording.downloadUrl,
            fileSize=recording.sizeBytes,
            duration=recording.durationSeconds,
            recordingType=recording.recordingType,
            timestamp=_utc(recording.completedAt),
        )
        with self._lock:
            conn = self._get_connection()
            conn.execute(
                """
                INSERT INTO recordings
                (session_id, filename, storage_path, download_url, recording_type, title,
                 owner, room, size_bytes, duration_seconds, chunk_count, started_at, completed_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                [
                    recording.sessionId,
                    recording.filename,
                    recording.storagePath,
                    recording.downloadUrl,
                    recording.recordingType.value,
                    recording.title,
                    recording.owner,
                    recording.room,
                    recording.sizeBytes,
                    recording.durationSeconds,
                    recording.chunkCount,
                    _utc(recording.createdAt),
                    _utc(recording.completedAt),
                ],
            )
            conn.execute(
                """
                INSERT INTO recording_messages
                (id, session_id, room, username, text, video_url, download_url,
                 file_size, duration, recording_type, timestamp)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                [
                    message.id,
                    recording.sessionId,
                    message.room,
                    message.username,
                    message.text,
                    message.videoUrl,
                    message.downloadUrl,
                    message.fileSize,
                    message.duration,
                    message.recordingType.value,
                    message.timestamp,
                ],
            )
        logger.info("Recorded %s in room %s", recording.filename, recording.room)
        return message

    _RECORDING_COLUMNS = """
        filename, title, recording_type, owner, room, size_bytes,
        duration_seconds, chunk_count, download_url, completed_at
    """

    @staticmethod
    def _to_info(row) -> RecordingInfo:
        return RecordingInfo(
            filename=row[0],
            title=row[1],
            recordingType=RecordingType(row[2]),
            uploadedBy=row[3],
            room=row[4],
            fileSize=row[5],
            duration=row[6],
            chunkCount=row[7],
            downloadUrl=row[8],
            completedAt=row[9],
        )

    def get_recording(self, filename: str) -> Optional[RecordingInfo]:
        with self._lock:
            row = self._get_connection().execute(
                f"SELECT {self._RECORDING_COLUMNS} FROM recordings WHERE filename = ?",
                [filename],
            ).fetchone()
        return self._to_info(row) if row else None

    def list_recordings(self, room: Optional[str] = None, limit: int = 100) -> List[RecordingInfo]:
        """List finalized recordings, newest first, optionally for one room."""
        with self._lock:
            conn = self._get_connection()
            if room:
                rows = conn.execute(
                    f"""
                    SELECT {self._RECORDING_COLUMNS} FROM recordings
                    WHERE room = ?
                    ORDER BY completed_at DESC
                    LIMIT ?
                    """,
                    [room, limit],
                ).fetchall()
            else:
                rows = conn.execute(
                    f"""
                    SELECT {self._RECORDING_COLUMNS} FROM recordings
                    ORDER BY completed_at DESC
                    LIMIT ?
                    """,
                    [limit],
                ).fetchall()
        return [self._to_info(r) for r in rows]

    def get_room_messages(self, room: str) -> List[RecordingMessage]:
        with self._lock:
            rows = self._get_connection().execute(
                """
                SELECT id, room, username, text, video_url, download_url,
                       file_size, duration, recording_type, timestamp
                FROM recording_messages
                WHERE room = ?
                ORDER BY timestamp ASC
                """,
                [room],
            ).fetchall()
        return [
            RecordingMessage(
                id=r[0],
                room=r[1],
                username=r[2],
                text=r[3],
                videoUrl=r[4],
                downloadUrl=r[5],
                fileSize=r[6],
                duration=r[7],
                recordingType=RecordingType(r[8]),
                timestamp=r[9],
            )
            for r in rows
        ]

    def close(self) -> None:
        """Close the database connection."""
        with self._lock:
            if self._connection is not None:
                self._connection.close()
                self._connection = None
