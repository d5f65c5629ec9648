"""Error taxonomy for the recording upload pipeline.

Every error carries the HTTP status the routers surface it with, so the
mapping lives in one place.
"""


class UploadError(Exception):
    """Base class for recording upload failures."""

    status_code: int = 400

    def __init__(self, message: str, session_id: str = "") -> None:
        super().__init__(message)
        self.session_id = session_id


class UnknownSessionError(UploadError):
    """Session was never created, already finalized, or expired."""

    status_code = 404


class InvalidStateError(UploadError):
    """Session exists but is not in a state that allows the operation."""

    status_code = 409


class NoDataError(UploadError):
    """Session has no chunks to finalize or stream."""

    status_code = 422


class InvalidChunkError(UploadError):
    """Chunk payload or index failed validation."""

    status_code = 400


class ChunkTooLargeError(InvalidChunkError):
    """Chunk payload exceeds the configured maximum."""

    status_code = 413
