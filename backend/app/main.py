"""Chatreel Backend Application.

This is the main entry point for the Chatreel recording upload service.
The browser chat client captures screen and voice recordings and uploads them
here in chunks; finished recordings are stored and announced in their room.

Modules:
    - recordings: chunked upload sessions, finalize, partial download, reaping
"""
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI

from app.config import get_config
from app.recordings import RecordingUploadService, set_upload_service
from app.recordings.router import router as recordings_router
from app.recordings.router import uploads_router

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)

# Silence verbose third-party loggers.
for _noisy in (
    "multipart",
    "python_multipart",
    "httpx",
    "httpcore",
):
    logging.getLogger(_noisy).setLevel(logging.WARNING)

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager for startup/shutdown events."""
    # Startup
    config = get_config()

    # Apply configured log level to root logger so that
    # `logging.level: "debug"` in chatreel.settings.yaml activates DEBUG output.
    configured_level = getattr(logging, config.logging.level.upper(), None)
    if configured_level is not None:
        logging.getLogger().setLevel(configured_level)
        logger.info("Root logger level set to %s", config.logging.level.upper())

    service = RecordingUploadService(config.recordings)
    await service.start()
    set_upload_service(service)
    logger.info(
        f"Recording uploads ready on http://{config.server.host}:{config.server.port}"
    )

    yield  # Application runs here

    # Shutdown
    set_upload_service(None)
    await service.stop()
    logger.info("Application shutdown complete")


# Create FastAPI application with metadata
app = FastAPI(
    title="Chatreel API",
    description="Chunked screen/voice recording uploads for Chatreel chat rooms",
    version="0.1.0",
    lifespan=lifespan,
)

# Register all routers
app.include_router(recordings_router)
app.include_router(uploads_router)


@app.get("/health")
async def health() -> dict:
    """Health check endpoint.

    Returns:
        dict: Status object indicating the server is running.
    """
    return {"status": "ok"}
