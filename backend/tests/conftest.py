"""Shared test fixtures and configuration for backend tests."""
import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient

from app.config import RecordingSettings
from app.recordings.router import router, uploads_router
from app.recordings.service import RecordingUploadService, set_upload_service


@pytest.fixture
def recording_settings(tmp_path):
    """RecordingSettings with every directory under tmp_path."""
    return RecordingSettings(
        staging_dir=str(tmp_path / "staging"),
        recordings_dir=str(tmp_path / "recordings"),
        db_path=str(tmp_path / "recordings.duckdb"),
        max_chunk_bytes=1024,
    )


@pytest.fixture
def upload_service(recording_settings):
    """A RecordingUploadService whose directories exist (reaper not started)."""
    service = RecordingUploadService(recording_settings)
    service.chunk_store.ensure_root()
    service.finalizer.ensure_dir()
    yield service
    service.store.close()


@pytest.fixture
def api_client(upload_service):
    """TestClient for an app with only the recording routers mounted.

    Named api_client (not client) to match the fixture used across the suite.
    """
    test_app = FastAPI()
    test_app.include_router(router)
    test_app.include_router(uploads_router)
    set_upload_service(upload_service)
    with TestClient(test_app) as client:
        yield client
    set_upload_service(None)
