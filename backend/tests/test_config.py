"""Tests for settings loading and path resolution."""

from pathlib import Path

import pytest
from pydantic import ValidationError

from app.config import SETTINGS_ENV_VAR, get_config, load_config, reset_config


def test_recording_dirs_relative_to_project_root_when_settings_in_config_dir(tmp_path):
    """Relative recording paths resolve from project root for ./config layout."""
    project_root = tmp_path / "project"
    config_dir = project_root / "config"
    config_dir.mkdir(parents=True)

    settings_file = config_dir / "chatreel.settings.yaml"
    settings_file.write_text(
        "recordings:\n"
        "  staging_dir: data/chunks\n"
        "  db_path: data/recordings.duckdb\n",
        encoding="utf-8",
    )

    cfg = load_config(settings_path=settings_file)
    root = project_root.resolve()
    assert Path(cfg.recordings.staging_dir) == root / "data" / "chunks"
    assert Path(cfg.recordings.db_path) == root / "data" / "recordings.duckdb"


def test_recording_dirs_relative_to_settings_dir_for_nonstandard_layout(tmp_path):
    """Relative recording paths resolve from the settings file directory otherwise."""
    settings_file = tmp_path / "chatreel.settings.yaml"
    settings_file.write_text(
        "recordings:\n"
        "  recordings_dir: local/recordings\n",
        encoding="utf-8",
    )

    cfg = load_config(settings_path=settings_file)
    assert Path(cfg.recordings.recordings_dir) == tmp_path.resolve() / "local" / "recordings"


def test_absolute_recording_dir_remains_unchanged(tmp_path):
    """Absolute paths are preserved exactly as configured."""
    absolute_path = tmp_path / "absolute" / "chunks"
    settings_file = tmp_path / "chatreel.settings.yaml"
    settings_file.write_text(
        "recordings:\n"
        f"  staging_dir: {absolute_path}\n",
        encoding="utf-8",
    )

    cfg = load_config(settings_path=settings_file)
    assert Path(cfg.recordings.staging_dir) == absolute_path


def test_missing_file_uses_defaults(tmp_path):
    cfg = load_config(settings_path=tmp_path / "missing.yaml")

    assert cfg.server.port == 8000
    assert cfg.recordings.max_chunk_bytes == 50 * 1024 * 1024
    assert cfg.recordings.stream_session_ttl_seconds == 3600
    assert cfg.recordings.long_session_ttl_seconds == 86400
    assert cfg.recordings.sweep_interval_seconds == 300


def test_overrides_are_applied(tmp_path):
    settings_file = tmp_path / "chatreel.settings.yaml"
    settings_file.write_text(
        "server:\n"
        "  port: 9001\n"
        "logging:\n"
        "  level: debug\n"
        "recordings:\n"
        "  max_chunk_bytes: 2048\n"
        "  long_session_ttl_seconds: 600\n",
        encoding="utf-8",
    )

    cfg = load_config(settings_path=settings_file)

    assert cfg.server.port == 9001
    assert cfg.logging.level == "debug"
    assert cfg.recordings.max_chunk_bytes == 2048
    assert cfg.recordings.long_session_ttl_seconds == 600


def test_invalid_log_level_rejected(tmp_path):
    settings_file = tmp_path / "chatreel.settings.yaml"
    settings_file.write_text("logging:\n  level: chatty\n", encoding="utf-8")

    with pytest.raises(ValidationError):
        load_config(settings_path=settings_file)


def test_non_positive_chunk_limit_rejected(tmp_path):
    settings_file = tmp_path / "chatreel.settings.yaml"
    settings_file.write_text("recordings:\n  max_chunk_bytes: 0\n", encoding="utf-8")

    with pytest.raises(ValidationError):
        load_config(settings_path=settings_file)


def test_env_var_selects_settings_file(tmp_path, monkeypatch):
    """get_config() honours CHATREEL_SETTINGS_PATH and caches the result."""
    settings_file = tmp_path / "custom.yaml"
    settings_file.write_text("server:\n  port: 7777\n", encoding="utf-8")
    monkeypatch.setenv(SETTINGS_ENV_VAR, str(settings_file))
    reset_config()
    try:
        cfg = get_config()
        assert cfg.server.port == 7777
        assert get_config() is cfg
    finally:
        reset_config()
