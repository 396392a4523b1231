from __future__ import annotations

import pytest

from tab_recorder import config as config_module
from tab_recorder.recording_manager import RecordingManager
from tab_recorder.session_store import SessionStore

_ENV_KEYS = (
    "TAB_RECORDER_CONFIG",
    "DEV",
    "HOST",
    "PORT",
    "REC_DIR",
    "CORS_ORIGIN",
    "MAX_CHUNK_BYTES",
    "STOP_TIMEOUT_SEC",
    "FSYNC_CHUNKS",
)


def _reset_config_state(monkeypatch) -> None:
    monkeypatch.setattr(config_module, "_cfg_cache", None, raising=False)
    monkeypatch.setattr(config_module, "_search_paths", [], raising=False)
    monkeypatch.setattr(config_module, "_active_config_path", None, raising=False)


@pytest.fixture(autouse=True)
def _isolated_config(monkeypatch, tmp_path):
    for key in _ENV_KEYS:
        monkeypatch.delenv(key, raising=False)
    monkeypatch.setenv("TAB_RECORDER_CONFIG", str(tmp_path / "missing-config.yaml"))
    monkeypatch.setenv("REC_DIR", str(tmp_path / "default-recordings"))
    monkeypatch.chdir(tmp_path)
    _reset_config_state(monkeypatch)


@pytest.fixture
def recordings_dir(tmp_path):
    path = tmp_path / "recordings"
    path.mkdir()
    return path


@pytest.fixture
def store(recordings_dir):
    return SessionStore(recordings_dir)


@pytest.fixture
def manager(store):
    return RecordingManager(store, stop_timeout=5.0)

