"""
studyportal Test Configuration

Shared fixtures: isolated data/log directories and storage instances.
"""

import os
import sys
import tempfile
from pathlib import Path

import pytest

# Add project root to path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))


# Temporary directory for test data
@pytest.fixture
def temp_dir():
    with tempfile.TemporaryDirectory() as tmpdir:
        yield Path(tmpdir)


@pytest.fixture(autouse=True)
def isolated_environment(temp_dir, monkeypatch):
    """Keep config, data and logs of every test inside its temp dir."""
    from studyportal import config_loader

    monkeypatch.setenv("STUDYPORTAL_DATA_DIR", str(temp_dir / "data"))
    monkeypatch.setenv("STUDYPORTAL_LOG_DIR", str(temp_dir / "logs"))
    monkeypatch.setenv("STUDYPORTAL_CONFIG_FILE", str(temp_dir / "config.json"))
    for key in ("STORAGE_QUOTA_BYTES", "ATTACHMENT_CACHE_SIZE", "SYNC_INTERVAL_SECONDS",
                "STORAGE_DB_FILE", "EXPORT_FILE_NAME", "LOG_LEVEL"):
        monkeypatch.delenv(key, raising=False)

    config_loader.load_config()


@pytest.fixture
def db_path(temp_dir):
    return str(temp_dir / "storage.db")


@pytest.fixture
def storage(db_path):
    from studyportal.local_storage import LocalStorage

    store = LocalStorage(db_path=db_path, context_id="ctx-a")
    yield store
    store.close()


@pytest.fixture
def second_context(db_path):
    """Another context (tab/window) on the same database."""
    from studyportal.local_storage import LocalStorage

    store = LocalStorage(db_path=db_path, context_id="ctx-b")
    yield store
    store.close()


@pytest.fixture
def channel():
    from studyportal.local_storage import StorageChannel

    return StorageChannel()


class FakeClock:
    """Deterministic clock; every reading advances by ``step`` seconds."""

    def __init__(self, start: float = 1_700_000_000.0, step: float = 1.0):
        self.now = start
        self.step = step

    def __call__(self) -> float:
        value = self.now
        self.now += self.step
        return value


@pytest.fixture
def clock():
    return FakeClock()
