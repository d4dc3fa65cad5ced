"""
Root conftest.py for shared test fixtures and configuration.
This file provides common fixtures used across the test suite.
"""

import json
import shutil
import sys
import tempfile
from pathlib import Path
from typing import Any, Dict, List, Optional

import pytest
import pytest_asyncio
from loguru import logger

# Add project root to Python path for consistent imports
PROJECT_ROOT = Path(__file__).parent.parent
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from inkdoodle import config
from inkdoodle.DB.remote_store import RemoteStore


# ========== Path and File System Fixtures ==========

@pytest.fixture
def isolated_temp_dir():
    """Create an isolated temporary directory that's always cleaned up."""
    temp_dir = tempfile.mkdtemp(prefix="inkdoodle_test_")
    temp_path = Path(temp_dir)
    yield temp_path
    if temp_path.exists():
        shutil.rmtree(temp_dir, ignore_errors=True)


@pytest.fixture
def projects_root(isolated_temp_dir):
    root = isolated_temp_dir / "projects"
    root.mkdir()
    return root


# ========== Test Environment Isolation ==========

@pytest.fixture(autouse=True)
def isolate_test_environment(monkeypatch, tmp_path):
    """Keep every test away from the real config file and data directories."""
    test_data_dir = tmp_path / "test_data"
    test_data_dir.mkdir(exist_ok=True)
    monkeypatch.setenv("HOME", str(test_data_dir / "home"))
    monkeypatch.setenv(config.CONFIG_PATH_ENV, str(test_data_dir / "config" / "config.toml"))
    monkeypatch.delenv(config.SYNC_ENABLED_ENV, raising=False)
    monkeypatch.setattr(config, "_CONFIG_CACHE", None)
    monkeypatch.setattr(config, "_CONFIG_CACHE_PATH", None)
    yield test_data_dir


# ========== Logging Fixtures ==========

@pytest.fixture
def log_capture():
    """Collect loguru messages (WARNING and above) as formatted strings."""
    messages: List[str] = []
    handler_id = logger.add(messages.append, level="WARNING", format="{level}|{message}")
    yield messages
    logger.remove(handler_id)


# ========== Database Fixtures ==========

@pytest.fixture
def remote_store(isolated_temp_dir):
    """A file-backed remote store."""
    store = RemoteStore(isolated_temp_dir / "remote.db", client_id="test_client", pool_size=2)
    yield store
    store.close()


@pytest_asyncio.fixture
async def creator_id(remote_store):
    """Id of a freshly created creator (the first one, so 1)."""
    row = await remote_store.get_or_create_creator("writer@example.com", "Writer")
    return row["id"]


# ========== Project Tree Fixtures ==========

class ProjectTreeBuilder:
    """Writes project directories in the on-disk layout used by the collector."""

    SUBDIRS = {"chapter": "chapters", "note": "notes", "reference": "refs", "lore": "lore"}

    def __init__(self, root: Path):
        self.root = root

    def project(self, folder: str, project: Dict[str, Any],
                entries: Optional[List[Dict[str, Any]]] = None) -> Path:
        path = self.root / folder
        (path / "data").mkdir(parents=True, exist_ok=True)
        for subdir in self.SUBDIRS.values():
            (path / subdir).mkdir(exist_ok=True)
        self.write_json(path / "data" / "project.json", {"project": project, "entries": entries or []})
        return path

    def item(self, project_path: Path, kind: str, record: Dict[str, Any],
             filename: Optional[str] = None, wrap: bool = False) -> Path:
        name = filename or f"{record.get('code') or record.get('id')}.json"
        target = project_path / self.SUBDIRS[kind] / name
        payload = {("ref" if kind == "reference" else kind): record} if wrap else record
        self.write_json(target, payload)
        return target

    def timeline(self, project_path: Path, record: Dict[str, Any]) -> Path:
        target = project_path / "data" / "timeline.json"
        self.write_json(target, record)
        return target

    @staticmethod
    def write_json(path: Path, data: Any) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(json.dumps(data, indent=2), encoding="utf-8")

    @staticmethod
    def read_json(path: Path) -> Any:
        return json.loads(path.read_text(encoding="utf-8"))


@pytest.fixture
def project_tree(projects_root):
    return ProjectTreeBuilder(projects_root)


def make_project(local_id: int = 1, code: Optional[str] = "PRJ-0001-000001", title: str = "My Novel",
                 creator_id: Optional[int] = 1) -> Dict[str, Any]:
    return {
        "id": local_id,
        "code": code,
        "title": title,
        "creator_id": creator_id,
        "created_at": "2024-01-01T00:00:00+00:00",
        "updated_at": "2024-01-01T00:00:00+00:00",
    }


def make_chapter(local_id: int = 1, code: Optional[str] = "CHP-0001-000001", project_id: int = 1,
                 creator_id: Optional[int] = 1, **extra) -> Dict[str, Any]:
    record = {
        "id": local_id,
        "code": code,
        "project_id": project_id,
        "creator_id": creator_id,
        "number": local_id,
        "title": f"Chapter {local_id}",
        "content": f"Text of chapter {local_id}",
        "status": "draft",
        "summary": "",
        "tags": ["draft"],
        "word_goal": 2000,
        "created_at": "2024-01-01T00:00:00+00:00",
        "updated_at": "2024-01-01T00:00:00+00:00",
    }
    record.update(extra)
    return record


def make_note(local_id: int = 1, code: Optional[str] = "NT-0001-000001", project_id: int = 1,
              creator_id: Optional[int] = 1, **extra) -> Dict[str, Any]:
    record = {
        "id": local_id,
        "code": code,
        "project_id": project_id,
        "creator_id": creator_id,
        "title": f"Note {local_id}",
        "content": "Remember the lighthouse",
        "tags": [],
        "category": "Misc",
        "pinned": False,
    }
    record.update(extra)
    return record


# ========== Pytest Configuration ==========

def pytest_configure(config):
    """Register custom test markers."""
    config.addinivalue_line("markers", "unit: Unit tests that don't require external resources")
    config.addinivalue_line("markers", "integration: Integration tests that use files and the remote store")
    config.addinivalue_line("markers", "asyncio: Async tests using asyncio")
