"""Pytest configuration and fixtures

Provides in-memory fakes of the repository and database collaborators, a
metrics collector without exporters, and log capture for the project logger.
"""

import asyncio
import itertools
import logging
import sys
from pathlib import Path
from typing import Any, Dict, List, Optional

import pytest

# Add project root to sys.path for imports
sys.path.insert(0, str(Path(__file__).parent.parent))

from config import RepositoryConfig
from exceptions import DatabaseBackupError, RepositoryOperationError
from logger import get_logger
from metrics import MetricsCollector
from models import IndexBackupStatus, QueryResult, UploadResult
from repository_manager import RepositoryCollection


# ============================================================================
# COLLABORATOR FAKES
# ============================================================================


class FakeRepository:
    """In-memory stand-in for ContentRepository.

    Every call is recorded. Failures are injected through the ``fail_*``
    attributes; index backup states are served from ``index_states``.
    """

    def __init__(self, name: str, url: str = "http://fake"):
        self.name = name
        self.url = url
        self.calls: List[tuple] = []
        self.uploaded: Dict[int, str] = {}
        self.deleted: List[int] = []
        self.created: List[Dict[str, Any]] = []
        self.ensured: List[tuple] = []
        self.index_states: List[str] = ["Completed"]
        self.index_queries = 0
        self.query_count: Optional[int] = None

        self.fail_uploads_named: Optional[str] = None
        self.fail_queries = False
        self.fail_ensure = False
        self.fail_markers = False

        self._ids = itertools.count(1000)

    async def upload(self, parent: str, content_name: str, content: bytes, content_type: str = "File") -> UploadResult:
        await asyncio.sleep(0)
        self.calls.append(("upload", parent, content_name))
        if self.fail_uploads_named and content_name.startswith(self.fail_uploads_named):
            raise RepositoryOperationError("UPLOAD", f"{self.name} returned 500", 500)
        content_id = next(self._ids)
        self.uploaded[content_id] = content_name
        return UploadResult(id=content_id, name=content_name, path=f"{parent}/{content_name}")

    async def query(self, content_query: str, select=(), expand=(), top=None, auto_filters=True,
                    path: str = "/Root") -> QueryResult:
        await asyncio.sleep(0)
        self.calls.append(("query", content_query, top, auto_filters))
        if self.fail_queries:
            raise RepositoryOperationError("QUERY", f"{self.name} returned 503", 503)
        if self.query_count is not None:
            return QueryResult(count=self.query_count)
        if content_query.startswith("TypeIs:File AND Id:("):
            ids = content_query[len("TypeIs:File AND Id:("):-1].split()
            existing = [content_id for content_id in ids if int(content_id) in self.uploaded]
            return QueryResult(count=len(existing))
        return QueryResult(count=3, items=[{"Id": 1}, {"Id": 2}, {"Id": 3}])

    async def delete(self, content_id: int, permanent: bool = True):
        await asyncio.sleep(0)
        self.calls.append(("delete", content_id, permanent))
        self.uploaded.pop(content_id, None)
        self.deleted.append(content_id)

    async def create_content(self, parent: str, content_type: str, name: str, **fields) -> Dict[str, Any]:
        await asyncio.sleep(0)
        self.calls.append(("create", parent, content_type, name))
        if self.fail_markers:
            raise RepositoryOperationError("CREATE", f"{self.name} returned 500", 500)
        item = {"Parent": parent, "Type": content_type, "Name": name}
        item.update(fields)
        self.created.append(item)
        return item

    async def ensure_path(self, path: str, content_type: str = "Folder"):
        await asyncio.sleep(0)
        if self.fail_ensure:
            raise RepositoryOperationError("LOAD", "ConnectError - connection refused")
        self.ensured.append((path, content_type))

    async def start_index_backup(self, target: str) -> IndexBackupStatus:
        await asyncio.sleep(0)
        self.calls.append(("backup_index", target))
        return IndexBackupStatus.from_payload({"State": "Started"})

    async def query_index_backup(self) -> IndexBackupStatus:
        await asyncio.sleep(0)
        self.index_queries += 1
        state = self.index_states.pop(0) if len(self.index_states) > 1 else self.index_states[0]
        return IndexBackupStatus.from_payload({"State": state})

    async def ping(self) -> bool:
        return True

    async def aclose(self):
        self.calls.append(("close",))

    def count(self, call_name: str) -> int:
        return sum(1 for call in self.calls if call[0] == call_name)


class FakeRepositoryCollection(RepositoryCollection):
    """RepositoryCollection serving FakeRepository clients."""

    def _create_repository(self, config: RepositoryConfig) -> FakeRepository:
        return FakeRepository(config.name, config.url)


class FakeDatabase:
    """In-memory stand-in for DatabaseBackupClient."""

    def __init__(self, configured: bool = True, error: Optional[Exception] = None, delay: float = 0):
        self.is_configured = configured
        self.database_name = "sensenet"
        self.error = error
        self.delay = delay
        self.backups: List[tuple] = []

    async def backup(self, target_path: str, timeout: int = 300):
        self.backups.append((target_path, timeout))
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error:
            raise self.error


# ============================================================================
# FIXTURES
# ============================================================================


@pytest.fixture
def metrics() -> MetricsCollector:
    """Metrics collector with an in-process meter provider only."""
    collector = MetricsCollector(otel_endpoint=None, app_name="nlb-test", run_id="test-run")
    yield collector
    collector.shutdown()


@pytest.fixture
def repositories(metrics) -> FakeRepositoryCollection:
    """Two fake repositories; the first one is the primary."""
    return FakeRepositoryCollection(
        [RepositoryConfig(name="repo1", url="http://repo1"), RepositoryConfig(name="repo2", url="http://repo2")],
        metrics=metrics,
    )


@pytest.fixture
def database() -> FakeDatabase:
    return FakeDatabase()


@pytest.fixture
def failing_database() -> FakeDatabase:
    return FakeDatabase(error=DatabaseBackupError("Backup of sensenet failed: timeout"))


@pytest.fixture
def project_logs(caplog):
    """Capture records of the project logger (it does not propagate to root)."""
    logger = get_logger()
    previous_level = logger.level
    logger.setLevel(logging.DEBUG)
    logger.addHandler(caplog.handler)
    caplog.handler.setLevel(logging.DEBUG)
    yield caplog
    logger.removeHandler(caplog.handler)
    logger.setLevel(previous_level)
