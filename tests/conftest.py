"""
Pytest fixtures for worksync tests.

The fake remote keeps pages in memory and answers the same calls the real
client makes, so the engines can be driven end to end without HTTP.
"""

import uuid
from typing import Any, Dict, List, Optional

import pytest

from worksync.config import Settings
from worksync.protocols import RecordNotFoundError
from worksync.storage import SQLiteStorage
from worksync.sync import SyncContext
from worksync.types import PageResult

TASKS_DB = "tasks-db"
PROJECTS_DB = "projects-db"
TIME_LOGS_DB = "time-logs-db"


def make_page(
    page_id: str,
    title: str = "Task",
    status: str = "Todo",
    unique: Optional[int] = None,
    edited: str = "2024-01-01T00:00:00.000Z",
    projects: Optional[List[str]] = None,
    database_id: str = TASKS_DB,
    archived: bool = False,
) -> Dict[str, Any]:
    """A remote page shaped the way the workspace API returns it."""
    properties: Dict[str, Any] = {
        "Name": {"type": "title", "title": [{"plain_text": title}]},
        "Status": {"type": "status", "status": {"name": status}},
    }
    if unique is not None:
        properties["ID"] = {"type": "unique_id", "unique_id": {"prefix": "T", "number": unique}}
    if projects is not None:
        properties["Projects"] = {
            "type": "relation",
            "relation": [{"id": pid} for pid in projects],
        }
    return {
        "object": "page",
        "id": page_id,
        "url": f"https://example.test/{page_id}",
        "last_edited_time": edited,
        "in_trash": archived,
        "parent": {"type": "database_id", "database_id": database_id},
        "properties": properties,
    }


class FakeRemote:
    """In-memory stand-in for RemoteClient.

    ``failures`` is consumed front to back: each entry is raised by the next
    ``query_page`` call (None lets the call through).
    """

    def __init__(self):
        self.pages: Dict[str, List[Dict[str, Any]]] = {
            TASKS_DB: [],
            PROJECTS_DB: [],
            TIME_LOGS_DB: [],
        }
        self.failures: List[Optional[Exception]] = []
        self.write_failures: List[Exception] = []
        self.queries: List[Dict[str, Any]] = []
        self.writes: List[tuple] = []
        self.after_page = None

    def add(self, database_id: str, page: Dict[str, Any]) -> Dict[str, Any]:
        self.pages[database_id].append(page)
        return page

    def find(self, record_id: str) -> Optional[Dict[str, Any]]:
        for pages in self.pages.values():
            for page in pages:
                if page["id"] == record_id:
                    return page
        return None

    def resolve_data_source(self, resource_id):
        return resource_id

    def query_page(
        self, resource_id, cursor=None, filter=None, sorts=None, page_size=None, max_attempts=None
    ):
        self.queries.append(
            {"resource_id": resource_id, "cursor": cursor, "filter": filter, "page_size": page_size}
        )
        if self.failures:
            failure = self.failures.pop(0)
            if failure is not None:
                raise failure

        pages = [p for p in self.pages[resource_id] if not p.get("in_trash")]
        if filter:
            prop = filter["property"]
            excluded = filter["status"]["does_not_equal"]
            pages = [
                p for p in pages if p["properties"][prop]["status"]["name"] != excluded
            ]
        if sorts:
            pages = sorted(pages, key=lambda p: p["last_edited_time"], reverse=True)

        size = page_size or 100
        start = int(cursor or 0)
        chunk = pages[start : start + size]
        has_more = start + size < len(pages)
        result = PageResult(
            records=[dict(p) for p in chunk],
            has_more=has_more,
            next_cursor=str(start + size) if has_more else None,
            page_size=size,
        )
        if self.after_page is not None:
            self.after_page(len(self.queries))
        return result

    def fetch_one(self, record_id, filter_properties=None):
        page = self.find(record_id)
        return dict(page) if page else None

    def _write_failure(self):
        if self.write_failures:
            raise self.write_failures.pop(0)

    def create_record(self, resource_id, properties):
        self._write_failure()
        page = {
            "id": str(uuid.uuid4()),
            "url": "https://example.test/new",
            "last_edited_time": "2024-06-01T00:00:00.000Z",
            "parent": {"type": "database_id", "database_id": resource_id},
            "properties": dict(properties),
        }
        self.writes.append(("create", resource_id, properties))
        self.pages[resource_id].append(page)
        return page

    def update_record(self, record_id, properties):
        self._write_failure()
        page = self.find(record_id)
        if page is None:
            raise RecordNotFoundError(record_id)
        page["properties"].update(properties)
        self.writes.append(("update", record_id, properties))
        return dict(page)

    def archive_record(self, record_id):
        self._write_failure()
        page = self.find(record_id)
        if page is None:
            raise RecordNotFoundError(record_id)
        page["in_trash"] = True
        self.writes.append(("archive", record_id, None))
        return dict(page)


class FakeRelay:
    def __init__(self, events=None):
        self.events = list(events or [])
        self.acknowledged: List[int] = []
        self.ack_error: Optional[Exception] = None
        self.fetch_calls: List[Optional[int]] = []

    def fetch_events(self, since=None):
        self.fetch_calls.append(since)
        return [e for e in self.events if since is None or e.timestamp > since]

    def acknowledge(self, before):
        if self.ack_error is not None:
            raise self.ack_error
        self.acknowledged.append(before)


@pytest.fixture
def temp_db(tmp_path):
    """Create a temporary database path."""
    return tmp_path / "worksync.db"


@pytest.fixture
def storage(temp_db):
    """Create a migrated SQLiteStorage instance for testing."""
    storage = SQLiteStorage(temp_db)
    yield storage
    storage.close()


@pytest.fixture
def settings(temp_db):
    """Settings with every entity type wired to a fake database and no delays."""
    settings = Settings(api_key="secret-token", db_path=temp_db)
    settings.entity("task").database_id = TASKS_DB
    settings.entity("project").database_id = PROJECTS_DB
    settings.entity("time_log").database_id = TIME_LOGS_DB
    settings.retry_base_delay = 0.0
    settings.page_retry_delay = 0.0
    return settings


@pytest.fixture
def remote():
    return FakeRemote()


@pytest.fixture
def relay():
    return FakeRelay()


@pytest.fixture
def sleeps():
    """Records every backoff sleep instead of sleeping."""
    return []


@pytest.fixture
def ctx(storage, settings, remote, relay, sleeps):
    return SyncContext(
        storage=storage, settings=settings, client=remote, relay=relay, sleep=sleeps.append
    )
