"""
Shared test doubles: an in-memory DocumentStore, a controllable clock and a
scheduler that runs jobs when time is advanced by hand.
"""
import copy
from collections import defaultdict
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional, Sequence

import pytest

from bookstore.core.collections import Collections
from bookstore.core.config import Settings
from bookstore.core.exceptions import ConflictError, ConnectivityError, NotFoundError
from bookstore.core.store import DocumentStore, Filter, OrderBy
from bookstore.services.container import build_services

_MISSING = object()


def _resolve(document: dict, path: str) -> Any:
    value: Any = document
    for part in path.split("."):
        if not isinstance(value, dict) or part not in value:
            return _MISSING
        value = value[part]
    return value


def _matches(document: dict, condition: Filter) -> bool:
    field, op, expected = condition
    value = _resolve(document, field)
    if op == "==":
        return value is not _MISSING and value == expected
    if op == "!=":
        return value is _MISSING or value != expected
    if value is _MISSING or value is None or expected is None:
        return False
    if op == "<":
        return value < expected
    if op == "<=":
        return value <= expected
    if op == ">":
        return value > expected
    if op == ">=":
        return value >= expected
    raise ValueError(f"Unsupported operator: {op}")


def _sort_key(document: dict, field: str):
    value = _resolve(document, field)
    if value is _MISSING or value is None:
        return (0, 0)
    return (1, value)


def _set_path(document: dict, path: str, value: Any) -> None:
    parts = path.split(".")
    for part in parts[:-1]:
        document = document.setdefault(part, {})
    document[parts[-1]] = value


class InMemoryDocumentStore(DocumentStore):
    """DocumentStore over plain dicts; set ``online = False`` to simulate an outage."""

    def __init__(self):
        super().__init__()
        self.collections: Dict[str, Dict[str, dict]] = defaultdict(dict)
        self.online = True
        self._counter = 0

    def _check(self) -> None:
        if not self.online:
            raise ConnectivityError("Document store unreachable")

    def seed(self, collection: str, doc_id: str, data: dict) -> None:
        document = copy.deepcopy(data)
        document.setdefault("version", 1)
        document["_id"] = doc_id
        self.collections[collection][doc_id] = document

    def documents(self, collection: str) -> List[dict]:
        return copy.deepcopy(list(self.collections[collection].values()))

    async def ping(self) -> bool:
        return self.online

    async def create(self, collection: str, data: dict) -> str:
        self._check()
        self._counter += 1
        doc_id = f"{collection}_{self._counter:06d}"
        self.seed(collection, doc_id, {k: v for k, v in data.items() if k not in ("_id", "id")})
        await self._notify(collection)
        return doc_id

    async def get(self, collection: str, doc_id: str) -> Optional[dict]:
        self._check()
        document = self.collections[collection].get(doc_id)
        return copy.deepcopy(document) if document else None

    async def query(
        self,
        collection: str,
        filters: Sequence[Filter] = (),
        order_by: Optional[OrderBy] = None,
        limit: Optional[int] = None
    ) -> List[dict]:
        self._check()
        documents = [
            document for document in self.collections[collection].values()
            if all(_matches(document, condition) for condition in filters)
        ]
        if order_by:
            field, direction = order_by
            documents.sort(key=lambda d: _sort_key(d, field), reverse=direction == "desc")
        if limit is not None:
            documents = documents[:limit]
        return copy.deepcopy(documents)

    async def update(
        self,
        collection: str,
        doc_id: str,
        fields: dict,
        expected_version: Optional[int] = None
    ) -> None:
        self._check()
        document = self.collections[collection].get(doc_id)
        if document is None:
            raise NotFoundError(f"Document not found: {collection}/{doc_id}")
        if expected_version is not None and document.get("version") != expected_version:
            raise ConflictError(f"Version conflict on {collection}/{doc_id} (expected {expected_version})")
        for key, value in fields.items():
            if key not in ("_id", "id", "version"):
                _set_path(document, key, copy.deepcopy(value))
        document["version"] = document.get("version", 1) + 1
        await self._notify(collection)

    async def increment(self, collection: str, doc_id: str, field: str, amount: int) -> None:
        self._check()
        document = self.collections[collection].get(doc_id)
        if document is None:
            raise NotFoundError(f"Document not found: {collection}/{doc_id}")
        current = _resolve(document, field)
        _set_path(document, field, (0 if current is _MISSING else current) + amount)
        await self._notify(collection)

    async def delete(self, collection: str, doc_id: str) -> None:
        self._check()
        self.collections[collection].pop(doc_id, None)
        await self._notify(collection)


class FakeClock:
    """Callable clock that only moves when told to."""

    def __init__(self, start: Optional[datetime] = None):
        self.now = start or datetime(2024, 1, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


class ScheduledJob:
    def __init__(self, due: datetime, job, interval: Optional[float] = None):
        self.due = due
        self.job = job
        self.interval = interval
        self.cancelled = False


class ManualScheduler:
    """Scheduler driven by ``advance``; jobs run in due order on the fake clock."""

    def __init__(self, clock: FakeClock):
        self.clock = clock
        self.jobs: List[ScheduledJob] = []

    def call_later(self, delay: float, job) -> ScheduledJob:
        handle = ScheduledJob(self.clock() + timedelta(seconds=delay), job)
        self.jobs.append(handle)
        return handle

    def call_every(self, interval: float, job, initial_delay: float = 0.0) -> ScheduledJob:
        handle = ScheduledJob(self.clock() + timedelta(seconds=initial_delay), job, interval)
        self.jobs.append(handle)
        return handle

    def cancel(self, handle: ScheduledJob) -> None:
        handle.cancelled = True
        if handle in self.jobs:
            self.jobs.remove(handle)

    async def shutdown(self) -> None:
        for handle in list(self.jobs):
            self.cancel(handle)

    async def advance(self, seconds: float) -> None:
        target = self.clock() + timedelta(seconds=seconds)
        while True:
            due = [job for job in self.jobs if job.due <= target]
            if not due:
                break
            handle = min(due, key=lambda job: job.due)
            self.clock.now = max(self.clock.now, handle.due)
            if handle.interval is None:
                self.jobs.remove(handle)
            else:
                handle.due = handle.due + timedelta(seconds=handle.interval)
            await handle.job()
        self.clock.now = target


def make_book(price: float = 45000, stock: int = 5, **overrides) -> dict:
    book = {
        "title": "O'tkan kunlar",
        "author_name": "Abdulla Qodiriy",
        "price": price,
        "original_price": 50000,
        "is_available": True,
        "stock": stock,
        "isbn": "978-9943-01-234-5",
        "images": {"main": "https://res.cloudinary.com/demo/image/upload/v1/books/otkan.jpg"},
        "genre_name": "Roman",
        "analytics": {"wishlist_count": 0},
    }
    book.update(overrides)
    return book


def set_book(store: InMemoryDocumentStore, book_id: str, **fields) -> None:
    """Change a catalog book in place without notifying subscribers."""
    store.collections[Collections.BOOKS][book_id].update(fields)


@pytest.fixture
def settings(tmp_path):
    return Settings(OFFLINE_QUEUE_DIR=str(tmp_path / "offline"))


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def store():
    return InMemoryDocumentStore()


@pytest.fixture
def scheduler(clock):
    return ManualScheduler(clock)


@pytest.fixture
def services(store, clock, scheduler, settings):
    return build_services(store, settings=settings, clock=clock, scheduler=scheduler)
