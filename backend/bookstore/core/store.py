"""
Document store client.

The services only talk to a ``DocumentStore``: create/get/query/update/
delete over named collections plus push subscriptions that re-deliver the
full result set whenever a write through this store touches the collection.

``MongoDocumentStore`` is the production implementation on top of Motor.
"""
import inspect
import logging
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence, Tuple, Union

from bson import ObjectId
from bson.errors import InvalidId
from motor.motor_asyncio import AsyncIOMotorDatabase
from pymongo import ASCENDING, DESCENDING
from pymongo.errors import ConnectionFailure

from bookstore.core.exceptions import ConflictError, ConnectivityError, NotFoundError

logger = logging.getLogger(__name__)

# (field, operator, value); field may be a dotted path into nested documents
Filter = Tuple[str, str, Any]
# (field, "asc" | "desc")
OrderBy = Tuple[str, str]
SnapshotCallback = Callable[[List[dict]], Union[None, Awaitable[None]]]

OPERATORS = ("==", "!=", "<", "<=", ">", ">=")

_MONGO_OPERATORS = {
    "!=": "$ne",
    "<": "$lt",
    "<=": "$lte",
    ">": "$gt",
    ">=": "$gte",
}


@dataclass
class Subscription:
    """A registered live query."""
    collection: str
    filters: List[Filter]
    callback: SnapshotCallback
    order_by: Optional[OrderBy] = None
    active: bool = True
    last_result: Optional[List[dict]] = None


class DocumentStore:
    """
    Base class for document stores.

    Subclasses implement the CRUD/query primitives; subscription bookkeeping
    and push delivery live here so every backend behaves the same way.
    Documents are plain dicts whose id is stored under ``_id`` as a string.
    """

    def __init__(self):
        self._subscriptions: List[Subscription] = []

    async def create(self, collection: str, data: dict) -> str:
        raise NotImplementedError

    async def get(self, collection: str, doc_id: str) -> Optional[dict]:
        raise NotImplementedError

    async def query(
        self,
        collection: str,
        filters: Sequence[Filter] = (),
        order_by: Optional[OrderBy] = None,
        limit: Optional[int] = None
    ) -> List[dict]:
        raise NotImplementedError

    async def update(
        self,
        collection: str,
        doc_id: str,
        fields: dict,
        expected_version: Optional[int] = None
    ) -> None:
        """
        Apply a partial update and bump the document version.

        When ``expected_version`` is given the write only succeeds if the
        stored version still matches, otherwise ``ConflictError`` is raised.
        """
        raise NotImplementedError

    async def increment(self, collection: str, doc_id: str, field: str, amount: int) -> None:
        raise NotImplementedError

    async def delete(self, collection: str, doc_id: str) -> None:
        raise NotImplementedError

    async def ping(self) -> bool:
        """Whether the store is currently reachable."""
        return True

    async def subscribe(
        self,
        collection: str,
        filters: Sequence[Filter],
        callback: SnapshotCallback,
        order_by: Optional[OrderBy] = None
    ) -> Callable[[], None]:
        """
        Register a live query. The current result set is pushed immediately
        and again whenever a write to ``collection`` changes that result set.
        """
        subscription = Subscription(
            collection=collection,
            filters=list(filters),
            callback=callback,
            order_by=order_by
        )
        self._subscriptions.append(subscription)
        await self._push(subscription)

        def unsubscribe() -> None:
            subscription.active = False
            if subscription in self._subscriptions:
                self._subscriptions.remove(subscription)

        return unsubscribe

    async def _notify(self, collection: str) -> None:
        for subscription in list(self._subscriptions):
            if subscription.active and subscription.collection == collection:
                await self._push(subscription)

    async def _push(self, subscription: Subscription) -> None:
        try:
            documents = await self.query(
                subscription.collection,
                subscription.filters,
                order_by=subscription.order_by
            )
            if subscription.last_result is not None and documents == subscription.last_result:
                return
            subscription.last_result = documents
            result = subscription.callback(documents)
            if inspect.isawaitable(result):
                await result
        except Exception as e:
            logger.exception(f"Subscription callback failed for {subscription.collection}: {e}")


def _object_id(doc_id: str) -> Any:
    try:
        return ObjectId(doc_id)
    except (InvalidId, TypeError):
        return doc_id


def _from_mongo(document: Optional[dict]) -> Optional[dict]:
    if document is not None and "_id" in document:
        document["_id"] = str(document["_id"])
    return document


@contextmanager
def _connectivity_guard(operation: str):
    try:
        yield
    except ConnectionFailure as e:
        logger.warning(f"Document store unreachable during {operation}: {e}")
        raise ConnectivityError(cause=e)


def build_mongo_filter(filters: Sequence[Filter]) -> dict:
    """Translate ``(field, op, value)`` filters into a Mongo query document."""
    mongo_filter: Dict[str, Any] = {}
    for field, op, value in filters:
        if op not in OPERATORS:
            raise ValueError(f"Unsupported filter operator: {op}")
        if field == "_id":
            value = _object_id(value)
        if op == "==":
            mongo_filter[field] = value
        else:
            mongo_filter.setdefault(field, {})[_MONGO_OPERATORS[op]] = value
    return mongo_filter


class MongoDocumentStore(DocumentStore):
    """DocumentStore backed by a Motor database."""

    def __init__(self, db: AsyncIOMotorDatabase):
        super().__init__()
        self.db = db

    async def ping(self) -> bool:
        try:
            await self.db.command("ping")
        except ConnectionFailure as e:
            logger.warning(f"MongoDB ping failed: {e}")
            return False
        return True

    async def create(self, collection: str, data: dict) -> str:
        document = {k: v for k, v in data.items() if k not in ("_id", "id")}
        document.setdefault("version", 1)
        with _connectivity_guard("create"):
            result = await self.db[collection].insert_one(document)
        await self._notify(collection)
        return str(result.inserted_id)

    async def get(self, collection: str, doc_id: str) -> Optional[dict]:
        with _connectivity_guard("get"):
            document = await self.db[collection].find_one({"_id": _object_id(doc_id)})
        return _from_mongo(document)

    async def query(
        self,
        collection: str,
        filters: Sequence[Filter] = (),
        order_by: Optional[OrderBy] = None,
        limit: Optional[int] = None
    ) -> List[dict]:
        with _connectivity_guard("query"):
            cursor = self.db[collection].find(build_mongo_filter(filters))
            if order_by:
                field, direction = order_by
                cursor = cursor.sort(field, DESCENDING if direction == "desc" else ASCENDING)
            if limit:
                cursor = cursor.limit(limit)
            documents = await cursor.to_list(length=None)
        return [_from_mongo(document) for document in documents]

    async def update(
        self,
        collection: str,
        doc_id: str,
        fields: dict,
        expected_version: Optional[int] = None
    ) -> None:
        selector: Dict[str, Any] = {"_id": _object_id(doc_id)}
        if expected_version is not None:
            selector["version"] = expected_version

        changes = {k: v for k, v in fields.items() if k not in ("_id", "id", "version")}
        with _connectivity_guard("update"):
            result = await self.db[collection].update_one(
                selector,
                {"$set": changes, "$inc": {"version": 1}}
            )
            if result.matched_count == 0:
                exists = await self.db[collection].find_one({"_id": _object_id(doc_id)}, {"_id": 1})
                if not exists:
                    raise NotFoundError(f"Document not found: {collection}/{doc_id}")
                raise ConflictError(
                    f"Version conflict on {collection}/{doc_id} (expected {expected_version})"
                )
        await self._notify(collection)

    async def increment(self, collection: str, doc_id: str, field: str, amount: int) -> None:
        with _connectivity_guard("increment"):
            result = await self.db[collection].update_one(
                {"_id": _object_id(doc_id)},
                {"$inc": {field: amount}}
            )
        if result.matched_count == 0:
            raise NotFoundError(f"Document not found: {collection}/{doc_id}")
        await self._notify(collection)

    async def delete(self, collection: str, doc_id: str) -> None:
        with _connectivity_guard("delete"):
            await self.db[collection].delete_one({"_id": _object_id(doc_id)})
        await self._notify(collection)
