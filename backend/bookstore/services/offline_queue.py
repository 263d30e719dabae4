"""
Offline fallback for cart and wishlist mutations.

While the document store is unreachable, mutations are appended to a
per-user JSON file together with an optimistic local read model. On
reconnect the queued operations are replayed once, in FIFO order, against
the real store. Replay failures are logged and the replayed operations are
dropped from the queue regardless of outcome.
"""
import hashlib
import json
import logging
import secrets
from datetime import datetime
from pathlib import Path
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple

from pydantic import BaseModel, Field

from bookstore.utils.helpers import get_current_timestamp

logger = logging.getLogger(__name__)


class QueuedOperation(BaseModel):
    """A mutation waiting for the store to come back."""
    id: str = Field(default_factory=lambda: secrets.token_hex(8))
    user_id: str
    target: str  # cart | wishlist
    action: str  # add | update | remove | save_for_later | move_to_cart
    payload: Dict[str, Any] = Field(default_factory=dict)
    queued_at: datetime = Field(default_factory=get_current_timestamp)


ReplayHandler = Callable[[QueuedOperation], Awaitable[Any]]


class OfflineQueue:
    """Durable, file-backed queue and local read model, one file per user."""

    def __init__(self, directory: str):
        self.directory = Path(directory)

    def _path(self, user_id: str) -> Path:
        digest = hashlib.sha256(user_id.encode("utf-8")).hexdigest()
        return self.directory / f"offline_{digest}.json"

    def _load(self, user_id: str) -> Dict[str, Any]:
        path = self._path(user_id)
        if not path.exists():
            return {"user_id": user_id, "queue": [], "documents": {}}
        try:
            with open(path, "r", encoding="utf-8") as f:
                state = json.load(f)
        except (OSError, ValueError) as e:
            logger.error(f"Corrupt offline state for user {user_id}, starting fresh: {e}")
            return {"user_id": user_id, "queue": [], "documents": {}}
        if state.get("user_id") != user_id:
            logger.error(f"Offline state in {path.name} belongs to another user, ignoring it for {user_id}")
            return {"user_id": user_id, "queue": [], "documents": {}}
        return state

    def _save(self, user_id: str, state: Dict[str, Any]) -> None:
        self.directory.mkdir(parents=True, exist_ok=True)
        path = self._path(user_id)
        tmp_path = path.with_suffix(".tmp")
        with open(tmp_path, "w", encoding="utf-8") as f:
            json.dump(state, f, default=str)
        tmp_path.replace(path)

    # Queue

    def enqueue(self, operation: QueuedOperation) -> QueuedOperation:
        state = self._load(operation.user_id)
        state["queue"].append(operation.model_dump(mode="json"))
        self._save(operation.user_id, state)
        logger.info(
            f"Queued offline {operation.target} {operation.action} for user {operation.user_id}"
        )
        return operation

    def pending(self, user_id: str, target: Optional[str] = None) -> List[QueuedOperation]:
        operations = [QueuedOperation(**raw) for raw in self._load(user_id)["queue"]]
        if target:
            operations = [op for op in operations if op.target == target]
        return operations

    def users_with_pending(self, target: Optional[str] = None) -> List[str]:
        if not self.directory.exists():
            return []
        users = []
        for path in sorted(self.directory.glob("offline_*.json")):
            try:
                with open(path, "r", encoding="utf-8") as f:
                    state = json.load(f)
            except (OSError, ValueError) as e:
                logger.error(f"Skipping unreadable offline file {path}: {e}")
                continue
            queue = state.get("queue", [])
            if any(target is None or op.get("target") == target for op in queue):
                users.append(state.get("user_id"))
        return users

    def remove(self, user_id: str, operation_ids: List[str]) -> None:
        state = self._load(user_id)
        ids = set(operation_ids)
        state["queue"] = [op for op in state["queue"] if op.get("id") not in ids]
        self._save(user_id, state)

    async def replay(
        self,
        user_id: str,
        target: str,
        handler: ReplayHandler
    ) -> Tuple[int, int]:
        """
        Replay the user's queued operations for ``target`` in FIFO order.

        Each operation is attempted exactly once. Returns (replayed, failed);
        all attempted operations are removed afterwards either way.
        """
        operations = self.pending(user_id, target)
        if not operations:
            return 0, 0

        logger.info(f"Syncing {len(operations)} offline {target} changes for user {user_id}")
        replayed = 0
        failed = 0
        for operation in operations:
            try:
                await handler(operation)
                replayed += 1
            except Exception as e:
                failed += 1
                logger.error(
                    f"Error syncing offline {target} {operation.action} ({operation.id}) "
                    f"for user {user_id}: {e}"
                )

        self.remove(user_id, [op.id for op in operations])
        logger.info(f"Offline {target} sync completed for user {user_id}: {replayed} ok, {failed} failed")
        return replayed, failed

    # Local read model

    def get_local_documents(self, user_id: str, target: str) -> List[dict]:
        return list(self._load(user_id)["documents"].get(target, []))

    def save_local_documents(self, user_id: str, target: str, documents: List[dict]) -> None:
        state = self._load(user_id)
        state["documents"][target] = documents
        self._save(user_id, state)


class ConnectivityMonitor:
    """
    Tracks whether the document store is reachable and fires reconnect
    callbacks on an offline -> online transition.
    """

    def __init__(self, online: bool = True):
        self._online = online
        self._reconnect_callbacks: List[Callable[[], Awaitable[None]]] = []

    @property
    def is_online(self) -> bool:
        return self._online

    def on_reconnect(self, callback: Callable[[], Awaitable[None]]) -> None:
        self._reconnect_callbacks.append(callback)

    def mark_offline(self) -> None:
        if self._online:
            logger.warning("Document store went offline")
        self._online = False

    async def set_online(self, online: bool) -> None:
        if not online:
            self.mark_offline()
            return
        if self._online:
            return
        self._online = True
        logger.info("Document store back online, replaying offline changes")
        for callback in list(self._reconnect_callbacks):
            try:
                await callback()
            except Exception as e:
                logger.exception(f"Reconnect callback failed: {e}")
