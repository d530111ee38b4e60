"""
In-process document store.

Implements the full RemoteStore contract against plain dicts: filtered and
ordered queries, dotted-path updates with field transforms, live subscriptions
that re-evaluate on every write, and optimistic transactions that retry when a
document they read changed before commit. Used for local development and as
the backend in tests.
"""

from __future__ import annotations

import asyncio
import copy
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Awaitable, Callable, Optional, Sequence, TypeVar

from chatsync.adapters.store.base import (
    DELETE_FIELD,
    DOCUMENT_ID,
    SERVER_TIMESTAMP,
    ArrayRemove,
    ArrayUnion,
    Document,
    FieldFilter,
    Increment,
    OrderBy,
    QuerySpec,
    RemoteStore,
    Subscription,
    Transaction,
)
from chatsync.exceptions import (
    DocumentNotFoundError,
    InvalidInputError,
    TransactionConflictError,
)
from chatsync.infra.logging_config import get_logger

logger = get_logger("memory_store")

T = TypeVar("T")

MAX_TRANSACTION_ATTEMPTS = 5


@dataclass
class _Stored:
    data: dict[str, Any]
    version: int = 1


@dataclass
class _Watch:
    spec: QuerySpec
    subscription: Subscription
    last: Optional[list[tuple[str, dict[str, Any]]]] = None


@dataclass
class _PendingWrite:
    op: str
    collection: str
    doc_id: str
    fields: dict[str, Any] = field(default_factory=dict)


def _get_path(data: dict[str, Any], path: str) -> Any:
    current: Any = data
    for part in path.split("."):
        if not isinstance(current, dict) or part not in current:
            return None
        current = current[part]
    return current


def _sort_key(value: Any) -> tuple[int, Any]:
    # None sorts before every concrete value, like a missing field.
    if value is None:
        return (0, 0)
    if isinstance(value, datetime):
        return (1, value.timestamp())
    return (1, value)


def _matches(doc_id: str, data: dict[str, Any], flt: FieldFilter) -> bool:
    actual = doc_id if flt.field == DOCUMENT_ID else _get_path(data, flt.field)
    if flt.op == "==":
        return actual == flt.value
    if flt.op == "!=":
        return actual != flt.value
    if flt.op == "array_contains":
        return isinstance(actual, list) and flt.value in actual
    if flt.op == "in":
        return actual in flt.value
    if actual is None:
        return False
    if flt.op == "<":
        return actual < flt.value
    if flt.op == "<=":
        return actual <= flt.value
    if flt.op == ">":
        return actual > flt.value
    if flt.op == ">=":
        return actual >= flt.value
    raise InvalidInputError(f"Unsupported filter operator: {flt.op}")


class InMemoryRemoteStore(RemoteStore):
    def __init__(self, latency: float = 0.0, max_batch_size: int = 500) -> None:
        self.latency = latency
        self.max_batch_size = max_batch_size
        self._collections: dict[str, dict[str, _Stored]] = {}
        self._watches: dict[str, list[_Watch]] = {}
        self._last_server_time: Optional[datetime] = None
        self._commit_lock = asyncio.Lock()

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    async def _suspend(self) -> None:
        # Every call is a suspension point, like a network round trip.
        await asyncio.sleep(self.latency)

    def _server_now(self) -> datetime:
        now = datetime.now(timezone.utc)
        if self._last_server_time is not None and now <= self._last_server_time:
            now = self._last_server_time + timedelta(microseconds=1)
        self._last_server_time = now
        return now

    def _resolve_value(self, value: Any) -> Any:
        if value is SERVER_TIMESTAMP:
            return self._server_now()
        if isinstance(value, dict):
            return {k: self._resolve_value(v) for k, v in value.items()}
        return copy.deepcopy(value)

    def _apply_update(self, data: dict[str, Any], fields: dict[str, Any]) -> None:
        for path, value in fields.items():
            parts = path.split(".")
            target = data
            for part in parts[:-1]:
                nested = target.get(part)
                if not isinstance(nested, dict):
                    nested = {}
                    target[part] = nested
                target = nested
            leaf = parts[-1]
            current = target.get(leaf)
            if value is DELETE_FIELD:
                target.pop(leaf, None)
            elif isinstance(value, ArrayUnion):
                items = list(current) if isinstance(current, list) else []
                for item in value.values:
                    if item not in items:
                        items.append(item)
                target[leaf] = items
            elif isinstance(value, ArrayRemove):
                items = list(current) if isinstance(current, list) else []
                target[leaf] = [item for item in items if item not in value.values]
            elif isinstance(value, Increment):
                base = current if isinstance(current, (int, float)) else 0
                target[leaf] = base + value.amount
            else:
                target[leaf] = self._resolve_value(value)

    def _docs(self, collection: str) -> dict[str, _Stored]:
        return self._collections.setdefault(collection, {})

    def _run_query(self, spec: QuerySpec) -> list[Document]:
        rows = [
            (doc_id, stored.data)
            for doc_id, stored in self._docs(spec.collection).items()
            if all(_matches(doc_id, stored.data, f) for f in spec.filters)
        ]
        if spec.order_by is not None:
            order = spec.order_by
            rows.sort(
                key=lambda row: _sort_key(_get_path(row[1], order.field)),
                reverse=order.descending,
            )
            if spec.start_after is not None:
                cursor = _sort_key(spec.start_after)
                if order.descending:
                    rows = [r for r in rows if _sort_key(_get_path(r[1], order.field)) < cursor]
                else:
                    rows = [r for r in rows if _sort_key(_get_path(r[1], order.field)) > cursor]
        if spec.limit is not None:
            rows = rows[: spec.limit]
        return [Document(id=doc_id, data=copy.deepcopy(data)) for doc_id, data in rows]

    def _notify(self, collection: str) -> None:
        for watch in list(self._watches.get(collection, [])):
            self._emit(watch)

    def _emit(self, watch: _Watch) -> None:
        documents = self._run_query(watch.spec)
        fingerprint = [(d.id, d.data) for d in documents]
        if fingerprint == watch.last:
            return
        watch.last = fingerprint
        watch.subscription.push(documents)

    # ------------------------------------------------------------------
    # RemoteStore
    # ------------------------------------------------------------------

    def new_id(self) -> str:
        return uuid.uuid4().hex[:20]

    async def get(self, collection: str, doc_id: str) -> Optional[Document]:
        await self._suspend()
        stored = self._docs(collection).get(doc_id)
        if stored is None:
            return None
        return Document(id=doc_id, data=copy.deepcopy(stored.data))

    async def query(
        self,
        collection: str,
        filters: Sequence[FieldFilter] = (),
        order_by: Optional[OrderBy] = None,
        limit: Optional[int] = None,
        start_after: Any = None,
    ) -> list[Document]:
        await self._suspend()
        return self._run_query(
            QuerySpec(collection, tuple(filters), order_by, limit, start_after)
        )

    async def create(
        self,
        collection: str,
        fields: dict[str, Any],
        doc_id: Optional[str] = None,
    ) -> str:
        await self._suspend()
        doc_id = doc_id or self.new_id()
        self._write(collection, doc_id, fields)
        self._notify(collection)
        return doc_id

    async def update(self, collection: str, doc_id: str, fields: dict[str, Any]) -> None:
        await self._suspend()
        self._modify(collection, doc_id, fields)
        self._notify(collection)

    async def delete(self, collection: str, doc_id: str) -> None:
        await self._suspend()
        if self._docs(collection).pop(doc_id, None) is not None:
            self._notify(collection)

    async def batch_delete(self, collection: str, doc_ids: Sequence[str]) -> None:
        if len(doc_ids) > self.max_batch_size:
            raise InvalidInputError(
                f"Batch of {len(doc_ids)} exceeds limit of {self.max_batch_size}"
            )
        await self._suspend()
        docs = self._docs(collection)
        for doc_id in doc_ids:
            docs.pop(doc_id, None)
        self._notify(collection)

    def subscribe(
        self,
        collection: str,
        filters: Sequence[FieldFilter] = (),
        order_by: Optional[OrderBy] = None,
        limit: Optional[int] = None,
    ) -> Subscription:
        spec = QuerySpec(collection, tuple(filters), order_by, limit)
        subscription = Subscription(description=f"watch {collection}")
        watch = _Watch(spec=spec, subscription=subscription)
        self._watches.setdefault(collection, []).append(watch)

        def unsubscribe() -> None:
            watches = self._watches.get(collection, [])
            if watch in watches:
                watches.remove(watch)

        subscription.bind(unsubscribe)
        self._emit(watch)
        return subscription

    def active_subscription_count(self, collection: Optional[str] = None) -> int:
        if collection is not None:
            return len(self._watches.get(collection, []))
        return sum(len(w) for w in self._watches.values())

    def fail_subscriptions(self, collection: str, error: BaseException) -> None:
        """Simulate the backend dropping every live query on a collection."""
        for watch in list(self._watches.get(collection, [])):
            watch.subscription.fail(error)

    async def run_transaction(self, fn: Callable[[Transaction], Awaitable[T]]) -> T:
        for attempt in range(1, MAX_TRANSACTION_ATTEMPTS + 1):
            txn = _MemoryTransaction(self)
            result = await fn(txn)
            async with self._commit_lock:
                if txn.is_stale():
                    logger.debug("Transaction attempt %d saw a concurrent write; retrying", attempt)
                    continue
                txn.apply()
            return result
        raise TransactionConflictError()

    # ------------------------------------------------------------------
    # Raw writes (no suspension, no notification)
    # ------------------------------------------------------------------

    def _write(self, collection: str, doc_id: str, fields: dict[str, Any]) -> None:
        docs = self._docs(collection)
        data: dict[str, Any] = {}
        self._apply_update(data, fields)
        previous = docs.get(doc_id)
        docs[doc_id] = _Stored(data=data, version=(previous.version + 1) if previous else 1)

    def _modify(self, collection: str, doc_id: str, fields: dict[str, Any]) -> None:
        stored = self._docs(collection).get(doc_id)
        if stored is None:
            raise DocumentNotFoundError(f"No document {collection}/{doc_id}")
        self._apply_update(stored.data, fields)
        stored.version += 1

    def _version(self, collection: str, doc_id: str) -> int:
        stored = self._docs(collection).get(doc_id)
        return stored.version if stored else 0


class _MemoryTransaction(Transaction):
    def __init__(self, store: InMemoryRemoteStore) -> None:
        self._store = store
        self._reads: dict[tuple[str, str], int] = {}
        self._writes: list[_PendingWrite] = []

    async def get(self, collection: str, doc_id: str) -> Optional[Document]:
        if self._writes:
            raise InvalidInputError("Transaction reads must happen before writes")
        self._reads[(collection, doc_id)] = self._store._version(collection, doc_id)
        return await self._store.get(collection, doc_id)

    def set(self, collection: str, doc_id: str, fields: dict[str, Any]) -> None:
        self._writes.append(_PendingWrite("set", collection, doc_id, dict(fields)))

    def update(self, collection: str, doc_id: str, fields: dict[str, Any]) -> None:
        self._writes.append(_PendingWrite("update", collection, doc_id, dict(fields)))

    def delete(self, collection: str, doc_id: str) -> None:
        self._writes.append(_PendingWrite("delete", collection, doc_id))

    def is_stale(self) -> bool:
        return any(
            self._store._version(collection, doc_id) != version
            for (collection, doc_id), version in self._reads.items()
        )

    def apply(self) -> None:
        for write in self._writes:
            if write.op == "update" and not self._store._docs(write.collection).get(write.doc_id):
                raise DocumentNotFoundError(f"No document {write.collection}/{write.doc_id}")
        touched: set[str] = set()
        for write in self._writes:
            if write.op == "set":
                self._store._write(write.collection, write.doc_id, write.fields)
            elif write.op == "update":
                self._store._modify(write.collection, write.doc_id, write.fields)
            else:
                self._store._docs(write.collection).pop(write.doc_id, None)
            touched.add(write.collection)
        for collection in touched:
            self._store._notify(collection)
