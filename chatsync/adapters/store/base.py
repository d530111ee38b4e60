"""
Remote document store interface.

The sync engines only talk to the backend through this contract: CRUD,
filtered/ordered queries, field transforms, bounded batch deletes, live
subscriptions and optimistic transactions. Query execution, indexing and
persistence belong to the backend.
"""

from __future__ import annotations

import asyncio
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Literal, Optional, Sequence, TypeVar

from chatsync.exceptions import SubscriptionError

T = TypeVar("T")

# Pseudo field name addressing the document id in filters.
DOCUMENT_ID = "__name__"

FilterOp = Literal["==", "!=", "<", "<=", ">", ">=", "array_contains", "in"]


@dataclass(frozen=True)
class Document:
    """A document snapshot: id plus a plain-dict copy of its fields."""

    id: str
    data: dict[str, Any]


@dataclass(frozen=True)
class FieldFilter:
    field: str
    op: FilterOp
    value: Any


@dataclass(frozen=True)
class OrderBy:
    field: str
    descending: bool = False


# -----------------------------------------------------------------------------
# Field transforms for update()
# -----------------------------------------------------------------------------


@dataclass(frozen=True)
class ArrayUnion:
    values: tuple[Any, ...]

    def __init__(self, *values: Any) -> None:
        object.__setattr__(self, "values", tuple(values))


@dataclass(frozen=True)
class ArrayRemove:
    values: tuple[Any, ...]

    def __init__(self, *values: Any) -> None:
        object.__setattr__(self, "values", tuple(values))


@dataclass(frozen=True)
class Increment:
    amount: int = 1


class _Sentinel:
    def __init__(self, name: str) -> None:
        self._name = name

    def __repr__(self) -> str:
        return self._name


SERVER_TIMESTAMP = _Sentinel("SERVER_TIMESTAMP")
DELETE_FIELD = _Sentinel("DELETE_FIELD")


# -----------------------------------------------------------------------------
# Live subscriptions
# -----------------------------------------------------------------------------


class _Closed:
    pass


_CLOSED = _Closed()


class Subscription:
    """
    Cancellable async stream of snapshots for one live query.

    Backends call push()/fail() from any thread; items are handed to the owning
    event loop with call_soon_threadsafe, so consumers only ever observe them on
    the loop. Iteration ends after cancel(); a backend failure is raised from
    the iterator as SubscriptionError.
    """

    def __init__(
        self,
        description: str = "",
        loop: Optional[asyncio.AbstractEventLoop] = None,
    ) -> None:
        self.description = description
        self._loop = loop or asyncio.get_running_loop()
        self._queue: asyncio.Queue[Any] = asyncio.Queue()
        self._lock = threading.Lock()
        self._cancelled = False
        self._on_cancel: Optional[Callable[[], None]] = None

    def bind(self, on_cancel: Callable[[], None]) -> None:
        """Attach the backend-side unsubscribe; runs at most once."""
        with self._lock:
            if not self._cancelled:
                self._on_cancel = on_cancel
                return
        on_cancel()

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    def push(self, documents: Sequence[Document]) -> None:
        self._put(list(documents))

    def fail(self, error: BaseException) -> None:
        if not isinstance(error, SubscriptionError):
            error = SubscriptionError(f"{self.description or 'subscription'} failed: {error}")
        self._put(error)

    def cancel(self) -> None:
        with self._lock:
            if self._cancelled:
                return
            self._cancelled = True
            on_cancel, self._on_cancel = self._on_cancel, None
        if on_cancel is not None:
            on_cancel()
        self._put(_CLOSED, force=True)

    def _put(self, item: Any, force: bool = False) -> None:
        if self._cancelled and not force:
            return
        if self._loop.is_closed():
            return
        try:
            running = asyncio.get_running_loop()
        except RuntimeError:
            running = None
        if running is self._loop:
            self._queue.put_nowait(item)
        else:
            self._loop.call_soon_threadsafe(self._queue.put_nowait, item)

    def __aiter__(self) -> "Subscription":
        return self

    async def __anext__(self) -> list[Document]:
        item = await self._queue.get()
        if item is _CLOSED or self._cancelled:
            raise StopAsyncIteration
        if isinstance(item, BaseException):
            raise item
        return item


# -----------------------------------------------------------------------------
# Transactions
# -----------------------------------------------------------------------------


class Transaction(ABC):
    """Read-modify-write unit. Reads must precede writes; writes apply all-or-nothing."""

    @abstractmethod
    async def get(self, collection: str, doc_id: str) -> Optional[Document]: ...

    @abstractmethod
    def set(self, collection: str, doc_id: str, fields: dict[str, Any]) -> None: ...

    @abstractmethod
    def update(self, collection: str, doc_id: str, fields: dict[str, Any]) -> None: ...

    @abstractmethod
    def delete(self, collection: str, doc_id: str) -> None: ...


@dataclass
class QuerySpec:
    """A query against one collection path (for logging and subscriptions)."""

    collection: str
    filters: Sequence[FieldFilter] = field(default_factory=tuple)
    order_by: Optional[OrderBy] = None
    limit: Optional[int] = None
    start_after: Any = None


class RemoteStore(ABC):
    """Contract every document store backend satisfies."""

    max_batch_size: int = 500

    @abstractmethod
    async def get(self, collection: str, doc_id: str) -> Optional[Document]: ...

    @abstractmethod
    async def query(
        self,
        collection: str,
        filters: Sequence[FieldFilter] = (),
        order_by: Optional[OrderBy] = None,
        limit: Optional[int] = None,
        start_after: Any = None,
    ) -> list[Document]: ...

    @abstractmethod
    async def create(
        self,
        collection: str,
        fields: dict[str, Any],
        doc_id: Optional[str] = None,
    ) -> str:
        """Write a document (overwriting when doc_id exists) and return its id."""
        ...

    @abstractmethod
    async def update(self, collection: str, doc_id: str, fields: dict[str, Any]) -> None:
        """Partial update. Keys may be dotted paths; values may be field transforms."""
        ...

    @abstractmethod
    async def delete(self, collection: str, doc_id: str) -> None: ...

    @abstractmethod
    async def batch_delete(self, collection: str, doc_ids: Sequence[str]) -> None:
        """Delete up to max_batch_size documents atomically."""
        ...

    @abstractmethod
    def subscribe(
        self,
        collection: str,
        filters: Sequence[FieldFilter] = (),
        order_by: Optional[OrderBy] = None,
        limit: Optional[int] = None,
    ) -> Subscription: ...

    @abstractmethod
    async def run_transaction(
        self, fn: Callable[[Transaction], Awaitable[T]]
    ) -> T: ...

    @abstractmethod
    def new_id(self) -> str:
        """Client-side id for a document that will be written later."""
        ...
