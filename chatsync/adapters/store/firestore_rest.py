"""
Cloud Firestore REST document store.

Implements RemoteStore against the Firestore v1 REST API with requests. Calls
are blocking, so each one runs in a worker thread via asyncio.to_thread and
carries the signed-in user's ID token as a bearer token.

Writes go through :commit so field transforms (server timestamps, increments,
array union/remove) are applied by the backend. Transactions use
:beginTransaction and are retried when the commit is aborted. The REST API has
no streaming listen, so a subscription polls its query and pushes a snapshot
whenever the result changes.
"""

from __future__ import annotations

import asyncio
import re
import uuid
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Optional, Sequence, TypeVar

import requests

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
from chatsync.config import Settings, get_settings
from chatsync.exceptions import (
    ChatSyncError,
    DocumentNotFoundError,
    InvalidInputError,
    NetworkError,
    NotAuthorizedError,
    RemoteStoreError,
    TransactionConflictError,
)
from chatsync.infra.logging_config import get_logger

logger = get_logger("firestore_store")

T = TypeVar("T")

TokenProvider = Callable[[], Awaitable[Optional[str]]]

MAX_TRANSACTION_ATTEMPTS = 5

_OPERATORS = {
    "==": "EQUAL",
    "!=": "NOT_EQUAL",
    "<": "LESS_THAN",
    "<=": "LESS_THAN_OR_EQUAL",
    ">": "GREATER_THAN",
    ">=": "GREATER_THAN_OR_EQUAL",
    "array_contains": "ARRAY_CONTAINS",
    "in": "IN",
}

_SIMPLE_SEGMENT = re.compile(r"^[A-Za-z_][A-Za-z_0-9]*$")


# -----------------------------------------------------------------------------
# Value codec
# -----------------------------------------------------------------------------


def format_timestamp(value: datetime) -> str:
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat(timespec="microseconds").replace("+00:00", "Z")


def parse_timestamp(text: str) -> datetime:
    """Parse an RFC 3339 timestamp; Firestore may send up to nanosecond precision."""
    text = text.replace("Z", "+00:00")
    if "." in text:
        head, rest = text.split(".", 1)
        digits = re.match(r"\d*", rest).group(0)
        text = f"{head}.{digits[:6].ljust(6, '0')}{rest[len(digits):]}"
    return datetime.fromisoformat(text)


def encode_value(value: Any) -> dict[str, Any]:
    if value is None:
        return {"nullValue": None}
    if isinstance(value, bool):
        return {"booleanValue": value}
    if isinstance(value, int):
        return {"integerValue": str(value)}
    if isinstance(value, float):
        return {"doubleValue": value}
    if isinstance(value, datetime):
        return {"timestampValue": format_timestamp(value)}
    if isinstance(value, str):
        return {"stringValue": value}
    if isinstance(value, (list, tuple)):
        return {"arrayValue": {"values": [encode_value(v) for v in value]}}
    if isinstance(value, dict):
        return {"mapValue": {"fields": {k: encode_value(v) for k, v in value.items()}}}
    raise InvalidInputError(f"Cannot store a value of type {type(value).__name__}")


def decode_value(value: dict[str, Any]) -> Any:
    if "nullValue" in value:
        return None
    if "booleanValue" in value:
        return bool(value["booleanValue"])
    if "integerValue" in value:
        return int(value["integerValue"])
    if "doubleValue" in value:
        return float(value["doubleValue"])
    if "timestampValue" in value:
        return parse_timestamp(value["timestampValue"])
    if "stringValue" in value:
        return value["stringValue"]
    if "referenceValue" in value:
        return value["referenceValue"].rsplit("/", 1)[-1]
    if "arrayValue" in value:
        return [decode_value(v) for v in value["arrayValue"].get("values", [])]
    if "mapValue" in value:
        return decode_fields(value["mapValue"].get("fields", {}))
    return None


def decode_fields(fields: dict[str, Any]) -> dict[str, Any]:
    return {key: decode_value(value) for key, value in fields.items()}


def field_path(parts: Sequence[str]) -> str:
    """Join path segments, backquoting the ones Firestore cannot take bare."""
    quoted = []
    for part in parts:
        if _SIMPLE_SEGMENT.match(part):
            quoted.append(part)
        else:
            quoted.append("`" + part.replace("\\", "\\\\").replace("`", "\\`") + "`")
    return ".".join(quoted)


def _is_transform(value: Any) -> bool:
    return value is SERVER_TIMESTAMP or isinstance(value, (Increment, ArrayUnion, ArrayRemove))


def _transform(path: str, value: Any) -> Optional[dict[str, Any]]:
    if value is SERVER_TIMESTAMP:
        return {"fieldPath": path, "setToServerValue": "REQUEST_TIME"}
    if isinstance(value, Increment):
        return {"fieldPath": path, "increment": encode_value(value.amount)}
    if isinstance(value, ArrayUnion):
        return {"fieldPath": path, "appendMissingElements": encode_value(list(value.values))["arrayValue"]}
    if isinstance(value, ArrayRemove):
        return {"fieldPath": path, "removeAllFromArray": encode_value(list(value.values))["arrayValue"]}
    return None


def _place(
    target: dict[str, Any],
    parts: list[str],
    value: Any,
    transforms: list[dict[str, Any]],
    prefix: tuple[str, ...] = (),
) -> None:
    head, rest = parts[0], parts[1:]
    path = (*prefix, head)
    if rest:
        node = target.setdefault(head, {"mapValue": {"fields": {}}})
        _place(node["mapValue"]["fields"], rest, value, transforms, path)
        return
    if value is DELETE_FIELD:
        return
    transform = _transform(field_path(path), value)
    if transform is not None:
        transforms.append(transform)
        return
    if isinstance(value, dict):
        node = {"mapValue": {"fields": {}}}
        target[head] = node
        for key, item in value.items():
            _place(node["mapValue"]["fields"], [key], item, transforms, path)
        return
    target[head] = encode_value(value)


def _error_message(body: Any) -> str:
    if isinstance(body, list) and body:
        body = body[0]
    if isinstance(body, dict):
        error = body.get("error") or {}
        if isinstance(error, dict):
            return str(error.get("message", ""))
    return ""


def _error_status(body: Any) -> str:
    if isinstance(body, list) and body:
        body = body[0]
    if isinstance(body, dict) and isinstance(body.get("error"), dict):
        return str(body["error"].get("status", ""))
    return ""


class FirestoreRestStore(RemoteStore):
    """RemoteStore backed by the Cloud Firestore REST API."""

    def __init__(
        self,
        settings: Optional[Settings] = None,
        token_provider: Optional[TokenProvider] = None,
        http: Optional[requests.Session] = None,
    ) -> None:
        self._settings = settings or get_settings()
        if not self._settings.firebase_project_id:
            raise ValueError("FIREBASE_PROJECT_ID is required for the Firestore store")
        self.max_batch_size = self._settings.batch_delete_limit
        self.token_provider = token_provider
        self._http = http or requests.Session()
        self._database = (
            f"projects/{self._settings.firebase_project_id}"
            f"/databases/{self._settings.firestore_database}/documents"
        )
        self._root_url = f"{self._settings.firestore_base_url.rstrip('/')}/{self._database}"

    # ------------------------------------------------------------------
    # HTTP
    # ------------------------------------------------------------------

    def _send(
        self,
        method: str,
        url: str,
        token: Optional[str],
        *,
        json: Any = None,
        params: Optional[dict[str, Any]] = None,
    ) -> Any:
        headers = {"Authorization": f"Bearer {token}"} if token else {}
        try:
            resp = self._http.request(
                method,
                url,
                json=json,
                params=params,
                headers=headers,
                timeout=self._settings.http_timeout,
            )
        except requests.Timeout as e:
            raise NetworkError("The request timed out. Please try again.") from e
        except requests.RequestException as e:
            raise NetworkError() from e

        try:
            body = resp.json()
        except ValueError:
            body = {}

        if resp.status_code == 200:
            return body
        message = _error_message(body)
        logger.warning("Store request %s %s failed: HTTP %s %s", method, url, resp.status_code, message)
        if resp.status_code in (401, 403):
            raise NotAuthorizedError()
        if resp.status_code == 404:
            raise DocumentNotFoundError()
        if resp.status_code == 409 or _error_status(body) == "ABORTED":
            raise TransactionConflictError()
        if resp.status_code == 429 or resp.status_code >= 500:
            raise NetworkError()
        raise RemoteStoreError(message or None)

    async def _call(
        self,
        method: str,
        url: str,
        *,
        json: Any = None,
        params: Optional[dict[str, Any]] = None,
    ) -> Any:
        token = await self.token_provider() if self.token_provider is not None else None
        return await asyncio.to_thread(self._send, method, url, token, json=json, params=params)

    # ------------------------------------------------------------------
    # Names and request bodies
    # ------------------------------------------------------------------

    def _name(self, collection: str, doc_id: str) -> str:
        return f"{self._database}/{collection}/{doc_id}"

    def _document_url(self, collection: str, doc_id: str) -> str:
        return f"{self._root_url}/{collection}/{doc_id}"

    def _document(self, body: dict[str, Any]) -> Document:
        return Document(id=body["name"].rsplit("/", 1)[-1], data=decode_fields(body.get("fields", {})))

    def _set_write(self, collection: str, doc_id: str, fields: dict[str, Any]) -> dict[str, Any]:
        document: dict[str, Any] = {}
        transforms: list[dict[str, Any]] = []
        for key, value in fields.items():
            _place(document, key.split("."), value, transforms)
        write: dict[str, Any] = {"update": {"name": self._name(collection, doc_id), "fields": document}}
        if transforms:
            write["updateTransforms"] = transforms
        return write

    def _update_write(self, collection: str, doc_id: str, fields: dict[str, Any]) -> dict[str, Any]:
        document: dict[str, Any] = {}
        transforms: list[dict[str, Any]] = []
        mask: list[str] = []
        for key, value in fields.items():
            parts = key.split(".")
            if not _is_transform(value):
                mask.append(field_path(parts))
            _place(document, parts, value, transforms)
        write: dict[str, Any] = {
            "update": {"name": self._name(collection, doc_id), "fields": document},
            "updateMask": {"fieldPaths": mask},
            "currentDocument": {"exists": True},
        }
        if transforms:
            write["updateTransforms"] = transforms
        return write

    def _filter(self, collection: str, flt: FieldFilter) -> dict[str, Any]:
        if flt.op not in _OPERATORS:
            raise InvalidInputError(f"Unsupported filter operator: {flt.op}")
        if flt.field == DOCUMENT_ID:
            if flt.op == "in":
                value: dict[str, Any] = {
                    "arrayValue": {
                        "values": [{"referenceValue": self._name(collection, v)} for v in flt.value]
                    }
                }
            else:
                value = {"referenceValue": self._name(collection, flt.value)}
        else:
            value = encode_value(list(flt.value) if flt.op == "in" else flt.value)
        path = DOCUMENT_ID if flt.field == DOCUMENT_ID else field_path(flt.field.split("."))
        return {
            "fieldFilter": {
                "field": {"fieldPath": path},
                "op": _OPERATORS[flt.op],
                "value": value,
            }
        }

    def _structured_query(self, spec: QuerySpec) -> tuple[str, dict[str, Any]]:
        parent, _, collection_id = spec.collection.rpartition("/")
        url = f"{self._root_url}/{parent}:runQuery" if parent else f"{self._root_url}:runQuery"
        query: dict[str, Any] = {"from": [{"collectionId": collection_id}]}
        filters = [self._filter(spec.collection, f) for f in spec.filters]
        if len(filters) == 1:
            query["where"] = filters[0]
        elif filters:
            query["where"] = {"compositeFilter": {"op": "AND", "filters": filters}}
        if spec.order_by is not None:
            query["orderBy"] = [
                {
                    "field": {"fieldPath": field_path(spec.order_by.field.split("."))},
                    "direction": "DESCENDING" if spec.order_by.descending else "ASCENDING",
                }
            ]
            if spec.start_after is not None:
                query["startAt"] = {"values": [encode_value(spec.start_after)], "before": False}
        if spec.limit is not None:
            query["limit"] = spec.limit
        return url, {"structuredQuery": query}

    async def _run_query(self, spec: QuerySpec) -> list[Document]:
        url, body = self._structured_query(spec)
        rows = await self._call("POST", url, json=body)
        return [self._document(row["document"]) for row in rows or [] if "document" in row]

    async def _get(self, collection: str, doc_id: str, transaction: Optional[str] = None) -> Optional[Document]:
        params = {"transaction": transaction} if transaction else None
        try:
            body = await self._call("GET", self._document_url(collection, doc_id), params=params)
        except DocumentNotFoundError:
            return None
        return self._document(body)

    async def _commit(self, writes: list[dict[str, Any]], transaction: Optional[str] = None) -> None:
        body: dict[str, Any] = {"writes": writes}
        if transaction:
            body["transaction"] = transaction
        await self._call("POST", f"{self._root_url}:commit", json=body)

    # ------------------------------------------------------------------
    # RemoteStore
    # ------------------------------------------------------------------

    def new_id(self) -> str:
        return uuid.uuid4().hex[:20]

    async def get(self, collection: str, doc_id: str) -> Optional[Document]:
        return await self._get(collection, doc_id)

    async def query(
        self,
        collection: str,
        filters: Sequence[FieldFilter] = (),
        order_by: Optional[OrderBy] = None,
        limit: Optional[int] = None,
        start_after: Any = None,
    ) -> list[Document]:
        return await self._run_query(QuerySpec(collection, tuple(filters), order_by, limit, start_after))

    async def create(
        self,
        collection: str,
        fields: dict[str, Any],
        doc_id: Optional[str] = None,
    ) -> str:
        doc_id = doc_id or self.new_id()
        await self._commit([self._set_write(collection, doc_id, fields)])
        return doc_id

    async def update(self, collection: str, doc_id: str, fields: dict[str, Any]) -> None:
        try:
            await self._commit([self._update_write(collection, doc_id, fields)])
        except DocumentNotFoundError as e:
            raise DocumentNotFoundError(f"No document {collection}/{doc_id}") from e

    async def delete(self, collection: str, doc_id: str) -> None:
        await self._commit([{"delete": self._name(collection, doc_id)}])

    async def batch_delete(self, collection: str, doc_ids: Sequence[str]) -> None:
        if len(doc_ids) > self.max_batch_size:
            raise InvalidInputError(
                f"Batch of {len(doc_ids)} exceeds limit of {self.max_batch_size}"
            )
        if not doc_ids:
            return
        await self._commit([{"delete": self._name(collection, doc_id)} for doc_id in doc_ids])

    def subscribe(
        self,
        collection: str,
        filters: Sequence[FieldFilter] = (),
        order_by: Optional[OrderBy] = None,
        limit: Optional[int] = None,
    ) -> Subscription:
        spec = QuerySpec(collection, tuple(filters), order_by, limit)
        subscription = Subscription(description=f"watch {collection}")
        task = asyncio.get_running_loop().create_task(
            self._poll(spec, subscription), name=f"poll-{collection}"
        )
        subscription.bind(task.cancel)
        return subscription

    async def _poll(self, spec: QuerySpec, subscription: Subscription) -> None:
        last: Optional[list[tuple[str, dict[str, Any]]]] = None
        while not subscription.cancelled:
            try:
                documents = await self._run_query(spec)
            except ChatSyncError as e:
                logger.warning("Polling %s failed: %s", spec.collection, e)
                subscription.fail(e)
                return
            fingerprint = [(d.id, d.data) for d in documents]
            if fingerprint != last:
                last = fingerprint
                subscription.push(documents)
            await asyncio.sleep(self._settings.store_poll_interval_seconds)

    async def run_transaction(self, fn: Callable[[Transaction], Awaitable[T]]) -> T:
        for attempt in range(1, MAX_TRANSACTION_ATTEMPTS + 1):
            begun = await self._call("POST", f"{self._root_url}:beginTransaction", json={})
            txn = _RestTransaction(self, begun["transaction"])
            try:
                result = await fn(txn)
            except Exception:
                await self._rollback(txn.transaction_id)
                raise
            try:
                await self._commit(txn.writes, transaction=txn.transaction_id)
            except TransactionConflictError:
                logger.debug("Transaction attempt %d was aborted; retrying", attempt)
                continue
            return result
        raise TransactionConflictError()

    async def _rollback(self, transaction_id: str) -> None:
        try:
            await self._call("POST", f"{self._root_url}:rollback", json={"transaction": transaction_id})
        except ChatSyncError as e:
            logger.warning("Transaction rollback failed: %s", e)


class _RestTransaction(Transaction):
    def __init__(self, store: FirestoreRestStore, transaction_id: str) -> None:
        self._store = store
        self.transaction_id = transaction_id
        self.writes: list[dict[str, Any]] = []

    async def get(self, collection: str, doc_id: str) -> Optional[Document]:
        if self.writes:
            raise InvalidInputError("Transaction reads must happen before writes")
        return await self._store._get(collection, doc_id, transaction=self.transaction_id)

    def set(self, collection: str, doc_id: str, fields: dict[str, Any]) -> None:
        self.writes.append(self._store._set_write(collection, doc_id, fields))

    def update(self, collection: str, doc_id: str, fields: dict[str, Any]) -> None:
        self.writes.append(self._store._update_write(collection, doc_id, fields))

    def delete(self, collection: str, doc_id: str) -> None:
        self.writes.append({"delete": self._store._name(collection, doc_id)})
