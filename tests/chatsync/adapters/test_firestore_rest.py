"""Tests for FirestoreRestStore with a mocked requests session."""

import asyncio
from datetime import datetime, timezone
from unittest.mock import AsyncMock, MagicMock

import pytest
import requests

from chatsync.adapters.store.base import (
    DELETE_FIELD,
    DOCUMENT_ID,
    SERVER_TIMESTAMP,
    ArrayRemove,
    FieldFilter,
    Increment,
    OrderBy,
)
from chatsync.adapters.store.firestore_rest import (
    FirestoreRestStore,
    decode_fields,
    encode_value,
    parse_timestamp,
)
from chatsync.config import Settings
from chatsync.exceptions import (
    DocumentNotFoundError,
    InvalidInputError,
    NetworkError,
    NotAuthorizedError,
    SubscriptionError,
    TransactionConflictError,
)

ROOT = "https://firestore.googleapis.com/v1/projects/demo/databases/(default)/documents"
NAME_PREFIX = "projects/demo/databases/(default)/documents"


def _response(status_code, body):
    resp = MagicMock()
    resp.status_code = status_code
    resp.json.return_value = body
    return resp


def _doc(collection, doc_id, **fields):
    return {
        "name": f"{NAME_PREFIX}/{collection}/{doc_id}",
        "fields": {key: encode_value(value) for key, value in fields.items()},
    }


@pytest.fixture
def http():
    return MagicMock()


@pytest.fixture
def store(http, tmp_path):
    settings = Settings(
        firebase_project_id="demo",
        session_file=str(tmp_path / "s.json"),
        store_poll_interval_seconds=0.01,
        batch_delete_limit=3,
    )
    return FirestoreRestStore(settings=settings, token_provider=AsyncMock(return_value="id-token"), http=http)


def test_requires_project_id(tmp_path):
    with pytest.raises(ValueError):
        FirestoreRestStore(settings=Settings(session_file=str(tmp_path / "s.json")), http=MagicMock())


def test_document_fields_decode_back_to_plain_values():
    sent = datetime(2024, 5, 1, 12, 30, 15, 250000, tzinfo=timezone.utc)
    fields = {
        "content": "hi",
        "count": 3,
        "isOnline": False,
        "timestamp": sent,
        "participants": ["a", "b"],
        "unreadCount": {"a": 0, "b": 2},
        "replyToId": None,
    }

    encoded = {key: encode_value(value) for key, value in fields.items()}

    assert encoded["count"] == {"integerValue": "3"}
    assert encoded["isOnline"] == {"booleanValue": False}
    assert encoded["timestamp"] == {"timestampValue": "2024-05-01T12:30:15.250000Z"}
    assert decode_fields(encoded) == fields


def test_nanosecond_timestamps_are_truncated():
    parsed = parse_timestamp("2024-05-01T12:30:15.123456789Z")
    assert parsed == datetime(2024, 5, 1, 12, 30, 15, 123456, tzinfo=timezone.utc)


@pytest.mark.asyncio
async def test_get_sends_bearer_token_and_decodes(store, http):
    http.request.return_value = _response(200, _doc("users", "u1", displayName="Ada"))

    doc = await store.get("users", "u1")

    assert doc.id == "u1"
    assert doc.data == {"displayName": "Ada"}
    args, kwargs = http.request.call_args
    assert args == ("GET", f"{ROOT}/users/u1")
    assert kwargs["headers"] == {"Authorization": "Bearer id-token"}
    assert kwargs["timeout"] == store._settings.http_timeout


@pytest.mark.asyncio
async def test_missing_document_is_none(store, http):
    http.request.return_value = _response(404, {"error": {"message": "not found", "status": "NOT_FOUND"}})

    assert await store.get("users", "nobody") is None


@pytest.mark.asyncio
async def test_update_masks_plain_fields_and_sends_transforms(store, http):
    http.request.return_value = _response(200, {"writeResults": []})

    await store.update(
        "conversations",
        "c1",
        {
            "lastMessage": "hi",
            "lastMessageAt": SERVER_TIMESTAMP,
            "unreadCount.user-2": Increment(1),
            "typingUsers": ArrayRemove("u1"),
            "obsolete": DELETE_FIELD,
        },
    )

    args, kwargs = http.request.call_args
    assert args == ("POST", f"{ROOT}:commit")
    write = kwargs["json"]["writes"][0]
    assert write["update"] == {
        "name": f"{NAME_PREFIX}/conversations/c1",
        "fields": {"lastMessage": {"stringValue": "hi"}},
    }
    assert write["updateMask"] == {"fieldPaths": ["lastMessage", "obsolete"]}
    assert write["currentDocument"] == {"exists": True}
    assert write["updateTransforms"] == [
        {"fieldPath": "lastMessageAt", "setToServerValue": "REQUEST_TIME"},
        {"fieldPath": "unreadCount.`user-2`", "increment": {"integerValue": "1"}},
        {"fieldPath": "typingUsers", "removeAllFromArray": {"values": [{"stringValue": "u1"}]}},
    ]


@pytest.mark.asyncio
async def test_update_of_missing_document_raises(store, http):
    http.request.return_value = _response(404, {"error": {"message": "No document to update"}})

    with pytest.raises(DocumentNotFoundError):
        await store.update("users", "gone", {"isOnline": False})


@pytest.mark.asyncio
async def test_create_overwrites_without_mask(store, http):
    http.request.return_value = _response(200, {"writeResults": []})

    doc_id = await store.create("invitations", {"code": "ABC123", "createdAt": SERVER_TIMESTAMP})

    write = http.request.call_args.kwargs["json"]["writes"][0]
    assert write["update"]["name"] == f"{NAME_PREFIX}/invitations/{doc_id}"
    assert write["update"]["fields"] == {"code": {"stringValue": "ABC123"}}
    assert "updateMask" not in write
    assert write["updateTransforms"] == [{"fieldPath": "createdAt", "setToServerValue": "REQUEST_TIME"}]


@pytest.mark.asyncio
async def test_query_on_subcollection_builds_structured_query(store, http):
    cursor = datetime(2024, 1, 1, tzinfo=timezone.utc)
    http.request.return_value = _response(
        200,
        [
            {"document": _doc("conversations/c1/messages", "m2", content="two")},
            {"readTime": "2024-01-01T00:00:00Z"},
        ],
    )

    docs = await store.query(
        "conversations/c1/messages",
        [FieldFilter("senderId", "==", "u1"), FieldFilter(DOCUMENT_ID, "in", ["m1", "m2"])],
        order_by=OrderBy("timestamp", descending=True),
        limit=50,
        start_after=cursor,
    )

    assert [(d.id, d.data) for d in docs] == [("m2", {"content": "two"})]
    args, kwargs = http.request.call_args
    assert args == ("POST", f"{ROOT}/conversations/c1:runQuery")
    query = kwargs["json"]["structuredQuery"]
    assert query["from"] == [{"collectionId": "messages"}]
    first, second = query["where"]["compositeFilter"]["filters"]
    assert first["fieldFilter"]["op"] == "EQUAL"
    assert second["fieldFilter"]["field"] == {"fieldPath": "__name__"}
    assert second["fieldFilter"]["value"]["arrayValue"]["values"][0] == {
        "referenceValue": f"{NAME_PREFIX}/conversations/c1/messages/m1"
    }
    assert query["orderBy"] == [{"field": {"fieldPath": "timestamp"}, "direction": "DESCENDING"}]
    assert query["startAt"] == {"values": [encode_value(cursor)], "before": False}
    assert query["limit"] == 50


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "status,error",
    [(401, NotAuthorizedError), (403, NotAuthorizedError), (503, NetworkError), (429, NetworkError)],
)
async def test_http_errors_are_mapped(store, http, status, error):
    http.request.return_value = _response(status, {"error": {"message": "nope"}})

    with pytest.raises(error):
        await store.query("users")


@pytest.mark.asyncio
async def test_timeout_raises_network_error(store, http):
    http.request.side_effect = requests.Timeout()

    with pytest.raises(NetworkError):
        await store.get("users", "u1")


@pytest.mark.asyncio
async def test_batch_delete_respects_limit(store, http):
    with pytest.raises(InvalidInputError):
        await store.batch_delete("users", ["a", "b", "c", "d"])

    http.request.return_value = _response(200, {"writeResults": []})
    await store.batch_delete("users", ["a", "b"])

    writes = http.request.call_args.kwargs["json"]["writes"]
    assert writes == [{"delete": f"{NAME_PREFIX}/users/a"}, {"delete": f"{NAME_PREFIX}/users/b"}]


@pytest.mark.asyncio
async def test_aborted_transaction_is_retried(store, http):
    commits = []

    def respond(method, url, **kwargs):
        if url.endswith(":beginTransaction"):
            return _response(200, {"transaction": f"tx-{len(commits) + 1}"})
        if url.endswith(":commit"):
            commits.append(kwargs["json"])
            if len(commits) == 1:
                return _response(409, {"error": {"message": "contention", "status": "ABORTED"}})
            return _response(200, {"writeResults": []})
        assert kwargs["params"] == {"transaction": f"tx-{len(commits) + 1}"}
        return _response(200, _doc("invitations", "i1", usedBy=None))

    http.request.side_effect = respond

    async def claim(txn):
        doc = await txn.get("invitations", "i1")
        txn.update("invitations", "i1", {"usedBy": "u1"})
        return doc.id

    assert await store.run_transaction(claim) == "i1"
    assert [c["transaction"] for c in commits] == ["tx-1", "tx-2"]


@pytest.mark.asyncio
async def test_transaction_gives_up_after_repeated_conflicts(store, http):
    def respond(method, url, **kwargs):
        if url.endswith(":beginTransaction"):
            return _response(200, {"transaction": "tx"})
        return _response(409, {"error": {"message": "contention", "status": "ABORTED"}})

    http.request.side_effect = respond

    async def noop(txn):
        txn.delete("invitations", "i1")

    with pytest.raises(TransactionConflictError):
        await store.run_transaction(noop)


@pytest.mark.asyncio
async def test_failing_transaction_body_rolls_back(store, http):
    http.request.return_value = _response(200, {"transaction": "tx"})

    async def boom(txn):
        raise InvalidInputError("bad")

    with pytest.raises(InvalidInputError):
        await store.run_transaction(boom)

    args, kwargs = http.request.call_args
    assert args == ("POST", f"{ROOT}:rollback")
    assert kwargs["json"] == {"transaction": "tx"}


@pytest.mark.asyncio
async def test_subscription_pushes_only_changed_results(store, http):
    bodies = [
        [{"document": _doc("users", "u1", isOnline=False)}],
        [{"document": _doc("users", "u1", isOnline=False)}],
        [{"document": _doc("users", "u1", isOnline=True)}],
    ]

    def respond(method, url, **kwargs):
        return _response(200, bodies.pop(0) if len(bodies) > 1 else bodies[0])

    http.request.side_effect = respond
    subscription = store.subscribe("users", [FieldFilter(DOCUMENT_ID, "==", "u1")])

    first = await asyncio.wait_for(subscription.__anext__(), 1)
    second = await asyncio.wait_for(subscription.__anext__(), 1)
    subscription.cancel()

    assert first[0].data == {"isOnline": False}
    assert second[0].data == {"isOnline": True}
    with pytest.raises(StopAsyncIteration):
        await subscription.__anext__()


@pytest.mark.asyncio
async def test_subscription_failure_surfaces_as_subscription_error(store, http):
    http.request.return_value = _response(503, {"error": {"message": "unavailable"}})
    subscription = store.subscribe("users")

    with pytest.raises(SubscriptionError):
        await asyncio.wait_for(subscription.__anext__(), 1)
