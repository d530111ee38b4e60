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
    RemoteStore,
    Subscription,
    Transaction,
)
from chatsync.adapters.store.firestore_rest import FirestoreRestStore
from chatsync.adapters.store.memory import InMemoryRemoteStore

__all__ = [
    "DELETE_FIELD",
    "DOCUMENT_ID",
    "SERVER_TIMESTAMP",
    "ArrayRemove",
    "ArrayUnion",
    "Document",
    "FieldFilter",
    "FirestoreRestStore",
    "InMemoryRemoteStore",
    "Increment",
    "OrderBy",
    "RemoteStore",
    "Subscription",
    "Transaction",
]
