"""
Order Store backends.

- memory: in-process store and counter (tests, simulation, single process)
- firestore_*: the shared Firestore database over its REST API
"""
from .memory import InMemoryOrderCounter, InMemoryOrderStore
from .firestore_client import FirestoreClient, FirestoreError
from .firestore_store import (
    FirestoreOrderCounter,
    FirestoreOrderStore,
    FirestoreRoutingConfigSource,
)

__all__ = [
    "InMemoryOrderStore",
    "InMemoryOrderCounter",
    "FirestoreClient",
    "FirestoreError",
    "FirestoreOrderStore",
    "FirestoreOrderCounter",
    "FirestoreRoutingConfigSource",
]
