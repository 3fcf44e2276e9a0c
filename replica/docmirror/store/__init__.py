"""
Document store abstraction for DocMirror.

This module provides a pluggable store interface supporting:
- MongoDB (Atlas or self-hosted, via pymongo's asyncio client)
- In-memory (for testing)

A sync involves two stores: the primary, which is the source of truth,
and the mirror, which only this engine writes to.

Invariants:
    - Writes are idempotent (replaying an event is harmless)
    - Change streams deliver events in the order the primary applied them
    - End of a change stream is signalled by exhaustion, errors by raising

How to change safely:
    - New backends must implement the DocumentStore protocol
    - Test disconnect handling (stream end and stream error) for each backend
"""

from .base import (
    KEY_FIELD,
    ChangeEvent,
    ChangeKind,
    Document,
    DocumentNotFoundError,
    DocumentStore,
    StoreConnectionError,
    StoreError,
    create_document_store,
    documents_equal,
    key_str,
)
from .memory import InMemoryDocumentStore
from .mongo import MongoDocumentStore

__all__ = [
    # Protocol and types
    "DocumentStore",
    "Document",
    "ChangeEvent",
    "ChangeKind",
    "KEY_FIELD",
    "StoreError",
    "StoreConnectionError",
    "DocumentNotFoundError",
    # Helpers
    "documents_equal",
    "key_str",
    # Factory
    "create_document_store",
    # Implementations
    "InMemoryDocumentStore",
    "MongoDocumentStore",
]
