"""
Base protocol and types for the document store abstraction.

This module defines the DocumentStore protocol that every backend must
implement, along with the ChangeEvent record produced by change streams,
the error hierarchy, and structural document equality.

Invariants:
    - Every stored document carries its key in KEY_FIELD
    - upsert, apply_partial_update and delete are idempotent
    - watch_changes() is subscribed once the coroutine returns
    - Exhausting a change stream means end-of-stream, never an error

How to change safely:
    - Protocol changes require updating all implementations
    - Keep ChangeEvent.from_change() lenient; validation belongs to the mirror
    - New backends must register a URI scheme in create_document_store()
"""

from __future__ import annotations

import math
from abc import abstractmethod
from collections.abc import AsyncIterator, Mapping, Sequence
from dataclasses import dataclass
from enum import Enum
from typing import Any, Protocol, runtime_checkable
import logging

logger = logging.getLogger(__name__)

KEY_FIELD = "_id"

Document = dict[str, Any]


class StoreError(Exception):
    """Base exception for document store operations."""
    pass


class StoreConnectionError(StoreError):
    """Connection to the store failed or was lost."""
    pass


class DocumentNotFoundError(StoreError):
    """The targeted document does not exist."""

    def __init__(self, key: Any) -> None:
        super().__init__(f"Document not found: {key!r}")
        self.key = key


class ChangeKind(str, Enum):
    """Change kinds the mirror knows how to apply."""

    INSERT = "insert"
    REPLACE = "replace"
    UPDATE = "update"
    DELETE = "delete"


@dataclass(frozen=True)
class ChangeEvent:
    """One mutation observed on the primary store.

    Attributes:
        kind: Raw operation type ("insert", "update", ... or anything newer)
        key: Key of the affected document
        full_document: Complete post-image (insert/replace)
        updated_fields: Partial mapping of field -> new value (update)
        removed_fields: Fields removed by an update, when the store reports them
        cluster_time: Store-side timestamp of the mutation, if known

    Example:
        >>> event = ChangeEvent.from_change({
        ...     "operationType": "update",
        ...     "documentKey": {"_id": 1},
        ...     "updateDescription": {"updatedFields": {"a": 2}},
        ... })
        >>> event.updated_fields
        {'a': 2}
    """

    kind: str
    key: Any
    full_document: Document | None = None
    updated_fields: Document | None = None
    removed_fields: tuple[str, ...] = ()
    cluster_time: Any = None

    @classmethod
    def from_change(cls, change: Mapping[str, Any]) -> ChangeEvent:
        """Create from a MongoDB-style change document.

        Missing parts become None instead of raising, so a malformed
        change still reaches the mirror and is reported there.
        """
        document_key = change.get("documentKey") or {}
        update = change.get("updateDescription") or {}
        return cls(
            kind=str(change.get("operationType", "")),
            key=document_key.get(KEY_FIELD),
            full_document=change.get("fullDocument"),
            updated_fields=update.get("updatedFields"),
            removed_fields=tuple(update.get("removedFields") or ()),
            cluster_time=change.get("clusterTime"),
        )

    @property
    def change_kind(self) -> ChangeKind | None:
        """Recognized kind, or None for kinds this version does not handle."""
        try:
            return ChangeKind(self.kind)
        except ValueError:
            return None

    def __str__(self) -> str:
        return f"ChangeEvent(kind={self.kind}, key={self.key!r})"


def key_str(key: Any) -> str:
    """Stringified key used to match documents across stores."""
    return str(key)


def documents_equal(a: Any, b: Any) -> bool:
    """Structural equality over documents.

    Mappings are compared by key set and recursively by value, independent
    of key order. Sequences are compared element-wise in order. Booleans
    never equal numbers, unlike Python's native ``==``. Two NaN floats are equal.
    """
    if isinstance(a, Mapping) and isinstance(b, Mapping):
        if a.keys() != b.keys():
            return False
        return all(documents_equal(a[k], b[k]) for k in a)

    if _is_sequence(a) and _is_sequence(b):
        if len(a) != len(b):
            return False
        return all(documents_equal(x, y) for x, y in zip(a, b))

    if isinstance(a, bool) or isinstance(b, bool):
        return type(a) is type(b) and a == b

    if isinstance(a, Mapping) or isinstance(b, Mapping) or _is_sequence(a) or _is_sequence(b):
        return False

    if isinstance(a, float) and isinstance(b, float) and math.isnan(a) and math.isnan(b):
        return True

    return a == b


def _is_sequence(value: Any) -> bool:
    return isinstance(value, Sequence) and not isinstance(value, (str, bytes, bytearray))


@runtime_checkable
class DocumentStore(Protocol):
    """Protocol for document store backends.

    Two instances take part in a sync: the primary (source of truth) and
    the mirror (destination). The mirror is written only by the sync
    engine.

    Example:
        >>> store = create_document_store("memory://", "db", "items")
        >>> await store.connect()
        >>> await store.upsert(1, {"name": "a"})
        >>> await store.get_all()
        [{'_id': 1, 'name': 'a'}]
    """

    @abstractmethod
    async def connect(self) -> None:
        """Connect to the store.

        Raises:
            StoreConnectionError: If the store is unreachable
        """
        ...

    @abstractmethod
    async def close(self) -> None:
        """Release connections and end open change streams."""
        ...

    @abstractmethod
    async def get_all(self) -> list[Document]:
        """Return every document in the collection.

        Loads the whole collection into memory; meant for small collections.
        """
        ...

    @abstractmethod
    async def upsert(self, key: Any, document: Mapping[str, Any]) -> None:
        """Replace the document at key, inserting it if absent."""
        ...

    @abstractmethod
    async def apply_partial_update(
        self,
        key: Any,
        fields: Mapping[str, Any],
        removed_fields: Sequence[str] | None = None,
    ) -> None:
        """Set fields on (and unset removed_fields from) an existing document.

        Field names may use dotted paths for nested values.

        Raises:
            DocumentNotFoundError: If no document has this key
        """
        ...

    @abstractmethod
    async def delete(self, key: Any) -> bool:
        """Delete the document at key. Returns False if it did not exist."""
        ...

    @abstractmethod
    async def watch_changes(self) -> AsyncIterator[ChangeEvent]:
        """Open a change stream.

        The subscription is active once this coroutine returns. The
        returned iterator finishes on connection loss and must be reopened
        by the caller; it carries no resume position.

        Raises:
            StoreConnectionError: If the stream cannot be opened
        """
        ...

    @property
    @abstractmethod
    def is_connected(self) -> bool:
        """Whether currently connected."""
        ...


def create_document_store(
    uri: str,
    database: str,
    collection: str,
    server_selection_timeout_ms: int = 5000,
) -> DocumentStore:
    """Factory function to create a document store from a location.

    Args:
        uri: Store location; the scheme selects the backend
        database: Database name
        collection: Collection name
        server_selection_timeout_ms: Connection timeout for network backends

    Returns:
        Appropriate DocumentStore implementation

    Raises:
        ValueError: If the scheme is not supported
    """
    from .memory import InMemoryDocumentStore
    from .mongo import MongoDocumentStore

    scheme = uri.split("://", 1)[0].lower() if "://" in uri else ""

    if scheme == "memory":
        return InMemoryDocumentStore(name=f"{database}.{collection}")
    elif scheme in ("mongodb", "mongodb+srv"):
        return MongoDocumentStore(
            uri,
            database,
            collection,
            server_selection_timeout_ms=server_selection_timeout_ms,
        )
    else:
        raise ValueError(f"Unsupported store URI scheme: {scheme or uri!r}")
