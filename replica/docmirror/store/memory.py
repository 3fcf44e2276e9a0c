"""
In-memory document store implementation for testing.

This module provides a simple in-memory store backend for:
- Unit tests
- Integration tests
- Local development without a running database

Every write on an InMemoryDocumentStore is published to its open change
streams, so one instance can play the primary and another the mirror.

Invariants:
    - All data is lost on process exit
    - Change events are delivered in the order writes were applied
    - Stored and returned documents are deep copies (no shared mutation)

How to change safely:
    - This is test-only code, changes don't affect production
    - Keep interface compatible with DocumentStore protocol
    - Add features to help with testing scenarios
"""

from __future__ import annotations

import asyncio
import copy
import time
from collections.abc import AsyncIterator, Mapping, Sequence
from typing import Any
import logging

from .base import (
    KEY_FIELD,
    ChangeEvent,
    ChangeKind,
    Document,
    DocumentNotFoundError,
    StoreConnectionError,
    StoreError,
    key_str,
)

logger = logging.getLogger(__name__)

# Queued to a watcher to end its stream; an exception instance is raised instead.
_END_OF_STREAM = object()


class InMemoryDocumentStore:
    """In-memory implementation of DocumentStore for testing.

    Documents are held in insertion order, keyed by their stringified key.

    Attributes:
        name: Label used in log messages

    Example:
        >>> primary = InMemoryDocumentStore(name="primary")
        >>> await primary.connect()
        >>> stream = await primary.watch_changes()
        >>> await primary.upsert(1, {"name": "a"})
        >>> event = await stream.__anext__()
        >>> event.kind
        'insert'
    """

    def __init__(
        self,
        name: str = "memory",
        documents: Sequence[Mapping[str, Any]] | None = None,
    ) -> None:
        """Initialize in-memory store.

        Args:
            name: Label used in log messages
            documents: Initial documents; each must carry KEY_FIELD
        """
        self.name = name
        self._documents: dict[str, Document] = {}
        self._watchers: list[asyncio.Queue[Any]] = []
        self._failures: list[tuple[str, Exception]] = []
        self._connected = False

        for doc in documents or ():
            self._documents[key_str(doc[KEY_FIELD])] = _with_key(doc[KEY_FIELD], doc)

    @property
    def is_connected(self) -> bool:
        """Whether connected (always true after connect())."""
        return self._connected

    async def connect(self) -> None:
        """Connect, unless a failure was queued for "connect"."""
        self._check_failure("connect")
        self._connected = True
        logger.debug("InMemoryDocumentStore connected", extra={"store": self.name})

    async def close(self) -> None:
        """Close and end every open change stream. Data is kept."""
        self._connected = False
        self.disconnect_watchers()
        logger.debug("InMemoryDocumentStore closed", extra={"store": self.name})

    async def get_all(self) -> list[Document]:
        self._require_connection()
        self._check_failure("get_all")
        return [copy.deepcopy(doc) for doc in self._documents.values()]

    async def upsert(self, key: Any, document: Mapping[str, Any]) -> None:
        self._require_connection()
        self._check_failure("upsert")

        existed = key_str(key) in self._documents
        stored = _with_key(key, document)
        self._documents[key_str(key)] = stored

        self._publish(ChangeEvent(
            kind=ChangeKind.REPLACE.value if existed else ChangeKind.INSERT.value,
            key=key,
            full_document=copy.deepcopy(stored),
            cluster_time=time.time(),
        ))

    async def apply_partial_update(
        self,
        key: Any,
        fields: Mapping[str, Any],
        removed_fields: Sequence[str] | None = None,
    ) -> None:
        self._require_connection()
        self._check_failure("apply_partial_update")

        current = self._documents.get(key_str(key))
        if current is None:
            raise DocumentNotFoundError(key)

        # Stored document is replaced only once every path applied
        doc = copy.deepcopy(current)
        try:
            for path, value in fields.items():
                _set_path(doc, path, copy.deepcopy(value))
            for path in removed_fields or ():
                _unset_path(doc, path)
        except (AttributeError, IndexError, TypeError, ValueError) as e:
            raise StoreError(f"Cannot apply update to {key!r}: {e}") from e
        self._documents[key_str(key)] = doc

        self._publish(ChangeEvent(
            kind=ChangeKind.UPDATE.value,
            key=key,
            updated_fields=copy.deepcopy(dict(fields)),
            removed_fields=tuple(removed_fields or ()),
            cluster_time=time.time(),
        ))

    async def delete(self, key: Any) -> bool:
        self._require_connection()
        self._check_failure("delete")

        removed = self._documents.pop(key_str(key), None)
        if removed is None:
            return False

        self._publish(ChangeEvent(
            kind=ChangeKind.DELETE.value,
            key=key,
            cluster_time=time.time(),
        ))
        return True

    async def watch_changes(self) -> AsyncIterator[ChangeEvent]:
        """Open a change stream over this store's writes.

        Returns:
            Iterator of ChangeEvent, live until disconnect_watchers() or close()
        """
        self._require_connection()
        self._check_failure("watch_changes")

        queue: asyncio.Queue[Any] = asyncio.Queue()
        self._watchers.append(queue)
        logger.debug("Change stream opened", extra={"store": self.name})
        return self._iterate(queue)

    async def _iterate(self, queue: asyncio.Queue[Any]) -> AsyncIterator[ChangeEvent]:
        try:
            while True:
                item = await queue.get()
                if item is _END_OF_STREAM:
                    return
                if isinstance(item, Exception):
                    raise item
                yield item
        finally:
            if queue in self._watchers:
                self._watchers.remove(queue)

    def _publish(self, event: ChangeEvent) -> None:
        for queue in self._watchers:
            queue.put_nowait(event)

    def _require_connection(self) -> None:
        if not self._connected:
            raise StoreConnectionError(f"Store {self.name} is not connected")

    def _check_failure(self, operation: str) -> None:
        for i, (target, exc) in enumerate(self._failures):
            if target in (operation, "any"):
                del self._failures[i]
                raise exc

    # Testing helpers

    @property
    def documents(self) -> dict[str, Document]:
        """Snapshot of stored documents keyed by stringified key."""
        return copy.deepcopy(self._documents)

    @property
    def watcher_count(self) -> int:
        """Number of open change streams."""
        return len(self._watchers)

    def get(self, key: Any) -> Document | None:
        """Copy of the document at key, or None."""
        doc = self._documents.get(key_str(key))
        return copy.deepcopy(doc) if doc is not None else None

    def disconnect_watchers(self, error: Exception | None = None) -> None:
        """End every open change stream, simulating a dropped connection.

        Args:
            error: Raise this from the streams instead of ending them cleanly
        """
        for queue in list(self._watchers):
            queue.put_nowait(error if error is not None else _END_OF_STREAM)
        self._watchers.clear()

    def fail_next(self, exception: Exception, operation: str = "any") -> None:
        """Make the next matching operation raise exception.

        Args:
            exception: Exception to raise
            operation: Method name ("upsert", "get_all", ...) or "any"
        """
        self._failures.append((operation, exception))

    def emit(self, event: ChangeEvent) -> None:
        """Publish an arbitrary event without touching stored data."""
        self._publish(event)

    async def wait_for_documents(
        self,
        predicate: Any,
        timeout: float = 5.0,
    ) -> bool:
        """Wait until predicate(documents) is true (testing helper).

        Args:
            predicate: Callable taking the documents dict
            timeout: Maximum wait time

        Returns:
            True if the predicate held, False on timeout
        """
        start = time.time()
        while time.time() - start < timeout:
            if predicate(self._documents):
                return True
            await asyncio.sleep(0.01)
        return False


def _with_key(key: Any, document: Mapping[str, Any]) -> Document:
    stored: Document = {KEY_FIELD: copy.deepcopy(key)}
    for name, value in document.items():
        if name != KEY_FIELD:
            stored[name] = copy.deepcopy(value)
    return stored


def _set_path(doc: Any, path: str, value: Any) -> None:
    """Assign value at a dotted path, creating intermediate mappings."""
    parts = path.split(".")
    target = doc
    for part in parts[:-1]:
        if isinstance(target, list):
            target = target[int(part)]
        else:
            target = target.setdefault(part, {})
    if isinstance(target, list):
        target[int(parts[-1])] = value
    else:
        target[parts[-1]] = value


def _unset_path(doc: Any, path: str) -> None:
    parts = path.split(".")
    target = doc
    for part in parts[:-1]:
        if isinstance(target, list):
            index = int(part)
            if index >= len(target):
                return
            target = target[index]
        elif isinstance(target, dict) and part in target:
            target = target[part]
        else:
            return
    if isinstance(target, dict):
        target.pop(parts[-1], None)
    elif isinstance(target, list) and int(parts[-1]) < len(target):
        # $unset on an array element leaves a null in place
        target[int(parts[-1])] = None
