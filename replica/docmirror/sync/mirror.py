"""
Change event mirror for DocMirror.

The ChangeEventMirror applies change events from the primary's stream to
the mirror store, one at a time:
- insert / replace -> upsert the full document
- update           -> partial update of the changed (and removed) fields
- delete           -> delete by key
- anything else    -> logged and dropped

Invariants:
    - apply() never raises for a bad event; the failure is returned instead
    - Applying the same event twice leaves the mirror as one application did
    - Events are applied in the order they are handed in

How to change safely:
    - New change kinds need a ChangeKind member and a branch in apply()
    - Keep every store write idempotent; delivery is at-least-once
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any

from ..store.base import ChangeEvent, ChangeKind, DocumentStore, key_str

logger = logging.getLogger(__name__)


class MalformedEventError(ValueError):
    """Change event is missing data required by its kind."""

    pass


@dataclass
class ApplyResult:
    """Result of applying one change event.

    Attributes:
        success: Whether the mirror now reflects the event
        event: The change event
        operation: Store operation performed (upsert, update, delete)
        ignored: Whether the event kind is not handled
        error: Error message if failed
    """

    success: bool
    event: ChangeEvent
    operation: str | None = None
    ignored: bool = False
    error: str | None = None


class ChangeEventMirror:
    """Applies ChangeEvents to the mirror store.

    Thread safety:
        Designed to be driven by a single task; events must be handed in
        sequentially to keep per-key order.

    Example:
        >>> mirror = ChangeEventMirror(mirror_store)
        >>> result = await mirror.apply(event)
        >>> result.success
        True
    """

    def __init__(self, mirror: DocumentStore, dump_after_write: bool = False) -> None:
        """Initialize the mirror.

        Args:
            mirror: Destination store
            dump_after_write: Log the whole mirror collection after each write (DEBUG)
        """
        self.mirror = mirror
        self.dump_after_write = dump_after_write

        self._applied_count = 0
        self._error_count = 0
        self._ignored_count = 0

    async def apply(self, event: ChangeEvent) -> ApplyResult:
        """Apply a single change event to the mirror.

        Args:
            event: Event to apply

        Returns:
            ApplyResult indicating success, failure or an ignored kind
        """
        kind = event.change_kind

        if kind is None:
            self._ignored_count += 1
            logger.warning(
                f"Unhandled operation type: {event.kind}",
                extra={"op": event.kind, "key": _key_label(event.key)},
            )
            return ApplyResult(success=True, event=event, ignored=True)

        try:
            self._validate(event, kind)

            if kind in (ChangeKind.INSERT, ChangeKind.REPLACE):
                operation = "upsert"
                await self.mirror.upsert(event.key, event.full_document or {})
                logger.info(
                    f"Upserted doc with _id: {key_str(event.key)}",
                    extra={"op": operation, "key": key_str(event.key)},
                )

            elif kind == ChangeKind.UPDATE:
                operation = "update"
                await self.mirror.apply_partial_update(
                    event.key,
                    event.updated_fields or {},
                    event.removed_fields,
                )
                logger.info(
                    f"Updated doc with _id: {key_str(event.key)}",
                    extra={"op": operation, "key": key_str(event.key)},
                )

            else:
                operation = "delete"
                await self.mirror.delete(event.key)
                logger.info(
                    f"Deleted doc with _id: {key_str(event.key)}",
                    extra={"op": operation, "key": key_str(event.key)},
                )

        except Exception as e:
            self._error_count += 1
            logger.error(
                f"Error mirroring change: {e}",
                extra={"op": event.kind, "key": _key_label(event.key)},
            )
            return ApplyResult(success=False, event=event, error=str(e))

        self._applied_count += 1
        if self.dump_after_write:
            await self._dump_mirror()

        return ApplyResult(success=True, event=event, operation=operation)

    def _validate(self, event: ChangeEvent, kind: ChangeKind) -> None:
        if event.key is None:
            raise MalformedEventError(f"{event.kind} event has no document key")
        if kind in (ChangeKind.INSERT, ChangeKind.REPLACE) and event.full_document is None:
            raise MalformedEventError(f"{event.kind} event has no full document")
        if kind == ChangeKind.UPDATE and event.updated_fields is None:
            raise MalformedEventError("update event has no updated fields")

    async def _dump_mirror(self) -> None:
        try:
            docs = await self.mirror.get_all()
        except Exception as e:
            logger.debug(f"Could not list mirror documents: {e}")
            return
        logger.debug("Current documents in mirror collection", extra={"count": len(docs)})
        for doc in docs:
            logger.debug(repr(doc))

    @property
    def stats(self) -> dict[str, Any]:
        """Get mirror statistics."""
        return {
            "applied_count": self._applied_count,
            "error_count": self._error_count,
            "ignored_count": self._ignored_count,
        }


def _key_label(key: Any) -> str | None:
    return key_str(key) if key is not None else None
