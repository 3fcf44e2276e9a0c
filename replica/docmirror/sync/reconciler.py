"""
Snapshot reconciler for DocMirror.

The reconciler performs one full comparison between the primary and the
mirror and converges the mirror to the primary:
1. Read every document from both stores concurrently
2. Index mirror documents by stringified key
3. Upsert each primary document that is missing or different on the mirror

Invariants:
    - After a successful pass every primary key maps to an equal mirror document
    - Mirror-only documents are counted but never deleted
    - A failed upsert is logged and skipped; earlier writes are kept
    - Writes happen one at a time, in primary order

How to change safely:
    - Keep whole-document comparison; field diffs would need their own tests
    - A deletion pass would change documented behavior for mirror-only keys
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass

from ..store.base import KEY_FIELD, DocumentStore, documents_equal, key_str

logger = logging.getLogger(__name__)


@dataclass
class ReconcileResult:
    """Outcome of one reconciliation pass.

    Attributes:
        examined: Primary documents compared
        converged: Documents written to the mirror
        unchanged: Documents already equal on the mirror
        failed: Documents whose upsert failed
        mirror_only: Mirror keys absent from the primary (left in place)
        duration_ms: Wall time of the pass
    """

    examined: int = 0
    converged: int = 0
    unchanged: int = 0
    failed: int = 0
    mirror_only: int = 0
    duration_ms: int = 0

    def to_dict(self) -> dict[str, int]:
        return {
            "examined": self.examined,
            "converged": self.converged,
            "unchanged": self.unchanged,
            "failed": self.failed,
            "mirror_only": self.mirror_only,
            "duration_ms": self.duration_ms,
        }


class SnapshotReconciler:
    """Converges the mirror to the primary with one bulk pass.

    Example:
        >>> reconciler = SnapshotReconciler(primary, mirror)
        >>> result = await reconciler.reconcile()
        >>> result.converged
        2
    """

    def __init__(self, primary: DocumentStore, mirror: DocumentStore) -> None:
        self.primary = primary
        self.mirror = mirror

    async def reconcile(self) -> ReconcileResult:
        """Run one reconciliation pass.

        Returns:
            ReconcileResult with per-document counts

        Raises:
            StoreError: If either side cannot be read
        """
        started = time.monotonic()
        logger.info("Performing initial sync")

        primary_docs, mirror_docs = await asyncio.gather(
            self.primary.get_all(),
            self.mirror.get_all(),
        )

        mirror_index = {key_str(doc[KEY_FIELD]): doc for doc in mirror_docs}
        result = ReconcileResult()
        seen: set[str] = set()

        for doc in primary_docs:
            key = doc[KEY_FIELD]
            result.examined += 1
            seen.add(key_str(key))

            current = mirror_index.get(key_str(key))
            if current is not None and documents_equal(current, doc):
                result.unchanged += 1
                continue

            try:
                await self.mirror.upsert(key, doc)
            except Exception as e:
                result.failed += 1
                logger.error(
                    f"Failed to sync document: {e}",
                    extra={"op": "sync", "key": key_str(key)},
                )
                continue

            result.converged += 1
            logger.info(
                f"Synced doc with _id: {key_str(key)}",
                extra={"op": "sync", "key": key_str(key)},
            )

        result.mirror_only = len(mirror_index.keys() - seen)
        result.duration_ms = int((time.monotonic() - started) * 1000)

        logger.info(
            f"Initial sync complete. {result.converged} docs upserted/updated.",
            extra=result.to_dict(),
        )
        return result
