"""
Sync module for DocMirror - keeping a mirror store equal to a primary.

This module handles:
- One-shot snapshot reconciliation (bulk compare and upsert)
- Live application of the primary's change stream
- Lifecycle supervision with resync after every disconnect

Invariants:
    - The mirror is written only by this module
    - Events for the same key are applied in emission order
    - Every write is idempotent, so replays after a resync are harmless

How to change safely:
    - Test convergence with divergent initial stores
    - Verify idempotency with duplicate event injection tests
"""

from .mirror import ApplyResult, ChangeEventMirror, MalformedEventError
from .reconciler import ReconcileResult, SnapshotReconciler
from .supervisor import StreamState, SyncPhase, SyncSupervisor

__all__ = [
    "SnapshotReconciler",
    "ReconcileResult",
    "ChangeEventMirror",
    "ApplyResult",
    "MalformedEventError",
    "SyncSupervisor",
    "SyncPhase",
    "StreamState",
]
