"""
DocMirror - keeps a mirror document collection continuously equal to a primary.

This package implements a background replication engine built on:
- A one-shot snapshot reconciliation of the whole collection
- The primary's change stream, applied event by event to the mirror
- A supervisor that resynchronizes after every stream disconnect

Architecture:
    ┌─────────────┐   change stream   ┌──────────────┐   queue   ┌──────────────┐
    │   Primary   │──────────────────▶│    Reader    │──────────▶│ ChangeEvent  │
    │   (Atlas)   │                   │    task      │ (bounded) │   Mirror     │
    └──────┬──────┘                   └──────────────┘           └──────┬───────┘
           │ get_all()                                                  │
           ▼                                                            ▼
    ┌──────────────┐            upsert diffs                     ┌──────────────┐
    │   Snapshot   │────────────────────────────────────────────▶│    Mirror    │
    │  Reconciler  │                                             │   (local)    │
    └──────────────┘                                             └──────────────┘

Invariants:
    - The primary is the source of truth; the mirror never originates writes
    - After reconciliation every primary key has an equal mirror document
    - Events for one key are applied in the order the primary emitted them
    - Applying an event twice has the same effect as applying it once

How to change safely:
    - Store backends must implement the DocumentStore protocol
    - Keep writes idempotent; stream delivery is at-least-once
    - Mirror-only documents are not pruned; changing that changes behavior

Version: see _version.py.
"""

from ._version import __version__

__all__ = ["__version__"]
