"""
DocMirror Test Suite.

This package contains:
- unit/: Unit tests (in-memory stores, no external services)
- integration/: Supervisor and server tests over in-memory stores
"""
