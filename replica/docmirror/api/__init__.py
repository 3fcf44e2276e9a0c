"""
API module for DocMirror.

DocMirror has no data API of its own; it exposes a read-only status
endpoint for health checks and sync statistics.
"""

from .status import create_status_app, run_status_server

__all__ = ["create_status_app", "run_status_server"]
