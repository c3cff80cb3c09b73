"""
coedit.backends — Pluggable storage for presence rows.

Configured via COEDIT_CONFIG['PRESENCE_BACKEND']:
    'memory'    — In-process dict (default, single-node only)
    'redis'     — Redis-backed (multi-node production)
    'database'  — Django ORM table (multi-node, uses the project database)
"""

from .base import PresenceBackend
from .memory import InMemoryPresenceBackend
from .registry import get_presence_backend, reset_presence_backend, set_presence_backend

__all__ = [
    "PresenceBackend",
    "InMemoryPresenceBackend",
    "get_presence_backend",
    "reset_presence_backend",
    "set_presence_backend",
]
