"""
Global presence backend registry.

Reads COEDIT_CONFIG['PRESENCE_BACKEND'] from Django settings:
    'memory' (default) — InMemoryPresenceBackend
    'redis'            — RedisPresenceBackend
    'database'         — DatabasePresenceBackend
"""

import logging
from typing import Optional

from .base import PresenceBackend

logger = logging.getLogger(__name__)

_backend: Optional[PresenceBackend] = None


def get_presence_backend() -> PresenceBackend:
    """
    Get or initialize the configured presence backend.

    Configuration in settings.py::

        COEDIT_CONFIG = {
            'PRESENCE_BACKEND': 'redis',
            'PRESENCE_REDIS_URL': 'redis://localhost:6379/2',
        }
    """
    global _backend
    if _backend is not None:
        return _backend

    from ..config import config

    backend_type = config.get("PRESENCE_BACKEND", "memory")

    if backend_type == "redis":
        from .redis import RedisPresenceBackend

        _backend = RedisPresenceBackend(
            redis_url=config.get("PRESENCE_REDIS_URL"),
            key_prefix=config.get("PRESENCE_REDIS_PREFIX", "coedit:presence"),
        )
    elif backend_type == "database":
        from .database import DatabasePresenceBackend

        _backend = DatabasePresenceBackend()
    else:
        if backend_type != "memory":
            logger.warning("Unknown presence backend %r, falling back to memory", backend_type)
        from .memory import InMemoryPresenceBackend

        _backend = InMemoryPresenceBackend()

    logger.info("Initialized presence backend: %s", backend_type)
    return _backend


def set_presence_backend(backend: PresenceBackend) -> None:
    """Manually set the presence backend (useful for testing)."""
    global _backend
    _backend = backend


def reset_presence_backend() -> None:
    """Reset to force re-initialization on next access."""
    global _backend
    _backend = None
