"""
Configuration system for coedit

Provides centralized configuration for:
- Presence staleness horizon and storage backend
- Broadcast channel settle delay and channel layer alias
- Cursor projection polling interval
"""

import copy
from typing import Any, Dict


class CollaborationConfig:
    """
    Central configuration for collaborative editing behavior.

    Usage:
        # In settings.py
        COEDIT_CONFIG = {
            'PRESENCE_BACKEND': 'redis',
            'PRESENCE_REDIS_URL': 'redis://localhost:6379/2',
            'staleness_horizon': 45,
        }

        # Or programmatically
        from coedit.config import config
        config.set('settle_delay', 0.25)
    """

    # Default configuration
    _defaults = {
        # Presence
        "staleness_horizon": 30,  # seconds - rows older than this are not part of the roster
        "PRESENCE_BACKEND": "memory",  # Options: 'memory', 'redis', 'database'
        "PRESENCE_REDIS_URL": "redis://localhost:6379/0",
        "PRESENCE_REDIS_PREFIX": "coedit:presence",
        # Broadcast channels
        "channel_layer": "default",  # Alias in CHANNEL_LAYERS
        "settle_delay": 0.1,  # seconds to wait for a fresh subscription before the first send
        "subscription_queue_size": 256,  # Max buffered events per DocumentSubscription
        # Cursor projection
        "projection_interval": 0.1,  # seconds between layout re-reads
        "soft_wrap": False,  # Count soft-wrapped lines when projecting cursors
        "default_font_path": None,  # TrueType file used when a font family can't be resolved
    }

    def __init__(self):
        self._config = copy.deepcopy(self._defaults)
        self._load_from_settings()

    def _load_from_settings(self):
        """Load configuration from Django settings if available"""
        try:
            from django.conf import settings
            from django.core.exceptions import ImproperlyConfigured
        except ImportError:
            return

        try:
            if hasattr(settings, "COEDIT_CONFIG"):
                self._config.update(settings.COEDIT_CONFIG)
        except ImproperlyConfigured:
            # Imported outside a configured Django project
            pass

    def get(self, key: str, default: Any = None) -> Any:
        """
        Get a configuration value.

        Args:
            key: Configuration key (supports dot notation for nested values)
            default: Default value if key not found

        Returns:
            Configuration value or default

        Example:
            config.get('staleness_horizon')  # 30
        """
        keys = key.split(".")
        value = self._config

        for k in keys:
            if isinstance(value, dict):
                value = value.get(k)
                if value is None:
                    return default
            else:
                return default

        return value if value is not None else default

    def set(self, key: str, value: Any):
        """
        Set a configuration value.

        Args:
            key: Configuration key (supports dot notation for nested values)
            value: Value to set
        """
        keys = key.split(".")

        target = self._config
        for k in keys[:-1]:
            if k not in target:
                target[k] = {}
            target = target[k]

        target[keys[-1]] = value

    def reset(self):
        """Reset configuration to defaults"""
        self._config = copy.deepcopy(self._defaults)
        self._load_from_settings()

    def update(self, config_dict: Dict[str, Any]):
        """Update multiple configuration values at once."""
        self._config.update(config_dict)

    def as_dict(self) -> Dict[str, Any]:
        """Get the entire configuration as a dictionary"""
        return self._config.copy()


# Global configuration instance
config = CollaborationConfig()


def get_config() -> CollaborationConfig:
    """Get the global configuration instance"""
    return config
