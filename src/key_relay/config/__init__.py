"""Configuration package for the key relay.

Re-exports the settings symbols so that callers can write::

    from key_relay.config import get_settings
"""

from __future__ import annotations

from key_relay.config.settings import Settings, get_settings

__all__ = [
    "Settings",
    "get_settings",
]
