"""
Configuration package for Twitter Watcher.

Modules:
    settings: Centralized configuration using Pydantic Settings
"""

from config.settings import settings, Settings, DEFAULT_ENV_TEMPLATE

__all__ = ["settings", "Settings", "DEFAULT_ENV_TEMPLATE"]
