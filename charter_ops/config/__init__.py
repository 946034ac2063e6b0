"""
Configuration for the charter booking core.

Settings are read from the environment and an optional .env file.
"""

from .settings import Settings, get_settings, get_supabase_config

__all__ = ["Settings", "get_settings", "get_supabase_config"]
