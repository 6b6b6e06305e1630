"""Environment-backed settings for the auth core and its background sweep."""

from .settings import REQUIRED_ENV_VARS, Settings, load_settings

__all__ = ["REQUIRED_ENV_VARS", "Settings", "load_settings"]
