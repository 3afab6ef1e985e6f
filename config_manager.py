"""
Centralized configuration manager to avoid multiple Config instances.
"""
import os

from core.config import Config

CONFIG_PATH_ENV = 'FLATFILE_FUSION_CONFIG'

# Global config instance - loaded once
_config_instance = None


def get_config() -> Config:
    """Get the global config instance, creating it only once."""
    global _config_instance
    if _config_instance is None:
        _config_instance = Config(os.environ.get(CONFIG_PATH_ENV, 'config.toml'))
    return _config_instance


def refresh_config() -> Config:
    """Force a refresh of the global config instance."""
    global _config_instance
    _config_instance = None
    return get_config()
