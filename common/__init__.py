"""Common utilities for the subathon timer service."""
from .config import ConfigError, configure_logger, get_config, load_config

__all__ = ['get_config', 'load_config', 'configure_logger', 'ConfigError']
