"""
Core module: Configuration, logging, and exception handling.
"""

from .config import Config, config
from .exceptions import (
    AlertEngineError,
    BaselineError,
    ConfigurationError,
    DetectorError,
    SettingsValidationError,
    StorageError,
)

__all__ = [
    "Config",
    "config",
    "AlertEngineError",
    "BaselineError",
    "ConfigurationError",
    "DetectorError",
    "SettingsValidationError",
    "StorageError",
]
