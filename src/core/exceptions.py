"""
Custom exceptions for the Student Alert Sentinel.

These exceptions provide clear error semantics across the system.
Insufficient evidence is never an error: detectors return None for it.
"""

from typing import List, Optional


class AlertEngineError(Exception):
    """Base exception for alert engine failures."""
    pass


class DetectorError(AlertEngineError, ValueError):
    """Raised when a detector receives arguments it cannot evaluate."""
    pass


class BaselineError(AlertEngineError, ValueError):
    """Raised when a baseline metric key cannot be parsed."""
    pass


class StorageError(AlertEngineError):
    """Raised by key-value stores when a read or write fails."""
    pass


class SettingsValidationError(AlertEngineError):
    """Raised when alert settings are invalid and the caller asked to fail."""

    def __init__(self, errors: List[str], message: Optional[str] = None):
        self.errors = list(errors)
        super().__init__(message or "Invalid alert settings: " + "; ".join(self.errors))


class ConfigurationError(AlertEngineError):
    """Raised when configuration is invalid or missing."""
    pass
