"""Errors raised by the access layers. Callers at the HTTP edge never see these directly."""

from typing import Optional


class AccessLayerError(Exception):
    def __init__(self, operation: str, cause: Optional[BaseException] = None):
        self.operation = operation
        self.cause = cause
        message = operation if cause is None else f"{operation}: {cause}"
        super().__init__(message)


class ResolutionError(AccessLayerError):
    """Grant store unreachable or returned a malformed response."""


class PersistenceError(AccessLayerError):
    """Preference or progress storage could not be read or written."""
