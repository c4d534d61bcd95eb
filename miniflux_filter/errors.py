"""Error types raised by miniflux_filter."""

from __future__ import annotations

from typing import Optional


class FilterError(Exception):
    """Base class for all application errors."""


class ValidationError(FilterError):
    """A rule set or rule file failed validation."""

    def __init__(self, message: str, path: Optional[str] = None):
        super().__init__(message)
        self.path = path

    def __str__(self) -> str:
        message = super().__str__()
        if self.path:
            return f"{self.path}: {message}"
        return message


class UpstreamError(FilterError):
    """Calling the Miniflux API failed (network, auth, timeout, bad payload)."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class PersistenceError(FilterError):
    """Writing or deleting a rule file failed."""
