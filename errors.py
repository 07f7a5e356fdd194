"""Error taxonomy shared by the progression engines and the web layer."""

from __future__ import annotations

from typing import Any, Dict, Optional


class ProgressionError(Exception):
    """Base class for engine errors that callers are expected to handle."""

    def __init__(self, message: str, *, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}


class ValidationError(ProgressionError, ValueError):
    """Raised for malformed payloads or answers. Never coerced silently."""


class NotFound(ProgressionError):
    """Raised when a module, course, user or learning path does not exist."""


class NotEligible(ProgressionError):
    """Raised when an operation's preconditions are not met yet."""


class StorageFailure(ProgressionError):
    """Raised when a row write failed; the operation can be retried."""
