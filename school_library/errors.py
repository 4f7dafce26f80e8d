"""Exception taxonomy shared by the stores, the service layer and the API.

The API layer maps each class onto an HTTP status; nothing in here knows
about HTTP.
"""

from __future__ import annotations

from typing import Any, Dict, List, Optional


class LibraryError(Exception):
    """Base class for every error raised on purpose by this package."""

    error = "Library error"

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None) -> None:
        super().__init__(message)
        self.message = message
        self.details = details or {}


class ValidationError(LibraryError, ValueError):
    """Missing or malformed input. ``fields`` names the offending fields."""

    error = "Validation failed"

    def __init__(self, message: str, fields: Optional[List[str]] = None) -> None:
        super().__init__(message)
        self.fields = fields or []


class DuplicateResourceError(LibraryError):
    error = "Duplicate resource"


class NotFoundError(LibraryError, LookupError):
    error = "Not found"


class NoOpenIssuanceError(NotFoundError):
    error = "No open issuance"


class NoCopiesAvailableError(LibraryError):
    error = "No copies available"


class AuthenticationError(LibraryError):
    error = "Authentication failed"


class AuthorizationError(LibraryError):
    error = "Access denied"


class StoreError(LibraryError):
    """The store collaborator failed (connectivity, constraint, unexpected reply)."""

    error = "Store error"

    def __init__(
        self,
        message: str,
        code: Optional[str] = None,
        hint: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        merged = dict(details or {})
        if code:
            merged["code"] = code
        if hint:
            merged["hint"] = hint
        super().__init__(message, merged)
        self.code = code
        self.hint = hint
