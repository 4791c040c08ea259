"""
Error taxonomy for Gistmarks.

Errors are ordinary exceptions so they carry a message and can be raised
by callers that prefer exceptions, but the engine passes them around as
values inside a Result rather than raising them across its boundaries.
"""
from typing import Optional


class GistmarksError(Exception):
    """Base class for every Gistmarks failure."""


class ValidationError(GistmarksError):
    """Malformed input: bad url, blank name, illegal characters."""


class NotFoundError(GistmarksError):
    """A category, bundle, bookmark or remote document does not exist."""


class DuplicateError(GistmarksError):
    """A name is already taken within its parent scope."""


class ConflictError(GistmarksError):
    """Stale version token on write, or an unresolved merge conflict."""


class NetworkError(GistmarksError):
    """A remote call failed before a usable response came back."""


class ApiError(NetworkError):
    """The remote service answered with an error status."""

    def __init__(self, message: str, status: Optional[int] = None):
        super().__init__(message)
        self.status = status


class ParseError(GistmarksError):
    """A document or state file could not be understood."""
