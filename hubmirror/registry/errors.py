"""
Error types for the metadata mirror.

Codec errors (``MalformedJsonError``, ``SchemaMismatchError``) are
field-scoped and non-fatal: the merge engine skips the offending field
and keeps going. Store errors are fatal to one operation only.
"""

from __future__ import annotations


class HubMirrorError(Exception):
    """Base class for all hubmirror errors."""


class ValidationError(HubMirrorError):
    """Raised when a record or payload has an invalid shape."""


class JsonFieldError(HubMirrorError):
    """Base class for per-field JSON codec errors."""

    def __init__(self, field: str, message: str):
        self.field = field
        self.message = message
        super().__init__(f"{field}: {message}")


class MalformedJsonError(JsonFieldError):
    """Raised when stored or incoming JSON text does not parse."""


class SchemaMismatchError(JsonFieldError):
    """Raised when a JSON value is not the shape declared for its field."""


class NotFoundError(HubMirrorError):
    """Raised when a model id is not present in the store or registry."""

    def __init__(self, model_id: str, message: str | None = None):
        self.model_id = model_id
        super().__init__(message or f"Model not found: {model_id}")


class InvalidQueryError(HubMirrorError, ValueError):
    """Raised for query criteria the translator cannot honour."""


class StoreIoError(HubMirrorError):
    """Raised when the storage backend fails a transaction."""


class FetchError(HubMirrorError):
    """Raised when the registry cannot be reached or answers with an error."""

    def __init__(self, message: str, status_code: int | None = None):
        self.status_code = status_code
        super().__init__(message)
