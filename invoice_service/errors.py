"""
Error kinds raised across the invoice core.

Every error carries a stable machine readable ``kind`` and the HTTP status the
API layer maps it to. Raw SQLAlchemy or storage exceptions are translated into
one of these before they leave the store.
"""

from typing import Any, Dict, Optional


class InvoiceServiceError(Exception):
    kind = "internal_error"
    status_code = 500

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}


class InvoiceValidationError(InvoiceServiceError):
    """Malformed or out of range input."""
    kind = "validation_error"
    status_code = 422


class NotFoundError(InvoiceServiceError):
    kind = "not_found"
    status_code = 404

    def __init__(self, resource: str, identifier: Any):
        super().__init__(f"{resource} {identifier} not found", {"resource": resource, "id": str(identifier)})


class ConflictError(InvoiceServiceError):
    """Unique field collision, e.g. a duplicate invoice number."""
    kind = "conflict"
    status_code = 409


class ForbiddenError(InvoiceServiceError):
    kind = "forbidden"
    status_code = 403


class DerivedArtifactError(InvoiceServiceError):
    """PDF generation or deletion failed."""
    kind = "derived_artifact_error"
    status_code = 502


class PersistenceError(InvoiceServiceError):
    """Generic storage failure. The message is never shown to API callers."""
    kind = "persistence_error"
    status_code = 500
