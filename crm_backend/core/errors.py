from __future__ import annotations

from typing import Any


class CRMError(Exception):
    """Base error for failures that are reported back to the caller."""

    status_code = 500
    code = "crm_error"

    def __init__(self, message: str, details: Any = None) -> None:
        self.message = message
        self.details = details
        super().__init__(message)


class ValidationError(CRMError):
    """Missing required field, invalid enum value or failed configuration check."""

    status_code = 422
    code = "validation_error"


class NotFoundError(CRMError):
    """Entity is absent or belongs to another organization."""

    status_code = 404
    code = "not_found"


class ConflictError(CRMError):
    """Business rule blocks the operation or a unique key is already taken."""

    status_code = 409
    code = "conflict"


class ForbiddenError(CRMError):
    status_code = 403
    code = "forbidden"


class AuthenticationError(CRMError):
    status_code = 401
    code = "unauthenticated"


class DependencyCreationFailure(CRMError):
    """A derived record (contact, deal, account) could not be created during a cascade."""

    code = "dependency_creation_failed"

    def __init__(self, dependency: str, message: str, details: Any = None) -> None:
        self.dependency = dependency
        super().__init__(message, details)
