"""Errors raised by the access control layer."""

from typing import Any, Optional


class AccessControlError(Exception):
    """Base error. Carries the HTTP status and machine code for the API layer."""

    status_code: int = 500
    code: str = "INTERNAL_ERROR"

    def __init__(
        self,
        message: str,
        code: Optional[str] = None,
        status_code: Optional[int] = None,
    ):
        super().__init__(message)
        self.message = message
        if code is not None:
            self.code = code
        if status_code is not None:
            self.status_code = status_code

    def extra(self) -> dict[str, Any]:
        """Additional response body fields."""
        return {}

    def to_dict(self) -> dict[str, Any]:
        return {
            "success": False,
            "message": self.message,
            "code": self.code,
            **self.extra(),
        }


class ValidationFailed(AccessControlError):
    """Malformed consent parameters."""

    status_code = 400
    code = "VALIDATION_ERROR"

    def __init__(
        self,
        errors: list[str],
        message: str = "Validation failed",
        code: Optional[str] = None,
    ):
        super().__init__(message, code=code)
        self.errors = errors

    def extra(self) -> dict[str, Any]:
        return {"errors": self.errors}


class AuthenticationRequired(AccessControlError):
    """No usable identity reached the service."""

    status_code = 401
    code = "AUTHENTICATION_REQUIRED"


class Forbidden(AccessControlError):
    """Caller's role may not perform this operation for this patient."""

    status_code = 403
    code = "FORBIDDEN"


class NotFound(AccessControlError):
    """Consent or patient absent."""

    status_code = 404
    code = "NOT_FOUND"


class ConsentDenied(AccessControlError):
    """The evaluator found no grant authorizing the access."""

    status_code = 403
    code = "CONSENT_REQUIRED"

    def __init__(self, data_type: str, purpose: str):
        super().__init__("Patient consent required for this access")
        self.data_type = data_type
        self.purpose = purpose

    def extra(self) -> dict[str, Any]:
        return {"dataType": self.data_type, "purpose": self.purpose}


class ConsentConflict(AccessControlError):
    """A concurrent writer changed the grant first."""

    status_code = 409
    code = "CONSENT_CONFLICT"


class StorageError(AccessControlError):
    """Unexpected failure of the backing store."""

    status_code = 500
    code = "INTERNAL_ERROR"


class AuditWriteFailed(Exception):
    """An audit record could not be persisted. Never leaves the audit writer."""

    def __init__(self, message: str, record_id: Optional[str] = None):
        super().__init__(message)
        self.record_id = record_id
