"""
Error taxonomy of the identity core.

Every error carries a human-readable message, a stable ``error_code``, a
``details`` mapping with structured context and the HTTP status an outer
controller should answer with. Validation failures aggregate field errors so
a caller sees every problem with a payload at once. Secrets (passwords,
password hashes) are never put into an error.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass
from typing import Any, Optional, Sequence

_UNSET: Any = object()


@dataclass
class FieldError:
    field: str
    reason: str
    code: str = "invalid"
    value: Any = _UNSET

    def to_dict(self) -> dict:
        data = asdict(self)
        if self.value is _UNSET:
            data.pop("value")
        return data


class IdentityError(Exception):
    status_code: int = 500
    default_code: str = "internal_error"

    def __init__(
        self,
        message: str,
        *,
        error_code: Optional[str] = None,
        details: Optional[dict[str, Any]] = None,
    ):
        super().__init__(message)
        self.message = message
        self.error_code = error_code or self.default_code
        self.details = details or {}

    def to_dict(self) -> dict:
        return {
            "error": {
                "code": self.error_code,
                "message": self.message,
                "details": self.details,
                "type": self.__class__.__name__,
            }
        }


# ---------------------------------------------------------------------------
# Not found
# ---------------------------------------------------------------------------

class NotFoundError(IdentityError):
    status_code = 404
    default_code = "not_found"

    def __init__(self, resource: str, identifier: str, field_name: str = "_id"):
        super().__init__(
            f"{resource} not found ({field_name}: '{identifier}')",
            error_code=f"{resource.lower().replace(' ', '_')}_not_found",
            details={"resource": resource, "field": field_name, "value": identifier},
        )


class MembershipNotFoundError(NotFoundError):
    def __init__(self, membership_id: str):
        super().__init__("Membership", membership_id)


class RoleNotFoundError(NotFoundError):
    def __init__(self, identifier: str, field_name: str = "_id"):
        super().__init__("Role", identifier, field_name)


class UserNotFoundError(NotFoundError):
    def __init__(self, identifier: str, field_name: str = "_id"):
        super().__init__("User", identifier, field_name)


class UserTypeNotFoundError(NotFoundError):
    def __init__(self, identifier: str, field_name: str = "name"):
        super().__init__("User type", identifier, field_name)


# ---------------------------------------------------------------------------
# Validation
# ---------------------------------------------------------------------------

class ValidationFailedError(IdentityError):
    status_code = 400
    default_code = "validation_failed"

    def __init__(self, errors: Sequence[FieldError], message: Optional[str] = None):
        self.errors = list(errors)
        super().__init__(
            message or "; ".join(e.reason for e in self.errors) or "Validation failed",
            details={"errors": [e.to_dict() for e in self.errors]},
        )


class ConflictingPatternsError(ValidationFailedError):
    default_code = "conflicting_patterns"


class ImmutableError(ValidationFailedError):
    default_code = "immutable_field"


class PasswordRequiredError(ValidationFailedError):
    default_code = "password_required"

    def __init__(self):
        super().__init__([FieldError("password", "Password is required", code="required")])


class PasswordTooShortError(ValidationFailedError):
    default_code = "password_too_short"

    def __init__(self, min_length: int):
        super().__init__(
            [FieldError(
                "password",
                f"Password must be at least {min_length} characters long",
                code="min_length",
            )]
        )
        self.details["min_length"] = min_length


class UserTypeRequiredError(ValidationFailedError):
    default_code = "user_type_required"

    def __init__(self):
        super().__init__([FieldError("user_type", "user_type is a required field", code="required")])


class MalformedPatternError(IdentityError):
    status_code = 400
    default_code = "malformed_pattern"

    def __init__(self, pattern: str, reason: str):
        super().__init__(
            f"Malformed permission pattern '{pattern}': {reason}",
            details={"pattern": pattern, "reason": reason},
        )


# ---------------------------------------------------------------------------
# State conflicts
# ---------------------------------------------------------------------------

class AlreadyExistsError(IdentityError):
    status_code = 409
    default_code = "already_exists"

    def __init__(
        self,
        message: str,
        *,
        errors: Sequence[FieldError] = (),
        details: Optional[dict[str, Any]] = None,
    ):
        self.errors = list(errors)
        details = dict(details or {})
        if self.errors:
            details["errors"] = [e.to_dict() for e in self.errors]
        super().__init__(message, details=details)


class IdenticalDocumentError(IdentityError):
    status_code = 409
    default_code = "identical_document"

    def __init__(self):
        super().__init__("Document is identical with the current version; nothing to update")


class ReservedNameViolationError(IdentityError):
    status_code = 403
    default_code = "reserved_name"

    def __init__(self, name: str):
        super().__init__(
            f"'{name}' is a reserved name and can only be used by the system",
            details={"name": name},
        )


# ---------------------------------------------------------------------------
# Authorization and tokens
# ---------------------------------------------------------------------------

class AccessDeniedError(IdentityError):
    status_code = 403
    default_code = "access_denied"


class InvalidTokenError(IdentityError):
    status_code = 401
    default_code = "invalid_token"

    def __init__(self, message: str = "Token could not be decoded"):
        super().__init__(message)


class TokenExpiredError(IdentityError):
    status_code = 401
    default_code = "token_expired"

    def __init__(self, expired_at: Optional[str] = None):
        super().__init__("Token was expired", details={"expired_at": expired_at})
