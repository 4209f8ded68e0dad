"""Error taxonomy shared by the report services and the JSON API."""
from __future__ import annotations

from typing import Dict, List, Optional


class ServiceError(Exception):
    """Base class for errors that map onto an HTTP response."""

    status_code = 500
    default_message = "Internal server error"

    def __init__(self, message: Optional[str] = None, errors: Optional[List[Dict[str, str]]] = None) -> None:
        self.message = message or self.default_message
        self.errors = errors or []
        super().__init__(self.message)

    def to_dict(self) -> Dict:
        body: Dict = {"success": False, "message": self.message}
        if self.errors:
            body["errors"] = self.errors
        return body


class ValidationError(ServiceError):
    """Malformed input: bad coordinates, text length, unknown enum value."""

    status_code = 400
    default_message = "Validation error"

    @classmethod
    def for_field(cls, field: str, message: str) -> "ValidationError":
        return cls(message, errors=[{"field": field, "message": message}])

    @classmethod
    def from_form(cls, form) -> "ValidationError":
        errors = []
        for field, messages in form.errors.items():
            for message in messages:
                errors.append({"field": field, "message": message})
        return cls("Validation error", errors=errors)


class AuthenticationError(ServiceError):
    status_code = 401
    default_message = "Authentication required"


class AuthorizationError(ServiceError):
    status_code = 403
    default_message = "Not authorized to perform this action"


class NotFoundError(ServiceError):
    status_code = 404
    default_message = "Resource not found"


class ConflictError(ServiceError):
    """Repeated vote or verification; reported as a 400 with a specific message."""

    status_code = 400
    default_message = "Action already performed"


class StorageError(ServiceError):
    status_code = 500
    default_message = "Storage error"


class RateLimitError(ServiceError):
    status_code = 429
    default_message = "Too many requests, please slow down"
