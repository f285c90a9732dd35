# backend/accesshub/errors.py
from typing import Any


class AccessHubError(Exception):
    """Base class for errors surfaced by the access hub."""


class ValidationError(AccessHubError):
    """A command or upload is missing required fields. Never persisted or dispatched."""

    def __init__(self, message: str, errors: list[dict[str, Any]] | None = None):
        super().__init__(message)
        self.message = message
        self.errors = errors or []

    def to_dict(self) -> dict[str, Any]:
        return {"success": False, "message": self.message, "errors": self.errors}


class PersistenceError(AccessHubError):
    """A single record write failed. Reported to the health monitor, never retried."""

    def __init__(self, operation: str, device_id: str, cause: BaseException):
        super().__init__(f"{operation} failed for device '{device_id}': {cause}")
        self.operation = operation
        self.device_id = device_id
        self.cause = cause


class ExtractionError(AccessHubError):
    """The raw capture does not hold enough template pages."""


class NotFoundError(AccessHubError):
    pass
