from __future__ import annotations

from typing import Any, Optional


class DedupeError(Exception):
    """Base error for duplicate detection/resolution; carries its HTTP mapping."""

    code = "dedupe_error"
    status_code = 500

    def __init__(self, message: str, details: Optional[Any] = None):
        super().__init__(message)
        self.message = message
        self.details = details

    def to_payload(self) -> dict:
        payload = {"error": self.message, "code": self.code}
        if self.details is not None:
            payload["details"] = self.details
        return payload


class Unauthorized(DedupeError):
    code = "auth_required"
    status_code = 401


class AccessDenied(DedupeError):
    code = "forbidden"
    status_code = 403


class NotFound(DedupeError):
    code = "not_found"
    status_code = 404


class InvalidInput(DedupeError):
    code = "validation_error"
    status_code = 400


class InvalidState(DedupeError):
    code = "invalid_state"
    status_code = 409


class InvalidPair(InvalidState):
    code = "invalid_pair"
    status_code = 400


class DependencyUpdateFailed(DedupeError):
    code = "dependency_update_failed"
    status_code = 500


class DeleteFailed(DedupeError):
    code = "delete_failed"
    status_code = 500
