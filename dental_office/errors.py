from __future__ import annotations


class DomainError(Exception):
    """Base error: `kind` travels on the wire, `status_code` picks the HTTP status."""

    kind = "error"
    status_code = 500

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class ValidationError(DomainError):
    kind = "validation_error"
    status_code = 400


class NotFound(DomainError):
    kind = "not_found"
    status_code = 404


class InvalidStatus(DomainError):
    kind = "invalid_status"
    status_code = 400


class TransitionNotAllowed(DomainError):
    kind = "transition_not_allowed"
    status_code = 409


class Unauthorized(DomainError):
    kind = "unauthorized"
    status_code = 401


class StoreError(DomainError):
    kind = "store_error"
    status_code = 500

    def __init__(self, message: str = "Internal storage error") -> None:
        super().__init__(message)
