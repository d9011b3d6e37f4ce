"""Domain error codes for the commerce engine."""

from __future__ import annotations

from enum import Enum


class ErrorCode(Enum):
    """Domain error codes."""

    VALIDATION_FAILED = "VALIDATION_FAILED"
    EVENT_NOT_FULL = "EVENT_NOT_FULL"
    ALREADY_REGISTERED = "ALREADY_REGISTERED"
    WAITLIST_FULL = "WAITLIST_FULL"
    UNAUTHENTICATED = "UNAUTHENTICATED"
    INVALID_SIGNATURE = "INVALID_SIGNATURE"
    FORBIDDEN = "FORBIDDEN"
    NOT_FOUND = "NOT_FOUND"
    CAPACITY_EXCEEDED = "CAPACITY_EXCEEDED"
    ALREADY_PROCESSED = "ALREADY_PROCESSED"
    INVALID_TRANSITION = "INVALID_TRANSITION"
    GATEWAY_ERROR = "GATEWAY_ERROR"


class DomainError(Exception):
    """Base domain error with code and user-safe message."""

    code: ErrorCode = ErrorCode.VALIDATION_FAILED
    status_code: int = 400

    def __init__(self, message: str, *, code: ErrorCode | None = None) -> None:
        super().__init__(message)
        self.message = message
        if code is not None:
            self.code = code

    def __str__(self) -> str:
        return f"{self.code.value}: {self.message}"

    def as_dict(self) -> dict[str, str]:
        return {"error": self.code.value, "message": self.message}


class ValidationError(DomainError):
    """Malformed or missing input, rejected before any state change."""

    code = ErrorCode.VALIDATION_FAILED
    status_code = 400


class AuthenticationError(DomainError):
    """No valid session or credential accompanied the request."""

    code = ErrorCode.UNAUTHENTICATED
    status_code = 401


class SignatureVerificationError(AuthenticationError):
    """A gateway callback failed signature verification."""

    code = ErrorCode.INVALID_SIGNATURE
    status_code = 400


class AuthorizationError(DomainError):
    """Actor does not own the event or booking."""

    code = ErrorCode.FORBIDDEN
    status_code = 403


class NotFoundError(DomainError):
    code = ErrorCode.NOT_FOUND
    status_code = 404


class CapacityExceededError(DomainError):
    code = ErrorCode.CAPACITY_EXCEEDED
    status_code = 409


class InvalidTransitionError(DomainError):
    """A booking or waitlist entry is not in a state that allows the change."""

    code = ErrorCode.INVALID_TRANSITION
    status_code = 409


class AlreadyProcessedError(DomainError):
    """Idempotent replay of a transition that already happened; not a failure."""

    code = ErrorCode.ALREADY_PROCESSED
    status_code = 200


class GatewayError(DomainError):
    """Network, 4xx or 5xx failure reported by the payment gateway."""

    code = ErrorCode.GATEWAY_ERROR
    status_code = 502
