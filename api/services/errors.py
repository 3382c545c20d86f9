"""
Error taxonomy shared by the OTP engine, the booking state machine and the
HTTP adapter.

Every error carries a stable ``code`` and enough structured detail
(remaining attempts, block expiry, failing guard) for a client to decide
whether to retry, request a new code or show a cooldown.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any


class DeliveryError(Exception):
    code = "ERROR"
    # Commit writes made before the error was raised (see db.database.transaction).
    keeps_changes = False

    def __init__(self, message: str, **details: Any):
        super().__init__(message)
        self.message = message
        self.details = details

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"error": self.code, "message": self.message}
        for key, value in self.details.items():
            payload[key] = value.isoformat() if isinstance(value, datetime) else value
        return payload


class ValidationError(DeliveryError):
    code = "VALIDATION"


class NotFoundError(DeliveryError):
    code = "NOT_FOUND"


class OTPExpiredError(DeliveryError):
    code = "EXPIRED"

    def __init__(
        self,
        message: str = "OTP has expired",
        *,
        expired_at: datetime | None = None,
        keeps_changes: bool = False,
    ):
        super().__init__(message, expired_at=expired_at)
        self.expired_at = expired_at
        self.keeps_changes = keeps_changes


class OTPBlockedError(DeliveryError):
    code = "BLOCKED"

    def __init__(
        self,
        message: str,
        *,
        blocked_until: datetime | None,
        remaining_attempts: int = 0,
        keeps_changes: bool = False,
    ):
        super().__init__(
            message,
            blocked_until=blocked_until,
            remaining_attempts=remaining_attempts,
            is_permanent=blocked_until is None,
        )
        self.blocked_until = blocked_until
        self.remaining_attempts = remaining_attempts
        self.keeps_changes = keeps_changes


class InvalidOTPError(DeliveryError):
    code = "INVALID_CODE"
    keeps_changes = True

    def __init__(self, remaining_attempts: int):
        super().__init__(
            f"Invalid OTP. {remaining_attempts} attempts remaining",
            remaining_attempts=remaining_attempts,
        )
        self.remaining_attempts = remaining_attempts


class PreconditionFailedError(DeliveryError):
    code = "PRECONDITION_FAILED"

    def __init__(self, guard: str, message: str, failed_guards: list[str] | None = None):
        failed = failed_guards or [guard]
        super().__init__(message, guard=guard, failed_guards=failed)
        self.guard = guard
        self.failed_guards = failed


class StorageError(DeliveryError):
    code = "STORAGE_ERROR"


class ExternalServiceError(DeliveryError):
    code = "EXTERNAL_SERVICE_ERROR"


class NotificationError(DeliveryError):
    code = "NOTIFICATION_FAILURE"
