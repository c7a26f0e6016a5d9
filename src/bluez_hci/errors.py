"""Domain-specific errors for bluez-hci."""

from __future__ import annotations

from typing import Any


class HciError(Exception):
    """Base error for bluez-hci."""


class ServiceError(HciError):
    """Raised when the management service (bluetoothd) reports a failure.

    *dbus_error* carries the D-Bus error name when the failure came back
    as an error reply (e.g. ``org.bluez.Error.Failed``).
    """

    def __init__(self, message: str, dbus_error: str | None = None) -> None:
        super().__init__(message)
        self.dbus_error = dbus_error

    @classmethod
    def from_reply(cls, reply: Any, context: str) -> ServiceError:
        """Build an error from a ``dbus_fast`` error reply message."""
        error_name = getattr(reply, "error_name", None) or "unknown"
        body = getattr(reply, "body", None) or []
        detail = body[0] if body and isinstance(body[0], str) else error_name
        return cls(f"{context}: {detail}", dbus_error=error_name)


class LoopStoppedError(ServiceError):
    """Raised when a call needs the event loop after it was stopped."""


class Timeout(HciError, TimeoutError):
    """Raised when an adapter does not reach the requested power state."""
