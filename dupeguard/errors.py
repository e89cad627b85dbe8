"""Error taxonomy for DupeGuard."""
from __future__ import annotations


class DupeGuardError(Exception):
    """Base class for all DupeGuard errors."""


class ConfigError(DupeGuardError, ValueError):
    """Raised for an invalid item kind or malformed threshold entry."""

    def __init__(self, key: str, reason: str) -> None:
        super().__init__(f"{key}: {reason}")
        self.key = key
        self.reason = reason


class PersistenceError(DupeGuardError, RuntimeError):
    """Raised when the exemption file could not be written.

    The in-memory mutation that triggered the write has already been applied.
    """


class DeliveryError(DupeGuardError, RuntimeError):
    """Raised by the webhook transport for a non-success response."""

    def __init__(self, status_code: int, body: str = "") -> None:
        super().__init__(f"webhook returned status {status_code}")
        self.status_code = status_code
        self.body = body


__all__ = ["ConfigError", "DeliveryError", "DupeGuardError", "PersistenceError"]
