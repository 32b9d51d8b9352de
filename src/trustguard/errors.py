"""trustguard.errors — Exception taxonomy for the trust engine."""

from __future__ import annotations


class TrustGuardError(Exception):
    """Base class for all trustguard errors."""


class StoreError(TrustGuardError):
    """Raised when a data-store read or write fails.

    The in-memory caches are never invalidated because of a StoreError, so
    callers may keep working on stale-but-usable data until the store
    recovers.
    """

    def __init__(self, operation: str, message: str = ""):
        self.operation = operation
        super().__init__(message or f"Data store operation failed: {operation}")


class UserNotFoundError(TrustGuardError, LookupError):
    """Raised when behaviour analysis targets a user with no backing record."""

    def __init__(self, user_id: str):
        self.user_id = user_id
        super().__init__(f"User {user_id} not found")


class ConfigurationError(TrustGuardError, ValueError):
    """Raised at construction time for invalid thresholds, weights or tables."""
