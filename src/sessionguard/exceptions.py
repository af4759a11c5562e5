"""Exceptions raised by store adapters and configuration."""


class SessionGuardError(Exception):
    """Base exception for sessionguard."""

    pass


class ConfigurationError(SessionGuardError):
    """Raised when the configured backend cannot be built."""

    pass


class StoreError(SessionGuardError):
    """Base exception for backing store operations."""

    pass


class StoreUnavailableError(StoreError):
    """Raised when the backing store cannot be reached or rejects an operation."""

    pass


class StoreTimeoutError(StoreError):
    """Raised when a store call exceeds its time budget."""

    pass


class LockUnavailableError(StoreError):
    """Raised when a per-subject advisory lock cannot be acquired in time."""

    pass
