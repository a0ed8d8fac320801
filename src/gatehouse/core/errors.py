"""Exception hierarchy shared by Gatehouse services.

Unknown or expired session tokens and challenge ids are not errors; they are
reported as ordinary negative results. Exceptions are reserved for broken
configuration and for stores that cannot be reached or updated.
"""

from __future__ import annotations


class GatehouseError(RuntimeError):
    """Base exception raised for Gatehouse failures."""


class ConfigurationError(GatehouseError):
    """Raised when required configuration is missing at startup.

    Dependent routes must not serve traffic while this is unresolved, except
    when the service runs with the explicit development policy.
    """


class StoreError(GatehouseError):
    """Base exception for failures of a backing store."""


class StoreUnavailableError(StoreError):
    """Raised when a durable or shared store cannot be reached."""


class StoreConflictError(StoreError):
    """Raised when a conditional write loses a race twice in a row."""
