"""Dependent service handles.

A dependent service is a stateful store (database, cache, ...) that the
system under test writes to. Tests hold a handle to it only to assert
outcomes and to seed or clear a fixed, pre-agreed collection. Business data
is never mutated through the handle except for that purpose.

Lifecycle:
    connect()     fails fast with ConnectionFailedError
    disconnect()  best-effort, logs a warning, never raises

Using a handle before connect() succeeds raises NotConnectedError, which is
a lifecycle error, not a ConnectionFailedError.
"""

from __future__ import annotations

from abc import ABC, abstractmethod


class DependentServiceHandle(ABC):
    """Base class for connection wrappers around stateful dependencies."""

    #: Human-readable name used in errors and logs.
    name: str = "dependent service"

    @abstractmethod
    def connect(self) -> None:
        """Connect to the dependency.

        Raises:
            ConnectionFailedError: If the dependency is unreachable.
        """

    @abstractmethod
    def disconnect(self) -> None:
        """Release the connection. Never raises."""

    @property
    @abstractmethod
    def is_connected(self) -> bool:
        """True once connect() succeeded and until disconnect()."""


__all__ = ["DependentServiceHandle"]
