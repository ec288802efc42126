"""Exception hierarchy for ket-testing.

All exceptions inherit from KetTestingError so suites can catch every
fixture failure with a single except clause.

Exception Hierarchy:
    KetTestingError (base)
    ├── ConnectivityError             # Cluster, admin or data store unreachable
    │   ├── ClusterCommandError       # kubectl failed or is missing
    │   ├── AdminUnreachableError     # Mock admin API returned non-2xx
    │   ├── ConnectionFailedError     # Dependent store refused connection
    │   └── DataStoreError            # Dependent store operation failed
    ├── ReadinessTimeoutError         # Poll exceeded its deadline
    ├── NotFoundError                 # Mapping, pod or resource absent
    │   ├── MappingNotFoundError
    │   └── PodNotFoundError          # Also an AmbiguousOrMissingPodError
    ├── PreconditionError             # Called in the wrong lifecycle state
    │   ├── NotConnectedError
    │   └── NotReadyError
    └── AmbiguousResultError          # Selector matched unexpected cardinality
        └── AmbiguousOrMissingPodError
            └── PodNotFoundError      # Zero matches

``except AmbiguousResultError`` therefore also catches zero-pod lookups;
catch PodNotFoundError first to tell the two apart.

Example:
    >>> from ket_testing.errors import MappingNotFoundError
    >>> raise MappingNotFoundError("wiremock", "/api/data", "GET")
    Traceback (most recent call last):
        ...
    MappingNotFoundError: No mapping for GET /api/data on service 'wiremock'
"""

from __future__ import annotations

from typing import Any


class KetTestingError(Exception):
    """Base exception for all ket-testing errors."""


class ConnectivityError(KetTestingError):
    """Raised when a cluster, admin or data store endpoint cannot be used."""


class ClusterCommandError(ConnectivityError):
    """Raised when a cluster command fails.

    Attributes:
        command: The full command line that was executed.
        returncode: Process exit code (None if the process never ran).
        stderr: Captured standard error.
    """

    def __init__(
        self,
        command: list[str],
        returncode: int | None,
        stderr: str,
    ) -> None:
        self.command = command
        self.returncode = returncode
        self.stderr = stderr
        detail = stderr.strip() or "no output"
        super().__init__(
            f"Command failed ({returncode}): {' '.join(command)}\n{detail}"
        )


class AdminUnreachableError(ConnectivityError):
    """Raised when a mock service's admin API call does not succeed.

    Attributes:
        service: Logical mock service name.
        url: Admin URL that was called.
        status_code: HTTP status code (None for transport failures).
        body: Response body or transport error text.
    """

    def __init__(
        self,
        service: str,
        url: str,
        status_code: int | None,
        body: str,
    ) -> None:
        self.service = service
        self.url = url
        self.status_code = status_code
        self.body = body
        status = status_code if status_code is not None else "no response"
        super().__init__(
            f"Mock admin call for '{service}' failed ({status}): {url}\n{body}"
        )


class ConnectionFailedError(ConnectivityError):
    """Raised when a dependent service cannot be connected to."""


class DataStoreError(ConnectivityError):
    """Raised when an operation against a connected data store fails."""


class ReadinessTimeoutError(KetTestingError, TimeoutError):
    """Raised when a polling operation times out.

    Attributes:
        description: What was being waited for.
        timeout: The configured deadline in seconds.
        elapsed: How long we actually waited.
        last_observed: Last value returned by the probe (if any).
        last_error: Last exception raised by the probe (if any).
    """

    def __init__(
        self,
        description: str,
        timeout: float,
        *,
        elapsed: float | None = None,
        last_observed: Any = None,
        last_error: Exception | None = None,
    ) -> None:
        self.description = description
        self.timeout = timeout
        self.elapsed = timeout if elapsed is None else elapsed
        self.last_observed = last_observed
        self.last_error = last_error
        message = (
            f"Timeout waiting for {description} after {self.elapsed:.1f}s "
            f"(timeout {timeout:.1f}s)"
        )
        if last_observed is not None:
            message += f" (last observed: {last_observed!r})"
        if last_error:
            message += f" (last error: {last_error})"
        super().__init__(message)


class NotFoundError(KetTestingError):
    """Raised when a required mapping, pod or resource does not exist."""


class MappingNotFoundError(NotFoundError):
    """Raised when no mapping exists for a (path, method) pair.

    Attributes:
        service: Logical mock service name.
        path: Request path that was looked up.
        method: HTTP method that was looked up.
    """

    def __init__(self, service: str, path: str, method: str) -> None:
        self.service = service
        self.path = path
        self.method = method
        super().__init__(f"No mapping for {method} {path} on service '{service}'")


class PreconditionError(KetTestingError):
    """Raised when an operation is called in the wrong lifecycle state."""


class NotConnectedError(PreconditionError):
    """Raised when a dependent service handle is used before connect()."""

    def __init__(self, name: str) -> None:
        self.name = name
        super().__init__(f"{name} is not connected; call connect() first")


class NotReadyError(PreconditionError):
    """Raised when a TestEnvironment is used outside the READY state.

    Attributes:
        operation: The operation that was attempted.
        state: The environment state at the time of the call.
    """

    def __init__(self, operation: str, state: str) -> None:
        self.operation = operation
        self.state = state
        super().__init__(
            f"Cannot call {operation}() while environment is {state}; "
            f"call setup() first"
        )


class AmbiguousResultError(KetTestingError):
    """Raised when a query matched an unexpected number of results."""


class AmbiguousOrMissingPodError(AmbiguousResultError):
    """Raised when a label selector does not resolve to exactly one pod.

    Attributes:
        selector: The label selector used.
        pod_names: Pod names that matched (possibly empty).
    """

    def __init__(self, selector: str, pod_names: list[str]) -> None:
        self.selector = selector
        self.pod_names = pod_names
        if pod_names:
            detail = f"matched {len(pod_names)} pods: {', '.join(pod_names)}"
        else:
            detail = "matched no pods"
        super().__init__(
            f"Selector '{selector}' {detail}; use a selector that is unique by construction"
        )


class PodNotFoundError(AmbiguousOrMissingPodError, NotFoundError):
    """Raised when a label selector matches no pods."""

    def __init__(self, selector: str) -> None:
        super().__init__(selector, [])


__all__ = [
    "AdminUnreachableError",
    "AmbiguousOrMissingPodError",
    "AmbiguousResultError",
    "ClusterCommandError",
    "ConnectionFailedError",
    "ConnectivityError",
    "DataStoreError",
    "KetTestingError",
    "MappingNotFoundError",
    "NotConnectedError",
    "NotFoundError",
    "NotReadyError",
    "PodNotFoundError",
    "PreconditionError",
    "ReadinessTimeoutError",
]
