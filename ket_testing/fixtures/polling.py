"""Polling utilities for cluster-backed integration tests.

Every readiness and synchronization check in ket-testing goes through the
bounded retry loop in this module. Polls run at a fixed interval, without
backoff.

Functions:
    poll_until: Poll a probe until its value satisfies a predicate
    wait_for_condition: Poll until a boolean condition is true

Example:
    from ket_testing.fixtures.polling import poll_until, wait_for_condition

    # Wait for a boolean condition
    wait_for_condition(
        lambda: job_status(job_id) == "complete",
        timeout=30.0,
        description="job completion",
    )

    # Wait for a count and get the observed value back
    count = poll_until(
        lambda: runner.count_substring_in_logs("app=api", "request handled"),
        lambda observed: observed >= 3,
        timeout=20.0,
        description="3 handled requests",
    )
"""

from __future__ import annotations

import time
from collections.abc import Callable
from typing import TypeVar

from ket_testing.errors import ReadinessTimeoutError

T = TypeVar("T")

DEFAULT_TIMEOUT = 30.0
DEFAULT_INTERVAL = 0.5


def poll_until(
    probe: Callable[[], T],
    is_satisfied: Callable[[T], bool],
    timeout: float = DEFAULT_TIMEOUT,
    interval: float = DEFAULT_INTERVAL,
    description: str = "condition",
    *,
    abort_on: Callable[[Exception], bool] | None = None,
) -> T:
    """Poll ``probe`` until ``is_satisfied`` accepts its value or timeout.

    The probe is called immediately; if the first observation already
    satisfies the predicate the function returns without sleeping. Exceptions
    raised by the probe are remembered and polling continues, so transient
    failures (pod not scheduled yet, service not created yet) do not abort
    the wait.

    Args:
        probe: Callable returning the current observed state.
        is_satisfied: Predicate over the observed state.
        timeout: Maximum wait time in seconds. Defaults to 30.0.
        interval: Poll interval in seconds. Defaults to 0.5.
        description: Description for error messages. Defaults to "condition".
        abort_on: Predicate over probe exceptions. Matching exceptions are
            re-raised at once instead of being retried.

    Returns:
        The first observed value that satisfied the predicate.

    Raises:
        ReadinessTimeoutError: If the predicate was not satisfied within
            timeout. Carries the last observed value and last probe error.
    """
    start_time = time.monotonic()
    last_observed: T | None = None
    last_error: Exception | None = None

    while True:
        try:
            observed = probe()
        except Exception as e:  # noqa: BLE001
            if abort_on is not None and abort_on(e):
                raise
            last_error = e
        else:
            if is_satisfied(observed):
                return observed
            last_observed = observed

        elapsed = time.monotonic() - start_time
        if elapsed >= timeout:
            raise ReadinessTimeoutError(
                description,
                timeout,
                elapsed=elapsed,
                last_observed=last_observed,
                last_error=last_error,
            )

        # Sleep for interval, but don't exceed remaining time
        sleep_time = min(interval, timeout - elapsed)
        if sleep_time > 0:
            time.sleep(sleep_time)


def wait_for_condition(
    condition: Callable[[], bool],
    timeout: float = DEFAULT_TIMEOUT,
    interval: float = DEFAULT_INTERVAL,
    description: str = "condition",
    *,
    raise_on_timeout: bool = True,
) -> bool:
    """Poll until condition is True or timeout.

    Args:
        condition: Callable returning True when the condition is met.
        timeout: Maximum wait time in seconds. Defaults to 30.0.
        interval: Poll interval in seconds. Defaults to 0.5.
        description: Description for error messages. Defaults to "condition".
        raise_on_timeout: If True, raise ReadinessTimeoutError on timeout.
            If False, return False on timeout. Defaults to True.

    Returns:
        True if condition was met within timeout.
        False if raise_on_timeout=False and timeout occurred.

    Raises:
        ReadinessTimeoutError: If condition not met within timeout and
            raise_on_timeout=True.

    Example:
        if wait_for_condition(lambda: service.is_ready(), raise_on_timeout=False):
            print("Service ready")
    """
    try:
        return poll_until(
            condition,
            bool,
            timeout=timeout,
            interval=interval,
            description=description,
        )
    except ReadinessTimeoutError:
        if raise_on_timeout:
            raise
        return False


# Module exports
__all__ = [
    "DEFAULT_INTERVAL",
    "DEFAULT_TIMEOUT",
    "poll_until",
    "wait_for_condition",
]
