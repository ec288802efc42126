"""Cluster command execution for cluster-backed integration tests.

This module defines the narrow port the orchestrator uses to talk to a
Kubernetes cluster (ClusterCommandRunner) and its production implementation,
KubectlRunner, which shells out to the ``kubectl`` binary. Every primitive is
scoped to one namespace and issues exactly one command without retrying; the
waits built on top of them go through ``poll_until`` and always carry a
deadline.

An in-memory implementation for unit tests lives in ``ket_testing.fakes``.

Example:
    from ket_testing.fixtures.cluster import KubectlRunner, WorkloadRef

    kubectl = KubectlRunner("ket-test")
    kubectl.apply_manifest("manifests/mongodb.yml")
    kubectl.wait_for_condition("app=mongodb", timeout=60.0)

    # Block until the API has logged two requests
    kubectl.wait_for_log_count(
        WorkloadRef.by_name("example-http-server"),
        "GET /api/data",
        target=2,
        timeout=20.0,
    )
"""

from __future__ import annotations

import math
import os
import subprocess
import time
from abc import ABC, abstractmethod
from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path

import structlog

from ket_testing.errors import (
    AmbiguousOrMissingPodError,
    ClusterCommandError,
    PodNotFoundError,
    ReadinessTimeoutError,
)
from ket_testing.fixtures.namespaces import require_valid_namespace
from ket_testing.fixtures.polling import poll_until

# Default per-command subprocess timeout in seconds
DEFAULT_COMMAND_TIMEOUT = 60

# Default readiness poll interval in seconds
DEFAULT_POLL_INTERVAL = 1.0

# kubectl stderr fragments that indicate a rollout did not finish in time
_ROLLOUT_TIMEOUT_MARKERS = ("timed out", "exceeded its progress deadline")

CommandRunner = Callable[[list[str], int], "subprocess.CompletedProcess[str]"]


def _run_command(args: list[str], timeout: int = DEFAULT_COMMAND_TIMEOUT) -> subprocess.CompletedProcess[str]:
    """Run a command with timeout.

    Args:
        args: Full command line, binary first.
        timeout: Command timeout in seconds.

    Returns:
        Completed process result.
    """
    return subprocess.run(
        args,
        capture_output=True,
        text=True,
        timeout=timeout,
        check=False,
    )


@dataclass(frozen=True)
class WorkloadRef:
    """Identifies a workload to wait on or inspect.

    Exactly one of ``selector`` (pod-level operations) or ``name``
    (workload-level operations such as rollout status) is set.

    Attributes:
        selector: Label selector, e.g. "app=mongodb".
        name: Workload name, e.g. "example-http-server".
        kind: Workload kind used with ``name``. Defaults to "deployment".
    """

    selector: str | None = None
    name: str | None = None
    kind: str = "deployment"

    def __post_init__(self) -> None:
        if (self.selector is None) == (self.name is None):
            raise ValueError("WorkloadRef needs exactly one of selector or name")

    @classmethod
    def by_selector(cls, selector: str) -> WorkloadRef:
        return cls(selector=selector)

    @classmethod
    def by_name(cls, name: str, kind: str = "deployment") -> WorkloadRef:
        return cls(name=name, kind=kind)

    @property
    def target_args(self) -> list[str]:
        """kubectl arguments addressing this workload."""
        if self.selector is not None:
            return ["-l", self.selector]
        return [f"{self.kind}/{self.name}"]

    def __str__(self) -> str:
        if self.selector is not None:
            return self.selector
        return f"{self.kind}/{self.name}"


def _cluster_unreachable(error: Exception) -> bool:
    """True for command failures where kubectl never produced an exit code."""
    return isinstance(error, ClusterCommandError) and error.returncode is None


def as_workload_ref(workload: WorkloadRef | str) -> WorkloadRef:
    """Coerce a plain string (treated as a label selector) to a WorkloadRef."""
    if isinstance(workload, WorkloadRef):
        return workload
    return WorkloadRef.by_selector(workload)


class ClusterCommandRunner(ABC):
    """Namespace-scoped cluster operations.

    Subclasses implement the single-command primitives. The waits and log
    helpers are shared and built on ``poll_until``. Every wait fails at once
    when kubectl cannot run at all (missing binary, hung command).

    Attributes:
        namespace: Namespace every operation is confined to.
        poll_interval: Interval between readiness polls in seconds.
    """

    def __init__(
        self,
        namespace: str,
        *,
        poll_interval: float = DEFAULT_POLL_INTERVAL,
    ) -> None:
        self.namespace = require_valid_namespace(namespace)
        self.poll_interval = poll_interval
        self._log = structlog.get_logger(__name__).bind(namespace=namespace)

    # Single-command primitives

    @abstractmethod
    def apply_manifest(self, path: str | Path) -> None:
        """Create or update the resources in a manifest.

        Raises:
            ClusterCommandError: If the apply fails.
        """

    @abstractmethod
    def delete_manifest(self, path: str | Path) -> bool:
        """Delete the resources in a manifest, ignoring missing ones.

        Never raises; failures are logged as warnings.

        Returns:
            True if the delete succeeded, False otherwise.
        """

    @abstractmethod
    def check_condition(self, selector: str, condition: str, attempt_timeout: int) -> bool:
        """Check once whether all pods matching ``selector`` meet ``condition``.

        Returns False when no pod matches.
        """

    @abstractmethod
    def delete_pod(self, selector: str) -> None:
        """Force-delete pods matching ``selector`` with zero grace period."""

    @abstractmethod
    def rollout_status(self, name: str, timeout: float = 60.0) -> str:
        """Block until a deployment rollout completes.

        Raises:
            ReadinessTimeoutError: If the rollout did not finish in time.
        """

    @abstractmethod
    def get_logs(self, workload: WorkloadRef | str) -> str:
        """Fetch the complete current logs of a workload.

        A workload that does not exist has no logs and yields "".
        """

    @abstractmethod
    def get_pod_names(self, selector: str) -> list[str]:
        """List names of pods matching ``selector`` (possibly empty)."""

    @abstractmethod
    def get_pod_phases(self, selector: str) -> list[str]:
        """List phases of pods matching ``selector`` (possibly empty)."""

    @abstractmethod
    def get_endpoint_addresses(self, service: str) -> list[str]:
        """List ready endpoint addresses of a service (empty if none)."""

    # Derived operations

    def wait_for_condition(
        self,
        selector: str,
        condition: str = "Ready",
        timeout: float = 60.0,
    ) -> None:
        """Block until every pod matching ``selector`` meets ``condition``.

        A selector that matches no pods is polled until the deadline like any
        other unmet condition.

        Raises:
            ReadinessTimeoutError: Names the selector and elapsed time.
            ClusterCommandError: At once, without waiting out the deadline,
                if kubectl is missing or a command hangs.
        """
        deadline = time.monotonic() + timeout

        def probe() -> bool:
            attempt_timeout = max(1, math.ceil(deadline - time.monotonic()))
            return self.check_condition(selector, condition, attempt_timeout)

        poll_until(
            probe,
            bool,
            timeout=timeout,
            interval=self.poll_interval,
            description=f"pods '{selector}' condition={condition} in {self.namespace}",
            abort_on=_cluster_unreachable,
        )
        self._log.info("pod_condition_met", selector=selector, condition=condition)

    def wait_for_pod_running(self, selector: str, timeout: float = 60.0) -> None:
        """Block until at least one pod matches and all are in phase Running."""
        poll_until(
            lambda: self.get_pod_phases(selector),
            lambda phases: bool(phases) and all(p == "Running" for p in phases),
            timeout=timeout,
            interval=self.poll_interval,
            description=f"pods '{selector}' running in {self.namespace}",
            abort_on=_cluster_unreachable,
        )
        self._log.info("pods_running", selector=selector)

    def wait_for_service_endpoints(self, service: str, timeout: float = 60.0) -> list[str]:
        """Block until a service has at least one ready endpoint address.

        Returns:
            The endpoint addresses observed.
        """
        addresses = poll_until(
            lambda: self.get_endpoint_addresses(service),
            bool,
            timeout=timeout,
            interval=self.poll_interval,
            description=f"endpoints for service {service} in {self.namespace}",
            abort_on=_cluster_unreachable,
        )
        self._log.info("service_endpoints_ready", service=service, addresses=addresses)
        return addresses

    def count_substring_in_logs(self, workload: WorkloadRef | str, substring: str) -> int:
        """Count non-overlapping occurrences of ``substring`` in current logs.

        The count is recomputed from a fresh log fetch on every call. Log
        rotation or a pod restart can make it go down between calls.

        Raises:
            ValueError: If ``substring`` is empty.
        """
        if not substring:
            raise ValueError("substring must not be empty")
        return self.get_logs(workload).count(substring)

    def wait_for_log_count(
        self,
        workload: WorkloadRef | str,
        substring: str,
        target: int,
        timeout: float = 30.0,
    ) -> int:
        """Block until ``substring`` appears at least ``target`` times in logs.

        Returns immediately, without sleeping, when the current count already
        reaches the target.

        Returns:
            The observed count.

        Raises:
            ReadinessTimeoutError: Carries the last observed count.
        """
        if not substring:
            raise ValueError("substring must not be empty")
        count = poll_until(
            lambda: self.count_substring_in_logs(workload, substring),
            lambda observed: observed >= target,
            timeout=timeout,
            interval=self.poll_interval,
            description=f"{target}x '{substring}' in logs of {workload}",
            abort_on=_cluster_unreachable,
        )
        self._log.debug(
            "log_count_reached",
            workload=str(workload),
            substring=substring,
            count=count,
            target=target,
        )
        return count

    def get_pod_name(self, selector: str) -> str:
        """Resolve a label selector to exactly one pod name.

        Raises:
            PodNotFoundError: If no pod matches.
            AmbiguousOrMissingPodError: If more than one pod matches.
        """
        names = self.get_pod_names(selector)
        if not names:
            raise PodNotFoundError(selector)
        if len(names) > 1:
            raise AmbiguousOrMissingPodError(selector, names)
        return names[0]


class KubectlRunner(ClusterCommandRunner):
    """ClusterCommandRunner backed by the ``kubectl`` binary.

    Args:
        namespace: Namespace passed as ``-n`` to every command.
        kubectl: kubectl binary. Defaults to $KUBECTL or "kubectl".
        command_timeout: Subprocess timeout per command in seconds.
        poll_interval: Interval between readiness polls in seconds.
        command_runner: Callable that runs commands. Signature:
            ``(args: list[str], timeout: int) -> subprocess.CompletedProcess[str]``.
            Defaults to the internal ``_run_command`` helper.
    """

    def __init__(
        self,
        namespace: str,
        *,
        kubectl: str | None = None,
        command_timeout: int = DEFAULT_COMMAND_TIMEOUT,
        poll_interval: float = DEFAULT_POLL_INTERVAL,
        command_runner: CommandRunner | None = None,
    ) -> None:
        super().__init__(namespace, poll_interval=poll_interval)
        self.kubectl = kubectl or os.environ.get("KUBECTL", "kubectl")
        self.command_timeout = command_timeout
        self._run = command_runner or _run_command

    def _kubectl(
        self,
        args: list[str],
        *,
        timeout: int | None = None,
    ) -> subprocess.CompletedProcess[str]:
        """Run one namespaced kubectl command.

        Raises:
            ClusterCommandError: If kubectl is missing or the command hangs
                past its subprocess timeout. A non-zero exit is returned, not
                raised.
        """
        cmd = self._command(args)
        effective_timeout = timeout or self.command_timeout
        self._log.debug("kubectl_command", args=args)
        try:
            return self._run(cmd, effective_timeout)
        except FileNotFoundError as e:
            raise ClusterCommandError(cmd, None, f"{self.kubectl} not found: {e}") from e
        except subprocess.TimeoutExpired as e:
            raise ClusterCommandError(
                cmd, None, f"command timed out after {effective_timeout}s"
            ) from e

    def _command(self, args: list[str]) -> list[str]:
        return [self.kubectl, "-n", self.namespace, *args]

    def _checked(self, args: list[str], *, timeout: int | None = None) -> str:
        result = self._kubectl(args, timeout=timeout)
        if result.returncode != 0:
            raise ClusterCommandError(self._command(args), result.returncode, result.stderr)
        return result.stdout

    def apply_manifest(self, path: str | Path) -> None:
        self._checked(["apply", "-f", str(path)])
        self._log.info("manifest_applied", manifest=str(path))

    def delete_manifest(self, path: str | Path) -> bool:
        try:
            result = self._kubectl(["delete", "-f", str(path), "--ignore-not-found=true"])
        except ClusterCommandError as e:
            self._log.warning("manifest_delete_failed", manifest=str(path), error=str(e))
            return False
        if result.returncode != 0:
            self._log.warning(
                "manifest_delete_failed",
                manifest=str(path),
                returncode=result.returncode,
                stderr=result.stderr.strip(),
            )
            return False
        self._log.info("manifest_deleted", manifest=str(path))
        return True

    def check_condition(self, selector: str, condition: str, attempt_timeout: int) -> bool:
        # kubectl wait returns immediately with an error when nothing matches
        result = self._kubectl(
            [
                "wait",
                f"--for=condition={condition}",
                "pod",
                "-l",
                selector,
                f"--timeout={attempt_timeout}s",
            ],
            timeout=attempt_timeout + self.command_timeout,
        )
        if result.returncode != 0:
            self._log.debug(
                "pod_condition_not_met",
                selector=selector,
                condition=condition,
                stderr=result.stderr.strip(),
            )
            return False
        return True

    def delete_pod(self, selector: str) -> None:
        self._checked(["delete", "pod", "-l", selector, "--grace-period=0", "--force"])
        self._log.info("pods_deleted", selector=selector)

    def rollout_status(self, name: str, timeout: float = 60.0) -> str:
        timeout_seconds = max(1, math.ceil(timeout))
        cmd_args = [
            "rollout",
            "status",
            f"deployment/{name}",
            f"--timeout={timeout_seconds}s",
        ]
        result = self._kubectl(cmd_args, timeout=timeout_seconds + self.command_timeout)
        if result.returncode != 0:
            stderr = result.stderr.strip()
            if any(marker in stderr for marker in _ROLLOUT_TIMEOUT_MARKERS):
                raise ReadinessTimeoutError(
                    f"rollout of deployment/{name} in {self.namespace}",
                    timeout,
                    last_observed=stderr,
                )
            raise ClusterCommandError(self._command(cmd_args), result.returncode, result.stderr)
        self._log.info("rollout_complete", deployment=name)
        return result.stdout

    def get_logs(self, workload: WorkloadRef | str) -> str:
        ref = as_workload_ref(workload)
        args = ["logs", *ref.target_args]
        if ref.selector is not None:
            # kubectl limits selector-based logs to 10 lines unless told otherwise
            args.append("--tail=-1")
        result = self._kubectl(args)
        if result.returncode != 0:
            if "NotFound" in result.stderr:
                return ""
            raise ClusterCommandError(self._command(args), result.returncode, result.stderr)
        return result.stdout

    def get_pod_names(self, selector: str) -> list[str]:
        stdout = self._checked(
            ["get", "pods", "-l", selector, "-o", "jsonpath={.items[*].metadata.name}"]
        )
        return stdout.split()

    def get_pod_phases(self, selector: str) -> list[str]:
        stdout = self._checked(
            ["get", "pods", "-l", selector, "-o", "jsonpath={.items[*].status.phase}"]
        )
        return stdout.split()

    def get_endpoint_addresses(self, service: str) -> list[str]:
        result = self._kubectl(
            ["get", "endpoints", service, "-o", "jsonpath={.subsets[*].addresses[*].ip}"]
        )
        if result.returncode != 0:
            if "NotFound" in result.stderr:
                return []
            raise ClusterCommandError(
                self._command(["get", "endpoints", service]), result.returncode, result.stderr
            )
        return result.stdout.split()


__all__ = [
    "ClusterCommandRunner",
    "CommandRunner",
    "DEFAULT_COMMAND_TIMEOUT",
    "DEFAULT_POLL_INTERVAL",
    "KubectlRunner",
    "WorkloadRef",
    "as_workload_ref",
]
