"""In-memory ClusterCommandRunner for testing without a cluster.

InMemoryCluster models just enough of a namespace to exercise the
orchestrator: manifests that create labelled pods and service endpoints when
applied, pod readiness, pod logs, forced pod deletion (with optional restart,
which resets logs) and deployment rollouts. Every call is recorded in
``calls`` so tests can assert ordering.

Example:
    from ket_testing.fakes import FakePod, InMemoryCluster

    cluster = InMemoryCluster("ket-test")
    cluster.register_manifest(
        "manifests/mongodb.yml",
        pods=[FakePod("mongodb-0", {"app": "mongodb"})],
        endpoints={"mongodb": ["10.0.0.5"]},
    )
    cluster.apply_manifest("manifests/mongodb.yml")
    cluster.wait_for_condition("app=mongodb", timeout=1.0)
"""

from __future__ import annotations

import itertools
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from ket_testing.errors import ClusterCommandError
from ket_testing.fixtures.cluster import ClusterCommandRunner, WorkloadRef, as_workload_ref
from ket_testing.fixtures.polling import poll_until

_RESTART_SUFFIX = re.compile(r"-r\d+$")


@dataclass
class FakePod:
    """A pod in the in-memory cluster.

    Attributes:
        name: Pod name.
        labels: Pod labels.
        phase: Pod phase. Defaults to "Running".
        ready: Whether the Ready condition holds.
        logs: Accumulated log text.
        deployment: Owning deployment name, if any.
    """

    name: str
    labels: dict[str, str]
    phase: str = "Running"
    ready: bool = True
    logs: str = ""
    deployment: str | None = None


@dataclass
class _ManifestContents:
    pods: list[FakePod] = field(default_factory=list)
    endpoints: dict[str, list[str]] = field(default_factory=dict)
    deployments: dict[str, bool] = field(default_factory=dict)


def parse_selector(selector: str) -> dict[str, str]:
    """Parse an equality-based label selector ("a=b,c=d")."""
    labels: dict[str, str] = {}
    for term in selector.split(","):
        key, sep, value = term.strip().partition("=")
        if not sep or not key:
            raise ValueError(f"Unsupported label selector: {selector!r}")
        labels[key.strip()] = value.lstrip("=").strip()
    return labels


class InMemoryCluster(ClusterCommandRunner):
    """Fake ClusterCommandRunner holding namespace state in memory.

    Attributes:
        pods: Live pods by name.
        endpoints: Ready endpoint addresses by service name.
        deployments: Rollout completion by deployment name.
        applied: Manifest paths currently applied, in apply order.
        calls: Recorded (operation, argument) tuples.
        fail_apply: Manifest paths whose apply raises ClusterCommandError.
        fail_delete: Manifest paths whose delete fails (logged, not raised).
        restart_on_delete: Recreate force-deleted pods under a new name.
    """

    def __init__(
        self,
        namespace: str = "ket-test",
        *,
        poll_interval: float = 0.1,
        restart_on_delete: bool = True,
    ) -> None:
        super().__init__(namespace, poll_interval=poll_interval)
        self.pods: dict[str, FakePod] = {}
        self.endpoints: dict[str, list[str]] = {}
        self.deployments: dict[str, bool] = {}
        self.applied: list[str] = []
        self.calls: list[tuple[str, Any]] = []
        self.fail_apply: set[str] = set()
        self.fail_delete: set[str] = set()
        self.restart_on_delete = restart_on_delete
        self._manifests: dict[str, _ManifestContents] = {}
        self._restarts = itertools.count(1)

    # Test setup helpers

    def register_manifest(
        self,
        path: str | Path,
        *,
        pods: list[FakePod] | None = None,
        endpoints: dict[str, list[str]] | None = None,
        deployments: dict[str, bool] | None = None,
    ) -> None:
        """Declare what applying ``path`` creates."""
        self._manifests[str(path)] = _ManifestContents(
            pods=list(pods or []),
            endpoints=dict(endpoints or {}),
            deployments=dict(deployments or {}),
        )

    def matching_pods(self, selector: str) -> list[FakePod]:
        wanted = parse_selector(selector)
        return [
            pod
            for pod in self.pods.values()
            if all(pod.labels.get(k) == v for k, v in wanted.items())
        ]

    def emit_log(self, selector: str, line: str) -> None:
        """Append a log line to every pod matching ``selector``."""
        for pod in self.matching_pods(selector):
            pod.logs += f"{line}\n"

    def operations(self) -> list[str]:
        return [operation for operation, _ in self.calls]

    # ClusterCommandRunner primitives

    def apply_manifest(self, path: str | Path) -> None:
        key = str(path)
        self.calls.append(("apply_manifest", key))
        if key in self.fail_apply:
            raise ClusterCommandError(["kubectl", "apply", "-f", key], 1, "apply failed")
        contents = self._manifests.get(key, _ManifestContents())
        for pod in contents.pods:
            self.pods[pod.name] = FakePod(
                pod.name,
                dict(pod.labels),
                phase=pod.phase,
                ready=pod.ready,
                logs=pod.logs,
                deployment=pod.deployment,
            )
        for service, addresses in contents.endpoints.items():
            self.endpoints[service] = list(addresses)
        self.deployments.update(contents.deployments)
        if key not in self.applied:
            self.applied.append(key)

    def delete_manifest(self, path: str | Path) -> bool:
        key = str(path)
        self.calls.append(("delete_manifest", key))
        if key in self.fail_delete:
            self._log.warning("manifest_delete_failed", manifest=key)
            return False
        contents = self._manifests.get(key, _ManifestContents())
        for pod in contents.pods:
            for name in [n for n, p in self.pods.items() if p.labels == pod.labels]:
                del self.pods[name]
        for service in contents.endpoints:
            self.endpoints.pop(service, None)
        for deployment in contents.deployments:
            self.deployments.pop(deployment, None)
        if key in self.applied:
            self.applied.remove(key)
        return True

    def check_condition(self, selector: str, condition: str, attempt_timeout: int) -> bool:
        self.calls.append(("check_condition", selector))
        pods = self.matching_pods(selector)
        if condition != "Ready":
            return False
        return bool(pods) and all(pod.ready for pod in pods)

    def delete_pod(self, selector: str) -> None:
        self.calls.append(("delete_pod", selector))
        for pod in self.matching_pods(selector):
            del self.pods[pod.name]
            if self.restart_on_delete:
                base = _RESTART_SUFFIX.sub("", pod.name)
                name = f"{base}-r{next(self._restarts)}"
                self.pods[name] = FakePod(name, dict(pod.labels), deployment=pod.deployment)

    def rollout_status(self, name: str, timeout: float = 60.0) -> str:
        self.calls.append(("rollout_status", name))
        poll_until(
            lambda: self.deployments.get(name, False),
            bool,
            timeout=timeout,
            interval=self.poll_interval,
            description=f"rollout of deployment/{name} in {self.namespace}",
        )
        return f'deployment "{name}" successfully rolled out\n'

    def get_logs(self, workload: WorkloadRef | str) -> str:
        ref = as_workload_ref(workload)
        self.calls.append(("get_logs", str(ref)))
        if ref.selector is not None:
            pods = self.matching_pods(ref.selector)
        else:
            pods = [p for p in self.pods.values() if p.deployment == ref.name][:1]
        return "".join(pod.logs for pod in pods)

    def get_pod_names(self, selector: str) -> list[str]:
        self.calls.append(("get_pod_names", selector))
        return sorted(pod.name for pod in self.matching_pods(selector))

    def get_pod_phases(self, selector: str) -> list[str]:
        self.calls.append(("get_pod_phases", selector))
        return [pod.phase for pod in self.matching_pods(selector)]

    def get_endpoint_addresses(self, service: str) -> list[str]:
        self.calls.append(("get_endpoint_addresses", service))
        return list(self.endpoints.get(service, []))


__all__ = [
    "FakePod",
    "InMemoryCluster",
    "parse_selector",
]
