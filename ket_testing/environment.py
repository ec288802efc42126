"""Test environment orchestrator.

TestEnvironment is the only object test code talks to directly. It owns the
cluster runner, the mock admin client and the dependent service handles, and
coordinates their lifecycle:

    UNINITIALIZED --setup()--> READY --teardown()--> TORN_DOWN

- setup(): deploys workloads in declared order (each one ready before the
  next), connects dependencies, then resets every mock service to its
  declared baseline. Fails fast: the first error propagates.
- after_each(): resets mock mappings and captured requests only.
- teardown(): disconnects dependencies and deletes manifests in reverse
  order. Every step is best-effort; failures are logged, never raised. Safe
  after a partial setup() and safe to call twice.

The environment is constructed and owned by the suite bootstrap (see
``ket_testing.pytest_plugin``) and passed to tests explicitly.

Example:
    env = TestEnvironment(
        EnvironmentConfig(namespace="ket-test"),
        workloads=[Workload(name="wiremock", manifest="manifests/wiremock.yml",
                            selector="app=wiremock", service="wiremock")],
        mock_services=["wiremock"],
    )
    env.setup()
    try:
        env.update_mapping("wiremock", "/api/data", "GET", {"message": "hi"})
        env.wait_for_log_count("app=example-http-server", "GET /api/data", 1)
        env.after_each()
    finally:
        env.teardown()
"""

from __future__ import annotations

import os
from collections.abc import Generator, Iterable, Mapping
from contextlib import contextmanager
from enum import Enum
from pathlib import Path
from types import TracebackType
from typing import Any

import structlog
from pydantic import BaseModel, ConfigDict, Field, field_validator

from ket_testing.definition import (
    EnvironmentDefinition,
    Workload,
    load_environment_definition,
)
from ket_testing.errors import NotFoundError, NotReadyError
from ket_testing.fixtures.cluster import ClusterCommandRunner, KubectlRunner, WorkloadRef
from ket_testing.fixtures.handles import DependentServiceHandle
from ket_testing.fixtures.namespaces import require_valid_namespace
from ket_testing.fixtures.wiremock import MappingRule, WiremockAdminClient

logger = structlog.get_logger(__name__)


class EnvironmentConfig(BaseModel):
    """Configuration for a TestEnvironment.

    Defaults come from the variables the in-cluster test launcher sets.

    Attributes:
        namespace: Namespace every operation is confined to ($KET_TEST_NAMESPACE).
        project_root: Root that relative manifest paths resolve against
            ($KET_PROJECT_ROOT, default: current directory).
        readiness_timeout: Default deadline for readiness waits in seconds.
        log_timeout: Default deadline for log-count waits in seconds.
        poll_interval: Interval between readiness polls in seconds.
        mock_admin_port: Admin port of the mock services.
        command_timeout: Subprocess timeout per cluster command in seconds.
    """

    model_config = ConfigDict(frozen=True)

    namespace: str = Field(
        default_factory=lambda: os.environ.get("KET_TEST_NAMESPACE", ""),
        validate_default=True,
    )
    project_root: Path = Field(
        default_factory=lambda: Path(os.environ.get("KET_PROJECT_ROOT") or Path.cwd())
    )
    readiness_timeout: float = Field(default=60.0, gt=0.0)
    log_timeout: float = Field(default=30.0, gt=0.0)
    poll_interval: float = Field(default=1.0, ge=0.1)
    mock_admin_port: int = Field(default=8080, ge=1, le=65535)
    command_timeout: int = Field(default=60, ge=1)

    @field_validator("namespace")
    @classmethod
    def _validate_namespace(cls, namespace: str) -> str:
        return require_valid_namespace(namespace)

    def resolve_path(self, path: Path) -> Path:
        """Resolve a relative path against the project root."""
        if path.is_absolute():
            return path
        return self.project_root / path


class EnvironmentState(str, Enum):
    """Lifecycle states of a TestEnvironment."""

    UNINITIALIZED = "uninitialized"
    READY = "ready"
    TORN_DOWN = "torn_down"


class TestEnvironment:
    """Orchestrates cluster workloads, mock services and dependencies.

    Args:
        config: Environment configuration. Defaults to EnvironmentConfig().
        workloads: Workloads to deploy, in dependency order (data stores
            before the services that use them).
        mock_services: Mock services reset on setup and after each test.
        dependencies: Dependent service handles by name.
        cluster: Cluster runner. Defaults to a KubectlRunner.
        mock_admin: Mock admin client. Defaults to a WiremockAdminClient.
    """

    # Not a test class, despite the name
    __test__ = False

    def __init__(
        self,
        config: EnvironmentConfig | None = None,
        *,
        workloads: Iterable[Workload] = (),
        mock_services: Iterable[str] = (),
        dependencies: Mapping[str, DependentServiceHandle] | None = None,
        cluster: ClusterCommandRunner | None = None,
        mock_admin: WiremockAdminClient | None = None,
    ) -> None:
        self.config = config or EnvironmentConfig()
        self.workloads: tuple[Workload, ...] = tuple(workloads)
        self.mock_services: tuple[str, ...] = tuple(mock_services)
        self._dependencies: dict[str, DependentServiceHandle] = dict(dependencies or {})
        self.cluster = cluster or KubectlRunner(
            self.config.namespace,
            command_timeout=self.config.command_timeout,
            poll_interval=self.config.poll_interval,
        )
        self._owns_mock_admin = mock_admin is None
        self.mock_admin = mock_admin or WiremockAdminClient(
            self.config.namespace, port=self.config.mock_admin_port
        )
        self._state = EnvironmentState.UNINITIALIZED
        self._applied: list[Path] = []
        self._log = logger.bind(namespace=self.config.namespace)

    @classmethod
    def from_definition(
        cls,
        definition: EnvironmentDefinition | str | Path,
        config: EnvironmentConfig | None = None,
        **kwargs: Any,
    ) -> TestEnvironment:
        """Build an environment from an EnvironmentDefinition or YAML file."""
        config = config or EnvironmentConfig()
        if not isinstance(definition, EnvironmentDefinition):
            definition = load_environment_definition(config.resolve_path(Path(definition)))
        kwargs.setdefault("dependencies", definition.build_dependencies(config.namespace))
        return cls(
            config,
            workloads=definition.workloads,
            mock_services=definition.mock_services,
            **kwargs,
        )

    @property
    def namespace(self) -> str:
        return self.config.namespace

    @property
    def state(self) -> EnvironmentState:
        return self._state

    # Error policies

    @contextmanager
    def _fail_fast(self, step: str, **context: Any) -> Generator[None, None, None]:
        """Setup policy: log the failure and let it propagate."""
        try:
            yield
        except Exception as e:
            self._log.error("setup_step_failed", step=step, error=str(e), **context)
            raise

    @contextmanager
    def _best_effort(self, step: str, **context: Any) -> Generator[None, None, None]:
        """Cleanup policy: log the failure as a warning and carry on."""
        try:
            yield
        except Exception as e:  # noqa: BLE001
            self._log.warning("cleanup_step_failed", step=step, error=str(e), **context)

    def _require_ready(self, operation: str) -> None:
        if self._state is not EnvironmentState.READY:
            raise NotReadyError(operation, self._state.value)

    # Lifecycle

    def setup(self) -> None:
        """Provision workloads, connect dependencies and reset mocks.

        A no-op when already READY.

        Raises:
            NotReadyError: If the environment was already torn down.
            KetTestingError: From whichever step failed first; the
                environment stays UNINITIALIZED and teardown() still cleans up.
        """
        if self._state is EnvironmentState.READY:
            self._log.debug("setup_skipped", reason="already ready")
            return
        if self._state is EnvironmentState.TORN_DOWN:
            raise NotReadyError("setup", self._state.value)

        self._log.info(
            "environment_setup_started",
            workloads=[w.name for w in self.workloads],
            mock_services=list(self.mock_services),
            project_root=str(self.config.project_root),
        )
        timeout = self.config.readiness_timeout

        for workload in self.workloads:
            manifest = self.config.resolve_path(workload.manifest)
            # Tracked before applying so a half-applied manifest is cleaned up
            if manifest not in self._applied:
                self._applied.append(manifest)
            with self._fail_fast("apply_manifest", workload=workload.name):
                self.cluster.apply_manifest(manifest)
            with self._fail_fast("wait_for_condition", workload=workload.name):
                self.cluster.wait_for_condition(
                    workload.selector, workload.condition, timeout=timeout
                )
            if workload.service:
                with self._fail_fast("wait_for_service_endpoints", workload=workload.name):
                    self.cluster.wait_for_service_endpoints(workload.service, timeout=timeout)
            self._log.info("workload_ready", workload=workload.name)

        for name, handle in self._dependencies.items():
            with self._fail_fast("connect", dependency=name):
                handle.connect()

        for service in self.mock_services:
            with self._fail_fast("reset_mock_service", service=service):
                self.mock_admin.reset_mappings(service)
                self.mock_admin.reset_captured_requests(service)

        self._state = EnvironmentState.READY
        self._log.info("environment_ready")

    def after_each(self) -> None:
        """Reset mock mappings and captured requests between tests.

        Manifests and dependency connections are suite-scoped and untouched.
        Never raises.
        """
        if self._state is not EnvironmentState.READY:
            self._log.warning("after_each_skipped", state=self._state.value)
            return
        for service in self.mock_services:
            with self._best_effort("reset_mappings", service=service):
                self.mock_admin.reset_mappings(service)
            with self._best_effort("reset_captured_requests", service=service):
                self.mock_admin.reset_captured_requests(service)

    def teardown(self) -> None:
        """Release everything setup() created, best-effort. Never raises."""
        if self._state is EnvironmentState.TORN_DOWN:
            self._log.debug("teardown_skipped", reason="already torn down")
            return

        self._log.info("environment_teardown_started", state=self._state.value)
        for name, handle in reversed(list(self._dependencies.items())):
            with self._best_effort("disconnect", dependency=name):
                handle.disconnect()

        for manifest in reversed(self._applied):
            with self._best_effort("delete_manifest", manifest=str(manifest)):
                self.cluster.delete_manifest(manifest)
        self._applied.clear()

        if self._owns_mock_admin:
            with self._best_effort("close_mock_admin"):
                self.mock_admin.close()

        self._state = EnvironmentState.TORN_DOWN
        self._log.info("environment_torn_down")

    def __enter__(self) -> TestEnvironment:
        try:
            self.setup()
        except BaseException:
            self.teardown()
            raise
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        self.teardown()

    # Mock administration

    def list_mappings(self, service: str) -> list[MappingRule]:
        self._require_ready("list_mappings")
        return self.mock_admin.list_mappings(service)

    def find_mapping(self, service: str, path: str, method: str) -> MappingRule | None:
        self._require_ready("find_mapping")
        return self.mock_admin.find_mapping(service, path, method)

    def update_mapping(self, service: str, path: str, method: str, json_body: Any) -> MappingRule:
        self._require_ready("update_mapping")
        return self.mock_admin.update_mapping(service, path, method, json_body)

    def reset_mappings(self, service: str) -> None:
        self._require_ready("reset_mappings")
        self.mock_admin.reset_mappings(service)

    def get_captured_requests(self, service: str) -> list[dict[str, Any]]:
        self._require_ready("get_captured_requests")
        return self.mock_admin.get_captured_requests(service)

    def reset_captured_requests(self, service: str) -> None:
        self._require_ready("reset_captured_requests")
        self.mock_admin.reset_captured_requests(service)

    # Cluster synchronization

    def get_logs(self, workload: WorkloadRef | str) -> str:
        self._require_ready("get_logs")
        return self.cluster.get_logs(workload)

    def count_substring_in_logs(self, workload: WorkloadRef | str, substring: str) -> int:
        self._require_ready("count_substring_in_logs")
        return self.cluster.count_substring_in_logs(workload, substring)

    def wait_for_log_count(
        self,
        workload: WorkloadRef | str,
        substring: str,
        target: int,
        timeout: float | None = None,
    ) -> int:
        self._require_ready("wait_for_log_count")
        return self.cluster.wait_for_log_count(
            workload,
            substring,
            target,
            timeout=self.config.log_timeout if timeout is None else timeout,
        )

    def wait_for_condition(
        self,
        selector: str,
        condition: str = "Ready",
        timeout: float | None = None,
    ) -> None:
        self._require_ready("wait_for_condition")
        self.cluster.wait_for_condition(
            selector,
            condition,
            timeout=self.config.readiness_timeout if timeout is None else timeout,
        )

    def delete_pod(self, selector: str) -> None:
        self._require_ready("delete_pod")
        self.cluster.delete_pod(selector)

    def get_pod_name(self, selector: str) -> str:
        self._require_ready("get_pod_name")
        return self.cluster.get_pod_name(selector)

    def rollout_status(self, name: str, timeout: float | None = None) -> str:
        self._require_ready("rollout_status")
        return self.cluster.rollout_status(
            name,
            timeout=self.config.readiness_timeout if timeout is None else timeout,
        )

    # Dependencies

    def get_dependent_service(self, name: str) -> DependentServiceHandle:
        """Return the connected handle registered under ``name``.

        Raises:
            NotReadyError: If the environment is not READY.
            NotFoundError: If no dependency has that name.
        """
        self._require_ready("get_dependent_service")
        try:
            return self._dependencies[name]
        except KeyError:
            known = ", ".join(sorted(self._dependencies)) or "none"
            raise NotFoundError(
                f"No dependent service named '{name}' (known: {known})"
            ) from None


__all__ = [
    "EnvironmentConfig",
    "EnvironmentState",
    "TestEnvironment",
    "Workload",
]
