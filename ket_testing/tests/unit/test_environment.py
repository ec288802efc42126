"""Unit tests for the TestEnvironment orchestrator.

The cluster is an InMemoryCluster, the mock admin client a
``MagicMock(spec=WiremockAdminClient)`` and dependencies a recording fake.
"""

from __future__ import annotations

from pathlib import Path
from unittest.mock import MagicMock

import pytest
from pydantic import ValidationError

from ket_testing.definition import EnvironmentDefinition
from ket_testing.environment import (
    EnvironmentConfig,
    EnvironmentState,
    TestEnvironment,
    Workload,
)
from ket_testing.errors import (
    AdminUnreachableError,
    ClusterCommandError,
    NotFoundError,
    NotReadyError,
    ReadinessTimeoutError,
)
from ket_testing.fakes import FakePod, InMemoryCluster
from ket_testing.fixtures.handles import DependentServiceHandle
from ket_testing.fixtures.wiremock import WiremockAdminClient


class RecordingHandle(DependentServiceHandle):
    """Dependent service fake that records which manifests existed at connect."""

    name = "recording store"

    def __init__(self, cluster: InMemoryCluster, *, fail_disconnect: bool = False) -> None:
        self.cluster = cluster
        self.fail_disconnect = fail_disconnect
        self.applied_at_connect: list[str] | None = None
        self.disconnect_calls = 0
        self._connected = False

    @property
    def is_connected(self) -> bool:
        return self._connected

    def connect(self) -> None:
        self.applied_at_connect = list(self.cluster.applied)
        self._connected = True

    def disconnect(self) -> None:
        self.disconnect_calls += 1
        self._connected = False
        if self.fail_disconnect:
            raise RuntimeError("connection reset")


@pytest.fixture
def config(tmp_path: Path) -> EnvironmentConfig:
    return EnvironmentConfig(
        namespace="ket-test",
        project_root=tmp_path,
        readiness_timeout=1.0,
        log_timeout=1.0,
        poll_interval=0.1,
    )


@pytest.fixture
def workloads() -> list[Workload]:
    return [
        Workload(
            name="mongodb",
            manifest="manifests/mongodb.yml",
            selector="app=mongodb",
            service="mongodb",
        ),
        Workload(
            name="example-http-server",
            manifest="manifests/example-http-server.yml",
            selector="app=example-http-server",
        ),
    ]


@pytest.fixture
def cluster(config: EnvironmentConfig) -> InMemoryCluster:
    cluster = InMemoryCluster("ket-test", poll_interval=0.1)
    cluster.register_manifest(
        config.project_root / "manifests/mongodb.yml",
        pods=[FakePod("mongodb-0", {"app": "mongodb"})],
        endpoints={"mongodb": ["10.0.0.5"]},
    )
    cluster.register_manifest(
        config.project_root / "manifests/example-http-server.yml",
        pods=[
            FakePod(
                "example-http-server-0",
                {"app": "example-http-server"},
                deployment="example-http-server",
            )
        ],
        deployments={"example-http-server": True},
    )
    return cluster


@pytest.fixture
def mock_admin() -> MagicMock:
    return MagicMock(spec=WiremockAdminClient)


@pytest.fixture
def handle(cluster: InMemoryCluster) -> RecordingHandle:
    return RecordingHandle(cluster)


@pytest.fixture
def env(
    config: EnvironmentConfig,
    workloads: list[Workload],
    cluster: InMemoryCluster,
    mock_admin: MagicMock,
    handle: RecordingHandle,
) -> TestEnvironment:
    return TestEnvironment(
        config,
        workloads=workloads,
        mock_services=["wiremock"],
        dependencies={"store": handle},
        cluster=cluster,
        mock_admin=mock_admin,
    )


class TestEnvironmentConfig:
    """Tests for EnvironmentConfig."""

    def test_namespace_from_environment(
        self, monkeypatch: pytest.MonkeyPatch, tmp_path: Path
    ) -> None:
        """Test the namespace and project root come from the environment."""
        monkeypatch.setenv("KET_TEST_NAMESPACE", "ket-from-env")
        monkeypatch.setenv("KET_PROJECT_ROOT", str(tmp_path))

        config = EnvironmentConfig()

        assert config.namespace == "ket-from-env"
        assert config.project_root == tmp_path
        assert config.readiness_timeout == 60.0

    def test_missing_namespace_rejected(self, monkeypatch: pytest.MonkeyPatch) -> None:
        """Test a missing KET_TEST_NAMESPACE fails validation."""
        monkeypatch.delenv("KET_TEST_NAMESPACE", raising=False)
        with pytest.raises(ValidationError):
            EnvironmentConfig()

    def test_invalid_namespace_rejected(self) -> None:
        """Test an invalid namespace name fails validation."""
        with pytest.raises(ValidationError):
            EnvironmentConfig(namespace="Bad_Namespace")

    def test_resolve_path(self, config: EnvironmentConfig, tmp_path: Path) -> None:
        """Test relative paths resolve against the project root."""
        assert config.resolve_path(Path("m.yml")) == tmp_path / "m.yml"
        assert config.resolve_path(Path("/abs/m.yml")) == Path("/abs/m.yml")


class TestSetup:
    """Tests for TestEnvironment.setup()."""

    def test_deploys_workloads_in_order(
        self, env: TestEnvironment, cluster: InMemoryCluster, config: EnvironmentConfig
    ) -> None:
        """Test workloads are applied in declaration order."""
        env.setup()

        applies = [arg for op, arg in cluster.calls if op == "apply_manifest"]
        assert applies == [
            str(config.project_root / "manifests/mongodb.yml"),
            str(config.project_root / "manifests/example-http-server.yml"),
        ]
        assert env.state is EnvironmentState.READY

    def test_each_workload_ready_before_next(
        self, env: TestEnvironment, cluster: InMemoryCluster
    ) -> None:
        """Test each workload is ready before the next is applied."""
        env.setup()

        operations = cluster.operations()
        second_apply = [i for i, op in enumerate(operations) if op == "apply_manifest"][1]
        assert operations[:second_apply] == [
            "apply_manifest",
            "check_condition",
            "get_endpoint_addresses",
        ]

    def test_dependencies_connect_after_workloads(
        self, env: TestEnvironment, handle: RecordingHandle
    ) -> None:
        """Test dependent services connect once every workload is ready."""
        env.setup()

        assert handle.is_connected
        assert handle.applied_at_connect is not None
        assert len(handle.applied_at_connect) == 2

    def test_mock_services_reset_to_baseline(
        self, env: TestEnvironment, mock_admin: MagicMock
    ) -> None:
        """Test mock services are reset during setup."""
        env.setup()

        mock_admin.reset_mappings.assert_called_once_with("wiremock")
        mock_admin.reset_captured_requests.assert_called_once_with("wiremock")

    def test_setup_when_ready_is_noop(
        self, env: TestEnvironment, cluster: InMemoryCluster
    ) -> None:
        """Test a second setup does nothing."""
        env.setup()
        calls = len(cluster.calls)

        env.setup()

        assert len(cluster.calls) == calls

    def test_apply_failure_propagates_and_teardown_cleans_up(
        self,
        env: TestEnvironment,
        cluster: InMemoryCluster,
        handle: RecordingHandle,
        config: EnvironmentConfig,
    ) -> None:
        """Test an apply failure propagates and teardown deletes attempted manifests."""
        failing = str(config.project_root / "manifests/example-http-server.yml")
        cluster.fail_apply.add(failing)

        with pytest.raises(ClusterCommandError):
            env.setup()

        assert env.state is EnvironmentState.UNINITIALIZED
        assert not handle.is_connected

        env.teardown()

        deletes = [arg for op, arg in cluster.calls if op == "delete_manifest"]
        assert deletes == [failing, str(config.project_root / "manifests/mongodb.yml")]
        assert env.state is EnvironmentState.TORN_DOWN

    def test_unready_workload_times_out(
        self, env: TestEnvironment, cluster: InMemoryCluster, config: EnvironmentConfig
    ) -> None:
        """Test an unready workload times out naming its selector."""
        cluster.register_manifest(
            config.project_root / "manifests/mongodb.yml",
            pods=[FakePod("mongodb-0", {"app": "mongodb"}, ready=False)],
        )

        with pytest.raises(ReadinessTimeoutError, match="app=mongodb"):
            env.setup()

        assert env.state is EnvironmentState.UNINITIALIZED

    def test_setup_after_teardown_rejected(self, env: TestEnvironment) -> None:
        """Test a torn-down environment cannot be set up again."""
        env.setup()
        env.teardown()

        with pytest.raises(NotReadyError):
            env.setup()


class TestOperationsRequireReady:
    """Tests for operations called outside READY."""

    def test_before_setup(self, env: TestEnvironment, mock_admin: MagicMock) -> None:
        """Test operations before setup raise NotReadyError."""
        with pytest.raises(NotReadyError, match="update_mapping"):
            env.update_mapping("wiremock", "/api/data", "GET", {})
        with pytest.raises(NotReadyError):
            env.get_logs("app=example-http-server")
        with pytest.raises(NotReadyError):
            env.get_dependent_service("store")

        mock_admin.update_mapping.assert_not_called()

    def test_after_teardown(self, env: TestEnvironment) -> None:
        """Test operations after teardown report the torn_down state."""
        env.setup()
        env.teardown()

        with pytest.raises(NotReadyError) as exc_info:
            env.list_mappings("wiremock")

        assert exc_info.value.state == "torn_down"


class TestAfterEach:
    """Tests for TestEnvironment.after_each()."""

    def test_resets_mocks_only(
        self,
        env: TestEnvironment,
        cluster: InMemoryCluster,
        mock_admin: MagicMock,
        handle: RecordingHandle,
    ) -> None:
        """Test after_each resets mocks without touching the cluster."""
        env.setup()
        mock_admin.reset_mock()
        calls = len(cluster.calls)

        env.after_each()

        mock_admin.reset_mappings.assert_called_once_with("wiremock")
        mock_admin.reset_captured_requests.assert_called_once_with("wiremock")
        assert len(cluster.calls) == calls
        assert handle.is_connected

    def test_reset_failure_is_not_raised(
        self, env: TestEnvironment, mock_admin: MagicMock
    ) -> None:
        """Test a failed reset is logged and the next reset still runs."""
        env.setup()
        mock_admin.reset_mappings.side_effect = AdminUnreachableError(
            "wiremock", "http://wiremock.ket-test:8080/__admin/mappings/reset", 500, "boom"
        )
        mock_admin.reset_captured_requests.reset_mock()

        env.after_each()

        mock_admin.reset_captured_requests.assert_called_once_with("wiremock")

    def test_skipped_before_setup(self, env: TestEnvironment, mock_admin: MagicMock) -> None:
        """Test after_each before setup does nothing."""
        env.after_each()
        mock_admin.reset_mappings.assert_not_called()


class TestTeardown:
    """Tests for TestEnvironment.teardown()."""

    def test_reverse_order(
        self, env: TestEnvironment, cluster: InMemoryCluster, config: EnvironmentConfig
    ) -> None:
        """Test manifests are deleted in reverse apply order."""
        env.setup()

        env.teardown()

        deletes = [arg for op, arg in cluster.calls if op == "delete_manifest"]
        assert deletes == [
            str(config.project_root / "manifests/example-http-server.yml"),
            str(config.project_root / "manifests/mongodb.yml"),
        ]
        assert cluster.pods == {}

    def test_continues_past_failures(
        self,
        config: EnvironmentConfig,
        workloads: list[Workload],
        cluster: InMemoryCluster,
        mock_admin: MagicMock,
    ) -> None:
        """Test teardown keeps going after delete and disconnect failures."""
        flaky = RecordingHandle(cluster, fail_disconnect=True)
        env = TestEnvironment(
            config,
            workloads=workloads,
            dependencies={"flaky": flaky},
            cluster=cluster,
            mock_admin=mock_admin,
        )
        env.setup()
        cluster.fail_delete.add(str(config.project_root / "manifests/example-http-server.yml"))

        env.teardown()

        deletes = [arg for op, arg in cluster.calls if op == "delete_manifest"]
        assert len(deletes) == 2
        assert flaky.disconnect_calls == 1
        assert env.state is EnvironmentState.TORN_DOWN

    def test_idempotent(
        self, env: TestEnvironment, cluster: InMemoryCluster, handle: RecordingHandle
    ) -> None:
        """Test a second teardown does nothing."""
        env.setup()
        env.teardown()
        calls = len(cluster.calls)

        env.teardown()

        assert len(cluster.calls) == calls
        assert handle.disconnect_calls == 1

    def test_before_setup_is_safe(self, env: TestEnvironment) -> None:
        """Test teardown before setup only changes state."""
        env.teardown()
        assert env.state is EnvironmentState.TORN_DOWN


class TestContextManager:
    """Tests for `with TestEnvironment(...)`."""

    def test_sets_up_and_tears_down(self, env: TestEnvironment) -> None:
        """Test the context manager sets up and tears down."""
        with env as active:
            assert active.state is EnvironmentState.READY

        assert env.state is EnvironmentState.TORN_DOWN

    def test_setup_failure_tears_down(
        self, env: TestEnvironment, cluster: InMemoryCluster, config: EnvironmentConfig
    ) -> None:
        """Test a failed setup inside the context still tears down."""
        cluster.fail_apply.add(str(config.project_root / "manifests/mongodb.yml"))

        with pytest.raises(ClusterCommandError):
            with env:
                pass

        assert env.state is EnvironmentState.TORN_DOWN


class TestDelegation:
    """Tests for operations forwarded to the runner and admin client."""

    @pytest.fixture
    def ready_env(self, env: TestEnvironment) -> TestEnvironment:
        env.setup()
        return env

    def test_update_mapping(self, ready_env: TestEnvironment, mock_admin: MagicMock) -> None:
        """Test update_mapping is forwarded to the admin client."""
        ready_env.update_mapping("wiremock", "/api/data", "GET", {"message": "hi"})

        mock_admin.update_mapping.assert_called_once_with(
            "wiremock", "/api/data", "GET", {"message": "hi"}
        )

    def test_wait_for_log_count(
        self, ready_env: TestEnvironment, cluster: InMemoryCluster
    ) -> None:
        """Test log counts are forwarded to the runner."""
        cluster.emit_log("app=example-http-server", "GET /api/data 200")

        count = ready_env.wait_for_log_count("app=example-http-server", "GET /api/data", 1)

        assert count == 1

    def test_wait_for_log_count_default_timeout(
        self, ready_env: TestEnvironment
    ) -> None:
        """Test the configured log timeout applies by default."""
        with pytest.raises(ReadinessTimeoutError) as exc_info:
            ready_env.wait_for_log_count("app=example-http-server", "never logged", 1)

        assert exc_info.value.timeout == 1.0
        assert exc_info.value.last_observed == 0

    def test_get_pod_name(self, ready_env: TestEnvironment) -> None:
        """Test pod names resolve through the runner."""
        assert ready_env.get_pod_name("app=mongodb") == "mongodb-0"

    def test_rollout_status(self, ready_env: TestEnvironment) -> None:
        """Test rollout status is forwarded to the runner."""
        assert "successfully rolled out" in ready_env.rollout_status("example-http-server")

    def test_delete_pod_restarts(
        self, ready_env: TestEnvironment, cluster: InMemoryCluster
    ) -> None:
        """Test a deleted pod comes back under a new name."""
        ready_env.delete_pod("app=example-http-server")
        ready_env.wait_for_condition("app=example-http-server")

        assert cluster.get_pod_names("app=example-http-server") == ["example-http-server-0-r1"]

    def test_get_dependent_service(
        self, ready_env: TestEnvironment, handle: RecordingHandle
    ) -> None:
        """Test dependent services are returned by name."""
        assert ready_env.get_dependent_service("store") is handle

    def test_unknown_dependent_service(self, ready_env: TestEnvironment) -> None:
        """Test an unknown dependent service raises NotFoundError."""
        with pytest.raises(NotFoundError, match="No dependent service named 'cache'"):
            ready_env.get_dependent_service("cache")


class TestFromDefinition:
    """Tests for TestEnvironment.from_definition()."""

    def test_from_yaml_file(
        self, config: EnvironmentConfig, mock_admin: MagicMock, cluster: InMemoryCluster
    ) -> None:
        """Test an environment is built from a YAML definition file."""
        (config.project_root / "ket-environment.yaml").write_text(
            "workloads:\n"
            "  - name: mongodb\n"
            "    manifest: manifests/mongodb.yml\n"
            "    selector: app=mongodb\n"
            "mock_services: [wiremock]\n"
        )

        env = TestEnvironment.from_definition(
            "ket-environment.yaml", config, cluster=cluster, mock_admin=mock_admin
        )

        assert [w.name for w in env.workloads] == ["mongodb"]
        assert env.mock_services == ("wiremock",)
        assert env.namespace == "ket-test"

    def test_from_definition_object(
        self, config: EnvironmentConfig, mock_admin: MagicMock, cluster: InMemoryCluster
    ) -> None:
        """Test an empty definition sets up without cluster calls."""
        env = TestEnvironment.from_definition(
            EnvironmentDefinition(), config, cluster=cluster, mock_admin=mock_admin
        )

        env.setup()

        assert env.state is EnvironmentState.READY
        assert cluster.calls == []
