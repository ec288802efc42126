"""Collaborators used by the TestEnvironment orchestrator.

Each module is usable on its own from test code that does not need the
full environment lifecycle.

Collaborators:
    ClusterCommandRunner / KubectlRunner: Namespaced cluster commands
    WiremockAdminClient: Mock service admin API
    MongoHandle: MongoDB dependent service handle

Utilities:
    poll_until: Poll a probe until its value satisfies a predicate
    wait_for_condition: Poll until a boolean condition is true
    require_valid_namespace: Validate a namespace name
    ServiceEndpoint: In-namespace service address resolution

Example:
    from ket_testing.fixtures import KubectlRunner, wait_for_condition

    kubectl = KubectlRunner("ket-test")
    wait_for_condition(
        lambda: kubectl.count_substring_in_logs("app=worker", "job done") >= 1,
        timeout=30.0,
        description="worker job completion",
    )
"""

from __future__ import annotations

from ket_testing.fixtures.cluster import (
    ClusterCommandRunner,
    KubectlRunner,
    WorkloadRef,
    as_workload_ref,
)
from ket_testing.fixtures.handles import DependentServiceHandle
from ket_testing.fixtures.mongodb import (
    MongoConfig,
    MongoHandle,
)
from ket_testing.fixtures.namespaces import (
    InvalidNamespaceError,
    require_valid_namespace,
)
from ket_testing.fixtures.polling import (
    poll_until,
    wait_for_condition,
)
from ket_testing.fixtures.services import (
    ServiceEndpoint,
    get_effective_host,
)
from ket_testing.fixtures.wiremock import (
    MappingRule,
    WiremockAdminClient,
)

__all__ = [
    # Polling utilities
    "poll_until",
    "wait_for_condition",
    # Namespace utilities
    "InvalidNamespaceError",
    "require_valid_namespace",
    # Service utilities
    "ServiceEndpoint",
    "get_effective_host",
    # Cluster commands
    "ClusterCommandRunner",
    "KubectlRunner",
    "WorkloadRef",
    "as_workload_ref",
    # Mock administration
    "MappingRule",
    "WiremockAdminClient",
    # Dependent services
    "DependentServiceHandle",
    "MongoConfig",
    "MongoHandle",
]
