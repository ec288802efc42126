"""Cluster-resident test environments for Kubernetes integration tests.

This package provisions ephemeral fixtures inside a Kubernetes namespace and
gives test code deterministic ways to observe and steer the live services
running there, without hardcoded sleeps.

Components:
    environment: TestEnvironment orchestrator (setup, teardown, per-test reset)
    fixtures: Collaborators (cluster commands, polling, mock admin, MongoDB)
    fakes: In-memory cluster for exercising the orchestrator without a cluster
    pytest_plugin: Session and per-test pytest fixtures

Usage:
    from ket_testing import EnvironmentConfig, TestEnvironment, Workload

    env = TestEnvironment(
        EnvironmentConfig(namespace="ket-test"),
        workloads=[
            Workload(name="mongodb", manifest="manifests/mongodb.yml",
                     selector="app=mongodb", service="mongodb"),
        ],
        mock_services=["wiremock"],
    )
    with env:
        env.update_mapping("wiremock", "/api/data", "GET", {"message": "hi"})
"""

from __future__ import annotations

from ket_testing.environment import (
    EnvironmentConfig,
    EnvironmentState,
    TestEnvironment,
    Workload,
)

__version__ = "0.1.0"

__all__ = [
    "EnvironmentConfig",
    "EnvironmentState",
    "TestEnvironment",
    "Workload",
]
