"""Pytest plugin wiring a TestEnvironment into a test session.

Registered through the ``pytest11`` entry point. The session-scoped
``ket_environment`` fixture builds the environment from
``ket-environment.yaml`` (or ``--ket-definition`` / $KET_ENVIRONMENT_FILE),
sets it up once and tears it down at the end of the session, even when setup
failed partway. Tests request ``ket_env`` to get the same environment plus a
mock reset after the test.

Example:
    def test_data_endpoint(ket_env: TestEnvironment) -> None:
        ket_env.update_mapping("wiremock", "/api/data", "GET", {"message": "hi"})
        response = httpx.get("http://example-service:3000/api/data")
        assert response.json() == {"message": "hi"}
"""

from __future__ import annotations

import os
from collections.abc import Generator
from pathlib import Path

import pytest

from ket_testing.definition import (
    DEFAULT_DEFINITION_FILE,
    EnvironmentDefinition,
    load_environment_definition,
)
from ket_testing.environment import EnvironmentConfig, TestEnvironment


def pytest_addoption(parser: pytest.Parser) -> None:
    group = parser.getgroup("ket", "cluster-backed test environments")
    group.addoption(
        "--ket-definition",
        default=None,
        help=f"Environment definition file (default: {DEFAULT_DEFINITION_FILE})",
    )


def pytest_configure(config: pytest.Config) -> None:
    """Register markers used by cluster-backed tests."""
    config.addinivalue_line(
        "markers",
        "integration: Integration tests requiring a live K8s namespace",
    )


@pytest.fixture(scope="session")
def ket_environment_config() -> EnvironmentConfig:
    """Environment configuration read from the launcher's variables."""
    return EnvironmentConfig()


@pytest.fixture(scope="session")
def ket_environment_definition(
    request: pytest.FixtureRequest,
    ket_environment_config: EnvironmentConfig,
) -> EnvironmentDefinition:
    """The environment definition for this session."""
    location = (
        request.config.getoption("--ket-definition")
        or os.environ.get("KET_ENVIRONMENT_FILE")
        or DEFAULT_DEFINITION_FILE
    )
    return load_environment_definition(ket_environment_config.resolve_path(Path(location)))


@pytest.fixture(scope="session")
def ket_environment(
    ket_environment_config: EnvironmentConfig,
    ket_environment_definition: EnvironmentDefinition,
) -> Generator[TestEnvironment, None, None]:
    """Session-wide TestEnvironment, set up once and torn down at the end."""
    environment = TestEnvironment.from_definition(
        ket_environment_definition, ket_environment_config
    )
    try:
        environment.setup()
        yield environment
    finally:
        environment.teardown()


@pytest.fixture
def ket_env(ket_environment: TestEnvironment) -> Generator[TestEnvironment, None, None]:
    """The session environment, with mocks reset after the test."""
    yield ket_environment
    ket_environment.after_each()
