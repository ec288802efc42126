"""Integration test configuration.

These tests run inside the test namespace, launched by the suite bootstrap
with $KET_TEST_NAMESPACE and $KET_PROJECT_ROOT set. The session environment
comes from the ``ket_environment`` fixture of ``ket_testing.pytest_plugin``.
"""

from __future__ import annotations

import os

import pytest


@pytest.fixture(scope="session", autouse=True)
def _require_namespace() -> None:
    if not os.environ.get("KET_TEST_NAMESPACE"):
        pytest.fail(
            "KET_TEST_NAMESPACE is not set; integration tests must run inside "
            "a provisioned test namespace",
            pytrace=False,
        )
