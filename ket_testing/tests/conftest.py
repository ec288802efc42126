"""Pytest configuration for ket-testing's own tests."""

from __future__ import annotations

import pytest


def pytest_configure(config: pytest.Config) -> None:
    """Configure pytest markers."""
    config.addinivalue_line(
        "markers",
        "integration: Integration tests requiring a live K8s namespace",
    )
