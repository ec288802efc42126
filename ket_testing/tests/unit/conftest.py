"""Unit test configuration."""

from __future__ import annotations

import pytest


@pytest.fixture(autouse=True)
def _isolate_host_overrides(monkeypatch: pytest.MonkeyPatch) -> None:
    """Keep host override variables from leaking into URL assertions."""
    monkeypatch.delenv("INTEGRATION_TEST_HOST", raising=False)
    monkeypatch.delenv("WIREMOCK_HOST", raising=False)
    monkeypatch.delenv("MONGODB_URI", raising=False)
