"""Unit tests for service address resolution."""

from __future__ import annotations

from dataclasses import FrozenInstanceError

import pytest

from ket_testing.fixtures.services import ServiceEndpoint, get_effective_host


class TestGetEffectiveHost:
    """Tests for get_effective_host()."""

    def test_defaults_to_namespace_qualified_name(self) -> None:
        """Test the default host is <service>.<namespace>."""
        assert get_effective_host("wiremock", "ket-test") == "wiremock.ket-test"

    def test_service_specific_override(self, monkeypatch: pytest.MonkeyPatch) -> None:
        """Test <SERVICE>_HOST overrides a single service."""
        monkeypatch.setenv("EXAMPLE_SERVICE_HOST", "localhost")
        assert get_effective_host("example-service", "ket-test") == "localhost"

    def test_global_k8s_override(self, monkeypatch: pytest.MonkeyPatch) -> None:
        """Test INTEGRATION_TEST_HOST=k8s selects the cluster FQDN."""
        monkeypatch.setenv("INTEGRATION_TEST_HOST", "k8s")
        assert get_effective_host("wiremock", "ket-test") == "wiremock.ket-test.svc.cluster.local"

    def test_global_custom_override(self, monkeypatch: pytest.MonkeyPatch) -> None:
        """Test any other INTEGRATION_TEST_HOST value is used verbatim."""
        monkeypatch.setenv("INTEGRATION_TEST_HOST", "127.0.0.1")
        assert get_effective_host("wiremock", "ket-test") == "127.0.0.1"

    def test_service_override_wins_over_global(self, monkeypatch: pytest.MonkeyPatch) -> None:
        """Test the per-service variable takes precedence."""
        monkeypatch.setenv("INTEGRATION_TEST_HOST", "k8s")
        monkeypatch.setenv("WIREMOCK_HOST", "localhost")
        assert get_effective_host("wiremock", "ket-test") == "localhost"


class TestServiceEndpoint:
    """Tests for ServiceEndpoint dataclass."""

    def test_url_building(self) -> None:
        """Test URLs are built from the effective host and port."""
        endpoint = ServiceEndpoint("wiremock", 8080, "ket-test")
        assert endpoint.base_url == "http://wiremock.ket-test:8080"
        assert endpoint.url("/__admin/mappings") == "http://wiremock.ket-test:8080/__admin/mappings"
        assert endpoint.url("health") == "http://wiremock.ket-test:8080/health"

    def test_str(self) -> None:
        """Test the string form names service, port and namespace."""
        assert str(ServiceEndpoint("mongodb", 27017, "ket-test")) == "mongodb:27017 (ket-test)"

    def test_frozen(self) -> None:
        """Test ServiceEndpoint is immutable."""
        endpoint = ServiceEndpoint("mongodb", 27017, "ket-test")
        with pytest.raises(FrozenInstanceError):
            endpoint.port = 1  # type: ignore[misc]
