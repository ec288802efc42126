"""Service address resolution for in-namespace services.

Tests normally run inside the cluster, where a service is reachable as
``<service>.<namespace>``. For host-based runs (port-forwards, NodePorts)
the host can be overridden per service or globally.

Environment Variables:
    INTEGRATION_TEST_HOST: Override host for all services
        - "k8s": Use fully qualified K8s DNS names
        - any other value: Use that host verbatim
    {SERVICE}_HOST: Override host for one service (e.g., WIREMOCK_HOST=localhost)

Example:
    from ket_testing.fixtures.services import ServiceEndpoint

    endpoint = ServiceEndpoint("wiremock", 8080, "ket-test")
    endpoint.url("/__admin/mappings")
    # "http://wiremock.ket-test:8080/__admin/mappings"
"""

from __future__ import annotations

import os
from dataclasses import dataclass


def get_effective_host(service_name: str, namespace: str) -> str:
    """Determine the effective host for a service.

    Args:
        service_name: Name of the K8s service (e.g., "wiremock").
        namespace: K8s namespace.

    Returns:
        Effective hostname to use for connections.
    """
    # Check service-specific override (e.g., WIREMOCK_HOST=localhost)
    env_key = f"{service_name.upper().replace('-', '_')}_HOST"
    service_host = os.environ.get(env_key)
    if service_host:
        return service_host

    global_host = os.environ.get("INTEGRATION_TEST_HOST")
    if global_host == "k8s":
        return f"{service_name}.{namespace}.svc.cluster.local"
    if global_host:
        return global_host

    return f"{service_name}.{namespace}"


@dataclass(frozen=True)
class ServiceEndpoint:
    """Represents a K8s service endpoint.

    Attributes:
        name: Service name (e.g., "wiremock", "mongodb")
        port: Service port number
        namespace: K8s namespace
    """

    name: str
    port: int
    namespace: str

    @property
    def host(self) -> str:
        """Get the effective hostname for the service."""
        return get_effective_host(self.name, self.namespace)

    @property
    def base_url(self) -> str:
        return f"http://{self.host}:{self.port}"

    def url(self, path: str = "") -> str:
        """Build an HTTP URL for ``path`` on this endpoint."""
        if path and not path.startswith("/"):
            path = f"/{path}"
        return f"{self.base_url}{path}"

    def __str__(self) -> str:
        return f"{self.name}:{self.port} ({self.namespace})"


# Module exports
__all__ = [
    "ServiceEndpoint",
    "get_effective_host",
]
