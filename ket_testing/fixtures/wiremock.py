"""WireMock admin client for steering mock services inside a namespace.

Environments ship with a complete, manifest-declared catalogue of stub
mappings. Tests only *edit* the response of an existing mapping; they never
create new ones, so a test-added stub can never shadow (or be shadowed by) a
default one. Resetting mappings restores the declared defaults.

Admin surface (per service): ``http://<service>.<namespace>:<port>/__admin``

    GET    /mappings            list mappings
    PUT    /mappings/{id}       replace a mapping
    POST   /mappings/reset      restore file-backed default mappings
    GET    /requests            list captured requests
    DELETE /requests            clear captured requests

Example:
    from ket_testing.fixtures.wiremock import WiremockAdminClient

    with WiremockAdminClient("ket-test") as admin:
        admin.update_mapping(
            "wiremock", "/api/data", "GET", {"message": "Hello from Wiremock!"}
        )
        requests = admin.get_captured_requests("wiremock")
"""

from __future__ import annotations

from types import TracebackType
from typing import Any

import httpx
import structlog
from pydantic import AliasChoices, BaseModel, ConfigDict, Field

from ket_testing.errors import AdminUnreachableError, MappingNotFoundError
from ket_testing.fixtures.services import ServiceEndpoint

DEFAULT_ADMIN_PORT = 8080
DEFAULT_HTTP_TIMEOUT = 10.0

ADMIN_PREFIX = "/__admin"


class MappingRule(BaseModel):
    """A stub mapping as stored by the mock service.

    The identifier is assigned by the mock service. Newer WireMock releases
    return both ``id`` and ``uuid``; older ones only ``uuid``.

    Attributes:
        id: Opaque server-assigned identifier.
        request: Request matcher block (``url`` or ``urlPath``, ``method``, ...).
        response: Response definition block.
    """

    model_config = ConfigDict(extra="allow")

    id: str = Field(..., validation_alias=AliasChoices("id", "uuid"))
    request: dict[str, Any] = Field(default_factory=dict)
    response: dict[str, Any] = Field(default_factory=dict)

    @property
    def path(self) -> str | None:
        return self.request.get("url", self.request.get("urlPath"))

    @property
    def method(self) -> str | None:
        return self.request.get("method")

    def matches(self, path: str, method: str) -> bool:
        """Exact (path, method) match; no pattern matching."""
        return self.path == path and self.method == method.upper()


class WiremockAdminClient:
    """HTTP client for WireMock admin APIs in one namespace.

    Args:
        namespace: Namespace the mock services live in.
        port: Admin port of every mock service. Defaults to 8080.
        timeout: HTTP timeout per call in seconds.
        client: Optional pre-built httpx.Client (owned by the caller).
    """

    def __init__(
        self,
        namespace: str,
        *,
        port: int = DEFAULT_ADMIN_PORT,
        timeout: float = DEFAULT_HTTP_TIMEOUT,
        client: httpx.Client | None = None,
    ) -> None:
        self.namespace = namespace
        self.port = port
        self._owns_client = client is None
        self._client = client or httpx.Client(timeout=timeout)
        self._log = structlog.get_logger(__name__).bind(namespace=namespace)

    def admin_url(self, service: str, path: str = "") -> str:
        """Build the admin URL for ``path`` on ``service``."""
        endpoint = ServiceEndpoint(service, self.port, self.namespace)
        return endpoint.url(f"{ADMIN_PREFIX}{path}")

    def _request(
        self,
        service: str,
        method: str,
        path: str,
        *,
        json: dict[str, Any] | None = None,
    ) -> httpx.Response:
        """Send one admin request, failing fast on anything but 2xx.

        Raises:
            AdminUnreachableError: On transport errors or non-2xx status.
        """
        url = self.admin_url(service, path)
        try:
            response = self._client.request(method, url, json=json)
        except httpx.HTTPError as e:
            raise AdminUnreachableError(service, url, None, str(e)) from e
        if not response.is_success:
            raise AdminUnreachableError(service, url, response.status_code, response.text)
        return response

    def list_mappings(self, service: str) -> list[MappingRule]:
        """Fetch all mappings currently registered on ``service``."""
        response = self._request(service, "GET", "/mappings")
        return [MappingRule.model_validate(m) for m in response.json().get("mappings", [])]

    def find_mapping(self, service: str, path: str, method: str) -> MappingRule | None:
        """Return the first mapping matching (path, method), or None.

        If the mock service holds duplicates, the first one in the admin
        listing wins; callers must not rely on which.
        """
        for mapping in self.list_mappings(service):
            if mapping.matches(path, method):
                return mapping
        return None

    def update_mapping(
        self,
        service: str,
        path: str,
        method: str,
        json_body: Any,
    ) -> MappingRule:
        """Replace the response of an existing mapping.

        The stub is sent back as stored (request block, priority, name,
        metadata, ...); only the response block is rebuilt with status 200,
        the given JSON body and a JSON content type.

        Returns:
            The mapping as stored after the update.

        Raises:
            MappingNotFoundError: If no mapping exists for (path, method). No
                write is performed in that case.
        """
        existing = self.find_mapping(service, path, method)
        if existing is None:
            raise MappingNotFoundError(service, path, method)

        payload = existing.model_dump()
        payload["response"] = {
            "status": 200,
            "jsonBody": json_body,
            "headers": {"Content-Type": "application/json"},
        }
        response = self._request(service, "PUT", f"/mappings/{existing.id}", json=payload)
        self._log.info(
            "mapping_updated",
            service=service,
            path=path,
            method=method,
            mapping_id=existing.id,
        )
        if response.content:
            return MappingRule.model_validate(response.json())
        return existing.model_copy(update={"response": payload["response"]})

    def reset_mappings(self, service: str) -> None:
        """Restore the manifest-declared default mappings."""
        self._request(service, "POST", "/mappings/reset")
        self._log.debug("mappings_reset", service=service)

    def get_captured_requests(self, service: str) -> list[dict[str, Any]]:
        """Return the raw captured request log of ``service``."""
        response = self._request(service, "GET", "/requests")
        requests: list[dict[str, Any]] = response.json().get("requests", [])
        return requests

    def reset_captured_requests(self, service: str) -> None:
        """Clear the captured request log of ``service``."""
        self._request(service, "DELETE", "/requests")
        self._log.debug("captured_requests_reset", service=service)

    def is_healthy(self, service: str) -> bool:
        """Check whether the admin API of ``service`` answers. Never raises."""
        try:
            self._request(service, "GET", "/")
        except AdminUnreachableError:
            return False
        return True

    def close(self) -> None:
        if self._owns_client:
            self._client.close()

    def __enter__(self) -> WiremockAdminClient:
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        self.close()


__all__ = [
    "ADMIN_PREFIX",
    "DEFAULT_ADMIN_PORT",
    "MappingRule",
    "WiremockAdminClient",
]
