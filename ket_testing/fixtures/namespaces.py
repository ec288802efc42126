"""Namespace utilities for cluster-backed integration tests.

All operations of a TestEnvironment are confined to one Kubernetes namespace,
so the namespace name is validated once, up front, against the Kubernetes
DNS-label rules.

Functions:
    require_valid_namespace: Validate or raise InvalidNamespaceError

Example:
    from ket_testing.fixtures.namespaces import require_valid_namespace

    namespace = require_valid_namespace(os.environ["KET_TEST_NAMESPACE"])
"""

from __future__ import annotations

import re

# K8s namespace constraints
MAX_NAMESPACE_LENGTH = 63
NAMESPACE_PATTERN = re.compile(r"^[a-z0-9]([-a-z0-9]*[a-z0-9])?$")


class InvalidNamespaceError(ValueError):
    """Raised when a namespace name is invalid for Kubernetes."""

    def __init__(self, namespace: str, reason: str) -> None:
        self.namespace = namespace
        self.reason = reason
        super().__init__(f"Invalid namespace '{namespace}': {reason}")


def require_valid_namespace(namespace: str) -> str:
    """Return ``namespace`` unchanged if valid, otherwise raise.

    Raises:
        InvalidNamespaceError: If the name breaks the K8s naming rules.
    """
    if not namespace:
        raise InvalidNamespaceError(namespace, "namespace must not be empty")
    if len(namespace) > MAX_NAMESPACE_LENGTH:
        raise InvalidNamespaceError(
            namespace, f"longer than {MAX_NAMESPACE_LENGTH} characters"
        )
    if not NAMESPACE_PATTERN.match(namespace):
        raise InvalidNamespaceError(
            namespace,
            "must be lowercase alphanumeric or '-', starting and ending alphanumeric",
        )
    return namespace


# Module exports
__all__ = [
    "InvalidNamespaceError",
    "MAX_NAMESPACE_LENGTH",
    "require_valid_namespace",
]
