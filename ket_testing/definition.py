"""Declarative environment definitions.

Suites describe their fixture catalogue as data in ``ket-environment.yaml``
at the project root: which workloads to deploy (in dependency order), which
mock services to reset between tests, and which dependent stores to connect.

Example ket-environment.yaml:

    workloads:
      - name: mongodb
        manifest: manifests/mongodb.yml
        selector: app=mongodb
        service: mongodb
      - name: wiremock
        manifest: manifests/wiremock.yml
        selector: app=wiremock
        service: wiremock
      - name: example-http-server
        manifest: manifests/example-http-server.yml
        selector: app=example-http-server
    mock_services:
      - wiremock
    dependencies:
      mongodb:
        database: testdb
        collection: testdata

Example:
    from ket_testing.definition import load_environment_definition

    definition = load_environment_definition("ket-environment.yaml")
    [w.name for w in definition.workloads]
    # ["mongodb", "wiremock", "example-http-server"]
"""

from __future__ import annotations

from pathlib import Path

import yaml
from pydantic import BaseModel, ConfigDict, Field, field_validator

from ket_testing.fixtures.handles import DependentServiceHandle
from ket_testing.fixtures.mongodb import MongoConfig, MongoHandle

DEFAULT_DEFINITION_FILE = "ket-environment.yaml"


class Workload(BaseModel):
    """A workload deployed by the environment.

    Attributes:
        name: Workload name (for logs and errors).
        manifest: Manifest path, relative to the project root unless absolute.
        selector: Label selector of the workload's pods.
        service: Service whose endpoints must be ready before continuing.
        condition: Pod condition to wait for. Defaults to "Ready".
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    name: str = Field(..., min_length=1)
    manifest: Path
    selector: str = Field(..., min_length=1)
    service: str | None = None
    condition: str = "Ready"


class MongoDependency(BaseModel):
    """MongoDB dependency settings; unset fields fall back to MongoConfig."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    host: str | None = None
    port: int | None = Field(default=None, ge=1, le=65535)
    uri: str | None = None
    database: str | None = None
    collection: str | None = None

    def to_config(self, namespace: str) -> MongoConfig:
        overrides = self.model_dump(exclude_none=True)
        return MongoConfig(namespace=namespace, **overrides)


class DependenciesDefinition(BaseModel):
    model_config = ConfigDict(frozen=True, extra="forbid")

    mongodb: MongoDependency | None = None


class EnvironmentDefinition(BaseModel):
    """Workloads, mock services and dependencies of a test environment."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    workloads: list[Workload] = Field(default_factory=list)
    mock_services: list[str] = Field(default_factory=list)
    dependencies: DependenciesDefinition = Field(default_factory=DependenciesDefinition)

    @field_validator("workloads")
    @classmethod
    def _unique_workload_names(cls, workloads: list[Workload]) -> list[Workload]:
        seen: set[str] = set()
        for workload in workloads:
            if workload.name in seen:
                raise ValueError(f"duplicate workload name: {workload.name}")
            seen.add(workload.name)
        return workloads

    def build_dependencies(self, namespace: str) -> dict[str, DependentServiceHandle]:
        """Create (unconnected) handles for the declared dependencies."""
        handles: dict[str, DependentServiceHandle] = {}
        if self.dependencies.mongodb is not None:
            handles["mongodb"] = MongoHandle(self.dependencies.mongodb.to_config(namespace))
        return handles


def load_environment_definition(path: str | Path) -> EnvironmentDefinition:
    """Load and validate an environment definition file.

    Args:
        path: YAML file path.

    Returns:
        The validated definition. An empty file yields an empty definition.

    Raises:
        FileNotFoundError: If the file does not exist.
        ValueError: If the YAML is invalid or not a mapping.
        pydantic.ValidationError: If the content does not validate.
    """
    definition_path = Path(path)
    with definition_path.open() as f:
        try:
            data = yaml.safe_load(f)
        except yaml.YAMLError as e:
            msg = f"{definition_path} is not valid YAML: {e}"
            raise ValueError(msg) from e

    if data is None:
        data = {}
    if not isinstance(data, dict):
        msg = f"{definition_path} must contain a mapping, got {type(data).__name__}"
        raise ValueError(msg)
    return EnvironmentDefinition.model_validate(data)


__all__ = [
    "DEFAULT_DEFINITION_FILE",
    "DependenciesDefinition",
    "EnvironmentDefinition",
    "MongoDependency",
    "Workload",
    "load_environment_definition",
]
