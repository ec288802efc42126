"""MongoDB dependent service handle for integration tests.

Provides a connection wrapper around the MongoDB instance deployed in the test
namespace. All helpers operate on one fixed database/collection
(``testdb.testdata`` by default) and exist to seed and assert persisted state.

Example:
    from ket_testing.fixtures.mongodb import MongoConfig, MongoHandle

    mongo = MongoHandle(MongoConfig(namespace="ket-test"))
    mongo.connect()
    try:
        mongo.insert_data("greeting", "hello")
        assert mongo.count_documents() == 1
    finally:
        mongo.disconnect()
"""

from __future__ import annotations

import os
from collections.abc import Callable
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Any

import structlog
from pydantic import BaseModel, ConfigDict, Field
from pymongo import MongoClient
from pymongo.errors import PyMongoError

from ket_testing.errors import ConnectionFailedError, DataStoreError, NotConnectedError
from ket_testing.fixtures.handles import DependentServiceHandle

if TYPE_CHECKING:
    from pymongo.collection import Collection

logger = structlog.get_logger(__name__)


class MongoConfig(BaseModel):
    """Configuration for the MongoDB handle.

    Attributes:
        host: MongoDB K8s service name.
        port: MongoDB port (default 27017).
        namespace: K8s namespace where MongoDB runs.
        uri: Full connection string. Overrides host/port/namespace when set.
        database: Fixed database used for assertions.
        collection: Fixed collection used for assertions.
        server_selection_timeout_ms: How long connect() may wait for a server.
    """

    model_config = ConfigDict(frozen=True)

    host: str = Field(default_factory=lambda: os.environ.get("MONGODB_HOST", "mongodb"))
    port: int = Field(
        default_factory=lambda: int(os.environ.get("MONGODB_PORT", "27017")),
        ge=1,
        le=65535,
    )
    namespace: str = Field(default="ket-test")
    uri: str | None = Field(default_factory=lambda: os.environ.get("MONGODB_URI"))
    database: str = Field(default_factory=lambda: os.environ.get("MONGODB_DATABASE", "testdb"))
    collection: str = Field(
        default_factory=lambda: os.environ.get("MONGODB_COLLECTION", "testdata")
    )
    server_selection_timeout_ms: int = Field(default=5000, ge=1)

    @property
    def k8s_host(self) -> str:
        """Get K8s DNS hostname for MongoDB service."""
        return f"{self.host}.{self.namespace}.svc.cluster.local"

    @property
    def connection_uri(self) -> str:
        if self.uri:
            return self.uri
        return f"mongodb://{self.k8s_host}:{self.port}"


class MongoHandle(DependentServiceHandle):
    """DependentServiceHandle for MongoDB.

    Args:
        config: MongoDB configuration. Uses defaults if not provided.
        client_factory: Callable building the client from a URI and keyword
            options. Defaults to ``pymongo.MongoClient``.
    """

    name = "MongoDB"

    def __init__(
        self,
        config: MongoConfig | None = None,
        *,
        client_factory: Callable[..., MongoClient[dict[str, Any]]] | None = None,
    ) -> None:
        self.config = config or MongoConfig()
        self._client_factory = client_factory or MongoClient
        self._client: MongoClient[dict[str, Any]] | None = None
        self._collection: Collection[dict[str, Any]] | None = None

    @property
    def is_connected(self) -> bool:
        return self._collection is not None

    def connect(self) -> None:
        """Connect and ping the server. A no-op while already connected.

        Raises:
            ConnectionFailedError: If the client cannot be built or the ping
                fails. The client is closed before raising.
        """
        if self.is_connected:
            logger.debug("mongodb_already_connected")
            return

        uri = self.config.connection_uri
        try:
            client = self._client_factory(
                uri,
                serverSelectionTimeoutMS=self.config.server_selection_timeout_ms,
            )
        except PyMongoError as e:
            raise ConnectionFailedError(f"Failed to connect to MongoDB at {uri}: {e}") from e
        try:
            # MongoClient connects lazily; ping to fail fast
            client.admin.command("ping")
        except PyMongoError as e:
            client.close()
            raise ConnectionFailedError(f"Failed to connect to MongoDB at {uri}: {e}") from e

        self._client = client
        self._collection = client[self.config.database][self.config.collection]
        logger.info(
            "mongodb_connected",
            database=self.config.database,
            collection=self.config.collection,
        )

    def disconnect(self) -> None:
        client, self._client, self._collection = self._client, None, None
        if client is None:
            return
        try:
            client.close()
        except Exception as e:  # noqa: BLE001
            logger.warning("mongodb_disconnect_failed", error=str(e))
            return
        logger.info("mongodb_disconnected")

    @property
    def collection(self) -> Collection[dict[str, Any]]:
        """The fixed test collection.

        Raises:
            NotConnectedError: If connect() has not succeeded.
        """
        if self._collection is None:
            raise NotConnectedError(self.name)
        return self._collection

    def insert_data(self, name: str, value: Any) -> Any:
        """Insert a ``{name, value, timestamp}`` document and return its id."""
        collection = self.collection
        try:
            result = collection.insert_one(
                {"name": name, "value": value, "timestamp": datetime.now(timezone.utc)}
            )
        except PyMongoError as e:
            raise DataStoreError(f"Failed to insert data: {e}") from e
        return result.inserted_id

    def get_data(self, name: str) -> dict[str, Any] | None:
        """Return the first document with ``name``, or None."""
        collection = self.collection
        try:
            return collection.find_one({"name": name})
        except PyMongoError as e:
            raise DataStoreError(f"Failed to get data: {e}") from e

    def count_documents(self, query: dict[str, Any] | None = None) -> int:
        collection = self.collection
        try:
            return collection.count_documents(query or {})
        except PyMongoError as e:
            raise DataStoreError(f"Failed to count documents: {e}") from e

    def clear_data(self) -> int:
        """Delete every document in the test collection.

        Returns:
            Number of documents deleted.
        """
        collection = self.collection
        try:
            result = collection.delete_many({})
        except PyMongoError as e:
            raise DataStoreError(f"Failed to clear data: {e}") from e
        return result.deleted_count


__all__ = [
    "MongoConfig",
    "MongoHandle",
]
