"""
============================================================================
Redis Connector: command execution against the authoritative store
============================================================================

Every interaction with Redis runs inside an "operation": a callable that
receives a ready client. The connector resolves the client from its pool,
times the operation for Prometheus and turns any Redis failure into a
StorageConnectivityError so callers deal with a single error type.

FEATURES:
---------
* Connection Pooling: one pool per connector, shared by all caller threads
* Prometheus Metrics: per-connector operation counts and latency
* Health Checks: ping and server info
* Replicas: one connector per remote region, used by the replica fan-out

See: sessiond/core/replicas.py for the remote-region fan-out
"""

import logging
import time
from typing import Callable, Optional, TypeVar

import redis

from sessiond.exceptions import StorageConnectivityError
from sessiond.metrics import (
    sessiond_redis_operation_duration_seconds,
    sessiond_redis_operations_total,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")


class RedisConnector:
    """Executes operations against one Redis endpoint."""

    def __init__(self, client: redis.Redis, name: str = "primary"):
        self._client = client
        self.name = name

    @classmethod
    def from_url(
        cls,
        redis_url: str,
        name: str = "primary",
        max_connections: int = 20,
        socket_timeout: float = 5,
        socket_connect_timeout: float = 5,
    ) -> "RedisConnector":
        """Create a connector with its own connection pool.

        Args:
            redis_url: Redis connection URL (e.g., redis://localhost:6379/0)
            name: Label used in logs and metrics
        """
        pool = redis.ConnectionPool.from_url(
            redis_url,
            max_connections=max_connections,
            decode_responses=True,
            socket_connect_timeout=socket_connect_timeout,
            socket_timeout=socket_timeout,
            retry_on_timeout=True,
        )
        client = redis.Redis(connection_pool=pool)
        logger.info(f"Created Redis connector '{name}' with connection pool: {redis_url}")
        return cls(client, name=name)

    @property
    def client(self) -> redis.Redis:
        return self._client

    def execute_operation(self, operation: Callable[[redis.Redis], T]) -> T:
        """Run an operation with a client from the pool.

        Raises:
            StorageConnectivityError: If Redis fails or cannot be reached
        """
        start = time.perf_counter()
        try:
            result = operation(self._client)
        except redis.exceptions.RedisError as e:
            sessiond_redis_operations_total.labels(connector=self.name, status="error").inc()
            raise StorageConnectivityError(
                f"Redis operation failed on connector '{self.name}': {e}"
            ) from e
        finally:
            sessiond_redis_operation_duration_seconds.labels(connector=self.name).observe(
                time.perf_counter() - start
            )
        sessiond_redis_operations_total.labels(connector=self.name, status="success").inc()
        return result

    def health_check(self) -> bool:
        """Check Redis connection health.

        Returns:
            True if Redis is responsive, False otherwise
        """
        try:
            return bool(self.execute_operation(lambda client: client.ping()))
        except StorageConnectivityError as e:
            logger.error(f"Redis health check failed: {e}")
            return False

    def get_info(self) -> dict:
        """Get Redis server info (memory, clients, keys)."""
        try:
            info = self.execute_operation(lambda client: client.info())
            return {
                "connected_clients": info.get("connected_clients", 0),
                "used_memory_human": info.get("used_memory_human", "unknown"),
                "used_memory_bytes": info.get("used_memory", 0),
                "redis_version": info.get("redis_version", "unknown"),
            }
        except StorageConnectivityError as e:
            logger.error(f"Failed to get Redis info: {e}")
            return {}

    def close(self) -> None:
        try:
            self._client.close()
        except redis.exceptions.RedisError as e:
            logger.warning(f"Failed to close Redis connector '{self.name}': {e}")


def get_connector(redis_url: Optional[str] = None, name: str = "primary") -> RedisConnector:
    """Create a connector from the node settings."""
    from sessiond.settings import settings

    return RedisConnector.from_url(
        redis_url or settings.redis.url,
        name=name,
        max_connections=settings.redis.max_connections,
        socket_timeout=settings.redis.socket_timeout,
        socket_connect_timeout=settings.redis.socket_connect_timeout,
    )
