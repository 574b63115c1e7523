"""
Replay of writes to Redis instances of remote regions.

Each replica gets its own background task so one slow or failing region
neither delays nor fails the others, nor the caller.
"""

import logging
from concurrent.futures import Executor
from typing import Callable, List, Optional

import redis

from sessiond.core.executor import submit_else_execute
from sessiond.storage.connector import RedisConnector

logger = logging.getLogger(__name__)


class ReplicaFanout:
    """Fan-out of operations to N replica connectors."""

    def __init__(self, connectors: Optional[List[RedisConnector]] = None, executor: Optional[Executor] = None):
        self.connectors = list(connectors or [])
        self.executor = executor

    def __bool__(self) -> bool:
        return bool(self.connectors)

    def replay(self, description: str, operation: Callable[[redis.Redis], object]) -> None:
        """Run ``operation`` against every replica in the background."""
        for connector in self.connectors:
            submit_else_execute(self.executor, self._run, connector, description, operation)

    @staticmethod
    def _run(connector: RedisConnector, description: str, operation) -> None:
        try:
            connector.execute_operation(operation)
        except Exception as e:
            logger.warning(f"Failed to {description} on replica '{connector.name}': {e}")

    def close(self) -> None:
        for connector in self.connectors:
            connector.close()
