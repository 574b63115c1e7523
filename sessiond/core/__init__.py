"""
Session service of a node.

Contains the coordinator that ties Redis, the local cache and the
invalidation channel together, plus its event bus and replica fan-out.
"""

from sessiond.core.coordinator import KeyedLocks, SessionCoordinator
from sessiond.core.events import EventBus
from sessiond.core.replicas import ReplicaFanout

__all__ = ["EventBus", "KeyedLocks", "ReplicaFanout", "SessionCoordinator"]
