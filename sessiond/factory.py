"""
Factory for session coordinator creation.

ARCHITECTURE:
=============
A node consists of:

1. A Redis connector for the local region (authoritative store)
2. One connector per remote region, used for background replay
3. A worker pool for background work (replay, local eviction)
4. The invalidation channel on Redis pub/sub
5. The state snapshot derived from settings (limits, lifetimes, local cache)
6. The coordinator wiring them together

The module keeps one coordinator per process, created on first use.
"""

import logging
from concurrent.futures import ThreadPoolExecutor
from typing import Callable, Optional

from sessiond.core.coordinator import SessionCoordinator
from sessiond.core.events import EventBus
from sessiond.core.replicas import ReplicaFanout
from sessiond.pubsub.channel import InvalidationChannel
from sessiond.settings import Settings, settings as default_settings
from sessiond.state import SessiondState
from sessiond.storage.connector import get_connector

logger = logging.getLogger(__name__)

_coordinator: Optional[SessionCoordinator] = None


def create_coordinator(
    settings: Optional[Settings] = None,
    user_type_resolver: Optional[Callable[[int, int], str]] = None,
    event_bus: Optional[EventBus] = None,
    start: bool = True,
) -> SessionCoordinator:
    """Build a coordinator from settings.

    Args:
        settings: Node settings (defaults to the global settings)
        user_type_resolver: Maps (user_id, context_id) to a user type for limits
        event_bus: Bus receiving session lifecycle events
        start: Subscribe, run the version check and schedule maintenance jobs

    Returns:
        The coordinator
    """
    settings = settings or default_settings
    state = SessiondState.from_settings(settings, user_type_resolver)

    connector = get_connector(settings.redis.url)
    if not connector.health_check():
        logger.warning("Redis is not reachable yet; operations fail until it is")

    executor = ThreadPoolExecutor(
        max_workers=settings.jobs.worker_threads, thread_name_prefix="sessiond-worker"
    )
    replicas = ReplicaFanout(
        [
            get_connector(url, name=f"replica-{index}")
            for index, url in enumerate(settings.redis.remote_urls, start=1)
        ],
        executor=executor,
    )
    channel = InvalidationChannel(connector, settings.pubsub_channel)

    coordinator = SessionCoordinator(
        connector,
        state,
        channel=channel,
        replicas=replicas,
        event_bus=event_bus,
        executor=executor,
        version_lock_timeout=settings.jobs.version_lock_timeout,
        version_lock_renewal=settings.jobs.version_lock_renewal,
    )
    if start:
        coordinator.start()
    logger.info(
        f"Session coordinator ready (replicas={len(replicas.connectors)}, node={channel.instance_id})"
    )
    return coordinator


def get_coordinator() -> SessionCoordinator:
    """Get the global coordinator instance.

    Initializes on first call based on settings.
    """
    global _coordinator

    if _coordinator is None:
        _coordinator = create_coordinator()

    return _coordinator


def shutdown_coordinator() -> None:
    """Shut down the global coordinator and close its connections."""
    global _coordinator

    if _coordinator is None:
        return
    coordinator = _coordinator
    _coordinator = None
    coordinator.shut_down()
    coordinator.replicas.close()
    coordinator.connector.close()
