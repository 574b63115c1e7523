"""
Cluster-wide invalidation channel on Redis pub/sub.

Every node publishes to and listens on one channel. Messages carry the id
of the publishing node so a node recognizes (and ignores) its own messages.
"""

import json
import logging
import uuid
from dataclasses import dataclass
from typing import Callable, List, Optional

import redis

from sessiond.exceptions import StorageConnectivityError
from sessiond.metrics import (
    sessiond_invalidations_published_total,
    sessiond_invalidations_received_total,
)
from sessiond.storage.connector import RedisConnector
from sessiond.storage.models import SessionEvent

logger = logging.getLogger(__name__)


@dataclass
class Message:
    """A delivered channel message."""

    data: SessionEvent
    sender: Optional[str]
    remote: bool


class InvalidationChannel:
    """Publish/subscribe fan-out of session events."""

    def __init__(
        self,
        connector: RedisConnector,
        channel_name: str,
        instance_id: Optional[str] = None,
    ):
        self.connector = connector
        self.channel_name = channel_name
        self.instance_id = instance_id or uuid.uuid4().hex
        self._listeners: List[Callable[[Message], None]] = []
        self._pubsub = None
        self._worker = None

    def publish(self, event: SessionEvent) -> None:
        """Send an event to all nodes.

        Raises:
            StorageConnectivityError: If Redis is unreachable
        """
        payload = event.to_json(sender=self.instance_id)
        try:
            self.connector.execute_operation(
                lambda client: client.publish(self.channel_name, payload)
            )
        except StorageConnectivityError:
            sessiond_invalidations_published_total.labels(status="error").inc()
            raise
        sessiond_invalidations_published_total.labels(status="success").inc()

    def subscribe(self, listener: Callable[[Message], None]) -> None:
        """Register a listener; the first registration starts the receiver thread."""
        self._listeners.append(listener)
        if self._worker is None:
            self._pubsub = self.connector.client.pubsub(ignore_subscribe_messages=True)
            self._pubsub.subscribe(**{self.channel_name: self.on_raw_message})
            self._worker = self._pubsub.run_in_thread(
                sleep_time=0.05, daemon=True
            )
            self._worker.name = "InvalidationChannel"
            logger.info(f"Subscribed to channel {self.channel_name} as node {self.instance_id}")

    def unsubscribe(self, listener: Optional[Callable[[Message], None]] = None) -> None:
        """Remove a listener, or all listeners if none is given, and stop receiving
        once no listener is left."""
        if listener is None:
            self._listeners.clear()
        elif listener in self._listeners:
            self._listeners.remove(listener)
        if self._listeners or self._worker is None:
            return
        try:
            self._worker.stop()
            self._pubsub.close()
        except redis.exceptions.RedisError as e:
            logger.warning(f"Failed to close subscription on {self.channel_name}: {e}")
        self._worker = None
        self._pubsub = None
        logger.info(f"Unsubscribed from channel {self.channel_name}")

    def on_raw_message(self, raw: dict) -> None:
        """Decode a pub/sub message and hand it to the listeners."""
        try:
            data = raw["data"]
            if isinstance(data, bytes):
                data = data.decode("utf-8")
            document = json.loads(data)
            event = SessionEvent.from_dict(document)
        except (KeyError, ValueError, TypeError) as e:
            logger.warning(f"Ignoring malformed message on {self.channel_name}: {e}")
            return

        sender = document.get("sender")
        remote = sender != self.instance_id
        sessiond_invalidations_received_total.labels(
            origin="remote" if remote else "local"
        ).inc()
        message = Message(data=event, sender=sender, remote=remote)
        for listener in list(self._listeners):
            try:
                listener(message)
            except Exception as e:
                logger.error(f"Listener failed to handle message on {self.channel_name}: {e}")
