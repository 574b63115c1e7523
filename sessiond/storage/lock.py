"""
Lease locks on Redis.

A lock is a string key holding a random token, created with SET NX PX.
While held, a daemon thread pushes the expiry forward every renewal
interval. Release only deletes the key if it still holds our token; the
check and the delete run in one WATCH/MULTI transaction so an expired and
re-acquired lease is never released by its former holder.
"""

import logging
import threading
import uuid
from typing import Optional

import redis

from sessiond.exceptions import StorageConnectivityError
from sessiond.metrics import sessiond_lock_acquisitions_total
from sessiond.storage.connector import RedisConnector

logger = logging.getLogger(__name__)


def _compare_and_delete(client: redis.Redis, name: str, token: str) -> bool:
    with client.pipeline() as pipe:
        try:
            pipe.watch(name)
            if pipe.get(name) != token:
                pipe.unwatch()
                return False
            pipe.multi()
            pipe.delete(name)
            pipe.execute()
            return True
        except redis.exceptions.WatchError:
            return False


def _compare_and_expire(client: redis.Redis, name: str, token: str, ttl_millis: int) -> bool:
    with client.pipeline() as pipe:
        try:
            pipe.watch(name)
            if pipe.get(name) != token:
                pipe.unwatch()
                return False
            pipe.multi()
            pipe.pexpire(name, ttl_millis)
            pipe.execute()
            return True
        except redis.exceptions.WatchError:
            return False


class RedisLock:
    """A held lease lock. Obtain one through :meth:`acquire`."""

    def __init__(
        self,
        connector: RedisConnector,
        name: str,
        token: str,
        ttl_millis: int,
        renewal_millis: int,
    ):
        self.connector = connector
        self.name = name
        self.token = token
        self.ttl_millis = ttl_millis
        self.renewal_millis = renewal_millis
        self._stopped = threading.Event()
        self._renewal_thread: Optional[threading.Thread] = None

    @classmethod
    def acquire(
        cls,
        connector: RedisConnector,
        name: str,
        ttl_millis: int,
        renewal_millis: int,
    ) -> Optional["RedisLock"]:
        """Try to obtain the lock without blocking.

        Args:
            connector: Redis connector
            name: Lock key
            ttl_millis: Lease time
            renewal_millis: Interval at which the lease is extended (< ttl_millis)

        Returns:
            The held lock, or None if another holder owns it
        """
        if renewal_millis >= ttl_millis:
            raise ValueError("Renewal interval must be shorter than the lease time")

        token = uuid.uuid4().hex
        acquired = connector.execute_operation(
            lambda client: client.set(name, token, nx=True, px=ttl_millis)
        )
        if not acquired:
            sessiond_lock_acquisitions_total.labels(lock=name, outcome="busy").inc()
            logger.debug(f"Lock {name} is held by another node")
            return None

        sessiond_lock_acquisitions_total.labels(lock=name, outcome="acquired").inc()
        lock = cls(connector, name, token, ttl_millis, renewal_millis)
        lock._start_renewal()
        logger.debug(f"Acquired lock {name}")
        return lock

    @staticmethod
    def exists(connector: RedisConnector, name: str) -> bool:
        return connector.execute_operation(lambda client: client.exists(name)) > 0

    @property
    def renewing(self) -> bool:
        return self._renewal_thread is not None and self._renewal_thread.is_alive()

    def _start_renewal(self) -> None:
        self._renewal_thread = threading.Thread(
            target=self._renewal_loop,
            daemon=True,
            name=f"LockRenewal-{self.name}",
        )
        self._renewal_thread.start()

    def _renewal_loop(self) -> None:
        interval = self.renewal_millis / 1000.0
        while not self._stopped.wait(interval):
            try:
                renewed = self.connector.execute_operation(
                    lambda client: _compare_and_expire(
                        client, self.name, self.token, self.ttl_millis
                    )
                )
            except StorageConnectivityError as e:
                logger.warning(f"Failed to renew lock {self.name}: {e}")
                continue
            if not renewed:
                logger.warning(f"Lost lock {self.name}; stopping renewal")
                return

    def cancel_renewal(self) -> None:
        self._stopped.set()
        thread = self._renewal_thread
        if thread is not None and thread is not threading.current_thread():
            thread.join(timeout=self.renewal_millis / 1000.0 + 1)

    def release(self, delete: bool = True) -> bool:
        """Stop renewing and, unless ``delete`` is False, remove the lock.

        Keeping the key lets the lease run out on its own TTL, which keeps
        other nodes from repeating a periodic job within the same interval.

        Returns:
            True if the key was deleted by this call
        """
        self.cancel_renewal()
        if not delete:
            return False
        try:
            deleted = self.connector.execute_operation(
                lambda client: _compare_and_delete(client, self.name, self.token)
            )
        except StorageConnectivityError as e:
            logger.warning(f"Failed to release lock {self.name}, it expires on its own: {e}")
            return False
        if not deleted:
            logger.warning(f"Lock {self.name} was no longer held on release")
        return deleted

    def __enter__(self) -> "RedisLock":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.release()
