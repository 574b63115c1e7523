"""
Startup check of the stored schema version.

If the cluster's data was written with an older schema, exactly one node
purges all session data and stamps the current version while the others
wait for it.
"""

import logging
import random
import time
from typing import Callable

from sessiond.metrics import sessiond_job_runs_total
from sessiond.storage import keys
from sessiond.storage.connector import RedisConnector
from sessiond.storage.lock import RedisLock
from sessiond.storage.utils import scan_keys

logger = logging.getLogger(__name__)

_EXCLUDED_KEYS = {keys.REDIS_SESSION_VERSION, keys.REDIS_SESSION_VERSION_LOCK}


def stored_version(connector: RedisConnector) -> int:
    value = connector.execute_operation(lambda client: client.get(keys.REDIS_SESSION_VERSION))
    return int(value) if value is not None else 0


def _purge(client, version: int) -> int:
    deleted = 0
    batch = []
    for key in scan_keys(client, keys.all_data_pattern()):
        if key in _EXCLUDED_KEYS:
            continue
        batch.append(key)
        if len(batch) >= keys.SCAN_LIMIT:
            deleted += client.delete(*batch)
            batch = []
    if batch:
        deleted += client.delete(*batch)
    client.set(keys.REDIS_SESSION_VERSION, str(version))
    return deleted


def check_version(
    connector: RedisConnector,
    version: int = keys.VERSION,
    lock_ttl_millis: int = 30000,
    renewal_millis: int = 10000,
    sleep: Callable[[float], None] = time.sleep,
) -> bool:
    """Make sure the stored data matches ``version``, purging it if outdated.

    Retries until the version is current, backing off with a randomized,
    linearly growing delay while another node holds the migration lock.

    Returns:
        True if this node purged the data
    """
    retry_count = 0
    while True:
        if stored_version(connector) >= version:
            logger.debug(f"Stored session data has current version {version}")
            return False

        lock = RedisLock.acquire(
            connector, keys.REDIS_SESSION_VERSION_LOCK, lock_ttl_millis, renewal_millis
        )
        if lock is None:
            retry_count += 1
            wait_seconds = retry_count * 10 + random.random() * 10
            logger.info(
                f"Another node migrates session data; re-checking version in {wait_seconds:.1f}s"
            )
            sleep(wait_seconds)
            continue

        try:
            if stored_version(connector) >= version:
                return False
            deleted = connector.execute_operation(lambda client: _purge(client, version))
            sessiond_job_runs_total.labels(job="version", outcome="done").inc()
            logger.info(f"Purged {deleted} outdated session keys and set version to {version}")
            return True
        finally:
            lock.release()
