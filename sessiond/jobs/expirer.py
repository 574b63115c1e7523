"""
Periodic expiry of idle sessions and reconciliation of the counters hash.

Runs on at most one node per interval: the job lock is kept until its
lease runs out, so nodes waking up later in the same interval skip the run.
"""

import logging
import time
from dataclasses import dataclass, field
from typing import Dict, List, Optional

from sessiond.metrics import (
    sessiond_job_duration_seconds,
    sessiond_job_runs_total,
    sessiond_sessions_counter,
)
from sessiond.storage import keys
from sessiond.storage.lock import RedisLock
from sessiond.storage.utils import scan_keys

logger = logging.getLogger(__name__)


@dataclass
class ExpiryResult:
    expired_session_ids: List[str] = field(default_factory=list)
    counters: Dict[str, int] = field(default_factory=dict)


class SessionExpirer:
    """Expiry and counters job of a coordinator."""

    def __init__(self, coordinator):
        self.coordinator = coordinator

    def run(self) -> Optional[ExpiryResult]:
        state = self.coordinator.get_state()
        interval_millis = state.expirer_and_counters_interval_minutes * 60 * 1000
        renewal_millis = min(state.lock_update_frequency, max(interval_millis // 2, 1))
        return self.expire_sessions_and_update_counters(interval_millis, renewal_millis)

    def expire_sessions_and_update_counters(
        self,
        lock_ttl_millis: int,
        renewal_millis: int,
        now: Optional[int] = None,
        delete_lock: bool = False,
    ) -> Optional[ExpiryResult]:
        """Run one pass if no other node holds the job lock.

        Args:
            lock_ttl_millis: Lease of the job lock
            renewal_millis: Renewal interval of the job lock
            now: Reference time in ms (defaults to the coordinator clock)
            delete_lock: Delete the lock afterwards instead of letting it expire

        Returns:
            The pass result, or None if the lock was held elsewhere
        """
        connector = self.coordinator.connector
        lock = RedisLock.acquire(
            connector, keys.REDIS_SESSION_EXPIRE_AND_COUNTERS_LOCK, lock_ttl_millis, renewal_millis
        )
        if lock is None:
            sessiond_job_runs_total.labels(job="expirer", outcome="skipped").inc()
            logger.debug("Expiry job runs on another node")
            return None

        start = time.perf_counter()
        try:
            now = now if now is not None else self.coordinator.now()
            result = ExpiryResult()
            result.expired_session_ids = self._expire(now)
            result.counters = self._update_counters(now)
            sessiond_job_runs_total.labels(job="expirer", outcome="done").inc()
            logger.info(
                f"Expired {len(result.expired_session_ids)} sessions; counters: {result.counters}"
            )
            return result
        except Exception:
            sessiond_job_runs_total.labels(job="expirer", outcome="error").inc()
            raise
        finally:
            sessiond_job_duration_seconds.labels(job="expirer").observe(time.perf_counter() - start)
            lock.release(delete=delete_lock)

    def _expire(self, now: int) -> List[str]:
        state = self.coordinator.get_state()
        connector = self.coordinator.connector
        windows = (
            (keys.REDIS_SORTEDSET_SESSIONIDS_SHORT_LIFETIME, now - state.session_default_lifetime),
            (keys.REDIS_SORTEDSET_SESSIONIDS_LONG_LIFETIME, now - state.session_long_lifetime),
        )
        expired: List[str] = []
        for set_key, threshold in windows:
            while True:
                page = connector.execute_operation(
                    lambda client: client.zrangebyscore(
                        set_key, "-inf", f"({threshold}", start=0, num=keys.SCAN_LIMIT
                    )
                )
                if not page:
                    break
                self.coordinator.remove_sessions(page)
                # Entries without a primary record are not covered by the removal
                connector.execute_operation(lambda client: client.zrem(set_key, *page))
                expired.extend(page)
        return expired

    def _update_counters(self, now: int) -> Dict[str, int]:
        state = self.coordinator.get_state()
        active_threshold = now - state.session_default_lifetime

        def reconcile(client) -> Dict[str, int]:
            short_count = client.zcard(keys.REDIS_SORTEDSET_SESSIONIDS_SHORT_LIFETIME)
            long_count = client.zcard(keys.REDIS_SORTEDSET_SESSIONIDS_LONG_LIFETIME)
            active = client.zcount(
                keys.REDIS_SORTEDSET_SESSIONIDS_SHORT_LIFETIME, active_threshold, "+inf"
            ) + client.zcount(
                keys.REDIS_SORTEDSET_SESSIONIDS_LONG_LIFETIME, active_threshold, "+inf"
            )
            counters = {
                keys.COUNTER_SESSION_TOTAL: short_count + long_count,
                keys.COUNTER_SESSION_ACTIVE: active,
                keys.COUNTER_SESSION_SHORT: short_count,
                keys.COUNTER_SESSION_LONG: long_count,
            }
            for brand_key in set(scan_keys(client, keys.all_brand_sets_pattern())):
                brand_id = keys.suffix_of(brand_key)
                counters[keys.brand_total_counter(brand_id)] = client.zcard(brand_key)
                counters[keys.brand_active_counter(brand_id)] = client.zcount(
                    brand_key, active_threshold, "+inf"
                )

            stale = [
                name
                for name in client.hkeys(keys.REDIS_HASH_SESSION_COUNTER)
                if name not in counters
            ]
            pipe = client.pipeline(transaction=True)
            pipe.hset(keys.REDIS_HASH_SESSION_COUNTER, mapping=counters)
            if stale:
                pipe.hdel(keys.REDIS_HASH_SESSION_COUNTER, *stale)
            pipe.execute()
            return counters

        counters = self.coordinator.connector.execute_operation(reconcile)
        for name, value in counters.items():
            sessiond_sessions_counter.labels(counter=name).set(value)
        return counters
