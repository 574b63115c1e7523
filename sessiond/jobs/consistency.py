"""
Periodic consistency check of the secondary indexes.

Index entries can outlive their primary record, e.g. when a node dies in
the middle of a removal or a record is dropped for a version mismatch.
The check removes such dangling entries and can re-create missing index
entries of live sessions.
"""

import logging
import time
from dataclasses import dataclass
from typing import Iterable, List, Optional

import redis

from sessiond.exceptions import VersionMismatchError
from sessiond.metrics import sessiond_job_duration_seconds, sessiond_job_runs_total
from sessiond.storage import keys
from sessiond.storage.lock import RedisLock
from sessiond.storage.removal import RemovalCollection
from sessiond.storage.utils import mask_session_id, scan_keys

logger = logging.getLogger(__name__)


@dataclass
class ConsistencyReport:
    dangling_sorted_set_members: int = 0
    dangling_set_members: int = 0
    dangling_mappings: int = 0
    repaired_sessions: int = 0


def _chunks(items: List[str], size: int = keys.SCAN_LIMIT) -> Iterable[List[str]]:
    for start in range(0, len(items), size):
        yield items[start:start + size]


def _missing(client: redis.Redis, session_ids: List[str]) -> List[str]:
    """Ids among ``session_ids`` without a primary record."""
    missing = []
    for chunk in _chunks(session_ids):
        pipe = client.pipeline(transaction=False)
        for session_id in chunk:
            pipe.exists(keys.session_key(session_id))
        for session_id, exists in zip(chunk, pipe.execute()):
            if not exists:
                missing.append(session_id)
    return missing


class ConsistencyCheck:
    """Consistency check job of a coordinator."""

    def __init__(self, coordinator):
        self.coordinator = coordinator

    def run(self) -> Optional[ConsistencyReport]:
        state = self.coordinator.get_state()
        interval_millis = state.consistency_check_interval_minutes * 60 * 1000
        renewal_millis = min(state.lock_update_frequency, max(interval_millis // 2, 1))
        return self.consistency_check(False, interval_millis, renewal_millis)

    def consistency_check(
        self,
        with_session_consistency: bool,
        lock_ttl_millis: int,
        renewal_millis: int,
        delete_lock: bool = False,
    ) -> Optional[ConsistencyReport]:
        """Run one check if no other node holds the job lock.

        Args:
            with_session_consistency: Also re-create missing index entries of live sessions

        Returns:
            What was cleaned up, or None if the lock was held elsewhere
        """
        connector = self.coordinator.connector
        lock = RedisLock.acquire(
            connector, keys.REDIS_SESSION_CONSISTENCY_LOCK, lock_ttl_millis, renewal_millis
        )
        if lock is None:
            sessiond_job_runs_total.labels(job="consistency", outcome="skipped").inc()
            logger.debug("Consistency check runs on another node")
            return None

        start = time.perf_counter()
        try:
            report = connector.execute_operation(
                lambda client: self._check(client, with_session_consistency)
            )
            sessiond_job_runs_total.labels(job="consistency", outcome="done").inc()
            logger.info(f"Session consistency check finished: {report}")
            return report
        except Exception:
            sessiond_job_runs_total.labels(job="consistency", outcome="error").inc()
            raise
        finally:
            sessiond_job_duration_seconds.labels(job="consistency").observe(time.perf_counter() - start)
            lock.release(delete=delete_lock)

    def _check(self, client: redis.Redis, with_session_consistency: bool) -> ConsistencyReport:
        report = ConsistencyReport()
        removal = RemovalCollection()

        sorted_set_keys = [
            keys.REDIS_SORTEDSET_SESSIONIDS_SHORT_LIFETIME,
            keys.REDIS_SORTEDSET_SESSIONIDS_LONG_LIFETIME,
        ]
        sorted_set_keys.extend(set(scan_keys(client, keys.all_brand_sets_pattern())))
        for sorted_set_key in sorted_set_keys:
            members = [
                member
                for member, _score in client.zscan_iter(sorted_set_key, count=keys.SCAN_LIMIT)
            ]
            for session_id in _missing(client, members):
                removal.add_sorted_set_member(sorted_set_key, session_id)
                report.dangling_sorted_set_members += 1

        for set_key in set(scan_keys(client, keys.all_user_sets_pattern())):
            members = list(client.sscan_iter(set_key, count=keys.SCAN_LIMIT))
            for session_id in _missing(client, members):
                removal.add_set_member(set_key, session_id)
                report.dangling_set_members += 1

        for pattern in (keys.all_alternative_ids_pattern(), keys.all_auth_ids_pattern()):
            mapping_keys = list(set(scan_keys(client, pattern)))
            for chunk in _chunks(mapping_keys):
                for mapping_key, session_id in zip(chunk, client.mget(chunk)):
                    if session_id is None or not client.exists(keys.session_key(session_id)):
                        removal.add_key(mapping_key)
                        report.dangling_mappings += 1

        removal.remove_collected(client)

        if with_session_consistency:
            report.repaired_sessions = self._repair_indexes(client)
        return report

    def _repair_indexes(self, client: redis.Redis) -> int:
        state = self.coordinator.get_state()
        now = self.coordinator.now()
        repaired = 0
        for key in set(scan_keys(client, keys.all_sessions_pattern())):
            value = client.get(key)
            if value is None:
                continue
            try:
                session = state.codec.decode(value)
            except VersionMismatchError:
                continue

            session_id = session.session_id
            pipe = client.pipeline(transaction=False)
            fixed = False
            lifetime_key = keys.lifetime_set_key(session.stay_signed_in)
            if client.zscore(lifetime_key, session_id) is None:
                pipe.zadd(lifetime_key, {session_id: now})
                fixed = True
            user_key = keys.user_set_key(session.user_id, session.context_id)
            if not client.sismember(user_key, session_id):
                pipe.sadd(user_key, session_id)
                fixed = True
            brand_id = session.brand_id
            if brand_id and client.zscore(keys.brand_set_key(brand_id), session_id) is None:
                pipe.zadd(keys.brand_set_key(brand_id), {session_id: now})
                fixed = True
            if session.alternative_id:
                alternative_key = keys.alternative_id_key(session.alternative_id)
                if client.get(alternative_key) != session_id:
                    pipe.set(alternative_key, session_id)
                    fixed = True
            if fixed:
                pipe.execute()
                repaired += 1
                logger.info(f"Repaired index entries of session {mask_session_id(session_id)}")
        return repaired
