"""
============================================================================
Session Coordinator: cluster-wide session management
============================================================================

Combines the authoritative Redis store, the node-local cache and the
invalidation channel into one session service.

CONSISTENCY POLICY:
-------------------
* Redis is the single source of truth; the local cache may be dropped at
  any time.
* A mutation writes to Redis first, then publishes an invalidation, then
  updates the local cache.
* Locally cached sessions are re-validated with EXISTS once the
  check-existence threshold has elapsed since their last check.
* Removals use GETDEL for the primary record and one batched pipeline for
  all secondary indexes.
* Writes, refreshes and removals are replayed to remote-region replicas in
  the background; failures there are logged and never reach the caller.

See: sessiond/storage/keys.py for the key layout
See: sessiond/jobs/ for the lock-guarded maintenance jobs
"""

import logging
import random
import threading
import uuid
from concurrent.futures import Executor
from contextlib import contextmanager
from typing import Callable, Dict, Iterator, List, Optional, Tuple, Union

import redis

from sessiond.cache.local import LocalSessionCache, Loader
from sessiond.core.events import (
    EventBus,
    TOPIC_ADD_SESSION,
    TOPIC_REMOVE_SESSION,
    TOPIC_RESTORED_SESSION,
    TOPIC_STORED_SESSION,
)
from sessiond.core.executor import submit_else_execute
from sessiond.core.replicas import ReplicaFanout
from sessiond.exceptions import (
    DuplicateAuthIdError,
    MaxSessionsExceededError,
    MaxSessionsPerClientExceededError,
    MaxSessionsPerUserExceededError,
    SessionLimitExceededError,
    SessionNotFoundError,
    SessiondShutDownError,
    VersionMismatchError,
)
from sessiond.metrics import (
    sessiond_session_limit_rejections_total,
    sessiond_session_operations_total,
    sessiond_sessions_removed_total,
    sessiond_version_mismatch_total,
)
from sessiond.pubsub.channel import InvalidationChannel, Message
from sessiond.state import SessiondState
from sessiond.storage import keys
from sessiond.storage.connector import RedisConnector
from sessiond.storage.lock import RedisLock
from sessiond.storage.models import (
    PARAM_BRAND,
    PARAM_LOGIN_TIME,
    PARAM_USER_AGENT,
    AddSessionParameter,
    Session,
    SessionAttributes,
    SessionEvent,
    SessionFilter,
    SessionId,
    SessionOperation,
)
from sessiond.storage.removal import RemovalCollection
from sessiond.storage.utils import mask_session_id, now_millis, scan_keys

logger = logging.getLogger(__name__)

_LIMIT_LABELS = {
    MaxSessionsExceededError: "max_sessions",
    MaxSessionsPerUserExceededError: "per_user",
    MaxSessionsPerClientExceededError: "per_client",
    DuplicateAuthIdError: "auth_id",
}

# Initial delay of maintenance jobs when no other node ran them yet
_FIRST_RUN_DELAY_SECONDS = 10


class KeyedLocks:
    """Process-wide, reference-counted mutexes keyed by string."""

    def __init__(self):
        self._lock = threading.Lock()
        self._entries: Dict[str, list] = {}

    @contextmanager
    def hold(self, key: str) -> Iterator[bool]:
        """Hold the mutex for ``key``; yields True if it was free immediately."""
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                entry = [threading.Lock(), 0]
                self._entries[key] = entry
            entry[1] += 1
        mutex = entry[0]
        immediate = mutex.acquire(blocking=False)
        if not immediate:
            mutex.acquire()
        try:
            yield immediate
        finally:
            mutex.release()
            with self._lock:
                entry[1] -= 1
                if entry[1] == 0:
                    del self._entries[key]

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)


class SessionCoordinator:
    """Session service of one cluster node."""

    def __init__(
        self,
        connector: RedisConnector,
        state: SessiondState,
        channel: Optional[InvalidationChannel] = None,
        replicas: Optional[ReplicaFanout] = None,
        event_bus: Optional[EventBus] = None,
        executor: Optional[Executor] = None,
        clock: Callable[[], int] = now_millis,
        version_lock_timeout: int = 30000,
        version_lock_renewal: int = 10000,
    ):
        self.connector = connector
        self.channel = channel
        self.executor = executor
        self.replicas = replicas if replicas is not None else ReplicaFanout(executor=executor)
        self.event_bus = event_bus or EventBus()
        self.version_lock_timeout = version_lock_timeout
        self.version_lock_renewal = version_lock_renewal
        self._clock = clock
        self._state: Optional[SessiondState] = state
        self._state_lock = threading.Lock()
        self._fetch_locks = KeyedLocks()
        self._timers = []

    # ==================================================================
    # Lifecycle
    # ==================================================================

    def get_state(self) -> SessiondState:
        """Current state snapshot.

        Raises:
            SessiondShutDownError: After shut_down()
        """
        state = self._state
        if state is None:
            raise SessiondShutDownError()
        return state

    def now(self) -> int:
        return self._clock()

    def start(self, schedule_jobs: bool = True) -> None:
        """Subscribe to invalidations, migrate stale data and schedule maintenance."""
        from sessiond.jobs.version_check import check_version

        if self.channel is not None:
            self.channel.subscribe(self.on_message)
        check_version(
            self.connector,
            lock_ttl_millis=self.version_lock_timeout,
            renewal_millis=self.version_lock_renewal,
        )
        if schedule_jobs:
            with self._state_lock:
                self._schedule_jobs(self.get_state(), self._initial_delay_on_start)
        logger.info("Session coordinator started")

    def set_state(self, new_state: SessiondState) -> None:
        """Atomically replace the state snapshot and tear down the old one."""
        with self._state_lock:
            old_state = self.get_state()
            had_timers = bool(self._timers)
            self._cancel_timers()
            if had_timers:
                self._schedule_jobs(new_state, self._initial_delay_on_reschedule)
            self._state = new_state
        old_state.destroy()
        logger.info(f"Swapped session state {old_state.version} -> {new_state.version}")

    def shut_down(self) -> None:
        with self._state_lock:
            self._cancel_timers()
            old_state = self._state
            self._state = None
        if self.channel is not None:
            self.channel.unsubscribe(self.on_message)
        if self.executor is not None:
            self.executor.shutdown(wait=True)
        if old_state is not None:
            old_state.destroy()
        logger.info("Session coordinator shut down")

    def _initial_delay_on_start(self, lock_name: str, interval_minutes: int) -> float:
        if RedisLock.exists(self.connector, lock_name):
            return random.random() * interval_minutes * 60
        return random.random() * _FIRST_RUN_DELAY_SECONDS

    def _initial_delay_on_reschedule(self, lock_name: str, interval_minutes: int) -> float:
        return (1 + random.random() * interval_minutes) * 60

    def _schedule_jobs(self, state: SessiondState, initial_delay) -> None:
        from sessiond.jobs.base import PeriodicTask
        from sessiond.jobs.consistency import ConsistencyCheck
        from sessiond.jobs.expirer import SessionExpirer

        expirer_interval = state.expirer_and_counters_interval_minutes
        if expirer_interval > 0:
            expirer = SessionExpirer(self)
            self._timers.append(
                PeriodicTask(
                    "SessionExpirer",
                    expirer.run,
                    initial_delay(keys.REDIS_SESSION_EXPIRE_AND_COUNTERS_LOCK, expirer_interval),
                    expirer_interval * 60,
                ).start()
            )
        consistency_interval = state.consistency_check_interval_minutes
        if consistency_interval > 0:
            check = ConsistencyCheck(self)
            self._timers.append(
                PeriodicTask(
                    "SessionConsistencyCheck",
                    check.run,
                    initial_delay(keys.REDIS_SESSION_CONSISTENCY_LOCK, consistency_interval),
                    consistency_interval * 60,
                ).start()
            )

    def _cancel_timers(self) -> None:
        for timer in self._timers:
            timer.cancel()
        self._timers = []

    # ==================================================================
    # Invalidation
    # ==================================================================

    def on_message(self, message: Message) -> None:
        """Evict sessions named by another node's invalidation."""
        if not message.remote:
            return
        event = message.data
        if event.operation != SessionOperation.INVALIDATE:
            return
        state = self._state
        if state is None:
            return
        removed = state.local_cache.remove_by_ids(event.session_ids)
        logger.debug(
            f"Invalidated {len(removed)} of {len(event.session_ids)} sessions "
            f"on behalf of node {message.sender}"
        )

    def _publish_invalidation(self, session_ids: List[str]) -> None:
        if self.channel is None or not session_ids:
            return
        try:
            self.channel.publish(SessionEvent.invalidate(session_ids))
        except Exception as e:
            logger.warning(f"Failed to publish invalidation of {len(session_ids)} sessions: {e}")

    # ==================================================================
    # Redis primitives (run inside an operation)
    # ==================================================================

    def _decode(self, state: SessiondState, value, session_id: str, cleanup: bool = True) -> Optional[Session]:
        try:
            return state.codec.decode(value)
        except VersionMismatchError as e:
            sessiond_version_mismatch_total.inc()
            logger.info(f"Dropping session {mask_session_id(session_id)}: {e.message}")
            if cleanup:
                submit_else_execute(self.executor, self.remove_session, session_id)
            return None

    def _fetch(self, client: redis.Redis, state: SessiondState, session_id: str) -> Optional[Session]:
        value = client.get(keys.session_key(session_id))
        if value is None:
            return None
        return self._decode(state, value, session_id)

    def _getdel(self, client: redis.Redis, state: SessiondState, session_id: str) -> Optional[Session]:
        value = client.getdel(keys.session_key(session_id))
        if value is None:
            return None
        return self._decode(state, value, session_id, cleanup=False)

    @staticmethod
    def _write_session(client: redis.Redis, session: Session, value: str, now: int) -> None:
        pipe = client.pipeline(transaction=False)
        pipe.set(keys.session_key(session.session_id), value)
        pipe.zadd(keys.lifetime_set_key(session.stay_signed_in), {session.session_id: now})
        pipe.sadd(keys.user_set_key(session.user_id, session.context_id), session.session_id)
        if session.alternative_id:
            pipe.set(keys.alternative_id_key(session.alternative_id), session.session_id)
        if session.auth_id:
            pipe.set(keys.auth_id_key(session.auth_id), session.session_id)
        brand_id = session.brand_id
        if brand_id:
            pipe.zadd(keys.brand_set_key(brand_id), {session.session_id: now})
        pipe.execute()

    @staticmethod
    def _refresh_scores(client: redis.Redis, session: Session, now: int) -> None:
        pipe = client.pipeline(transaction=False)
        pipe.zadd(keys.lifetime_set_key(session.stay_signed_in), {session.session_id: now})
        brand_id = session.brand_id
        if brand_id:
            pipe.zadd(keys.brand_set_key(brand_id), {session.session_id: now})
        pipe.execute()

    def _sessions_of_user(
        self, client: redis.Redis, state: SessiondState, user_id: int, context_id: int
    ) -> List[Session]:
        """Load all sessions of a user, dropping dangling membership entries."""
        set_key = keys.user_set_key(user_id, context_id)
        return list(self._sessions_in_set(client, state, set_key))

    def _sessions_in_set(self, client: redis.Redis, state: SessiondState, set_key: str) -> Iterator[Session]:
        session_ids = list(client.smembers(set_key))
        dangling = []
        for start in range(0, len(session_ids), keys.SCAN_LIMIT):
            chunk = session_ids[start:start + keys.SCAN_LIMIT]
            values = client.mget([keys.session_key(session_id) for session_id in chunk])
            for session_id, value in zip(chunk, values):
                if value is None:
                    dangling.append(session_id)
                    continue
                session = self._decode(state, value, session_id)
                if session is not None:
                    yield session
        if dangling:
            logger.warning(f"Removing {len(dangling)} dangling entries from {set_key}")
            client.srem(set_key, *dangling)

    def _user_set_keys_for(self, client: redis.Redis, session_filter: SessionFilter) -> Iterator[str]:
        if session_filter.is_user_scoped():
            yield keys.user_set_key(session_filter.user_id, session_filter.context_id)
        elif session_filter.is_context_scoped():
            yield from set(scan_keys(client, keys.context_user_sets_pattern(session_filter.context_id)))
        else:
            yield from set(scan_keys(client, keys.all_user_sets_pattern()))

    def _filtered_sessions(
        self, client: redis.Redis, state: SessiondState, session_filter: SessionFilter
    ) -> Iterator[Session]:
        for set_key in self._user_set_keys_for(client, session_filter):
            for session in self._sessions_in_set(client, state, set_key):
                if session_filter.matches(session):
                    yield session

    def _exists(self, session_id: str) -> bool:
        return self.connector.execute_operation(
            lambda client: client.exists(keys.session_key(session_id))
        ) > 0

    # ==================================================================
    # Counters
    # ==================================================================

    def _increment_counters(self, session: Session) -> None:
        def increment(client: redis.Redis) -> None:
            pipe = client.pipeline(transaction=False)
            pipe.hincrby(keys.REDIS_HASH_SESSION_COUNTER, keys.COUNTER_SESSION_TOTAL, 1)
            pipe.hincrby(keys.REDIS_HASH_SESSION_COUNTER, keys.COUNTER_SESSION_ACTIVE, 1)
            lifetime_counter = keys.COUNTER_SESSION_LONG if session.stay_signed_in else keys.COUNTER_SESSION_SHORT
            pipe.hincrby(keys.REDIS_HASH_SESSION_COUNTER, lifetime_counter, 1)
            brand_id = session.brand_id
            if brand_id:
                pipe.hincrby(keys.REDIS_HASH_SESSION_COUNTER, keys.brand_total_counter(brand_id), 1)
                pipe.hincrby(keys.REDIS_HASH_SESSION_COUNTER, keys.brand_active_counter(brand_id), 1)
            pipe.execute()

        try:
            self.connector.execute_operation(increment)
        except Exception as e:
            logger.warning(f"Failed to increment session counters: {e}")

    def _decrement_counters(self, sessions: List[Session]) -> None:
        """Decrement total, lifetime and brand totals; active counts are
        reconciled by the expiry job."""
        if not sessions:
            return
        decrements: Dict[str, int] = {}
        for session in sessions:
            fields = [
                keys.COUNTER_SESSION_TOTAL,
                keys.COUNTER_SESSION_LONG if session.stay_signed_in else keys.COUNTER_SESSION_SHORT,
            ]
            brand_id = session.brand_id
            if brand_id:
                fields.append(keys.brand_total_counter(brand_id))
            for field_name in fields:
                decrements[field_name] = decrements.get(field_name, 0) + 1

        def decrement(client: redis.Redis) -> None:
            pipe = client.pipeline(transaction=False)
            for field_name, amount in decrements.items():
                pipe.hincrby(keys.REDIS_HASH_SESSION_COUNTER, field_name, -amount)
            pipe.execute()

        try:
            self.connector.execute_operation(decrement)
        except Exception as e:
            logger.warning(f"Failed to decrement session counters: {e}")

    def _query_counter(self, field_name: str) -> int:
        value = self.connector.execute_operation(
            lambda client: client.hget(keys.REDIS_HASH_SESSION_COUNTER, field_name)
        )
        return max(int(value), 0) if value is not None else 0

    def query_counter_for_number_of_sessions(self) -> int:
        return self._query_counter(keys.COUNTER_SESSION_TOTAL)

    def _query_active_counter(self, active_field: str, total_field: str) -> int:
        """Active sessions, never more than the total read alongside."""
        active, total = self.connector.execute_operation(
            lambda client: client.hmget(keys.REDIS_HASH_SESSION_COUNTER, [active_field, total_field])
        )
        total = int(total) if total is not None else 0
        if total <= 0:
            return 0
        active = int(active) if active is not None else 0
        return min(max(active, 0), total)

    def query_counter_for_number_of_active_sessions(self) -> int:
        return self._query_active_counter(keys.COUNTER_SESSION_ACTIVE, keys.COUNTER_SESSION_TOTAL)

    def query_counter_for_number_of_short_term_sessions(self) -> int:
        return self._query_counter(keys.COUNTER_SESSION_SHORT)

    def query_counter_for_number_of_long_term_sessions(self) -> int:
        return self._query_counter(keys.COUNTER_SESSION_LONG)

    def query_counter_for_number_of_sessions_by_brand(self, brand_id: str) -> int:
        return self._query_counter(keys.brand_total_counter(brand_id))

    def query_counter_for_number_of_active_sessions_by_brand(self, brand_id: str) -> int:
        return self._query_active_counter(
            keys.brand_active_counter(brand_id), keys.brand_total_counter(brand_id)
        )

    def get_brand_ids_for_counters(self) -> List[str]:
        return sorted(
            self.connector.execute_operation(
                lambda client: {
                    keys.suffix_of(key)
                    for key in scan_keys(client, keys.all_brand_sets_pattern())
                }
            )
        )

    # ==================================================================
    # Creation
    # ==================================================================

    def create_session(self, params: AddSessionParameter) -> Session:
        """Create, persist and cache a new session.

        Raises:
            SessionLimitExceededError: If a session limit forbids another session
            DuplicateAuthIdError: If the authentication id is in use
            StorageConnectivityError: If Redis is unreachable
        """
        state = self.get_state()
        user_config = state.user_type_registry.get_config_for(params.user_id, params.context_id)
        try:
            self.connector.execute_operation(
                lambda client: self._check_limits(
                    client, state, params, user_config.max_sessions_per_user_type
                )
            )
        except SessionLimitExceededError as e:
            sessiond_session_limit_rejections_total.labels(
                limit=_LIMIT_LABELS.get(type(e), "other")
            ).inc()
            sessiond_session_operations_total.labels(operation="create", outcome="rejected").inc()
            logger.info(f"Rejected new session for user {params.user_id} in context {params.context_id}: {e.message}")
            raise

        session = self._new_session(params)
        self._put_session_into_redis_and_local(state, session)
        self._increment_counters(session)
        self.event_bus.post(TOPIC_ADD_SESSION, session)
        self.event_bus.post(TOPIC_STORED_SESSION, session)
        sessiond_session_operations_total.labels(operation="create", outcome="success").inc()
        logger.info(
            f"Created session {mask_session_id(session.session_id)} for user "
            f"{session.user_id} in context {session.context_id}"
        )
        return session

    def _check_limits(
        self,
        client: redis.Redis,
        state: SessiondState,
        params: AddSessionParameter,
        max_sessions_per_user: int,
    ) -> None:
        if state.max_sessions > 0:
            total = client.hget(keys.REDIS_HASH_SESSION_COUNTER, keys.COUNTER_SESSION_TOTAL)
            if int(total or 0) + 1 > state.max_sessions:
                raise MaxSessionsExceededError(state.max_sessions)

        if max_sessions_per_user > 0:
            count = client.scard(keys.user_set_key(params.user_id, params.context_id))
            if count >= max_sessions_per_user:
                raise MaxSessionsPerUserExceededError(
                    params.user_id, params.context_id, max_sessions_per_user
                )

        if state.max_sessions_per_client > 0 and params.client:
            sessions = self._sessions_of_user(client, state, params.user_id, params.context_id)
            count = sum(1 for session in sessions if session.client == params.client)
            if count >= state.max_sessions_per_client:
                raise MaxSessionsPerClientExceededError(
                    params.user_id, params.context_id, params.client, state.max_sessions_per_client
                )

        if params.auth_id:
            mapping_key = keys.auth_id_key(params.auth_id)
            existing_id = client.get(mapping_key)
            if existing_id is not None:
                existing = self._fetch(client, state, existing_id)
                if existing is not None:
                    raise DuplicateAuthIdError(params.auth_id, params.login, existing.login)
                client.delete(mapping_key)

    def _new_session(self, params: AddSessionParameter) -> Session:
        parameters = dict(params.parameters)
        parameters[PARAM_LOGIN_TIME] = self._clock()
        if params.user_agent:
            parameters[PARAM_USER_AGENT] = params.user_agent
        if params.brand:
            parameters[PARAM_BRAND] = params.brand
        return Session(
            session_id=uuid.uuid4().hex,
            user_id=params.user_id,
            context_id=params.context_id,
            login=params.login,
            login_name=params.login_name,
            auth_id=params.auth_id,
            secret=uuid.uuid4().hex,
            random_token=uuid.uuid4().hex,
            origin=params.origin,
            stay_signed_in=params.stay_signed_in,
            password=params.password,
            local_ip=params.client_ip,
            hash=params.hash,
            client=params.client,
            alternative_id=params.alternative_id or uuid.uuid4().hex,
            parameters=parameters,
        )

    def _put_session_into_redis_and_local(self, state: SessiondState, session: Session) -> None:
        value = state.codec.encode(session)
        now = self._clock()
        self.connector.execute_operation(
            lambda client: self._write_session(client, session, value, now)
        )
        if self.replicas:
            self.replicas.replay(
                "store session", lambda client: self._write_session(client, session, value, now)
            )
        self._publish_invalidation([session.session_id])
        session.attach(self)
        state.local_cache.put(
            session, reset_check_timestamp=state.check_existence_threshold > 0, now=now
        )

    # ==================================================================
    # Storing and mutation
    # ==================================================================

    def store_session(self, session: Union[str, Session], add_if_absent: bool = False) -> bool:
        """Make sure a session is durable in Redis.

        Given an id, a session found only in Redis is already durable, while a
        locally cached one is checked for existence and written back. Given a
        session object, it is written unless ``add_if_absent`` is set and a
        record already exists.

        Returns:
            True if the session exists in Redis afterwards
        """
        state = self.get_state()
        if isinstance(session, Session):
            if add_if_absent and self._exists(session.session_id):
                return False
            self._replace_session(state, session)
            return True

        cached = state.local_cache.get(session)
        if cached is None:
            return self._exists(session)
        cached = self._ensure_existence_else_none(state, cached)
        if cached is None:
            return False
        self._replace_session(state, cached)
        return True

    def _replace_session(self, state: SessiondState, session: Session) -> None:
        self._put_session_into_redis_and_local(state, session)
        self.event_bus.post(TOPIC_STORED_SESSION, session)
        sessiond_session_operations_total.labels(operation="store", outcome="success").inc()

    def change_session_password(self, session_id: str, new_password: str) -> None:
        """Change the password of a session and drop the user's other sessions.

        Raises:
            SessionNotFoundError: If the session does not exist in Redis
        """
        state = self.get_state()
        now = self._clock()

        def change(client: redis.Redis) -> Optional[Tuple[Session, str, List[str]]]:
            session = self._fetch(client, state, session_id)
            if session is None:
                return None
            session.password = new_password
            value = state.codec.encode(session)
            self._write_session(client, session, value, now)
            set_key = keys.user_set_key(session.user_id, session.context_id)
            others = [other for other in client.smembers(set_key) if other != session_id]
            return session, value, others

        result = self.connector.execute_operation(change)
        if result is None:
            raise SessionNotFoundError(session_id)
        session, value, others = result

        if self.replicas:
            self.replicas.replay(
                "change password", lambda client: self._write_session(client, session, value, now)
            )
        self._publish_invalidation([session_id])
        cached = state.local_cache.get(session_id)
        if cached is not None:
            cached.set_password(new_password, propagate=False)
        if others:
            removed = self.remove_sessions(others)
            logger.info(
                f"Removed {removed} other sessions of user {session.user_id} in context "
                f"{session.context_id} after password change"
            )

    def set_session_attributes(self, session_id: str, attributes: SessionAttributes) -> None:
        """Change mutable attributes of a session cluster-wide.

        Raises:
            SessionNotFoundError: If the session does not exist in Redis
        """
        if attributes.is_empty():
            return
        state = self.get_state()
        now = self._clock()

        def change(client: redis.Redis) -> Optional[Tuple[Session, Optional[str]]]:
            session = self._fetch(client, state, session_id)
            if session is None:
                return None
            if not attributes.apply_to(session):
                self._refresh_scores(client, session, now)
                return session, None
            value = state.codec.encode(session)
            self._write_session(client, session, value, now)
            return session, value

        result = self.connector.execute_operation(change)
        if result is None:
            raise SessionNotFoundError(session_id)
        session, value = result
        if value is not None:
            if self.replicas:
                self.replicas.replay(
                    "set session attributes",
                    lambda client: self._write_session(client, session, value, now),
                )
            self._publish_invalidation([session_id])
        cached = state.local_cache.get(session_id)
        if cached is not None:
            attributes.apply_to(cached)

    # ==================================================================
    # Removal
    # ==================================================================

    def remove_session(self, session_id: str) -> bool:
        """Remove a session; False if it did not exist."""
        return self.remove_sessions([session_id]) > 0

    def remove_sessions(
        self,
        session_ids: List[str],
        remove_from_sorted_set: bool = True,
        replay_to_remote: bool = True,
    ) -> int:
        """Remove sessions from Redis, the local cache and all other nodes.

        Returns:
            Number of sessions removed from Redis
        """
        state = self.get_state()
        ids = list(dict.fromkeys(session_ids))
        if not ids:
            return 0

        def remove(client: redis.Redis) -> List[Session]:
            removal = RemovalCollection()
            removed = []
            for session_id in ids:
                session = self._getdel(client, state, session_id)
                if session is None:
                    logger.debug(f"No such session {mask_session_id(session_id)} to remove")
                    continue
                removal.add_session(session, remove_from_user_set=True, remove_from_sorted_set=remove_from_sorted_set)
                removed.append(session)
            removal.remove_collected(client)
            return removed

        removed = self.connector.execute_operation(remove)
        self._after_removal(
            state,
            removed,
            ids,
            lambda cache: cache.remove_by_ids(ids),
            "explicit",
            remove if replay_to_remote else None,
        )
        return len(removed)

    def remove_user_sessions(self, user_id: int, context_id: int) -> int:
        return len(self.remove_and_return_user_sessions(user_id, context_id))

    def remove_and_return_user_sessions(
        self, user_id: int, context_id: int, replay_to_remote: bool = True
    ) -> List[Session]:
        state = self.get_state()
        set_key = keys.user_set_key(user_id, context_id)

        def remove(client: redis.Redis) -> Tuple[List[Session], List[str]]:
            session_ids = list(client.smembers(set_key))
            removal = RemovalCollection()
            removed = []
            for session_id in session_ids:
                session = self._getdel(client, state, session_id)
                if session is not None:
                    removal.add_session(session, remove_from_user_set=False)
                    removed.append(session)
            removal.add_key(set_key)
            removal.remove_collected(client)
            return removed, session_ids

        removed, session_ids = self.connector.execute_operation(remove)
        cached_ids = [session.session_id for session in state.local_cache.get_by_user(user_id, context_id)]
        self._after_removal(
            state,
            removed,
            list(dict.fromkeys(session_ids + cached_ids)),
            lambda cache: cache.remove_by_user(user_id, context_id),
            "user",
            (lambda client: remove(client)[0]) if replay_to_remote else None,
        )
        return removed

    def remove_local_user_sessions(self, user_id: int, context_id: int) -> List[Session]:
        """Drop a user's sessions from this node's cache only."""
        removed = self.get_state().local_cache.remove_by_user(user_id, context_id)
        for session in removed:
            self.event_bus.post(TOPIC_REMOVE_SESSION, session)
        return removed

    def remove_context_sessions(self, context_id: int) -> int:
        return self._remove_sessions_by(
            keys.context_user_sets_pattern(context_id),
            None,
            lambda cache: cache.remove_by_context(context_id),
            "context",
        )

    def remove_context_sessions_global(self, context_ids: List[int]) -> int:
        return sum(self.remove_context_sessions(context_id) for context_id in context_ids)

    def remove_all_sessions(self) -> int:
        return self._remove_sessions_by(
            keys.all_user_sets_pattern(),
            keys.all_sessions_pattern(),
            lambda cache: cache.invalidate_all(),
            "all",
        )

    def _remove_sessions_by(
        self,
        set_pattern: str,
        session_pattern: Optional[str],
        evict: Callable[[LocalSessionCache], List[Session]],
        reason: str,
        replay_to_remote: bool = True,
    ) -> int:
        state = self.get_state()

        def remove(client: redis.Redis) -> List[Session]:
            removal = RemovalCollection()
            removed: Dict[str, Session] = {}
            for set_key in set(scan_keys(client, set_pattern)):
                for session_id in client.smembers(set_key):
                    if session_id in removed:
                        continue
                    session = self._getdel(client, state, session_id)
                    if session is not None:
                        removal.add_session(session, remove_from_user_set=False)
                        removed[session_id] = session
                removal.add_key(set_key)
            if session_pattern is not None:
                for key in set(scan_keys(client, session_pattern)):
                    session_id = keys.suffix_of(key)
                    if session_id in removed:
                        continue
                    session = self._getdel(client, state, session_id)
                    if session is not None:
                        removal.add_session(session, remove_from_user_set=True)
                        removed[session_id] = session
                    else:
                        removal.add_key(key)
            removal.remove_collected(client)
            return list(removed.values())

        removed = self.connector.execute_operation(remove)
        self._after_removal(
            state,
            removed,
            [session.session_id for session in removed],
            evict,
            reason,
            remove if replay_to_remote else None,
        )
        return len(removed)

    def remove_sessions_by_filter(self, session_filter: SessionFilter) -> List[str]:
        """Remove every session matching the filter.

        Returns:
            Ids of the removed sessions
        """
        state = self.get_state()

        def remove(client: redis.Redis) -> List[Session]:
            removal = RemovalCollection()
            removed = []
            for candidate in list(self._filtered_sessions(client, state, session_filter)):
                session = self._getdel(client, state, candidate.session_id)
                if session is not None:
                    removal.add_session(session, remove_from_user_set=True)
                    removed.append(session)
            removal.remove_collected(client)
            return removed

        removed = self.connector.execute_operation(remove)
        removed_ids = [session.session_id for session in removed]
        self._after_removal(
            state,
            removed,
            removed_ids,
            lambda cache: cache.remove_by_ids(removed_ids),
            "filter",
            remove,
        )
        return removed_ids

    def _after_removal(
        self,
        state: SessiondState,
        removed: List[Session],
        invalidate_ids: List[str],
        evict: Callable[[LocalSessionCache], List[Session]],
        reason: str,
        replay_operation: Optional[Callable[[redis.Redis], object]],
    ) -> None:
        self._decrement_counters(removed)
        sessiond_sessions_removed_total.labels(reason=reason).inc(len(removed))
        self._publish_invalidation(invalidate_ids)
        submit_else_execute(self.executor, self._evict_locally, state, removed, evict)
        if replay_operation is not None and self.replicas:
            self.replicas.replay(f"remove sessions ({reason})", replay_operation)

    def _evict_locally(
        self,
        state: SessiondState,
        removed: List[Session],
        evict: Callable[[LocalSessionCache], List[Session]],
    ) -> None:
        notified = {}
        for session in list(removed) + evict(state.local_cache):
            notified.setdefault(session.session_id, session)
        for session in notified.values():
            self.event_bus.post(TOPIC_REMOVE_SESSION, session)

    # ==================================================================
    # Lookup
    # ==================================================================

    def get_session(
        self,
        session_id: Union[str, SessionId],
        peek: bool = False,
        consider_local_storage: bool = True,
    ) -> Optional[Session]:
        """Look up a session by primary id (or a SessionId).

        Raises:
            StorageConnectivityError: If Redis is unreachable
        """
        if not isinstance(session_id, SessionId):
            session_id = SessionId.of_session_id(session_id)
        return self._do_get_session(session_id, peek, consider_local_storage)

    def peek_session(self, session_id: str, consider_local_storage: bool = True) -> Optional[Session]:
        """Look up a session without refreshing its lifetime."""
        return self.get_session(session_id, peek=True, consider_local_storage=consider_local_storage)

    def get_session_by_alternative_id(self, alternative_id: str, peek: bool = False) -> Optional[Session]:
        return self._do_get_session(SessionId.of_alternative_id(alternative_id), peek, True)

    def _do_get_session(self, session_id: SessionId, peek: bool, consider_local: bool) -> Optional[Session]:
        state = self.get_state()
        if consider_local:
            session = state.local_cache.get_by_session_id(session_id)
            if session is not None:
                return self._ensure_existence_else_none(state, session)

        if not state.try_lock_before_lookup:
            return self._get_session_from_redis_and_store_locally(state, session_id, peek, consider_local)

        with self._fetch_locks.hold(session_id.identifier) as immediate:
            if not immediate and consider_local:
                session = state.local_cache.get_by_session_id(session_id)
                if session is not None:
                    return self._ensure_existence_else_none(state, session)
            return self._get_session_from_redis_and_store_locally(state, session_id, peek, consider_local)

    def _get_session_from_redis(
        self, client: redis.Redis, state: SessiondState, session_id, peek: bool, now: int
    ) -> Optional[Session]:
        if session_id.alternative:
            primary_id = client.get(keys.alternative_id_key(session_id.identifier))
            if primary_id is None:
                return None
        else:
            primary_id = session_id.identifier

        session = self._fetch(client, state, primary_id)
        if session is None:
            if session_id.alternative:
                client.delete(keys.alternative_id_key(session_id.identifier))
            return None
        if not peek:
            self._refresh_scores(client, session, now)
        return session

    def _get_session_from_redis_and_store_locally(
        self, state: SessiondState, session_id, peek: bool, consider_local: bool
    ) -> Optional[Session]:
        now = self._clock()

        def fetch() -> Optional[Session]:
            session = self.connector.execute_operation(
                lambda client: self._get_session_from_redis(client, state, session_id, peek, now)
            )
            if session is None:
                sessiond_session_operations_total.labels(operation="get", outcome="miss").inc()
                return None
            sessiond_session_operations_total.labels(operation="get", outcome="success").inc()
            session.attach(self)
            if not peek:
                if self.replicas:
                    self.replicas.replay(
                        "refresh session", lambda client: self._refresh_scores(client, session, now)
                    )
                if state.check_existence_threshold > 0:
                    session.last_checked = now
            return session

        if peek:
            return fetch()

        if not consider_local:
            # The Redis copy replaces whatever this node had cached
            session = fetch()
            if session is not None:
                state.local_cache.put(session)
                self.event_bus.post(TOPIC_RESTORED_SESSION, session)
            return session

        if session_id.alternative:
            session = fetch()
            return self._store_locally(state, session) if session is not None else None

        # Fetching inside the loader lets a concurrent invalidation of this id
        # keep the fetched copy out of the cache
        return self._load_locally(state, session_id.identifier, fetch)

    def _load_locally(
        self, state: SessiondState, session_id: str, load: Callable[[], Optional[Session]]
    ) -> Optional[Session]:
        loader = Loader(load)
        session = state.local_cache.get_or_load(session_id, loader)
        if loader.loaded:
            self.event_bus.post(TOPIC_RESTORED_SESSION, session)
        return session

    def _store_locally(self, state: SessiondState, session: Session) -> Session:
        cached = self._load_locally(state, session.session_id, lambda: session)
        return cached if cached is not None else session

    def _ensure_existence_else_none(self, state: SessiondState, session: Session) -> Optional[Session]:
        if not state.ensure_existence_on_local_fetch:
            return session

        now = self._clock()
        threshold = state.check_existence_threshold
        if threshold > 0 and session.last_checked > 0 and now - session.last_checked < threshold:
            return session

        if self._exists(session.session_id):
            if threshold > 0:
                session.last_checked = now
            return session

        logger.info(
            f"Locally cached session {mask_session_id(session.session_id)} no longer exists in Redis"
        )
        state.local_cache.remove_by_id(session.session_id)
        self.connector.execute_operation(
            lambda client: RemovalCollection()
            .add_session(session, remove_from_user_set=True)
            .remove_collected(client)
        )
        return None

    def is_active(self, session_id: str) -> bool:
        state = self.get_state()
        if state.local_cache.get(session_id) is not None:
            return True
        try:
            return self._exists(session_id)
        except Exception as e:
            logger.warning(f"Failed to check whether session {mask_session_id(session_id)} is active: {e}")
            return False

    def has_for_context(self, context_id: int) -> bool:
        if self.get_state().local_cache.has_for_context(context_id):
            return True

        def check(client: redis.Redis) -> bool:
            for set_key in scan_keys(client, keys.context_user_sets_pattern(context_id)):
                if client.scard(set_key) > 0:
                    return True
            return False

        return self.connector.execute_operation(check)

    # ==================================================================
    # Queries
    # ==================================================================

    def get_user_session_count(self, user_id: int, context_id: int) -> int:
        return self.connector.execute_operation(
            lambda client: client.scard(keys.user_set_key(user_id, context_id))
        )

    def get_active_sessions(self, user_id: int, context_id: int) -> List[Session]:
        """All live sessions of a user, looked up without refreshing them."""
        session_ids = self.connector.execute_operation(
            lambda client: client.smembers(keys.user_set_key(user_id, context_id))
        )
        sessions = [self.peek_session(session_id) for session_id in session_ids]
        return [session for session in sessions if session is not None]

    def get_active_session_ids(self) -> List[str]:
        """Ids of all sessions accessed within the default lifetime."""
        state = self.get_state()
        now = self._clock()
        min_score = now - state.session_default_lifetime
        max_score = now + keys.MILLIS_DAY

        def collect(client: redis.Redis) -> List[str]:
            session_ids = []
            for set_key in (
                keys.REDIS_SORTEDSET_SESSIONIDS_SHORT_LIFETIME,
                keys.REDIS_SORTEDSET_SESSIONIDS_LONG_LIFETIME,
            ):
                offset = 0
                while True:
                    page = client.zrangebyscore(
                        set_key, min_score, max_score, start=offset, num=keys.SCAN_LIMIT
                    )
                    session_ids.extend(page)
                    if len(page) < keys.SCAN_LIMIT:
                        break
                    offset += keys.SCAN_LIMIT
            return session_ids

        return self.connector.execute_operation(collect)

    def get_number_of_active_sessions(self) -> int:
        """Number of sessions according to the membership sets."""

        def count(client: redis.Redis) -> int:
            return sum(
                client.scard(set_key)
                for set_key in set(scan_keys(client, keys.all_user_sets_pattern()))
            )

        return self.connector.execute_operation(count)

    def get_any_active_session_for_user(self, user_id: int, context_id: int) -> Optional[Session]:
        state = self.get_state()
        for session in state.local_cache.get_by_user(user_id, context_id):
            session = self._ensure_existence_else_none(state, session)
            if session is not None:
                return session

        set_key = keys.user_set_key(user_id, context_id)

        def pick(client: redis.Redis) -> Optional[Session]:
            while True:
                session_id = client.srandmember(set_key)
                if session_id is None:
                    return None
                session = self._fetch(client, state, session_id)
                if session is not None:
                    return session
                logger.warning(f"Removing dangling session {mask_session_id(session_id)} from {set_key}")
                client.srem(set_key, session_id)

        session = self.connector.execute_operation(pick)
        if session is None:
            return None
        session.attach(self)
        return self._store_locally(state, session)

    def find_first_matching_session_for_user(
        self,
        user_id: int,
        context_id: int,
        matcher: Callable[[Session], bool],
        ignore_local: bool = False,
    ) -> Optional[Session]:
        state = self.get_state()
        if not ignore_local:
            session = state.local_cache.get_first_matching(user_id, context_id, matcher)
            if session is not None:
                session = self._ensure_existence_else_none(state, session)
                if session is not None:
                    return session

        def find(client: redis.Redis) -> Optional[Session]:
            for session in self._sessions_of_user(client, state, user_id, context_id):
                if matcher(session):
                    return session
            return None

        session = self.connector.execute_operation(find)
        if session is None:
            return None
        session.attach(self)
        return self._store_locally(state, session)

    def find_sessions(self, session_filter: SessionFilter) -> List[str]:
        """Ids of all sessions matching the filter; drops dangling index entries on the way."""
        state = self.get_state()
        return self.connector.execute_operation(
            lambda client: [
                session.session_id
                for session in self._filtered_sessions(client, state, session_filter)
            ]
        )

    def get_local_sessions(self) -> List[Session]:
        return self.get_state().local_cache.get_all()
