"""
============================================================================
Local Session Cache: node-local copy of recently used sessions
============================================================================

The cache is never authoritative. Any entry may be dropped at any time and
fetched again from Redis; entries expire a fixed time after being written.

FEATURES:
---------
* TTL + size bound: backed by cachetools.TTLCache
* Secondary lookups: by alternative id and by (user, context)
* Single-flight loading: concurrent misses for the same id share one loader
  call; a load that races with an invalidation of its id is not cached
* Thread-safe: every operation runs under one re-entrant lock, including the
  eviction callbacks that keep the secondary indexes in sync
"""

import logging
import threading
from concurrent.futures import Future
from typing import Callable, Dict, Iterable, List, Optional, Set, Tuple

from cachetools import TTLCache

from sessiond.metrics import sessiond_local_cache_requests_total, sessiond_local_cache_size
from sessiond.storage.models import Session, SessionId
from sessiond.storage.utils import mask_session_id

logger = logging.getLogger(__name__)


class _SessionTTLCache(TTLCache):
    """TTLCache that reports evicted and expired entries."""

    def __init__(self, maxsize: int, ttl: float, on_evict: Callable[[str, Session], None]):
        super().__init__(maxsize=maxsize, ttl=ttl)
        self._on_evict = on_evict

    def popitem(self):
        key, value = super().popitem()
        self._on_evict(key, value)
        return key, value

    def expire(self, time=None):
        expired = super().expire(time)
        for key, value in expired:
            self._on_evict(key, value)
        return expired


class Loader:
    """Wraps a loading function and remembers whether it actually ran."""

    def __init__(self, load: Callable[[], Optional[Session]]):
        self._load = load
        self.loaded = False

    def __call__(self) -> Optional[Session]:
        session = self._load()
        self.loaded = session is not None
        return session


class LocalSessionCache:
    """Bounded, TTL-based in-process cache of sessions."""

    def __init__(self, max_size: int, lifetime_millis: int):
        self._lock = threading.RLock()
        self._sessions = _SessionTTLCache(
            maxsize=max_size, ttl=lifetime_millis / 1000.0, on_evict=self._forget
        )
        self._alternative_ids: Dict[str, str] = {}
        self._users: Dict[Tuple[int, int], Set[str]] = {}
        self._loading: Dict[str, Future] = {}
        # ids removed while their load was in flight
        self._stale_loads: Set[str] = set()
        self._generation = 0
        logger.info(
            f"Created local session cache (max_size={max_size}, lifetime={lifetime_millis}ms)"
        )

    # ------------------------------------------------------------------
    # Index maintenance (called with the lock held)
    # ------------------------------------------------------------------

    def _index(self, session: Session) -> None:
        if session.alternative_id:
            self._alternative_ids[session.alternative_id] = session.session_id
        user_key = (session.context_id, session.user_id)
        self._users.setdefault(user_key, set()).add(session.session_id)

    def _forget(self, session_id: str, session: Session) -> None:
        if session.alternative_id and self._alternative_ids.get(session.alternative_id) == session_id:
            del self._alternative_ids[session.alternative_id]
        user_key = (session.context_id, session.user_id)
        ids = self._users.get(user_key)
        if ids is not None:
            ids.discard(session_id)
            if not ids:
                del self._users[user_key]

    def _pop(self, session_id: str) -> Optional[Session]:
        if session_id in self._loading:
            self._stale_loads.add(session_id)
        session = self._sessions.pop(session_id, None)
        if session is not None:
            self._forget(session_id, session)
        return session

    def _record(self, session: Optional[Session]) -> Optional[Session]:
        result = "hit" if session is not None else "miss"
        sessiond_local_cache_requests_total.labels(result=result).inc()
        return session

    # ------------------------------------------------------------------
    # Lookups
    # ------------------------------------------------------------------

    def get(self, session_id: str) -> Optional[Session]:
        with self._lock:
            return self._record(self._sessions.get(session_id))

    def get_by_alternative_id(self, alternative_id: str) -> Optional[Session]:
        with self._lock:
            session_id = self._alternative_ids.get(alternative_id)
            if session_id is None:
                return self._record(None)
            session = self._sessions.get(session_id)
            if session is None or session.alternative_id != alternative_id:
                self._alternative_ids.pop(alternative_id, None)
                return self._record(None)
            return self._record(session)

    def get_by_session_id(self, session_id: SessionId) -> Optional[Session]:
        if session_id.alternative:
            return self.get_by_alternative_id(session_id.identifier)
        return self.get(session_id.identifier)

    def get_by_user(self, user_id: int, context_id: int) -> List[Session]:
        with self._lock:
            ids = self._users.get((context_id, user_id), ())
            sessions = [self._sessions.get(session_id) for session_id in ids]
            return [session for session in sessions if session is not None]

    def get_first_matching(
        self, user_id: int, context_id: int, predicate: Callable[[Session], bool]
    ) -> Optional[Session]:
        for session in self.get_by_user(user_id, context_id):
            if predicate(session):
                return session
        return None

    def has_for_context(self, context_id: int) -> bool:
        with self._lock:
            for (ctx, _user), ids in self._users.items():
                if ctx == context_id and any(i in self._sessions for i in ids):
                    return True
            return False

    def get_all(self) -> List[Session]:
        with self._lock:
            return list(self._sessions.values())

    def __len__(self) -> int:
        with self._lock:
            return len(self._sessions)

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def put(self, session: Session, reset_check_timestamp: bool = False, now: int = 0) -> None:
        """Insert or replace a session.

        Args:
            session: Session to cache
            reset_check_timestamp: Mark the session as just verified against Redis
            now: Timestamp (ms) to use as last check
        """
        if reset_check_timestamp:
            session.last_checked = now
        with self._lock:
            previous = self._sessions.get(session.session_id)
            if previous is not None and previous is not session:
                self._forget(session.session_id, previous)
            self._sessions[session.session_id] = session
            self._index(session)
            sessiond_local_cache_size.set(len(self._sessions))

    def get_or_load(self, session_id: str, loader: Callable[[], Optional[Session]]) -> Optional[Session]:
        """Return the cached session or load it, running ``loader`` at most once
        for concurrent callers missing the same id.

        The loaded session is cached only if neither the cache nor this id
        was invalidated while the loader ran.
        """
        with self._lock:
            session = self._sessions.get(session_id)
            if session is not None:
                return self._record(session)
            future = self._loading.get(session_id)
            owner = future is None
            if owner:
                future = Future()
                self._loading[session_id] = future
                generation = self._generation
        self._record(None)

        if not owner:
            return future.result()

        try:
            session = loader()
        except BaseException as e:
            with self._lock:
                self._loading.pop(session_id, None)
                self._stale_loads.discard(session_id)
            future.set_exception(e)
            raise

        with self._lock:
            self._loading.pop(session_id, None)
            stale = session_id in self._stale_loads
            self._stale_loads.discard(session_id)
            if session is not None and not stale and generation == self._generation:
                self._sessions[session_id] = session
                self._index(session)
                sessiond_local_cache_size.set(len(self._sessions))
        future.set_result(session)
        return session

    # ------------------------------------------------------------------
    # Removals
    # ------------------------------------------------------------------

    def remove_by_id(self, session_id: str) -> Optional[Session]:
        with self._lock:
            session = self._pop(session_id)
            sessiond_local_cache_size.set(len(self._sessions))
        if session is not None:
            logger.debug(f"Evicted session {mask_session_id(session_id)} from local cache")
        return session

    def remove_by_ids(self, session_ids: Iterable[str]) -> List[Session]:
        removed = []
        with self._lock:
            for session_id in session_ids:
                session = self._pop(session_id)
                if session is not None:
                    removed.append(session)
            sessiond_local_cache_size.set(len(self._sessions))
        return removed

    def remove_by_user(self, user_id: int, context_id: int) -> List[Session]:
        with self._lock:
            ids = list(self._users.get((context_id, user_id), ()))
            return self.remove_by_ids(ids)

    def remove_by_context(self, context_id: int) -> List[Session]:
        return self.remove_by_contexts([context_id])

    def remove_by_contexts(self, context_ids: Iterable[int]) -> List[Session]:
        contexts = set(context_ids)
        with self._lock:
            ids = [
                session_id
                for (ctx, _user), user_ids in self._users.items()
                if ctx in contexts
                for session_id in user_ids
            ]
            return self.remove_by_ids(ids)

    def invalidate_all(self) -> List[Session]:
        """Drop every entry and start a new cache generation.

        Returns:
            The sessions that were cached
        """
        with self._lock:
            sessions = list(self._sessions.values())
            self._generation += 1
            # clear() goes through popitem(), which also empties the indexes
            self._sessions.clear()
            self._alternative_ids.clear()
            self._users.clear()
            sessiond_local_cache_size.set(0)
        logger.info(f"Invalidated local session cache ({len(sessions)} sessions)")
        return sessions
