"""
Batched retraction of sessions from Redis.

Removing a session means deleting its primary record and mapping keys and
taking its id out of every index that references it. The collection
gathers these mutations across any number of sessions and applies them in
one pipeline, with one SREM/ZREM per index key.
"""

import logging
import threading
from collections import defaultdict
from typing import Dict, Set

import redis

from sessiond.storage.keys import (
    alternative_id_key,
    auth_id_key,
    brand_set_key,
    lifetime_set_key,
    session_key,
    user_set_key,
)
from sessiond.storage.models import Session

logger = logging.getLogger(__name__)


class RemovalCollection:
    """Thread-safe accumulator of keys and index members to remove."""

    def __init__(self):
        self._lock = threading.Lock()
        self._keys: Set[str] = set()
        self._set_members: Dict[str, Set[str]] = defaultdict(set)
        self._sorted_set_members: Dict[str, Set[str]] = defaultdict(set)

    def add_session(
        self,
        session: Session,
        remove_from_user_set: bool,
        remove_from_sorted_set: bool = True,
    ) -> "RemovalCollection":
        """Collect everything referencing the session.

        Args:
            session: Session to retract
            remove_from_user_set: Also remove the id from the (user, context)
                membership set; bulk removals delete the whole set instead
            remove_from_sorted_set: Remove the id from lifetime and brand sets
        """
        session_id = session.session_id
        with self._lock:
            self._keys.add(session_key(session_id))
            if session.alternative_id:
                self._keys.add(alternative_id_key(session.alternative_id))
            if session.auth_id:
                self._keys.add(auth_id_key(session.auth_id))
            if remove_from_sorted_set:
                self._sorted_set_members[lifetime_set_key(session.stay_signed_in)].add(session_id)
                brand_id = session.brand_id
                if brand_id:
                    self._sorted_set_members[brand_set_key(brand_id)].add(session_id)
            if remove_from_user_set:
                self._set_members[user_set_key(session.user_id, session.context_id)].add(session_id)
        return self

    def add_key(self, key: str) -> "RemovalCollection":
        with self._lock:
            self._keys.add(key)
        return self

    def add_set_member(self, set_key: str, member: str) -> "RemovalCollection":
        with self._lock:
            self._set_members[set_key].add(member)
        return self

    def add_sorted_set_member(self, sorted_set_key: str, member: str) -> "RemovalCollection":
        with self._lock:
            self._sorted_set_members[sorted_set_key].add(member)
        return self

    def is_empty(self) -> bool:
        with self._lock:
            return not (self._keys or self._set_members or self._sorted_set_members)

    def _drain(self):
        with self._lock:
            drained = (self._keys, self._set_members, self._sorted_set_members)
            self._keys = set()
            self._set_members = defaultdict(set)
            self._sorted_set_members = defaultdict(set)
        return drained

    def remove_collected(self, client: redis.Redis) -> None:
        """Apply all collected removals in one pipeline and reset the collection."""
        keys, set_members, sorted_set_members = self._drain()
        if not (keys or set_members or sorted_set_members):
            return

        pipe = client.pipeline(transaction=False)
        if keys:
            pipe.delete(*sorted(keys))
        for set_key, members in set_members.items():
            pipe.srem(set_key, *members)
        for sorted_set_key, members in sorted_set_members.items():
            pipe.zrem(sorted_set_key, *members)
        pipe.execute()
        logger.debug(
            f"Removed {len(keys)} keys, members of {len(set_members)} sets "
            f"and {len(sorted_set_members)} sorted sets"
        )
