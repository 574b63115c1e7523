"""
Storage layer: Redis key layout, session records and Redis primitives.

- keys.py: key names shared by all nodes of a cluster
- models.py: session data model
- codec.py: record serialization and password obfuscation
- connector.py: operation-scoped command execution
- lock.py: lease locks with renewal
- removal.py: batched removal of sessions and their index entries
"""

from sessiond.storage.codec import Obfuscator, SessionCodec
from sessiond.storage.connector import RedisConnector, get_connector
from sessiond.storage.lock import RedisLock
from sessiond.storage.models import (
    AddSessionParameter,
    Session,
    SessionAttributes,
    SessionEvent,
    SessionFilter,
    SessionId,
    SessionOperation,
)
from sessiond.storage.removal import RemovalCollection
from sessiond.storage.utils import mask_session_id

__all__ = [
    "AddSessionParameter",
    "Obfuscator",
    "RedisConnector",
    "RedisLock",
    "RemovalCollection",
    "Session",
    "SessionAttributes",
    "SessionCodec",
    "SessionEvent",
    "SessionFilter",
    "SessionId",
    "SessionOperation",
    "get_connector",
    "mask_session_id",
]
