"""
Session data model.
"""

import json
import threading
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

from sessiond.storage.keys import brand_id_for

# Well-known keys of the parameter map
PARAM_LOGIN_TIME = "login-time"
PARAM_USER_AGENT = "user-agent"
PARAM_BRAND = "brand"


@dataclass(frozen=True)
class SessionId:
    """Reference to a session, either by its primary or by its alternative identifier."""

    identifier: str
    alternative: bool = False

    @classmethod
    def of_session_id(cls, session_id: str) -> "SessionId":
        return cls(session_id, alternative=False)

    @classmethod
    def of_alternative_id(cls, alternative_id: str) -> "SessionId":
        return cls(alternative_id, alternative=True)

    def __str__(self) -> str:
        return self.identifier


@dataclass
class SessionAttributes:
    """Mutable session attributes to change; ``None`` leaves a field untouched."""

    local_ip: Optional[str] = None
    client: Optional[str] = None
    hash: Optional[str] = None
    user_agent: Optional[str] = None

    def is_empty(self) -> bool:
        return all(
            value is None
            for value in (self.local_ip, self.client, self.hash, self.user_agent)
        )

    def apply_to(self, session: "Session") -> bool:
        """Copy set attributes onto the session.

        Returns:
            True if at least one attribute changed
        """
        changed = False
        with session.lock:
            if self.local_ip is not None and session.local_ip != self.local_ip:
                session.local_ip = self.local_ip
                changed = True
            if self.client is not None and session.client != self.client:
                session.client = self.client
                changed = True
            if self.hash is not None and session.hash != self.hash:
                session.hash = self.hash
                changed = True
            if self.user_agent is not None and session.user_agent != self.user_agent:
                session.parameters[PARAM_USER_AGENT] = self.user_agent
                changed = True
        return changed


@dataclass
class Session:
    """An authenticated user's server-side state.

    Identity fields never change after creation. The mutable fields
    (password, local_ip, hash, client, user agent) must be changed through
    the ``set_*`` mutators so that the change reaches Redis and the other
    nodes of the cluster.
    """

    session_id: str
    user_id: int
    context_id: int
    login: str
    login_name: Optional[str] = None
    auth_id: Optional[str] = None
    secret: Optional[str] = None
    random_token: Optional[str] = None
    origin: Optional[str] = None
    stay_signed_in: bool = False
    password: Optional[str] = None
    local_ip: Optional[str] = None
    hash: Optional[str] = None
    client: Optional[str] = None
    alternative_id: Optional[str] = None
    parameters: Dict[str, Any] = field(default_factory=dict)

    # Node-local only, never persisted
    last_checked: int = field(default=0, compare=False, repr=False)
    lock: threading.RLock = field(
        default_factory=threading.RLock, init=False, compare=False, repr=False
    )
    _coordinator: Any = field(default=None, init=False, compare=False, repr=False)

    @property
    def user_agent(self) -> Optional[str]:
        return self.parameters.get(PARAM_USER_AGENT)

    @property
    def login_time(self) -> Optional[int]:
        return self.parameters.get(PARAM_LOGIN_TIME)

    @property
    def brand(self) -> Optional[str]:
        return self.parameters.get(PARAM_BRAND)

    @property
    def brand_id(self) -> Optional[str]:
        return brand_id_for(self.brand)

    def attach(self, coordinator) -> "Session":
        """Bind the session to the coordinator that propagates its mutations."""
        self._coordinator = coordinator
        return self

    def set_local_ip(self, local_ip: str, propagate: bool = True) -> None:
        self._change(SessionAttributes(local_ip=local_ip), propagate)

    def set_client(self, client: str, propagate: bool = True) -> None:
        self._change(SessionAttributes(client=client), propagate)

    def set_hash(self, hash: str, propagate: bool = True) -> None:
        self._change(SessionAttributes(hash=hash), propagate)

    def set_user_agent(self, user_agent: str, propagate: bool = True) -> None:
        self._change(SessionAttributes(user_agent=user_agent), propagate)

    def set_password(self, password: str, propagate: bool = True) -> None:
        coordinator = self._coordinator
        if propagate and coordinator is not None:
            coordinator.change_session_password(self.session_id, password)
        with self.lock:
            self.password = password

    def _change(self, attributes: SessionAttributes, propagate: bool) -> None:
        coordinator = self._coordinator
        if propagate and coordinator is not None:
            coordinator.set_session_attributes(self.session_id, attributes)
        attributes.apply_to(self)

    def to_dict(self) -> Dict[str, Any]:
        """Serialize session to dictionary (for Redis storage)."""
        with self.lock:
            return {
                "session_id": self.session_id,
                "user_id": self.user_id,
                "context_id": self.context_id,
                "login": self.login,
                "login_name": self.login_name,
                "auth_id": self.auth_id,
                "secret": self.secret,
                "random_token": self.random_token,
                "origin": self.origin,
                "stay_signed_in": self.stay_signed_in,
                "password": self.password,
                "local_ip": self.local_ip,
                "hash": self.hash,
                "client": self.client,
                "alternative_id": self.alternative_id,
                "parameters": dict(self.parameters),
            }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Session":
        """Deserialize session from dictionary (for Redis storage)."""
        return cls(
            session_id=data["session_id"],
            user_id=int(data["user_id"]),
            context_id=int(data["context_id"]),
            login=data["login"],
            login_name=data.get("login_name"),
            auth_id=data.get("auth_id"),
            secret=data.get("secret"),
            random_token=data.get("random_token"),
            origin=data.get("origin"),
            stay_signed_in=bool(data.get("stay_signed_in", False)),
            password=data.get("password"),
            local_ip=data.get("local_ip"),
            hash=data.get("hash"),
            client=data.get("client"),
            alternative_id=data.get("alternative_id"),
            parameters=data.get("parameters") or {},
        )


@dataclass
class AddSessionParameter:
    """Everything needed to create a new session."""

    user_id: int
    context_id: int
    login: str
    login_name: Optional[str] = None
    password: Optional[str] = None
    client_ip: Optional[str] = None
    auth_id: Optional[str] = None
    hash: Optional[str] = None
    client: Optional[str] = None
    origin: Optional[str] = None
    stay_signed_in: bool = False
    user_agent: Optional[str] = None
    brand: Optional[str] = None
    alternative_id: Optional[str] = None
    parameters: Dict[str, Any] = field(default_factory=dict)


class SessionOperation(str, Enum):
    INVALIDATE = "invalidate"


@dataclass
class SessionEvent:
    """Cluster message asking nodes to drop sessions from their local cache."""

    operation: SessionOperation
    session_ids: List[str]

    @classmethod
    def invalidate(cls, session_ids: List[str]) -> "SessionEvent":
        return cls(SessionOperation.INVALIDATE, list(session_ids))

    def to_json(self, sender: Optional[str] = None) -> str:
        data: Dict[str, Any] = {
            "operation": self.operation.value,
            "sessionIds": self.session_ids,
        }
        if sender is not None:
            data["sender"] = sender
        return json.dumps(data)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "SessionEvent":
        return cls(
            operation=SessionOperation(data["operation"]),
            session_ids=list(data.get("sessionIds") or []),
        )


@dataclass
class SessionFilter:
    """Predicate used to discover or remove sessions.

    Restricting the filter to a user (``user_id`` and ``context_id``) or a
    context (``context_id`` only) limits which membership sets are scanned.
    """

    predicate: Callable[[Session], bool] = lambda session: True
    user_id: Optional[int] = None
    context_id: Optional[int] = None

    @classmethod
    def for_user(cls, user_id: int, context_id: int, predicate=None) -> "SessionFilter":
        return cls(predicate or (lambda session: True), user_id=user_id, context_id=context_id)

    @classmethod
    def for_context(cls, context_id: int, predicate=None) -> "SessionFilter":
        return cls(predicate or (lambda session: True), context_id=context_id)

    def is_user_scoped(self) -> bool:
        return self.user_id is not None and self.context_id is not None

    def is_context_scoped(self) -> bool:
        return self.user_id is None and self.context_id is not None

    def matches(self, session: Session) -> bool:
        if self.context_id is not None and session.context_id != self.context_id:
            return False
        if self.user_id is not None and session.user_id != self.user_id:
            return False
        return bool(self.predicate(session))
