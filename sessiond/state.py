"""
Immutable state snapshot of a node.

A snapshot bundles the effective configuration with the resources derived
from it: the local session cache and the password obfuscator. The
coordinator swaps snapshots atomically and destroys the replaced one.
"""

import itertools
import logging
from dataclasses import dataclass, field
from typing import Callable, Dict, Optional

from sessiond.cache.local import LocalSessionCache
from sessiond.exceptions import ConfigurationError
from sessiond.settings import Settings
from sessiond.storage.codec import Obfuscator, SessionCodec

logger = logging.getLogger(__name__)

DEFAULT_USER_TYPE = "default"

_state_versions = itertools.count(1)


@dataclass(frozen=True)
class UserTypeSessionConfig:
    user_type: str
    max_sessions_per_user_type: int


class UserTypeConfigRegistry:
    """Resolves the session limits applying to a user.

    Args:
        default_limit: Limit for users of the default type (0 = unlimited)
        limits: Limits per user type name
        resolver: Maps ``(user_id, context_id)`` to a user type name
    """

    def __init__(
        self,
        default_limit: int,
        limits: Optional[Dict[str, int]] = None,
        resolver: Optional[Callable[[int, int], str]] = None,
    ):
        self.default_limit = default_limit
        self.limits = dict(limits or {})
        self.resolver = resolver

    def get_config_for(self, user_id: int, context_id: int) -> UserTypeSessionConfig:
        user_type = DEFAULT_USER_TYPE
        if self.resolver is not None:
            user_type = (self.resolver(user_id, context_id) or DEFAULT_USER_TYPE).lower()
        limit = self.limits.get(user_type, self.default_limit)
        return UserTypeSessionConfig(user_type=user_type, max_sessions_per_user_type=limit)


@dataclass(frozen=True)
class SessiondState:
    """Effective configuration plus owned resources (all durations in ms)."""

    max_sessions: int
    max_sessions_per_client: int
    session_default_lifetime: int
    session_long_lifetime: int
    session_local_lifetime: int
    check_existence_threshold: int
    ensure_existence_on_local_fetch: bool
    try_lock_before_lookup: bool
    consistency_check_interval_minutes: int
    expirer_and_counters_interval_minutes: int
    lock_update_frequency: int
    user_type_registry: UserTypeConfigRegistry
    obfuscator: Obfuscator
    codec: SessionCodec
    local_cache: LocalSessionCache
    version: int = field(default_factory=lambda: next(_state_versions))

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        user_type_resolver: Optional[Callable[[int, int], str]] = None,
    ) -> "SessiondState":
        """Derive a snapshot from settings.

        Lifetimes are normalized so that long >= default >= local >= threshold >= 0.

        Raises:
            ConfigurationError: If no encryption key is configured
        """
        if not settings.encryption_key:
            raise ConfigurationError("Missing property SESSIOND_ENCRYPTION_KEY")

        lifetime = settings.lifetime
        default_lifetime = lifetime.default_lifetime
        long_lifetime = max(lifetime.long_lifetime, default_lifetime)
        local_lifetime = min(lifetime.local_lifetime, default_lifetime)
        threshold = max(lifetime.check_existence_threshold, 0)
        if local_lifetime < threshold:
            local_lifetime = threshold

        obfuscator = Obfuscator(settings.encryption_key)
        return cls(
            max_sessions=settings.limits.max_sessions,
            max_sessions_per_client=settings.limits.max_sessions_per_client,
            session_default_lifetime=default_lifetime,
            session_long_lifetime=long_lifetime,
            session_local_lifetime=local_lifetime,
            check_existence_threshold=threshold,
            ensure_existence_on_local_fetch=lifetime.ensure_existence_on_local_fetch,
            try_lock_before_lookup=lifetime.try_lock_before_lookup,
            consistency_check_interval_minutes=settings.jobs.consistency_check_interval_minutes,
            expirer_and_counters_interval_minutes=settings.jobs.expirer_interval_minutes,
            lock_update_frequency=settings.jobs.lock_update_frequency,
            user_type_registry=UserTypeConfigRegistry(
                settings.limits.max_sessions_per_user_type,
                settings.limits.user_type_limits,
                user_type_resolver,
            ),
            obfuscator=obfuscator,
            codec=SessionCodec(obfuscator),
            local_cache=LocalSessionCache(lifetime.local_cache_max_size, local_lifetime),
        )

    def destroy(self) -> None:
        """Release resources owned by this snapshot."""
        self.local_cache.invalidate_all()
        self.obfuscator.destroy()
        logger.info(f"Destroyed session state version {self.version}")
