"""
Node settings for the distributed session cache.

Loads configuration from environment variables (.env file) with sensible defaults.
All settings can be overridden via environment variables prefixed with SESSIOND_.
"""

import os
from pydantic import BaseModel, Field, field_validator, ConfigDict
from typing import Dict, List
from dotenv import load_dotenv

# Load .env file if present
load_dotenv()

MINUTE_MILLIS = 60 * 1000
HOUR_MILLIS = 60 * MINUTE_MILLIS


def _parse_limits(raw: str) -> Dict[str, int]:
    """Parse 'guest=2,anonymous=1' into a mapping of user type to limit."""
    limits: Dict[str, int] = {}
    for item in raw.split(","):
        if "=" not in item:
            continue
        name, value = item.split("=", 1)
        if name.strip() and value.strip():
            limits[name.strip().lower()] = int(value.strip())
    return limits


class RedisSettings(BaseModel):
    """Connection settings for the authoritative store and its replicas."""

    url: str = Field(
        default=os.getenv("SESSIOND_REDIS_URL", "redis://localhost:6379/0"),
        description="Redis connection URL of the local region",
    )
    remote_urls: List[str] = Field(
        default_factory=lambda: [
            url.strip()
            for url in os.getenv("SESSIOND_REDIS_REMOTE_URLS", "").split(",")
            if url.strip()
        ],
        description="Redis URLs of remote-region replicas receiving replayed writes",
    )
    max_connections: int = Field(
        default=int(os.getenv("SESSIOND_REDIS_MAX_CONNECTIONS", "20")),
        description="Connection pool size",
    )
    socket_timeout: float = Field(
        default=float(os.getenv("SESSIOND_REDIS_SOCKET_TIMEOUT", "5")),
        description="Command timeout in seconds",
    )
    socket_connect_timeout: float = Field(
        default=float(os.getenv("SESSIOND_REDIS_CONNECT_TIMEOUT", "5")),
        description="Connect timeout in seconds",
    )

    @field_validator("max_connections")
    def validate_max_connections(cls, v):
        if v <= 0:
            raise ValueError("Connection pool size must be positive")
        return v


class SessionLimitSettings(BaseModel):
    """Limits enforced when a new session is added."""

    max_sessions: int = Field(
        default=int(os.getenv("SESSIOND_MAX_SESSIONS", "0")),
        description="Maximum number of sessions cluster-wide (0 = unlimited)",
    )
    max_sessions_per_user_type: int = Field(
        default=int(os.getenv("SESSIOND_MAX_SESSIONS_PER_USER_TYPE", "100")),
        description="Maximum number of sessions per user for the default user type",
    )
    user_type_limits: Dict[str, int] = Field(
        default_factory=lambda: _parse_limits(
            os.getenv("SESSIOND_USER_TYPE_LIMITS", "")
        ),
        description="Per-user-type session limits, e.g. guest=2,anonymous=1",
    )
    max_sessions_per_client: int = Field(
        default=int(os.getenv("SESSIOND_MAX_SESSIONS_PER_CLIENT", "0")),
        description="Maximum number of sessions per user and client (0 = unlimited)",
    )

    @field_validator("max_sessions", "max_sessions_per_user_type", "max_sessions_per_client")
    def validate_non_negative(cls, v):
        if v < 0:
            raise ValueError("Limit must not be negative")
        return v


class LifetimeSettings(BaseModel):
    """Session lifetimes and local cache behaviour (all durations in milliseconds)."""

    default_lifetime: int = Field(
        default=int(os.getenv("SESSIOND_SESSION_DEFAULT_LIFETIME", str(HOUR_MILLIS))),
        description="Idle lifetime of short-life sessions",
    )
    long_lifetime: int = Field(
        default=int(os.getenv("SESSIOND_SESSION_LONG_LIFETIME", str(7 * 24 * HOUR_MILLIS))),
        description="Idle lifetime of stay-signed-in sessions",
    )
    local_lifetime: int = Field(
        default=int(os.getenv("SESSIOND_SESSION_LOCAL_LIFETIME", str(5 * MINUTE_MILLIS))),
        description="Time a session stays in the node-local cache after being written",
    )
    check_existence_threshold: int = Field(
        default=int(os.getenv("SESSIOND_CHECK_EXISTENCE_THRESHOLD", "10000")),
        description="Grace period during which a locally cached session is not re-validated",
    )
    ensure_existence_on_local_fetch: bool = Field(
        default=os.getenv("SESSIOND_ENSURE_EXISTENCE_ON_LOCAL_FETCH", "true").lower() == "true",
        description="Whether local cache hits are re-validated against Redis",
    )
    try_lock_before_lookup: bool = Field(
        default=os.getenv("SESSIOND_TRY_LOCK_BEFORE_LOOKUP", "true").lower() == "true",
        description="Whether concurrent misses for the same id are serialized",
    )
    local_cache_max_size: int = Field(
        default=int(os.getenv("SESSIOND_LOCAL_CACHE_MAX_SIZE", "100000")),
        description="Maximum number of sessions held in the node-local cache",
    )

    @field_validator("default_lifetime", "long_lifetime", "local_lifetime", "local_cache_max_size")
    def validate_positive_integer(cls, v):
        if v <= 0:
            raise ValueError("Value must be positive")
        return v


class JobSettings(BaseModel):
    """Periodic maintenance jobs."""

    consistency_check_interval_minutes: int = Field(
        default=int(os.getenv("SESSIOND_CONSISTENCY_CHECK_INTERVAL", "60")),
        description="Interval of the index consistency check (0 disables it)",
    )
    expirer_interval_minutes: int = Field(
        default=int(os.getenv("SESSIOND_EXPIRER_INTERVAL", "5")),
        description="Interval of the expiry and counters job (0 disables it)",
    )
    lock_update_frequency: int = Field(
        default=int(os.getenv("SESSIOND_LOCK_UPDATE_FREQUENCY", "20000")),
        description="Renewal interval of maintenance job locks in milliseconds",
    )
    version_lock_timeout: int = Field(
        default=int(os.getenv("SESSIOND_VERSION_LOCK_TIMEOUT", "30000")),
        description="Lease of the version migration lock in milliseconds",
    )
    version_lock_renewal: int = Field(
        default=int(os.getenv("SESSIOND_VERSION_LOCK_RENEWAL", "10000")),
        description="Renewal interval of the version migration lock in milliseconds",
    )
    worker_threads: int = Field(
        default=int(os.getenv("SESSIOND_WORKER_THREADS", "8")),
        description="Size of the background worker pool",
    )

    @field_validator("consistency_check_interval_minutes", "expirer_interval_minutes")
    def validate_interval(cls, v):
        if v < 0:
            raise ValueError("Interval must not be negative")
        return v

    @field_validator("lock_update_frequency", "version_lock_timeout", "version_lock_renewal", "worker_threads")
    def validate_positive_integer(cls, v):
        if v <= 0:
            raise ValueError("Value must be positive")
        return v


class Settings(BaseModel):
    """Main node settings."""

    encryption_key: str = Field(
        default=os.getenv("SESSIOND_ENCRYPTION_KEY", ""),
        description="Key material used to obfuscate stored passwords",
    )
    pubsub_channel: str = Field(
        default=os.getenv("SESSIOND_PUBSUB_CHANNEL", "ox-pubsub:sessiond:sessionevents"),
        description="Channel carrying cluster-wide invalidation messages",
    )

    redis: RedisSettings = Field(
        default_factory=RedisSettings, description="Redis connection configuration"
    )
    limits: SessionLimitSettings = Field(
        default_factory=SessionLimitSettings, description="Session limits"
    )
    lifetime: LifetimeSettings = Field(
        default_factory=LifetimeSettings, description="Lifetimes and local cache"
    )
    jobs: JobSettings = Field(
        default_factory=JobSettings, description="Maintenance job configuration"
    )

    model_config = ConfigDict(
        extra="forbid",  # Prevent typos in environment variables
        validate_assignment=True,  # Validate on attribute assignment
    )


# Global settings instance
settings = Settings()
