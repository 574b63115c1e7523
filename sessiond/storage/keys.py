"""
Redis key layout shared by every node of a cluster.

The exact strings matter: nodes of different releases must agree on them.
"""

import re
from typing import Optional

DELIMITER = ":"

# Schema version of the stored session records. Raising it makes the
# version check purge all session data on the next startup.
VERSION = 1

SCAN_LIMIT = 1000
MILLIS_DAY = 24 * 60 * 60 * 1000

# ============================================================================
# KEY PREFIXES
# ============================================================================

REDIS_SESSION = "ox-session"
REDIS_SESSION_ALTERNATIVE_ID = "ox-session-altid"
REDIS_SESSION_AUTH_ID = "ox-session-authid"
REDIS_SET_SESSIONIDS = "ox-sessionids"
REDIS_SORTEDSET_SESSIONIDS_BRAND = "ox-sessionids-brand"
REDIS_SORTEDSET_SESSIONIDS_LONG_LIFETIME = "ox-sessionids-longlife"
REDIS_SORTEDSET_SESSIONIDS_SHORT_LIFETIME = "ox-sessionids-shortlife"
REDIS_HASH_SESSION_COUNTER = "ox-sessioncounters"
REDIS_SESSION_VERSION = "ox-session-version"

# Lease locks
REDIS_SESSION_VERSION_LOCK = "ox-session-version-lock"
REDIS_SESSION_CONSISTENCY_LOCK = "ox-session-conslock"
REDIS_SESSION_EXPIRE_AND_COUNTERS_LOCK = "ox-session-expirecounterslock"

# ============================================================================
# COUNTER FIELDS
# ============================================================================

COUNTER_SESSION_TOTAL = "session.total"
COUNTER_SESSION_ACTIVE = "session.active"
COUNTER_SESSION_SHORT = "session.short"
COUNTER_SESSION_LONG = "session.long"
COUNTER_BRAND_TOTAL_APPENDIX = ".total"
COUNTER_BRAND_ACTIVE_APPENDIX = ".active"

_BRAND_SANITIZER = re.compile(r"[^a-z0-9_.\-]")


def session_key(session_id: str) -> str:
    return f"{REDIS_SESSION}{DELIMITER}{session_id}"


def alternative_id_key(alternative_id: str) -> str:
    return f"{REDIS_SESSION_ALTERNATIVE_ID}{DELIMITER}{alternative_id}"


def auth_id_key(auth_id: str) -> str:
    return f"{REDIS_SESSION_AUTH_ID}{DELIMITER}{auth_id}"


def user_set_key(user_id: int, context_id: int) -> str:
    return f"{REDIS_SET_SESSIONIDS}{DELIMITER}{context_id}{DELIMITER}{user_id}"


def brand_set_key(brand_id: str) -> str:
    return f"{REDIS_SORTEDSET_SESSIONIDS_BRAND}{DELIMITER}{brand_id}"


def lifetime_set_key(stay_signed_in: bool) -> str:
    if stay_signed_in:
        return REDIS_SORTEDSET_SESSIONIDS_LONG_LIFETIME
    return REDIS_SORTEDSET_SESSIONIDS_SHORT_LIFETIME


def all_sessions_pattern() -> str:
    return f"{REDIS_SESSION}{DELIMITER}*"


def all_user_sets_pattern() -> str:
    return f"{REDIS_SET_SESSIONIDS}{DELIMITER}*"


def context_user_sets_pattern(context_id: int) -> str:
    return f"{REDIS_SET_SESSIONIDS}{DELIMITER}{context_id}{DELIMITER}*"


def all_brand_sets_pattern() -> str:
    return f"{REDIS_SORTEDSET_SESSIONIDS_BRAND}{DELIMITER}*"


def all_alternative_ids_pattern() -> str:
    return f"{REDIS_SESSION_ALTERNATIVE_ID}{DELIMITER}*"


def all_auth_ids_pattern() -> str:
    return f"{REDIS_SESSION_AUTH_ID}{DELIMITER}*"


def all_data_pattern() -> str:
    """Pattern matching every key written by the session cache."""
    return f"{REDIS_SESSION}*"


def suffix_of(key: str) -> str:
    """Return the last segment of a key, e.g. the session id of a primary key."""
    return key[key.rfind(DELIMITER) + 1:]


def brand_id_for(brand: Optional[str]) -> Optional[str]:
    """Normalize a brand name into the identifier used in keys and counters."""
    if brand is None:
        return None
    brand = brand.strip().lower()
    if not brand:
        return None
    return _BRAND_SANITIZER.sub("_", brand)


def brand_total_counter(brand_id: str) -> str:
    return f"{brand_id}{COUNTER_BRAND_TOTAL_APPENDIX}"


def brand_active_counter(brand_id: str) -> str:
    return f"{brand_id}{COUNTER_BRAND_ACTIVE_APPENDIX}"
