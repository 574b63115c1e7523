"""
Helper functions for session storage.
"""

import time
from typing import Iterator

from sessiond.storage.keys import SCAN_LIMIT


def now_millis() -> int:
    """Current wall-clock time in milliseconds, the unit of sorted-set scores."""
    return int(time.time() * 1000)


def scan_keys(client, pattern: str, count: int = SCAN_LIMIT) -> Iterator[str]:
    """Iterate all keys matching a glob pattern using cursor-based SCAN.

    Args:
        client: Redis client
        pattern: Glob pattern, e.g. "ox-sessionids:*"
        count: Page size hint passed to SCAN

    Yields:
        Matching key names (a key may be reported more than once)
    """
    cursor = 0
    while True:
        cursor, keys = client.scan(cursor=cursor, match=pattern, count=count)
        for key in keys:
            yield key
        if cursor == 0:
            break


def mask_session_id(session_id: str) -> str:
    """Mask session ID for secure logging.

    Shows only first 8 characters to prevent session hijacking via logs.

    Args:
        session_id: Full session ID

    Returns:
        Masked ID (e.g., "abc12345***")
    """
    if not session_id or len(session_id) < 8:
        return "***"
    return f"{session_id[:8]}***"
