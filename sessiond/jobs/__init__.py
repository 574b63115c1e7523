"""
Lock-guarded maintenance jobs.

- version_check.py: startup purge of data written with an older schema
- expirer.py: expiry of idle sessions and counter reconciliation
- consistency.py: cleanup of dangling index entries
"""

from sessiond.jobs.base import PeriodicTask
from sessiond.jobs.consistency import ConsistencyCheck, ConsistencyReport
from sessiond.jobs.expirer import ExpiryResult, SessionExpirer
from sessiond.jobs.version_check import check_version

__all__ = [
    "ConsistencyCheck",
    "ConsistencyReport",
    "ExpiryResult",
    "PeriodicTask",
    "SessionExpirer",
    "check_version",
]
