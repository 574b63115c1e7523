"""
Distributed session cache for clustered nodes.

Sessions live in Redis; every node keeps a local cache in sync through
pub/sub invalidations and runs lock-guarded maintenance jobs.
"""

__version__ = "1.0.0"
