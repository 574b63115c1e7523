# sessiond/metrics.py
"""
Prometheus metrics for session cache nodes.

Metrics are organized by component:
- Redis: command execution against the authoritative store
- Sessions: coordinator operations and limit rejections
- Local cache: hits, misses and evictions
- Invalidation: published and received cluster messages
- Locks and jobs: lease locks and maintenance runs
- Counters: snapshot of the cluster-wide counters hash
"""

from prometheus_client import Counter, Histogram, Gauge

# ============================================================================
# REDIS METRICS
# ============================================================================

sessiond_redis_operations_total = Counter(
    "sessiond_redis_operations_total",
    "Total Redis operations executed by a connector",
    ["connector", "status"],  # "primary"/"replica-N", "success"/"error"
)

sessiond_redis_operation_duration_seconds = Histogram(
    "sessiond_redis_operation_duration_seconds",
    "Latency of Redis operations",
    ["connector"],
    buckets=(0.001, 0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1, 2),
)

# ============================================================================
# SESSION METRICS
# ============================================================================

sessiond_session_operations_total = Counter(
    "sessiond_session_operations_total",
    "Session operations by type and outcome",
    ["operation", "outcome"],  # create/get/remove/store, success/miss/error
)

sessiond_session_limit_rejections_total = Counter(
    "sessiond_session_limit_rejections_total",
    "Sessions rejected because of a limit",
    ["limit"],  # "max_sessions", "per_user", "per_client", "auth_id"
)

sessiond_sessions_removed_total = Counter(
    "sessiond_sessions_removed_total",
    "Sessions removed from Redis",
    ["reason"],  # "explicit", "user", "context", "filter", "expired", "all"
)

sessiond_version_mismatch_total = Counter(
    "sessiond_version_mismatch_total",
    "Stored records dropped because of a schema version mismatch",
)

# ============================================================================
# LOCAL CACHE METRICS
# ============================================================================

sessiond_local_cache_requests_total = Counter(
    "sessiond_local_cache_requests_total",
    "Local cache lookups",
    ["result"],  # "hit", "miss"
)

sessiond_local_cache_size = Gauge(
    "sessiond_local_cache_size",
    "Number of sessions held in the local cache",
)

# ============================================================================
# INVALIDATION METRICS
# ============================================================================

sessiond_invalidations_published_total = Counter(
    "sessiond_invalidations_published_total",
    "Invalidation messages published",
    ["status"],  # "success", "error"
)

sessiond_invalidations_received_total = Counter(
    "sessiond_invalidations_received_total",
    "Invalidation messages received",
    ["origin"],  # "remote", "local"
)

# ============================================================================
# LOCK & JOB METRICS
# ============================================================================

sessiond_lock_acquisitions_total = Counter(
    "sessiond_lock_acquisitions_total",
    "Lease lock acquisition attempts",
    ["lock", "outcome"],  # outcome: "acquired", "busy"
)

sessiond_job_runs_total = Counter(
    "sessiond_job_runs_total",
    "Maintenance job runs",
    ["job", "outcome"],  # "expirer", "consistency", "version"; "done"/"skipped"/"error"
)

sessiond_job_duration_seconds = Histogram(
    "sessiond_job_duration_seconds",
    "Duration of maintenance job runs",
    ["job"],
    buckets=(0.01, 0.1, 0.5, 1, 5, 15, 60, 300),
)

# ============================================================================
# COUNTER SNAPSHOT METRICS
# ============================================================================

sessiond_sessions_counter = Gauge(
    "sessiond_sessions_counter",
    "Last reconciled value of the cluster-wide session counters",
    ["counter"],  # "session.total", "session.active", "<brand>.total", ...
)
