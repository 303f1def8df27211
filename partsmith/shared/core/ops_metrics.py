"""
Operational metrics for the partition lifecycle engine.

Prometheus counters and histograms for partition churn, data movement
and maintenance health.
"""

from prometheus_client import Counter, Histogram

# --- Partition churn ---
PARTITIONS_CREATED = Counter(
    "partsmith_partitions_created_total",
    "Total number of child partitions created",
    ["parent_table", "mode"],
)

PARTITIONS_REAPED = Counter(
    "partsmith_partitions_reaped_total",
    "Total number of child partitions detached by retention",
    ["parent_table", "retention_mode"],
)

# --- Data movement ---
ROWS_MIGRATED = Counter(
    "partsmith_rows_migrated_total",
    "Rows moved between parent and child tables",
    ["direction"],  # 'into_children' (migrate), 'into_parent' (undo)
)

LOCK_WAIT_EXHAUSTED = Counter(
    "partsmith_lock_wait_exhausted_total",
    "Operations aborted after exhausting NOWAIT lock retries",
    ["operation"],
)

# --- Maintenance ---
MAINTENANCE_RUNS = Counter(
    "partsmith_maintenance_runs_total",
    "Total number of maintenance passes",
    ["status"],
)

MAINTENANCE_DURATION = Histogram(
    "partsmith_maintenance_duration_seconds",
    "Duration of a maintenance pass",
    buckets=(0.1, 0.5, 1, 5, 10, 30, 60, 120, 300),
)

SCHEDULER_JOB_RUNS = Counter(
    "partsmith_scheduler_job_runs_total",
    "Total number of scheduled maintenance job runs",
    ["job_name", "status"],
)
