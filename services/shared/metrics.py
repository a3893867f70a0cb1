"""
Shared Prometheus metrics registry.

Each service imports and increments these counters/gauges.
Use prometheus_client.generate_latest() in service /metrics handlers.
"""

from prometheus_client import Counter, Gauge, Histogram

# Ingest
readings_processed_total = Counter(
    "stationwatch_readings_processed_total",
    "Total sensor readings processed",
    ["result"],  # accepted | rejected | error
)

# Evaluation / alerts
threshold_evaluations_total = Counter(
    "stationwatch_threshold_evaluations_total",
    "Total per-parameter threshold evaluations",
    ["parameter", "severity"],
)

threshold_config_violations_total = Counter(
    "stationwatch_threshold_config_violations_total",
    "Threshold orderings found invalid during evaluation",
    ["parameter"],
)

alerts_created_total = Counter(
    "stationwatch_alerts_created_total",
    "Total alert records created",
    ["parameter", "severity"],
)

alert_transitions_total = Counter(
    "stationwatch_alert_transitions_total",
    "Alert lifecycle transitions",
    ["to_lifecycle", "status"],
)

alerts_purged_total = Counter(
    "stationwatch_alerts_purged_total",
    "Soft-deleted alerts permanently removed",
)

# Automation
valve_commands_total = Counter(
    "stationwatch_valve_commands_total",
    "Automatic valve commands decided",
    ["action"],
)

command_publish_failures_total = Counter(
    "stationwatch_command_publish_failures_total",
    "Device commands that could not be published",
    ["command_type"],
)

# Liveness
devices_marked_offline_total = Counter(
    "stationwatch_devices_marked_offline_total",
    "Devices flipped to Offline by the liveness check",
)

sensors_marked_offline_total = Counter(
    "stationwatch_sensors_marked_offline_total",
    "Sensors flipped to Offline by the liveness check",
    ["sensor"],
)

# Scheduler
sweep_failures_total = Counter(
    "stationwatch_sweep_failures_total",
    "Periodic task iterations abandoned after exhausting retries",
    ["task"],
)

sweep_retries_total = Counter(
    "stationwatch_sweep_retries_total",
    "Retry attempts made by periodic tasks",
    ["task"],
)

processing_duration_seconds = Histogram(
    "stationwatch_processing_duration_seconds",
    "Duration of a processing cycle in seconds",
    ["service", "operation"],
    buckets=[0.01, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0, 60.0],
)

db_pool_size = Gauge(
    "stationwatch_db_pool_size",
    "Current total size of the database connection pool",
    ["service"],
)

db_pool_free = Gauge(
    "stationwatch_db_pool_free",
    "Current number of free (idle) connections in the pool",
    ["service"],
)
