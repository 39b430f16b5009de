"""
Prometheus metrics for the alert engine.

The scanner increments these; the worker serves generate_latest() on /metrics.
"""

from prometheus_client import Counter, Gauge, Histogram

alert_scan_alerts_total = Counter(
    "sensor_alert_scan_alerts_total",
    "Alert lifecycle outcomes produced by scans",
    ["tenant_id", "outcome"],  # created | updated | resolved
)

alert_scan_sensors_checked_total = Counter(
    "sensor_alert_scan_sensors_checked_total",
    "Sensors whose conditions were fully evaluated",
    ["tenant_id"],
)

alert_scan_failures_total = Counter(
    "sensor_alert_scan_failures_total",
    "Scan failures by stage",
    ["tenant_id", "stage"],  # sensor | decode_errors | timeout | scan
)

alert_scan_duration_seconds = Histogram(
    "sensor_alert_scan_duration_seconds",
    "Duration of one tenant scan in seconds",
    ["tenant_id"],
    buckets=[0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0, 60.0, 120.0],
)

active_alerts = Gauge(
    "sensor_active_alerts",
    "Current count of OPEN+ACKNOWLEDGED alerts",
    ["tenant_id"],
)

db_pool_size = Gauge(
    "sensor_alert_db_pool_size",
    "Current total size of the database connection pool",
    ["service"],
)

db_pool_free = Gauge(
    "sensor_alert_db_pool_free",
    "Current number of free (idle) connections in the pool",
    ["service"],
)
