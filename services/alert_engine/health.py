"""
Per-sensor health snapshots derived from sensor_events.

All windowed metrics for a tenant come back from one statement: each CTE
aggregates across every in-scope sensor at once (DISTINCT ON for the latest
event, GROUP BY for signal and battery windows, LAG() partitioned by sensor
for occupancy flips).
"""
from __future__ import annotations

import math
from dataclasses import dataclass
from datetime import date, datetime, timezone
from decimal import Decimal
from typing import Any, Optional

import asyncpg

from services.alert_engine.thresholds import AlertThresholds

SENSOR_HEALTH_SQL = """
WITH scoped AS (
    SELECT s.id AS sensor_id, s.dev_eui, s.site_id, s.zone_id, s.bay_id,
           s.install_date, s.last_seen, s.battery_pct
    FROM sensors s
    WHERE s.tenant_id = $1
      AND s.bay_id IS NOT NULL
      AND ($2::text IS NULL OR s.zone_id = $2)
),
last_event AS (
    SELECT DISTINCT ON (e.sensor_id) e.sensor_id, e.time, e.rssi, e.snr
    FROM sensor_events e
    JOIN scoped sc ON sc.sensor_id = e.sensor_id
    WHERE e.tenant_id = $1
    ORDER BY e.sensor_id, e.time DESC
),
signal AS (
    SELECT e.sensor_id,
           AVG(e.rssi)::float AS avg_rssi,
           AVG(e.snr)::float AS avg_snr,
           COUNT(*)::int AS samples
    FROM sensor_events e
    JOIN scoped sc ON sc.sensor_id = e.sensor_id
    WHERE e.tenant_id = $1
      AND e.time > $3::timestamptz - ($4::float8 * interval '1 hour')
      AND (e.rssi IS NOT NULL OR e.snr IS NOT NULL)
    GROUP BY e.sensor_id
),
battery AS (
    SELECT e.sensor_id,
           MIN(e.battery_pct)::float AS min_battery,
           MAX(e.battery_pct)::float AS max_battery,
           MIN(e.time) AS min_time,
           MAX(e.time) AS max_time
    FROM sensor_events e
    JOIN scoped sc ON sc.sensor_id = e.sensor_id
    WHERE e.tenant_id = $1
      AND e.time > $3::timestamptz - interval '7 days'
      AND e.battery_pct IS NOT NULL
    GROUP BY e.sensor_id
),
occupancy AS (
    SELECT e.sensor_id,
           e.time,
           CASE
             WHEN jsonb_typeof(e.decoded -> 'occupied') = 'boolean'
               THEN (e.decoded ->> 'occupied')::boolean
             ELSE NULL
           END AS occupied
    FROM sensor_events e
    JOIN scoped sc ON sc.sensor_id = e.sensor_id
    WHERE e.tenant_id = $1
      AND e.time > $3::timestamptz - ($5::float8 * interval '1 minute')
      AND e.decoded IS NOT NULL
),
flaps AS (
    SELECT sensor_id,
           COUNT(*) FILTER (WHERE prev IS NOT NULL AND occupied IS DISTINCT FROM prev)::int AS changes
    FROM (
        SELECT sensor_id, occupied,
               LAG(occupied) OVER (PARTITION BY sensor_id ORDER BY time) AS prev
        FROM occupancy
        WHERE occupied IS NOT NULL
    ) x
    GROUP BY sensor_id
)
SELECT sc.sensor_id, sc.dev_eui, sc.site_id, sc.zone_id, sc.bay_id,
       sc.install_date, sc.last_seen, sc.battery_pct,
       le.time AS last_event_time,
       le.rssi AS last_rssi,
       le.snr AS last_snr,
       sg.avg_rssi, sg.avg_snr,
       COALESCE(sg.samples, 0) AS signal_samples,
       b.min_battery, b.max_battery, b.min_time AS min_battery_time, b.max_time AS max_battery_time,
       COALESCE(f.changes, 0) AS flap_changes
FROM scoped sc
LEFT JOIN last_event le ON le.sensor_id = sc.sensor_id
LEFT JOIN signal sg ON sg.sensor_id = sc.sensor_id
LEFT JOIN battery b ON b.sensor_id = sc.sensor_id
LEFT JOIN flaps f ON f.sensor_id = sc.sensor_id
ORDER BY sc.dev_eui ASC
"""


@dataclass
class HealthMetrics:
    sensor_id: str
    dev_eui: str
    site_id: Optional[str]
    zone_id: Optional[str]
    bay_id: Optional[str]

    days_in_use: Optional[int]
    last_seen: Optional[datetime]
    age_minutes: Optional[int]

    last_rssi: Optional[float]
    last_snr: Optional[float]
    avg_rssi: Optional[float]
    avg_snr: Optional[float]
    signal_samples: int

    battery_pct: Optional[float]
    battery_drain_per_day: Optional[float]

    flap_changes: int


def _number(value: Any) -> Optional[float]:
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float, Decimal)):
        number = float(value)
        return number if math.isfinite(number) else None
    return None


def _as_utc(value: Optional[datetime]) -> Optional[datetime]:
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def battery_drain_per_day(
    min_pct: Any,
    max_pct: Any,
    min_time: Optional[datetime],
    max_time: Optional[datetime],
) -> Optional[float]:
    """
    Percent lost per day over the battery window.

    The span between the first and last battery sample is floored at one day.
    """
    low = _number(min_pct)
    high = _number(max_pct)
    if low is None or high is None or min_time is None or max_time is None:
        return None
    span_days = (_as_utc(max_time) - _as_utc(min_time)).total_seconds() / 86400
    days = max(1.0, span_days)
    drop = max(0.0, high - low)
    return drop / days


def _days_in_use(install_date: Any, now: datetime) -> Optional[int]:
    if install_date is None:
        return None
    if isinstance(install_date, datetime):
        return math.floor((now - _as_utc(install_date)).total_seconds() / 86400)
    if isinstance(install_date, date):
        return (now.date() - install_date).days
    return None


def build_health_metrics(row: Any, now: datetime) -> HealthMetrics:
    """Turn one SENSOR_HEALTH_SQL row into a snapshot as of `now`."""
    candidates = [_as_utc(row["last_seen"]), _as_utc(row["last_event_time"])]
    seen = [ts for ts in candidates if ts is not None]
    last_seen = max(seen) if seen else None
    age_minutes = (
        math.floor((now - last_seen).total_seconds() / 60) if last_seen is not None else None
    )

    return HealthMetrics(
        sensor_id=str(row["sensor_id"]),
        dev_eui=row["dev_eui"] or "",
        site_id=row["site_id"],
        zone_id=row["zone_id"],
        bay_id=row["bay_id"],
        days_in_use=_days_in_use(row["install_date"], now),
        last_seen=last_seen,
        age_minutes=age_minutes,
        last_rssi=_number(row["last_rssi"]),
        last_snr=_number(row["last_snr"]),
        avg_rssi=_number(row["avg_rssi"]),
        avg_snr=_number(row["avg_snr"]),
        signal_samples=int(row["signal_samples"] or 0),
        battery_pct=_number(row["battery_pct"]),
        battery_drain_per_day=battery_drain_per_day(
            row["min_battery"],
            row["max_battery"],
            row["min_battery_time"],
            row["max_battery_time"],
        ),
        flap_changes=int(row["flap_changes"] or 0),
    )


async def fetch_sensor_health(
    conn: asyncpg.Connection,
    tenant_id: str,
    thresholds: AlertThresholds,
    now: datetime,
    zone_id: str | None = None,
) -> list[HealthMetrics]:
    """One snapshot per sensor bound to a bay, optionally limited to a zone."""
    rows = await conn.fetch(
        SENSOR_HEALTH_SQL,
        tenant_id,
        zone_id,
        now,
        float(thresholds.signal_lookback_hours),
        float(thresholds.flapping_window_minutes),
    )
    return [build_health_metrics(row, now) for row in rows]
