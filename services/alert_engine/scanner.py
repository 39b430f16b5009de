"""
Tenant alert scan.

run_alert_scan() resolves thresholds once, pulls one health snapshot per
bay-bound sensor, evaluates offline / low battery / poor signal / flapping for
each sensor in that order, then runs the tenant-wide dead-letter check.
Each condition commits on its own, so a failed or cancelled scan leaves every
already-evaluated condition consistent and defers the rest to the next run.
"""
from __future__ import annotations

import asyncio
import logging
import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Optional

import asyncpg

from services.alert_engine.health import HealthMetrics, fetch_sensor_health
from services.alert_engine.lifecycle import (
    AlertCandidate,
    auto_resolve_alert,
    now_utc,
    open_or_update_alert,
)
from services.alert_engine.scoring import (
    compute_health_score,
    has_enough_signal_samples,
    signal_below_floor,
)
from services.alert_engine.thresholds import AlertThresholds, fetch_alert_thresholds
from services.shared.logging import log_event, log_exception, trace_id_var
from services.shared.metrics import (
    alert_scan_alerts_total,
    alert_scan_duration_seconds,
    alert_scan_failures_total,
    alert_scan_sensors_checked_total,
)

logger = logging.getLogger(__name__)

COUNT_DEAD_LETTERS_SQL = """
SELECT COUNT(*)::int
FROM ingest_dead_letters
WHERE tenant_id = $1
  AND created_at > $2
"""


@dataclass
class ScanResult:
    tenant_id: str
    zone_id: Optional[str] = None
    created: int = 0
    updated: int = 0
    resolved: int = 0
    checked_sensors: int = 0
    failed_sensors: int = 0
    decode_errors_checked: bool = False
    timed_out: bool = False
    thresholds: Optional[AlertThresholds] = None
    health_scores: dict[str, int] = field(default_factory=dict)

    def as_dict(self) -> dict:
        return {
            "tenant_id": self.tenant_id,
            "zone_id": self.zone_id,
            "created": self.created,
            "updated": self.updated,
            "resolved": self.resolved,
            "checked_sensors": self.checked_sensors,
            "failed_sensors": self.failed_sensors,
            "decode_errors_checked": self.decode_errors_checked,
            "timed_out": self.timed_out,
            "thresholds": self.thresholds.as_dict() if self.thresholds else None,
            "health_scores": dict(self.health_scores),
        }


def is_offline(t: AlertThresholds, m: HealthMetrics) -> bool:
    return m.age_minutes is None or m.age_minutes > t.offline_minutes


def is_low_battery(t: AlertThresholds, m: HealthMetrics) -> bool:
    return m.battery_pct is not None and m.battery_pct <= t.low_battery_pct


def battery_severity(t: AlertThresholds, battery_pct: float) -> str:
    return "CRITICAL" if battery_pct <= t.critical_battery_pct else "WARNING"


def has_poor_signal(t: AlertThresholds, m: HealthMetrics) -> bool:
    return has_enough_signal_samples(t, m) and signal_below_floor(t, m)


def is_flapping(t: AlertThresholds, m: HealthMetrics) -> bool:
    return m.flap_changes >= t.flapping_max_changes


def decode_error_severity(t: AlertThresholds, dead_letters: int) -> Optional[str]:
    if dead_letters >= t.dead_letters_critical:
        return "CRITICAL"
    if dead_letters >= t.dead_letters_warning:
        return "WARNING"
    return None


def _fmt(value: Optional[float]) -> str:
    return "n/a" if value is None else f"{value:.1f}"


def sensor_conditions(
    tenant_id: str,
    t: AlertThresholds,
    m: HealthMetrics,
) -> list[tuple[str, Optional[AlertCandidate], str]]:
    """
    (alert_type, candidate, resolve_note) for each per-sensor condition, in
    evaluation order. A None candidate means the condition is clear.
    """

    def candidate(alert_type, severity, title, message, meta):
        return AlertCandidate(
            tenant_id=tenant_id,
            type=alert_type,
            severity=severity,
            title=f"{title} ({m.dev_eui})",
            message=message,
            meta={"dev_eui": m.dev_eui, **meta},
            sensor_id=m.sensor_id,
            site_id=m.site_id,
            zone_id=m.zone_id,
        )

    offline = None
    if is_offline(t, m):
        offline = candidate(
            "SENSOR_OFFLINE",
            "CRITICAL",
            "Sensor offline",
            "No telemetry recorded."
            if m.age_minutes is None
            else f"No heartbeat/event for {m.age_minutes} minutes.",
            {"age_minutes": m.age_minutes, "days_in_use": m.days_in_use},
        )

    low_battery = None
    if is_low_battery(t, m):
        low_battery = candidate(
            "LOW_BATTERY",
            battery_severity(t, m.battery_pct),
            "Low battery",
            f"Battery at {round(m.battery_pct)}%.",
            {"battery_pct": m.battery_pct, "battery_drain_per_day": m.battery_drain_per_day},
        )

    poor_signal = None
    if has_poor_signal(t, m):
        poor_signal = candidate(
            "POOR_SIGNAL",
            "WARNING",
            "Poor signal",
            f"avg RSSI {_fmt(m.avg_rssi)} / avg SNR {_fmt(m.avg_snr)} "
            f"(last {t.signal_lookback_hours:g}h).",
            {
                "avg_rssi": m.avg_rssi,
                "avg_snr": m.avg_snr,
                "samples": m.signal_samples,
                "thresholds": {
                    "poor_rssi_threshold": t.poor_rssi_threshold,
                    "poor_snr_threshold": t.poor_snr_threshold,
                },
            },
        )

    flapping = None
    if is_flapping(t, m):
        flapping = candidate(
            "FLAPPING",
            "WARNING",
            "Flapping sensor",
            f"{m.flap_changes} occupancy state changes in last "
            f"{t.flapping_window_minutes:g} minutes.",
            {
                "flap_changes": m.flap_changes,
                "window_minutes": t.flapping_window_minutes,
                "max_changes": t.flapping_max_changes,
            },
        )

    return [
        ("SENSOR_OFFLINE", offline, "Sensor is back online."),
        ("LOW_BATTERY", low_battery, "Battery recovered above threshold."),
        ("POOR_SIGNAL", poor_signal, "Signal recovered above threshold."),
        ("FLAPPING", flapping, "Flapping no longer detected."),
    ]


async def _apply_condition(
    conn: asyncpg.Connection,
    t: AlertThresholds,
    result: ScanResult,
    alert_type: str,
    candidate: Optional[AlertCandidate],
    resolve_note: str,
    sensor_id: Optional[str],
    actor_user_id: Optional[str],
    now: datetime,
) -> None:
    if candidate is not None:
        _, created = await open_or_update_alert(
            conn, t, candidate, actor_user_id=actor_user_id, now=now
        )
        outcome = "created" if created else "updated"
        if created:
            result.created += 1
        else:
            result.updated += 1
    else:
        resolved = await auto_resolve_alert(
            conn,
            result.tenant_id,
            alert_type,
            sensor_id,
            actor_user_id=actor_user_id,
            note=resolve_note,
            now=now,
        )
        if not resolved:
            return
        outcome = "resolved"
        result.resolved += 1
    alert_scan_alerts_total.labels(tenant_id=result.tenant_id, outcome=outcome).inc()


async def _check_decode_errors(
    conn: asyncpg.Connection,
    t: AlertThresholds,
    result: ScanResult,
    actor_user_id: Optional[str],
    now: datetime,
) -> None:
    since = now - timedelta(hours=t.dead_letters_window_hours)
    dead_letters = int(await conn.fetchval(COUNT_DEAD_LETTERS_SQL, result.tenant_id, since) or 0)
    severity = decode_error_severity(t, dead_letters)
    candidate = None
    if severity is not None:
        candidate = AlertCandidate(
            tenant_id=result.tenant_id,
            type="DECODE_ERRORS",
            severity=severity,
            title="Decode/ingestion errors spike",
            message=f"{dead_letters} dead-letter rows in last {t.dead_letters_window_hours:g} hours.",
            meta={"dead_letters": dead_letters, "window_hours": t.dead_letters_window_hours},
        )
    await _apply_condition(
        conn,
        t,
        result,
        "DECODE_ERRORS",
        candidate,
        "Dead-letter rate back to normal.",
        None,
        actor_user_id,
        now,
    )
    result.decode_errors_checked = True


async def _scan(
    pool: asyncpg.Pool,
    result: ScanResult,
    actor_user_id: Optional[str],
    now: datetime,
) -> None:
    tenant_id = result.tenant_id
    async with pool.acquire() as conn:
        # Threshold and telemetry reads are fatal for the scan; let them raise.
        t = await fetch_alert_thresholds(conn, tenant_id)
        result.thresholds = t
        sensors = await fetch_sensor_health(conn, tenant_id, t, now, zone_id=result.zone_id)

        for metrics in sensors:
            result.health_scores[metrics.sensor_id] = compute_health_score(t, metrics)
            try:
                for alert_type, candidate, note in sensor_conditions(tenant_id, t, metrics):
                    await _apply_condition(
                        conn, t, result, alert_type, candidate, note,
                        metrics.sensor_id, actor_user_id, now,
                    )
            except Exception as exc:
                result.failed_sensors += 1
                alert_scan_failures_total.labels(tenant_id=tenant_id, stage="sensor").inc()
                log_exception(
                    logger,
                    "sensor check failed",
                    exc,
                    {"tenant_id": tenant_id, "sensor_id": metrics.sensor_id},
                )
                continue
            result.checked_sensors += 1
            alert_scan_sensors_checked_total.labels(tenant_id=tenant_id).inc()

        try:
            await _check_decode_errors(conn, t, result, actor_user_id, now)
        except Exception as exc:
            alert_scan_failures_total.labels(tenant_id=tenant_id, stage="decode_errors").inc()
            log_exception(logger, "decode error check failed", exc, {"tenant_id": tenant_id})


async def run_alert_scan(
    pool: asyncpg.Pool,
    tenant_id: str,
    zone_id: Optional[str] = None,
    actor_user_id: Optional[str] = None,
    *,
    timeout: Optional[float] = None,
    now: Optional[datetime] = None,
) -> ScanResult:
    """
    Scan one tenant (optionally one zone) and reconcile its alerts.

    actor_user_id attributes the audit events when a person triggered the scan.
    With a timeout, the scan stops at the deadline and returns what it committed
    with timed_out set.
    """
    now = now or now_utc()
    result = ScanResult(tenant_id=tenant_id, zone_id=zone_id)
    trace_token = trace_id_var.set(str(uuid.uuid4()))
    try:
        log_event(logger, "alert scan started", tenant_id=tenant_id, zone_id=zone_id)
        started = time.monotonic()
        try:
            await asyncio.wait_for(_scan(pool, result, actor_user_id, now), timeout=timeout)
        except asyncio.TimeoutError:
            result.timed_out = True
            alert_scan_failures_total.labels(tenant_id=tenant_id, stage="timeout").inc()
            log_event(
                logger,
                "alert scan timed out",
                level="WARNING",
                tenant_id=tenant_id,
                timeout_seconds=timeout,
                checked_sensors=result.checked_sensors,
            )

        duration = time.monotonic() - started
        alert_scan_duration_seconds.labels(tenant_id=tenant_id).observe(duration)
        log_event(
            logger,
            "alert scan complete",
            tenant_id=tenant_id,
            zone_id=zone_id,
            alerts_created=result.created,
            alerts_updated=result.updated,
            alerts_resolved=result.resolved,
            checked_sensors=result.checked_sensors,
            failed_sensors=result.failed_sensors,
            timed_out=result.timed_out,
            duration_ms=int(duration * 1000),
        )
        return result
    finally:
        trace_id_var.reset(trace_token)
