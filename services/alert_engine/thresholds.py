"""
Per-tenant alerting thresholds.

Tenants store a loose JSON map in tenant_settings.thresholds. It is merged
field by field over DEFAULT_THRESHOLDS; a missing, non-numeric, non-finite or
(for unsigned fields) negative override falls back to the default.
"""
from __future__ import annotations

import json
import logging
import math
from dataclasses import asdict, dataclass, fields, replace
from datetime import datetime, timedelta
from typing import Any, Mapping

import asyncpg

from services.shared.logging import log_event

logger = logging.getLogger(__name__)

FETCH_THRESHOLDS_SQL = """
SELECT thresholds
FROM tenant_settings
WHERE tenant_id = $1
LIMIT 1
"""

UPSERT_THRESHOLDS_SQL = """
INSERT INTO tenant_settings (tenant_id, thresholds, updated_at)
VALUES ($1, $2::jsonb, now())
ON CONFLICT (tenant_id) DO UPDATE
  SET thresholds = EXCLUDED.thresholds,
      updated_at = now()
"""

# Signal floors are dBm / dB and legitimately negative.
SIGNED_FIELDS = frozenset({"poor_rssi_threshold", "poor_snr_threshold"})


@dataclass(frozen=True)
class AlertThresholds:
    offline_minutes: float = 60
    low_battery_pct: float = 20
    stale_event_minutes: float = 15

    poor_rssi_threshold: float = -115
    poor_snr_threshold: float = 0
    signal_lookback_hours: float = 24
    signal_min_samples: float = 3

    flapping_window_minutes: float = 30
    flapping_max_changes: float = 6

    dead_letters_window_hours: float = 24
    dead_letters_critical: float = 50
    dead_letters_warning: float = 10

    battery_drain_high_per_day: float = 5
    battery_drain_medium_per_day: float = 3
    battery_drain_low_per_day: float = 2

    sla_hours_critical: float = 4
    sla_hours_warning: float = 24
    sla_hours_info: float = 72

    @property
    def critical_battery_pct(self) -> float:
        return self.low_battery_pct / 2

    def sla_hours(self, severity: str) -> float:
        if severity == "CRITICAL":
            return self.sla_hours_critical
        if severity == "WARNING":
            return self.sla_hours_warning
        return self.sla_hours_info

    def sla_due_at(self, severity: str, now: datetime) -> datetime:
        return now + timedelta(hours=self.sla_hours(severity))

    def sla_ordering_issues(self) -> list[str]:
        """Report SLA tiers that are out of order. Nothing here rejects them."""
        issues = []
        if self.sla_hours_critical > self.sla_hours_warning:
            issues.append("sla_hours_critical exceeds sla_hours_warning")
        if self.sla_hours_warning > self.sla_hours_info:
            issues.append("sla_hours_warning exceeds sla_hours_info")
        return issues

    def as_dict(self) -> dict[str, float]:
        return asdict(self)


DEFAULT_THRESHOLDS = AlertThresholds()


def _camel(name: str) -> str:
    head, *rest = name.split("_")
    return head + "".join(part.capitalize() for part in rest)


def _coerce(value: Any, fallback: float, signed: bool) -> float:
    if value is None or isinstance(value, bool):
        return fallback
    try:
        number = float(value)
    except (TypeError, ValueError):
        return fallback
    if not math.isfinite(number):
        return fallback
    if number < 0 and not signed:
        return fallback
    return number


def _coerce_overrides(raw: Any) -> dict:
    if isinstance(raw, Mapping):
        return dict(raw)
    if isinstance(raw, str) and raw:
        try:
            parsed = json.loads(raw)
        except json.JSONDecodeError:
            return {}
        return parsed if isinstance(parsed, dict) else {}
    return {}


def merge_thresholds(overrides: Any, defaults: AlertThresholds = DEFAULT_THRESHOLDS) -> AlertThresholds:
    """Merge a raw override map over defaults. Accepts camelCase or snake_case keys."""
    raw = _coerce_overrides(overrides)
    merged = {}
    for field in fields(defaults):
        fallback = getattr(defaults, field.name)
        value = raw.get(_camel(field.name), raw.get(field.name))
        merged[field.name] = _coerce(value, fallback, field.name in SIGNED_FIELDS)
    return replace(defaults, **merged)


async def fetch_alert_thresholds(conn: asyncpg.Connection, tenant_id: str) -> AlertThresholds:
    row = await conn.fetchrow(FETCH_THRESHOLDS_SQL, tenant_id)
    thresholds = merge_thresholds(row["thresholds"] if row else None)
    issues = thresholds.sla_ordering_issues()
    if issues:
        log_event(
            logger,
            "sla ordering not enforced",
            level="WARNING",
            tenant_id=tenant_id,
            issues=issues,
        )
    return thresholds


async def save_threshold_overrides(conn: asyncpg.Connection, tenant_id: str, overrides: dict) -> None:
    """Store the raw override map as-is; validation happens on read."""
    await conn.execute(UPSERT_THRESHOLDS_SQL, tenant_id, json.dumps(overrides))
