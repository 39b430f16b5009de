"""
Alert lifecycle: open-or-update, auto-resolve and operator actions.

Every state change writes the alert row and its alert_events row inside one
transaction. Scan-side writes also take a transaction-scoped advisory lock on
(tenant, type, sensor) before reading the active row, so overlapping scans
serialize per key; the partial unique index alerts_active_uq backs this up at
the schema level. The active row is read FOR UPDATE, which makes operator
actions on the same alert wait for the scan's write, and the scan's UPDATEs
only match rows that are still OPEN or ACKNOWLEDGED.
"""
from __future__ import annotations

import json
import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Optional

import asyncpg

from services.alert_engine.thresholds import AlertThresholds
from services.shared.logging import log_event

logger = logging.getLogger(__name__)

ALERT_TYPES = ("SENSOR_OFFLINE", "LOW_BATTERY", "POOR_SIGNAL", "FLAPPING", "DECODE_ERRORS")
SEVERITIES = ("INFO", "WARNING", "CRITICAL")
ACTIVE_STATUSES = ("OPEN", "ACKNOWLEDGED")

LOCK_ALERT_KEY_SQL = "SELECT pg_advisory_xact_lock(hashtextextended($1, 0))"

SELECT_ACTIVE_ALERT_SQL = """
SELECT id, status, severity, opened_at
FROM alerts
WHERE tenant_id = $1
  AND type = $2
  AND sensor_id IS NOT DISTINCT FROM $3
  AND status IN ('OPEN', 'ACKNOWLEDGED')
ORDER BY updated_at DESC
LIMIT 1
FOR UPDATE
"""

INSERT_ALERT_SQL = """
INSERT INTO alerts (
    id, tenant_id, site_id, zone_id, sensor_id, gateway_id,
    type, severity, status, title, message, meta,
    opened_at, first_detected_at, last_detected_at, sla_due_at,
    created_at, updated_at
)
VALUES (
    $1, $2, $3, $4, $5, $6,
    $7, $8, 'OPEN', $9, $10, $11::jsonb,
    $12, $12, $12, $13,
    $12, $12
)
"""

# Status and opened_at are left alone: re-detection never reopens an alert.
# A row resolved in the meantime matches nothing and the caller opens a new one.
REFRESH_ALERT_SQL = """
UPDATE alerts
SET last_detected_at = $7,
    updated_at = $7,
    severity = $3,
    title = $4,
    message = $5,
    meta = $6::jsonb
WHERE id = $1
  AND tenant_id = $2
  AND status IN ('OPEN', 'ACKNOWLEDGED')
RETURNING id
"""

RESOLVE_ALERT_SQL = """
UPDATE alerts
SET status = 'RESOLVED',
    resolved_at = COALESCE(resolved_at, $3),
    resolved_by_user_id = $4,
    updated_at = $3
WHERE id = $1
  AND tenant_id = $2
  AND status IN ('OPEN', 'ACKNOWLEDGED')
RETURNING id, status, resolved_at
"""

SELECT_ALERT_FOR_UPDATE_SQL = """
SELECT id, status
FROM alerts
WHERE id = $1 AND tenant_id = $2
FOR UPDATE
"""

ACKNOWLEDGE_ALERT_SQL = """
UPDATE alerts
SET status = 'ACKNOWLEDGED',
    acknowledged_at = COALESCE(acknowledged_at, $4),
    acknowledged_by_user_id = COALESCE(acknowledged_by_user_id, $3),
    updated_at = $4
WHERE id = $1 AND tenant_id = $2 AND status = 'OPEN'
RETURNING id, status, acknowledged_at, acknowledged_by_user_id
"""

ASSIGN_ALERT_SQL = """
UPDATE alerts
SET assigned_to_user_id = $3,
    updated_at = $4
WHERE id = $1
  AND tenant_id = $2
  AND status IN ('OPEN', 'ACKNOWLEDGED')
RETURNING id, status, assigned_to_user_id
"""

INSERT_ALERT_EVENT_SQL = """
INSERT INTO alert_events (id, tenant_id, alert_id, actor_user_id, action, note, meta, created_at)
VALUES ($1, $2, $3, $4, $5, $6, $7::jsonb, $8)
"""


class AlertEngineError(Exception):
    """Base class for alert lifecycle errors surfaced to callers."""


class AlertNotFoundError(AlertEngineError):
    def __init__(self, tenant_id: str, alert_id: str):
        super().__init__(f"alert {alert_id} not found for tenant {tenant_id}")
        self.tenant_id = tenant_id
        self.alert_id = alert_id


class AlertStateError(AlertEngineError):
    def __init__(self, alert_id: str, action: str, status: str):
        super().__init__(f"cannot {action.lower()} alert {alert_id} in status {status}")
        self.alert_id = alert_id
        self.action = action
        self.status = status


@dataclass
class AlertCandidate:
    """A condition that currently evaluates true for one alert key."""

    tenant_id: str
    type: str
    severity: str
    title: str
    message: Optional[str] = None
    meta: dict[str, Any] = field(default_factory=dict)
    sensor_id: Optional[str] = None
    site_id: Optional[str] = None
    zone_id: Optional[str] = None
    gateway_id: Optional[str] = None


def now_utc() -> datetime:
    return datetime.now(timezone.utc)


def alert_key(tenant_id: str, alert_type: str, sensor_id: Optional[str]) -> str:
    return f"{tenant_id}:{alert_type}:{sensor_id or ''}"


def _dump(meta: Any) -> Optional[str]:
    return None if meta is None else json.dumps(meta, default=str)


async def insert_alert_event(
    conn: asyncpg.Connection,
    tenant_id: str,
    alert_id: str,
    action: str,
    *,
    actor_user_id: Optional[str] = None,
    note: Optional[str] = None,
    meta: Optional[dict] = None,
    now: Optional[datetime] = None,
) -> str:
    event_id = str(uuid.uuid4())
    await conn.execute(
        INSERT_ALERT_EVENT_SQL,
        event_id,
        tenant_id,
        alert_id,
        actor_user_id,
        action,
        note,
        _dump(meta),
        now or now_utc(),
    )
    return event_id


async def open_or_update_alert(
    conn: asyncpg.Connection,
    thresholds: AlertThresholds,
    candidate: AlertCandidate,
    *,
    actor_user_id: Optional[str] = None,
    now: Optional[datetime] = None,
) -> tuple[str, bool]:
    """
    Open a new alert for the candidate's key, or refresh the active one.

    Returns (alert_id, created). A refresh keeps the current status, so an
    acknowledged alert stays acknowledged while last_detected_at advances.
    """
    if candidate.type not in ALERT_TYPES:
        raise ValueError(f"unknown alert type {candidate.type!r}")
    if candidate.severity not in SEVERITIES:
        raise ValueError(f"unknown severity {candidate.severity!r}")

    now = now or now_utc()
    event_meta = {"type": candidate.type, "severity": candidate.severity}
    async with conn.transaction():
        await conn.execute(
            LOCK_ALERT_KEY_SQL,
            alert_key(candidate.tenant_id, candidate.type, candidate.sensor_id),
        )
        existing = await conn.fetchrow(
            SELECT_ACTIVE_ALERT_SQL,
            candidate.tenant_id,
            candidate.type,
            candidate.sensor_id,
        )
        refreshed = None
        if existing is not None:
            refreshed = await conn.fetchrow(
                REFRESH_ALERT_SQL,
                str(existing["id"]),
                candidate.tenant_id,
                candidate.severity,
                candidate.title,
                candidate.message,
                _dump(candidate.meta),
                now,
            )

        if refreshed is None:
            alert_id = str(uuid.uuid4())
            await conn.execute(
                INSERT_ALERT_SQL,
                alert_id,
                candidate.tenant_id,
                candidate.site_id,
                candidate.zone_id,
                candidate.sensor_id,
                candidate.gateway_id,
                candidate.type,
                candidate.severity,
                candidate.title,
                candidate.message,
                _dump(candidate.meta),
                now,
                thresholds.sla_due_at(candidate.severity, now),
            )
            await insert_alert_event(
                conn,
                candidate.tenant_id,
                alert_id,
                "OPEN",
                actor_user_id=actor_user_id,
                meta=event_meta,
                now=now,
            )
            created = True
        else:
            alert_id = str(refreshed["id"])
            await insert_alert_event(
                conn,
                candidate.tenant_id,
                alert_id,
                "UPDATE",
                actor_user_id=actor_user_id,
                meta=event_meta,
                now=now,
            )
            created = False

    if created:
        log_event(
            logger,
            "alert opened",
            tenant_id=candidate.tenant_id,
            alert_id=alert_id,
            alert_type=candidate.type,
            severity=candidate.severity,
            sensor_id=candidate.sensor_id,
        )
    return alert_id, created


async def auto_resolve_alert(
    conn: asyncpg.Connection,
    tenant_id: str,
    alert_type: str,
    sensor_id: Optional[str] = None,
    *,
    actor_user_id: Optional[str] = None,
    note: Optional[str] = None,
    now: Optional[datetime] = None,
) -> bool:
    """Resolve the active alert for the key. No active alert is a no-op (False)."""
    now = now or now_utc()
    async with conn.transaction():
        await conn.execute(LOCK_ALERT_KEY_SQL, alert_key(tenant_id, alert_type, sensor_id))
        existing = await conn.fetchrow(SELECT_ACTIVE_ALERT_SQL, tenant_id, alert_type, sensor_id)
        if existing is None:
            return False

        alert_id = str(existing["id"])
        row = await conn.fetchrow(RESOLVE_ALERT_SQL, alert_id, tenant_id, now, None)
        if row is None:
            return False
        await insert_alert_event(
            conn,
            tenant_id,
            alert_id,
            "AUTO_RESOLVE",
            actor_user_id=actor_user_id,
            note=note,
            now=now,
        )

    log_event(
        logger,
        "alert auto-resolved",
        tenant_id=tenant_id,
        alert_id=alert_id,
        alert_type=alert_type,
        sensor_id=sensor_id,
    )
    return True


async def _lock_alert(conn: asyncpg.Connection, tenant_id: str, alert_id: str) -> str:
    row = await conn.fetchrow(SELECT_ALERT_FOR_UPDATE_SQL, alert_id, tenant_id)
    if row is None:
        raise AlertNotFoundError(tenant_id, alert_id)
    return row["status"]


async def acknowledge_alert(
    conn: asyncpg.Connection,
    tenant_id: str,
    alert_id: str,
    actor_user_id: str,
    note: Optional[str] = None,
    *,
    now: Optional[datetime] = None,
) -> dict:
    """OPEN -> ACKNOWLEDGED, recording who acknowledged it."""
    now = now or now_utc()
    async with conn.transaction():
        status = await _lock_alert(conn, tenant_id, alert_id)
        if status != "OPEN":
            raise AlertStateError(alert_id, "ACKNOWLEDGE", status)
        row = await conn.fetchrow(ACKNOWLEDGE_ALERT_SQL, alert_id, tenant_id, actor_user_id, now)
        await insert_alert_event(
            conn,
            tenant_id,
            alert_id,
            "ACKNOWLEDGE",
            actor_user_id=actor_user_id,
            note=note,
            now=now,
        )
    return dict(row)


async def assign_alert(
    conn: asyncpg.Connection,
    tenant_id: str,
    alert_id: str,
    actor_user_id: str,
    assignee_user_id: Optional[str] = None,
    note: Optional[str] = None,
    *,
    now: Optional[datetime] = None,
) -> dict:
    """Set the assignee (the actor when none is given) on an active alert."""
    now = now or now_utc()
    assignee = assignee_user_id or actor_user_id
    async with conn.transaction():
        status = await _lock_alert(conn, tenant_id, alert_id)
        if status not in ACTIVE_STATUSES:
            raise AlertStateError(alert_id, "ASSIGN", status)
        row = await conn.fetchrow(ASSIGN_ALERT_SQL, alert_id, tenant_id, assignee, now)
        await insert_alert_event(
            conn,
            tenant_id,
            alert_id,
            "ASSIGN",
            actor_user_id=actor_user_id,
            note=note,
            meta={"assignee_user_id": assignee},
            now=now,
        )
    return dict(row)


async def resolve_alert(
    conn: asyncpg.Connection,
    tenant_id: str,
    alert_id: str,
    actor_user_id: str,
    note: Optional[str] = None,
    *,
    now: Optional[datetime] = None,
) -> dict:
    """Manual resolve from OPEN or ACKNOWLEDGED."""
    now = now or now_utc()
    async with conn.transaction():
        status = await _lock_alert(conn, tenant_id, alert_id)
        if status not in ACTIVE_STATUSES:
            raise AlertStateError(alert_id, "RESOLVE", status)
        row = await conn.fetchrow(RESOLVE_ALERT_SQL, alert_id, tenant_id, now, actor_user_id)
        await insert_alert_event(
            conn,
            tenant_id,
            alert_id,
            "RESOLVE",
            actor_user_id=actor_user_id,
            note=note,
            now=now,
        )
    return dict(row)
