"""Read-side alert queries used by the API layer and the scan worker."""
import json
from datetime import datetime
from typing import Optional

import asyncpg

from services.alert_engine.lifecycle import AlertNotFoundError, now_utc

LIST_LIMIT_MIN = 20
LIST_LIMIT_MAX = 500
EVENTS_LIMIT = 200


def _coerce_meta(value):
    if isinstance(value, dict):
        return value
    if value is None:
        return None
    if isinstance(value, str):
        if not value:
            return None
        try:
            return json.loads(value)
        except json.JSONDecodeError:
            return None
    return None


def _alert_dict(row) -> dict:
    alert = dict(row)
    alert["meta"] = _coerce_meta(alert.get("meta"))
    return alert


async def list_alerts(
    conn: asyncpg.Connection,
    tenant_id: str,
    status: Optional[str] = None,
    alert_type: Optional[str] = None,
    severity: Optional[str] = None,
    zone_id: Optional[str] = None,
    sensor_id: Optional[str] = None,
    search: Optional[str] = None,
    limit: int = 200,
) -> list[dict]:
    """
    Filtered alert listing.

    Active alerts sort first (OPEN, then ACKNOWLEDGED), then by severity,
    then most recently detected. `search` matches title, dev_eui or bay code.
    """
    limit = max(LIST_LIMIT_MIN, min(LIST_LIMIT_MAX, int(limit)))
    pattern = f"%{search.strip()}%" if search and search.strip() else None
    rows = await conn.fetch(
        """
        SELECT a.id, a.type, a.severity, a.status, a.title, a.message, a.meta,
               a.opened_at, a.first_detected_at, a.last_detected_at,
               a.acknowledged_at, a.acknowledged_by_user_id, a.assigned_to_user_id,
               a.resolved_at, a.sla_due_at, a.sensor_id, a.site_id,
               COALESCE(a.zone_id, s.zone_id) AS zone_id,
               s.dev_eui, b.code AS bay_code
        FROM alerts a
        LEFT JOIN sensors s ON s.id = a.sensor_id
        LEFT JOIN bays b ON b.id = s.bay_id
        WHERE a.tenant_id = $1
          AND ($2::text IS NULL OR a.status = $2)
          AND ($3::text IS NULL OR a.type = $3)
          AND ($4::text IS NULL OR a.severity = $4)
          AND ($5::text IS NULL OR COALESCE(a.zone_id, s.zone_id) = $5)
          AND ($6::text IS NULL OR a.sensor_id = $6)
          AND (
            $7::text IS NULL
            OR a.title ILIKE $7
            OR COALESCE(s.dev_eui, '') ILIKE $7
            OR COALESCE(b.code, '') ILIKE $7
          )
        ORDER BY
          CASE a.status WHEN 'OPEN' THEN 0 WHEN 'ACKNOWLEDGED' THEN 1 ELSE 2 END,
          CASE a.severity WHEN 'CRITICAL' THEN 0 WHEN 'WARNING' THEN 1 ELSE 2 END,
          a.last_detected_at DESC
        LIMIT $8
        """,
        tenant_id,
        status.upper() if status else None,
        alert_type.upper() if alert_type else None,
        severity.upper() if severity else None,
        zone_id,
        sensor_id,
        pattern,
        limit,
    )
    return [_alert_dict(r) for r in rows]


async def fetch_alert_events(conn: asyncpg.Connection, tenant_id: str, alert_id: str) -> list[dict]:
    """Audit trail for one alert, newest first."""
    owner = await conn.fetchval(
        "SELECT id FROM alerts WHERE id = $1 AND tenant_id = $2",
        alert_id,
        tenant_id,
    )
    if owner is None:
        raise AlertNotFoundError(tenant_id, alert_id)

    rows = await conn.fetch(
        """
        SELECT id, alert_id, actor_user_id, action, note, meta, created_at
        FROM alert_events
        WHERE tenant_id = $1 AND alert_id = $2
        ORDER BY created_at DESC
        LIMIT $3
        """,
        tenant_id,
        alert_id,
        EVENTS_LIMIT,
    )
    return [_alert_dict(r) for r in rows]


async def fetch_overdue_alerts(
    conn: asyncpg.Connection,
    tenant_id: str,
    now: Optional[datetime] = None,
) -> list[dict]:
    rows = await conn.fetch(
        """
        SELECT id, type, severity, status, title, sensor_id, opened_at, sla_due_at
        FROM alerts
        WHERE tenant_id = $1
          AND status IN ('OPEN', 'ACKNOWLEDGED')
          AND sla_due_at IS NOT NULL
          AND sla_due_at < $2
        ORDER BY sla_due_at ASC
        """,
        tenant_id,
        now or now_utc(),
    )
    return [dict(r) for r in rows]


async def count_active_alerts(conn: asyncpg.Connection, tenant_id: str) -> int:
    count = await conn.fetchval(
        """
        SELECT COUNT(*)
        FROM alerts
        WHERE tenant_id = $1 AND status IN ('OPEN', 'ACKNOWLEDGED')
        """,
        tenant_id,
    )
    return int(count or 0)
