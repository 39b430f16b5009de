from datetime import date, datetime, timedelta, timezone

NOW = datetime(2025, 3, 1, 12, 0, tzinfo=timezone.utc)


class FakeRecord(dict):
    """Dict subclass that supports attribute-style access (row.col)."""

    def __getattr__(self, name):
        try:
            return self[name]
        except KeyError as exc:
            raise AttributeError(name) from exc


def fake_sensor_row(overrides: dict | None = None) -> FakeRecord:
    """A healthy SENSOR_HEALTH_SQL row: seen 5 minutes ago, full battery, good signal."""
    record = FakeRecord(
        {
            "sensor_id": "sensor-1",
            "dev_eui": "70B3D57ED0000001",
            "site_id": "site-1",
            "zone_id": "zone-a",
            "bay_id": "bay-1",
            "install_date": date(2025, 1, 1),
            "last_seen": NOW - timedelta(minutes=5),
            "battery_pct": 90.0,
            "last_event_time": NOW - timedelta(minutes=5),
            "last_rssi": -80.0,
            "last_snr": 7.5,
            "avg_rssi": -82.0,
            "avg_snr": 7.0,
            "signal_samples": 12,
            "min_battery": 89.0,
            "max_battery": 90.0,
            "min_battery_time": NOW - timedelta(days=6),
            "max_battery_time": NOW - timedelta(minutes=5),
            "flap_changes": 0,
        }
    )
    if overrides:
        record.update(overrides)
    return record


def fake_alert(overrides: dict | None = None) -> FakeRecord:
    record = FakeRecord(
        {
            "id": "alert-1",
            "tenant_id": "tenant-a",
            "site_id": "site-1",
            "zone_id": "zone-a",
            "sensor_id": "sensor-1",
            "gateway_id": None,
            "type": "SENSOR_OFFLINE",
            "severity": "CRITICAL",
            "status": "OPEN",
            "title": "Sensor offline (70B3D57ED0000001)",
            "message": "No heartbeat/event for 90 minutes.",
            "meta": {"dev_eui": "70B3D57ED0000001", "age_minutes": 90},
            "opened_at": NOW,
            "first_detected_at": NOW,
            "last_detected_at": NOW,
            "acknowledged_at": None,
            "acknowledged_by_user_id": None,
            "assigned_to_user_id": None,
            "resolved_at": None,
            "resolved_by_user_id": None,
            "sla_due_at": NOW + timedelta(hours=4),
            "created_at": NOW,
            "updated_at": NOW,
        }
    )
    if overrides:
        record.update(overrides)
    return record
