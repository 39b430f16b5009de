import asyncio
import json
from datetime import date, datetime, timedelta, timezone

import asyncpg
import pytest

from services.alert_engine.health import fetch_sensor_health
from services.alert_engine.lifecycle import acknowledge_alert, resolve_alert
from services.alert_engine.queries import count_active_alerts, fetch_alert_events, list_alerts
from services.alert_engine.scanner import run_alert_scan
from services.alert_engine.thresholds import DEFAULT_THRESHOLDS, save_threshold_overrides

pytestmark = [pytest.mark.integration, pytest.mark.asyncio]

TENANT = "tenant-int"


async def seed_sensor(conn, sensor_id="sensor-1", *, last_seen=None, battery_pct=80.0, zone_id="zone-a"):
    bay_id = f"bay-{sensor_id}"
    await conn.execute("INSERT INTO bays (id, code) VALUES ($1, $2)", bay_id, f"B-{sensor_id}")
    await conn.execute(
        """
        INSERT INTO sensors (id, tenant_id, dev_eui, site_id, zone_id, bay_id,
                             install_date, last_seen, battery_pct)
        VALUES ($1, $2, $3, 'site-1', $4, $5, $6, $7, $8)
        """,
        sensor_id,
        TENANT,
        f"EUI-{sensor_id}",
        zone_id,
        bay_id,
        date(2025, 1, 1),
        last_seen,
        battery_pct,
    )


async def insert_event(conn, sensor_id, at, *, rssi=-80.0, snr=7.0, battery_pct=None, occupied=None):
    decoded = None if occupied is None else json.dumps({"occupied": occupied})
    await conn.execute(
        """
        INSERT INTO sensor_events (tenant_id, sensor_id, time, rssi, snr, battery_pct, decoded)
        VALUES ($1, $2, $3, $4, $5, $6, $7::jsonb)
        """,
        TENANT,
        sensor_id,
        at,
        rssi,
        snr,
        battery_pct,
        decoded,
    )


class TestAlertScanPipeline:
    async def test_flap_count_from_alternating_occupancy(self, clean_db):
        now = datetime.now(timezone.utc)
        async with clean_db.acquire() as conn:
            await seed_sensor(conn, last_seen=now - timedelta(minutes=1))
            for i, occupied in enumerate([True, False, True, False, True, False, True]):
                await insert_event(conn, "sensor-1", now - timedelta(minutes=21 - 3 * i), occupied=occupied)
            # An event without an occupancy reading is not a transition.
            await insert_event(conn, "sensor-1", now - timedelta(minutes=2), occupied=None)
            await insert_event(conn, "sensor-1", now - timedelta(minutes=1), occupied=True)

            (metrics,) = await fetch_sensor_health(conn, TENANT, DEFAULT_THRESHOLDS, now)

        assert metrics.flap_changes == 6
        assert metrics.age_minutes == 1

        result = await run_alert_scan(clean_db, TENANT, now=now)
        assert result.created == 1
        async with clean_db.acquire() as conn:
            (alert,) = await list_alerts(conn, TENANT, alert_type="FLAPPING")
        assert alert["severity"] == "WARNING"
        assert alert["dev_eui"] == "EUI-sensor-1"

    async def test_flapping_max_seven_does_not_alert(self, clean_db):
        now = datetime.now(timezone.utc)
        async with clean_db.acquire() as conn:
            await seed_sensor(conn, last_seen=now - timedelta(minutes=1))
            await save_threshold_overrides(conn, TENANT, {"flappingMaxChanges": 7})
            for i, occupied in enumerate([True, False, True, False, True, False, True]):
                await insert_event(conn, "sensor-1", now - timedelta(minutes=21 - 3 * i), occupied=occupied)

        result = await run_alert_scan(clean_db, TENANT, now=now)
        assert result.created == 0
        assert result.thresholds.flapping_max_changes == 7

    async def test_signal_and_battery_windows(self, clean_db):
        now = datetime.now(timezone.utc)
        async with clean_db.acquire() as conn:
            await seed_sensor(conn, last_seen=now - timedelta(minutes=5), battery_pct=70.0)
            await insert_event(conn, "sensor-1", now - timedelta(hours=30), rssi=-60.0, snr=10.0)
            for hours, rssi, snr in [(3, -118.0, -1.0), (2, -120.0, -2.0), (1, -122.0, -3.0)]:
                await insert_event(conn, "sensor-1", now - timedelta(hours=hours), rssi=rssi, snr=snr)
            await insert_event(conn, "sensor-1", now - timedelta(days=4), battery_pct=90.0)
            await insert_event(conn, "sensor-1", now - timedelta(minutes=5), battery_pct=70.0)

            (metrics,) = await fetch_sensor_health(conn, TENANT, DEFAULT_THRESHOLDS, now)

        assert metrics.signal_samples == 4
        assert metrics.last_rssi == -80.0
        assert metrics.battery_drain_per_day == pytest.approx(20 / (4 - 5 / 1440), rel=1e-3)

    async def test_offline_round_trip_and_dedup(self, clean_db):
        now = datetime.now(timezone.utc)
        async with clean_db.acquire() as conn:
            await seed_sensor(conn, last_seen=now - timedelta(hours=3))

        first = await run_alert_scan(clean_db, TENANT, now=now)
        second = await run_alert_scan(clean_db, TENANT, now=now + timedelta(minutes=1))
        assert (first.created, second.created, second.updated) == (1, 0, 1)

        async with clean_db.acquire() as conn:
            assert await count_active_alerts(conn, TENANT) == 1
            await conn.execute("UPDATE sensors SET last_seen = $1 WHERE id = 'sensor-1'", now)

        third = await run_alert_scan(clean_db, TENANT, now=now + timedelta(minutes=2))
        assert third.resolved == 1

        async with clean_db.acquire() as conn:
            (alert,) = await list_alerts(conn, TENANT, alert_type="SENSOR_OFFLINE")
            events = await fetch_alert_events(conn, TENANT, alert["id"])
        assert alert["status"] == "RESOLVED"
        assert alert["resolved_at"] is not None
        assert [e["action"] for e in events] == ["AUTO_RESOLVE", "UPDATE", "OPEN"]

    async def test_concurrent_scans_open_one_alert(self, clean_db):
        now = datetime.now(timezone.utc)
        async with clean_db.acquire() as conn:
            await seed_sensor(conn, last_seen=now - timedelta(hours=3))

        results = await asyncio.gather(
            run_alert_scan(clean_db, TENANT, now=now),
            run_alert_scan(clean_db, TENANT, now=now),
        )

        assert sum(r.created for r in results) == 1
        assert sum(r.updated for r in results) == 1
        async with clean_db.acquire() as conn:
            (alert,) = await list_alerts(conn, TENANT, alert_type="SENSOR_OFFLINE")
            events = await fetch_alert_events(conn, TENANT, alert["id"])
        assert sorted(e["action"] for e in events) == ["OPEN", "UPDATE"]

    async def test_scan_waits_for_operator_resolve(self, clean_db):
        now = datetime.now(timezone.utc)
        async with clean_db.acquire() as conn:
            await seed_sensor(conn, last_seen=now - timedelta(hours=3))
        await run_alert_scan(clean_db, TENANT, now=now)
        async with clean_db.acquire() as conn:
            (alert,) = await list_alerts(conn, TENANT, alert_type="SENSOR_OFFLINE")

        async with clean_db.acquire() as operator:
            tx = operator.transaction()
            await tx.start()
            await resolve_alert(operator, TENANT, alert["id"], "user-1", now=now + timedelta(seconds=30))
            scan_task = asyncio.create_task(
                run_alert_scan(clean_db, TENANT, now=now + timedelta(minutes=1))
            )
            await asyncio.sleep(0.2)
            assert not scan_task.done()
            await tx.commit()
        result = await scan_task

        assert (result.created, result.updated) == (1, 0)
        async with clean_db.acquire() as conn:
            old_events = await fetch_alert_events(conn, TENANT, alert["id"])
            alerts = await list_alerts(conn, TENANT, alert_type="SENSOR_OFFLINE")
        assert [e["action"] for e in old_events] == ["RESOLVE", "OPEN"]
        assert sorted(a["status"] for a in alerts) == ["OPEN", "RESOLVED"]

    async def test_acknowledged_alert_survives_rescan(self, clean_db):
        now = datetime.now(timezone.utc)
        async with clean_db.acquire() as conn:
            await seed_sensor(conn, last_seen=None)
        await run_alert_scan(clean_db, TENANT, now=now)

        async with clean_db.acquire() as conn:
            (alert,) = await list_alerts(conn, TENANT, alert_type="SENSOR_OFFLINE")
            await acknowledge_alert(conn, TENANT, alert["id"], "user-1", now=now)

        await run_alert_scan(clean_db, TENANT, now=now + timedelta(minutes=5))

        async with clean_db.acquire() as conn:
            (alert,) = await list_alerts(conn, TENANT, alert_type="SENSOR_OFFLINE")
        assert alert["status"] == "ACKNOWLEDGED"
        assert alert["acknowledged_by_user_id"] == "user-1"

    async def test_active_alert_unique_index(self, clean_db):
        now = datetime.now(timezone.utc)
        async with clean_db.acquire() as conn:
            await seed_sensor(conn, last_seen=None)
        await run_alert_scan(clean_db, TENANT, now=now)

        async with clean_db.acquire() as conn:
            with pytest.raises(asyncpg.UniqueViolationError):
                await conn.execute(
                    """
                    INSERT INTO alerts (id, tenant_id, sensor_id, type, severity, status, title,
                                        opened_at, first_detected_at, last_detected_at)
                    VALUES ('dup', $1, 'sensor-1', 'SENSOR_OFFLINE', 'CRITICAL', 'OPEN', 'dup',
                            now(), now(), now())
                    """,
                    TENANT,
                )

    async def test_alert_events_are_append_only(self, clean_db):
        async with clean_db.acquire() as conn:
            await seed_sensor(conn, last_seen=None)
        await run_alert_scan(clean_db, TENANT)

        async with clean_db.acquire() as conn:
            with pytest.raises(asyncpg.PostgresError):
                await conn.execute("UPDATE alert_events SET note = 'edited'")
            with pytest.raises(asyncpg.PostgresError):
                await conn.execute("DELETE FROM alert_events")

    async def test_dead_letter_spike_opens_tenant_alert(self, clean_db):
        now = datetime.now(timezone.utc)
        async with clean_db.acquire() as conn:
            await conn.executemany(
                "INSERT INTO ingest_dead_letters (tenant_id, created_at) VALUES ($1, $2)",
                [(TENANT, now - timedelta(hours=1))] * 10 + [(TENANT, now - timedelta(hours=30))] * 50,
            )

        result = await run_alert_scan(clean_db, TENANT, now=now)

        assert result.created == 1
        async with clean_db.acquire() as conn:
            (alert,) = await list_alerts(conn, TENANT, alert_type="DECODE_ERRORS")
        assert alert["severity"] == "WARNING"
        assert alert["sensor_id"] is None
        assert alert["meta"]["dead_letters"] == 10

    async def test_zone_scoped_scan(self, clean_db):
        now = datetime.now(timezone.utc)
        async with clean_db.acquire() as conn:
            await seed_sensor(conn, "sensor-1", last_seen=None, zone_id="zone-a")
            await seed_sensor(conn, "sensor-2", last_seen=None, zone_id="zone-b")

        result = await run_alert_scan(clean_db, TENANT, zone_id="zone-b", now=now)

        assert result.checked_sensors == 1
        async with clean_db.acquire() as conn:
            alerts = await list_alerts(conn, TENANT)
        assert [a["sensor_id"] for a in alerts] == ["sensor-2"]
