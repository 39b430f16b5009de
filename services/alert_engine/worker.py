import asyncio
import logging
import time
from datetime import datetime, timezone

import asyncpg
from aiohttp import web
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest

from services.alert_engine.queries import count_active_alerts
from services.alert_engine.scanner import run_alert_scan
from services.shared.config import env_float, env_int
from services.shared.logging import configure_logging, log_event, log_exception
from services.shared.metrics import (
    active_alerts,
    alert_scan_failures_total,
    db_pool_free,
    db_pool_size,
)
from services.shared.pool import create_pool

logger = logging.getLogger("alert_engine")

SERVICE_NAME = "alert_engine"

FETCH_SCAN_TENANTS_SQL = """
SELECT DISTINCT tenant_id
FROM sensors
WHERE bay_id IS NOT NULL
ORDER BY tenant_id
"""

COUNTERS = {
    "ticks": 0,
    "scans": 0,
    "scan_errors": 0,
    "last_tick_at": None,
}

_pool: asyncpg.Pool | None = None


async def health_handler(request):
    return web.json_response(
        {
            "status": "healthy",
            "service": SERVICE_NAME,
            "counters": {
                "ticks": COUNTERS["ticks"],
                "scans": COUNTERS["scans"],
                "scan_errors": COUNTERS["scan_errors"],
            },
            "last_tick_at": COUNTERS["last_tick_at"],
        }
    )


async def ready_handler(request):
    if _pool is None:
        return web.json_response({"status": "starting"}, status=503)
    try:
        async with _pool.acquire() as conn:
            await conn.fetchval("SELECT 1")
    except Exception as exc:
        return web.json_response({"status": "unavailable", "error": str(exc)}, status=503)
    return web.json_response({"status": "ready"})


async def metrics_handler(_request):
    return web.Response(body=generate_latest(), content_type=CONTENT_TYPE_LATEST.split(";")[0])


def build_app() -> web.Application:
    app = web.Application()
    app.router.add_get("/health", health_handler)
    app.router.add_get("/ready", ready_handler)
    app.router.add_get("/metrics", metrics_handler)
    return app


async def start_health_server(port: int) -> web.AppRunner:
    runner = web.AppRunner(build_app())
    await runner.setup()
    site = web.TCPSite(runner, "0.0.0.0", port)
    await site.start()
    log_event(logger, "health server started", service_port=port)
    return runner


async def fetch_scan_tenants(pool: asyncpg.Pool) -> list[str]:
    async with pool.acquire() as conn:
        rows = await conn.fetch(FETCH_SCAN_TENANTS_SQL)
    return [r["tenant_id"] for r in rows]


async def run_tick(pool: asyncpg.Pool, scan_timeout: float | None) -> dict[str, dict]:
    """
    Scan every tenant that has bay-bound sensors.

    A tenant whose scan raises is logged and skipped; the others still run.
    """
    log_event(logger, "tick_start", tick=SERVICE_NAME)
    results: dict[str, dict] = {}
    for tenant_id in await fetch_scan_tenants(pool):
        try:
            result = await run_alert_scan(pool, tenant_id, timeout=scan_timeout)
            async with pool.acquire() as conn:
                active = await count_active_alerts(conn, tenant_id)
        except Exception as exc:
            COUNTERS["scan_errors"] += 1
            alert_scan_failures_total.labels(tenant_id=tenant_id, stage="scan").inc()
            log_exception(logger, "tenant scan failed", exc, {"tenant_id": tenant_id})
            continue
        COUNTERS["scans"] += 1
        active_alerts.labels(tenant_id=tenant_id).set(active)
        results[tenant_id] = result.as_dict()

    db_pool_size.labels(service=SERVICE_NAME).set(pool.get_size())
    db_pool_free.labels(service=SERVICE_NAME).set(pool.get_idle_size())
    COUNTERS["ticks"] += 1
    COUNTERS["last_tick_at"] = datetime.now(timezone.utc).isoformat()
    log_event(logger, "tick_done", tick=SERVICE_NAME, tenants=len(results))
    return results


async def main():
    global _pool
    configure_logging(SERVICE_NAME)
    interval = env_float("SCAN_INTERVAL_SECONDS", 300.0)
    scan_timeout = env_float("SCAN_TIMEOUT_SECONDS", 120.0) or None

    _pool = await create_pool()
    runner = await start_health_server(env_int("HEALTH_PORT", 8080))
    try:
        while True:
            started = time.monotonic()
            try:
                await run_tick(_pool, scan_timeout)
            except Exception as exc:
                log_exception(logger, "scan tick failed", exc)
            elapsed = time.monotonic() - started
            await asyncio.sleep(max(1.0, interval - elapsed))
    finally:
        await runner.cleanup()
        await _pool.close()


def run():
    asyncio.run(main())


if __name__ == "__main__":
    run()
