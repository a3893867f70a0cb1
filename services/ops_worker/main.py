import asyncio
import logging
import signal

from aiohttp import web
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest

from ops_worker.scheduler import Scheduler
from ops_worker.workers.alert_lifecycle_worker import (
    archive_recent,
    clear_back_to_normal,
    expire_stale_active,
    purge_deleted,
)
from ops_worker.workers.liveness_worker import check_device_liveness, check_sensor_liveness
from shared.audit import init_audit_logger
from shared.config import env_int
from shared.db import close_pool, get_pool
from shared.logging import configure_logging, log_event

logger = logging.getLogger(__name__)

HEALTH_PORT = env_int("HEALTH_PORT", 8080)

# name -> (tick, interval seconds)
PERIODIC_TASKS = {
    "clear_back_to_normal": (clear_back_to_normal, 30),
    "archive_recent": (archive_recent, 60),
    "purge_deleted": (purge_deleted, 60),
    "expire_stale_active": (expire_stale_active, 60),
    "check_device_liveness": (check_device_liveness, 30),
    "check_sensor_liveness": (check_sensor_liveness, 60),
}


def build_scheduler(pool) -> Scheduler:
    scheduler = Scheduler(pool, service="ops_worker")
    for name, (fn, interval) in PERIODIC_TASKS.items():
        scheduler.add(name, fn, interval=interval)
    return scheduler


async def start_health_server(scheduler: Scheduler) -> web.AppRunner:
    async def health_handler(_request):
        return web.json_response(
            {"status": "ok", "service": "ops_worker", "tasks": sorted(scheduler.tasks)}
        )

    async def ready_handler(_request):
        if not scheduler.stopping:
            return web.json_response({"status": "ready"})
        return web.json_response({"status": "stopping"}, status=503)

    async def metrics_handler(_request):
        return web.Response(body=generate_latest(), content_type=CONTENT_TYPE_LATEST.split(";")[0])

    app = web.Application()
    app.router.add_get("/health", health_handler)
    app.router.add_get("/ready", ready_handler)
    app.router.add_get("/metrics", metrics_handler)
    runner = web.AppRunner(app)
    await runner.setup()
    site = web.TCPSite(runner, "0.0.0.0", HEALTH_PORT)
    await site.start()
    return runner


async def main() -> None:
    configure_logging("ops_worker")
    pool = await get_pool()
    audit = init_audit_logger(pool, "ops_worker")
    await audit.start()

    scheduler = build_scheduler(pool)
    runner = await start_health_server(scheduler)

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, scheduler.stop)

    log_event(logger, "ops_worker started", tasks=list(scheduler.tasks))
    try:
        await scheduler.run()
    finally:
        log_event(logger, "ops_worker stopping")
        await runner.cleanup()
        await audit.stop()
        await close_pool()


if __name__ == "__main__":
    asyncio.run(main())
