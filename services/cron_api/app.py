"""
HTTP surface for the external scheduler.

    POST /cron/evaluate-rules          one rule evaluation pass
    POST /cron/process-notifications   one delivery sweep
    POST /cron/cleanup-notifications   retention cleanup, body {"days": 30}
    GET  /health
    GET  /metrics

Every /cron route requires the x-cron-secret header to match CRON_SECRET.
"""
import asyncio
import hmac
import json
import logging
from typing import Optional

import asyncpg
from aiohttp import web
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest
from pydantic import BaseModel, Field, ValidationError

from maintenance.log_cleanup import DEFAULT_RETENTION_DAYS, run_cleanup
from notification_service.service import NotificationService
from rule_evaluator.evaluator import RuleEvaluatorWorker
from shared.config import env_int, require_env
from shared.logging import log_event, log_exception

logger = logging.getLogger(__name__)

CRON_SECRET_HEADER = "x-cron-secret"


class CleanupRequest(BaseModel):
    days: int = Field(default=DEFAULT_RETENTION_DAYS, ge=1, le=3650)


def _authorized(request: web.Request) -> bool:
    supplied = request.headers.get(CRON_SECRET_HEADER, "")
    expected = request.app["cron_secret"]
    return hmac.compare_digest(supplied.encode("utf-8"), expected.encode("utf-8"))


@web.middleware
async def cron_auth_middleware(request: web.Request, handler):
    if request.path.startswith("/cron/") and not _authorized(request):
        log_event(
            logger,
            "cron request rejected",
            level="WARNING",
            path=request.path,
            remote=request.remote,
        )
        return web.json_response({"error": "unauthorized"}, status=401)
    return await handler(request)


async def evaluate_rules_handler(request: web.Request) -> web.Response:
    worker: RuleEvaluatorWorker = request.app["worker"]
    result = await worker.run_evaluation_pass()
    status = 200 if result.success else 500
    return web.json_response(result.to_dict(), status=status)


async def process_notifications_handler(request: web.Request) -> web.Response:
    notifications: NotificationService = request.app["notifications"]
    result = await notifications.process_queue()
    return web.json_response(result.to_dict())


async def cleanup_notifications_handler(request: web.Request) -> web.Response:
    raw = await request.text()
    try:
        body = CleanupRequest(**(json.loads(raw) if raw.strip() else {}))
    except (ValueError, TypeError, ValidationError) as exc:
        return web.json_response({"error": "invalid request", "detail": str(exc)}, status=400)

    pool: asyncpg.Pool = request.app["pool"]
    try:
        async with pool.acquire() as conn:
            counts = await run_cleanup(conn, body.days)
    except Exception as exc:
        log_exception(logger, "notification cleanup failed", exc, {"retention_days": body.days})
        return web.json_response({"error": "cleanup failed"}, status=500)
    return web.json_response({"retention_days": body.days, "deleted": counts})


async def health_handler(_request: web.Request) -> web.Response:
    return web.json_response({"status": "ok", "service": "cron_api"})


async def metrics_handler(_request: web.Request) -> web.Response:
    return web.Response(body=generate_latest(), content_type=CONTENT_TYPE_LATEST.split(";")[0])


def create_app(
    worker: RuleEvaluatorWorker,
    notifications: NotificationService,
    pool: Optional[asyncpg.Pool],
    cron_secret: str,
) -> web.Application:
    app = web.Application(middlewares=[cron_auth_middleware])
    app["worker"] = worker
    app["notifications"] = notifications
    app["pool"] = pool
    app["cron_secret"] = cron_secret
    app.router.add_post("/cron/evaluate-rules", evaluate_rules_handler)
    app.router.add_post("/cron/process-notifications", process_notifications_handler)
    app.router.add_post("/cron/cleanup-notifications", cleanup_notifications_handler)
    app.router.add_get("/health", health_handler)
    app.router.add_get("/metrics", metrics_handler)
    return app


async def main() -> None:
    from channel_dispatch.registry import build_default_registry
    from notification_service.service import DeliveryConfig
    from notification_service.tiers import TierProvider
    from proactive_db.pool import create_pool
    from proactive_db.queries import PgStore
    from proactive_db.run_lock import PgRunLock
    from rule_evaluator.evaluator import EvaluatorConfig
    from rule_evaluator.snapshots import CachingSnapshotProvider, HttpSnapshotProvider
    from shared.logging import configure_logging

    configure_logging("cron_api")
    cron_secret = require_env("CRON_SECRET")
    port = env_int("CRON_API_PORT", 8080)
    config = EvaluatorConfig.from_env()

    pool = await create_pool()
    store = PgStore(pool)
    tiers = TierProvider(store)
    notifications = NotificationService(
        store, tiers, build_default_registry(store), DeliveryConfig.from_env()
    )
    worker = RuleEvaluatorWorker(
        store=store,
        snapshots=CachingSnapshotProvider(HttpSnapshotProvider.from_env(), config.sensor_data_ttl),
        tiers=tiers,
        notifier=notifications,
        run_lock=PgRunLock(pool),
        config=config,
    )

    app = create_app(worker, notifications, pool, cron_secret)
    runner = web.AppRunner(app)
    await runner.setup()
    site = web.TCPSite(runner, "0.0.0.0", port)
    await site.start()
    log_event(logger, "cron api started", service_port=port)
    try:
        await asyncio.Event().wait()
    finally:
        await runner.cleanup()
        await pool.close()


if __name__ == "__main__":
    asyncio.run(main())
