"""ARQ job definitions."""

import uuid
from typing import Any
from urllib.parse import urlparse

from arq.connections import RedisSettings

from proxyshop.core.config import get_settings
from proxyshop.core.logging import configure_logging, get_logger
from proxyshop.stores.base import get_store

log = get_logger(__name__)


async def _run_with_dlq(
    job_name: str,
    job_id: str | None,
    job_try: int,
    context: dict[str, Any],
    coro,
) -> Any:
    """Run coroutine; on exception persist to FailedJob then re-raise."""
    try:
        return await coro
    except Exception as e:
        fid = job_id or str(uuid.uuid4())
        log.exception("job_failed", job=job_name, job_id=fid, reason=str(e))
        if get_settings().store_backend == "mongo":
            from proxyshop.models.failed_job import FailedJob
            await FailedJob(
                job_name=job_name,
                job_id=fid,
                job_try=job_try,
                error_type=type(e).__name__,
                reason=str(e)[:2000],
                context=context,
            ).insert()
        raise


def _job_meta(ctx: dict[str, Any]) -> tuple[str | None, int]:
    job_id = ctx.get("job_id") if isinstance(ctx.get("job_id"), str) else None
    job_try = ctx.get("job_try") if isinstance(ctx.get("job_try"), int) else 1
    return job_id, job_try


async def expire_proxies(ctx: dict[str, Any]) -> int:
    """Cron job: mark active proxies past their expiry as expired."""
    from proxyshop.worker.cron import run_expire_proxies
    job_id, job_try = _job_meta(ctx)
    return await _run_with_dlq("expire_proxies", job_id, job_try, {}, run_expire_proxies(ctx))


async def sweep_stalled_orders(ctx: dict[str, Any]) -> int:
    """Cron job: fail orders stuck in processing and open cases where money or proxies are involved."""
    from proxyshop.worker.cron import run_sweep_stalled_orders
    job_id, job_try = _job_meta(ctx)
    minutes = get_settings().stalled_order_minutes
    return await _run_with_dlq(
        "sweep_stalled_orders",
        job_id,
        job_try,
        {"older_than_minutes": minutes},
        run_sweep_stalled_orders(ctx, minutes),
    )


async def startup(ctx: dict) -> None:
    settings = get_settings()
    configure_logging(debug=settings.debug)
    if settings.store_backend == "mongo":
        from proxyshop.db.init import init_db
        await init_db()
    ctx["store"] = get_store()


async def shutdown(ctx: dict) -> None:
    pass


def get_redis_settings() -> RedisSettings:
    u = urlparse(get_settings().redis_url)
    return RedisSettings(
        host=u.hostname or "localhost",
        port=u.port or 6379,
        password=u.password,
        database=int(u.path.lstrip("/")) if u.path.lstrip("/") else 0,
    )
