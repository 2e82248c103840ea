"""Cron bodies: proxy expiry and stalled-order sweep."""

from typing import Any

from proxyshop.core.logging import get_logger
from proxyshop.services import reconciliation
from proxyshop.stores.base import Store, get_store

log = get_logger(__name__)

SWEEP_LOCK_KEY = "proxyshop:lock:sweep_stalled_orders"
SWEEP_LOCK_SECONDS = 55


def _store(ctx: dict[str, Any]) -> Store:
    return ctx.get("store") or get_store()


async def run_expire_proxies(ctx: dict[str, Any]) -> int:
    return await reconciliation.expire_proxies(_store(ctx))


async def run_sweep_stalled_orders(ctx: dict[str, Any], older_than_minutes: int) -> int:
    """Sweep once per minute across all workers; skipped if another worker holds the lock."""
    redis = ctx.get("redis")
    if redis is not None:
        acquired = await redis.set(SWEEP_LOCK_KEY, "1", ex=SWEEP_LOCK_SECONDS, nx=True)
        if not acquired:
            log.info("sweep_skipped_locked")
            return 0
    swept = await reconciliation.sweep_stalled_orders(_store(ctx), older_than_minutes)
    if swept:
        log.info("sweep_stalled_orders", count=swept)
    return swept
