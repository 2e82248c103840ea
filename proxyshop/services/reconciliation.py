"""Housekeeping for orders and proxies left behind by crashed or interrupted runs."""

from datetime import timedelta

from proxyshop.core.logging import get_logger
from proxyshop.domain import Order, ReconciliationCase, utcnow
from proxyshop.stores.base import Store

log = get_logger(__name__)

ABANDONED_REASON = "abandoned"


async def _was_charged(store: Store, order: Order) -> bool:
    if order.stage == "debited":
        return True
    # The "debited" marker is best effort; the ledger is authoritative.
    entries = await store.ledger.list_for_user(order.user_id, status="completed")
    return any(e.kind == "purchase" and e.metadata.get("order_id") == order.id for e in entries)


async def _open_stalled_case(store: Store, order: Order, reason: str) -> ReconciliationCase:
    proxies = await store.proxies.list_for_order(order.id)
    case = await store.reconciliation.open_case(
        ReconciliationCase(
            kind="stalled_order",
            order_id=order.id,
            user_id=order.user_id,
            amount=order.total_amount,
            proxy_ids=[p.id for p in proxies if p.id],
            reason=reason,
        )
    )
    log.error("reconciliation_case_opened", case_id=case.id, kind=case.kind, order_id=order.id)
    return case


async def _finish_paid_order(store: Store, order: Order) -> bool:
    """Complete an order whose purchase debit went through before the run stopped."""
    try:
        proxies = await store.proxies.list_for_order(order.id)
        completed = await store.orders.compare_and_set(
            order.id,
            {"status": "processing", "stage": order.stage},
            {
                "status": "completed",
                "payment_status": "paid",
                "stage": "completed",
                "delivered": [p.snapshot() for p in proxies],
            },
        )
    except Exception:
        log.exception("stalled_order_completion_failed", order_id=order.id)
        await _open_stalled_case(store, order, f"Paid order could not be completed at stage {order.stage}")
        return False
    if completed is None:
        return False
    log.warning("stalled_order_completed", order_id=order.id, stage=order.stage, proxy_count=len(proxies))
    return True


async def _fail_unpaid_order(store: Store, order: Order) -> bool:
    failed = await store.orders.compare_and_set(
        order.id,
        {"status": "processing", "stage": order.stage},
        {"status": "failed", "payment_status": "failed", "failure_reason": ABANDONED_REASON},
    )
    if failed is None:
        return False
    if order.stage == "provisioned":
        # Proxies were delivered but never paid for.
        await store.proxies.set_status_for_order(order.id, "suspended")
        await _open_stalled_case(store, order, f"Order abandoned at stage {order.stage}")
    log.warning("stalled_order_failed", order_id=order.id, stage=order.stage)
    return True


async def sweep_stalled_orders(store: Store, older_than_minutes: int) -> int:
    """Settle ``processing`` orders untouched for ``older_than_minutes``; return how many.

    Orders that were already charged are completed with their proxies left
    active. Everything else is failed as abandoned.
    """
    cutoff = utcnow() - timedelta(minutes=older_than_minutes)
    swept = 0
    for order in await store.orders.find_stalled(cutoff):
        if order.stage in ("provisioned", "debited") and await _was_charged(store, order):
            settled = await _finish_paid_order(store, order)
        else:
            settled = await _fail_unpaid_order(store, order)
        if settled:
            swept += 1
    return swept


async def expire_proxies(store: Store) -> int:
    expired = await store.proxies.expire_due(utcnow())
    if expired:
        log.info("proxies_expired", count=expired)
    return expired
