"""Order reads and cancellation."""

from proxyshop.core.exceptions import BadRequestError, NotFoundError
from proxyshop.core.logging import get_logger
from proxyshop.domain import Order, Proxy
from proxyshop.stores.base import Store

log = get_logger(__name__)

CANCELLABLE_STATUSES = ["pending", "processing"]
# Once provisioning starts the upstream call may already have allocated proxies.
CANCELLABLE_STAGES = ["quoted", "pending_order"]


async def get_order(store: Store, user_id: str, order_id: str) -> tuple[Order, list[Proxy]]:
    order = await store.orders.get_for_user(order_id, user_id)
    if not order:
        raise NotFoundError("Order not found")
    proxies = await store.proxies.list_for_order(order.id)
    proxies.sort(key=lambda p: p.created_at, reverse=True)
    return order, proxies


async def cancel_order(store: Store, user_id: str, order_id: str) -> Order:
    order = await store.orders.get_for_user(order_id, user_id)
    if not order:
        raise NotFoundError("Order not found")
    cancelled = await store.orders.compare_and_set(
        order.id,
        {"status": CANCELLABLE_STATUSES, "stage": CANCELLABLE_STAGES},
        {"status": "cancelled", "stage": "cancelled"},
    )
    if cancelled is None:
        current = await store.orders.get(order.id) or order
        raise BadRequestError(
            "Cannot cancel order in current status",
            details={"status": current.status, "stage": current.stage},
        )
    log.info("order_cancelled", order_id=order.id, order_number=order.order_number)
    return cancelled
