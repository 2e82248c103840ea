from fastapi import APIRouter, Depends, Query

from proxyshop.core.money import as_float
from proxyshop.deps import get_current_user, get_store_dep
from proxyshop.domain import Account, Order
from proxyshop.routers.proxies import ProxyFormat, proxy_out
from proxyshop.services import orders as orders_service
from proxyshop.stores.base import Store

router = APIRouter()


def order_out(order: Order) -> dict:
    return {
        "id": order.id,
        "orderNumber": order.order_number,
        "status": order.status,
        "paymentStatus": order.payment_status,
        "stage": order.stage,
        "failureReason": order.failure_reason,
        "totalAmount": as_float(order.total_amount),
        "details": order.details.model_dump(by_alias=True),
        "createdAt": order.created_at.isoformat(),
        "updatedAt": order.updated_at.isoformat(),
    }


@router.get("/{order_id}")
async def get_order(
    order_id: str,
    fmt: ProxyFormat = Query("full", alias="format"),
    user: Account = Depends(get_current_user),
    store: Store = Depends(get_store_dep),
):
    """Owned order with its proxies (newest first)."""
    order, proxies = await orders_service.get_order(store, user.id, order_id)
    return {"order": {**order_out(order), "proxies": [proxy_out(p, fmt) for p in proxies]}}


@router.post("/{order_id}/cancel")
async def cancel_order(
    order_id: str,
    user: Account = Depends(get_current_user),
    store: Store = Depends(get_store_dep),
):
    order = await orders_service.cancel_order(store, user.id, order_id)
    return {"message": "Order cancelled successfully", "order": order_out(order)}
