"""Background housekeeping: stalled orders and proxy expiry."""

from datetime import timedelta
from decimal import Decimal

import httpx
import pytest

from proxyshop.domain import Order, OrderDetails, Proxy, utcnow
from proxyshop.services import reconciliation
from proxyshop.services.ledger import LedgerService
from proxyshop.workflows import PurchaseRequest, PurchaseWorkflow


def _backdate(store, order_id: str, minutes_ago: int = 30) -> None:
    # Backdate directly; any store write would bump updated_at.
    order = store.orders._orders[order_id]
    store.orders._orders[order_id] = order.model_copy(update={"updated_at": utcnow() - timedelta(minutes=minutes_ago)})


async def _stalled(store, user_id: str, stage: str, minutes_ago: int = 30) -> Order:
    details = OrderDetails(region="US", quantity=1, session_type="sticky", protocol="http", proxy_type="residential")
    order = await store.orders.create(
        Order(user_id=user_id, details=details, total_amount=Decimal("2.50"), status="processing", stage=stage)
    )
    _backdate(store, order.id, minutes_ago)
    return order


async def _attach_proxy(store, order: Order) -> Proxy:
    (proxy,) = await store.proxies.create_many([
        Proxy(order_id=order.id, user_id=order.user_id, ip="1.1.1.1", port=80, username="u", password="p",
              country="US", expires_at=utcnow() + timedelta(days=30)),
    ])
    return proxy


async def test_sweep_fails_unpaid_orders_and_flags_provisioned_ones(store, make_user):
    user = await make_user()
    early = await _stalled(store, user.id, "pending_order")
    late = await _stalled(store, user.id, "provisioned")
    fresh = await _stalled(store, user.id, "provisioning", minutes_ago=1)
    await _attach_proxy(store, late)

    swept = await reconciliation.sweep_stalled_orders(store, older_than_minutes=15)

    assert swept == 2
    assert (await store.orders.get(early.id)).failure_reason == "abandoned"
    late_order = await store.orders.get(late.id)
    assert late_order.status == "failed"
    assert late_order.payment_status == "failed"
    assert (await store.orders.get(fresh.id)).status == "processing"
    (case,) = await store.reconciliation.list_open()
    assert case.kind == "stalled_order"
    assert case.order_id == late.id
    assert [p.status for p in await store.proxies.list_for_order(late.id)] == ["suspended"]


async def test_sweep_completes_debited_order(store, make_user):
    user = await make_user()
    order = await _stalled(store, user.id, "debited")
    proxy = await _attach_proxy(store, order)

    assert await reconciliation.sweep_stalled_orders(store, older_than_minutes=15) == 1

    done = await store.orders.get(order.id)
    assert done.status == "completed"
    assert done.payment_status == "paid"
    assert done.stage == "completed"
    assert done.failure_reason is None
    assert [d.proxy_id for d in done.delivered] == [proxy.id]
    assert [p.status for p in await store.proxies.list_for_order(order.id)] == ["active"]
    assert await store.reconciliation.list_open() == []


async def test_sweep_trusts_ledger_when_debited_marker_is_missing(store, ledger, make_user):
    user = await make_user("10.00")
    order = await _stalled(store, user.id, "provisioned")
    await _attach_proxy(store, order)
    await ledger.apply_ledger_mutation(
        user.id, Decimal("-2.50"), "purchase", "residential proxy purchase", {"order_id": order.id}
    )

    await reconciliation.sweep_stalled_orders(store, older_than_minutes=15)

    done = await store.orders.get(order.id)
    assert done.status == "completed"
    assert done.payment_status == "paid"
    assert [p.status for p in await store.proxies.list_for_order(order.id)] == ["active"]


async def test_sweep_finishes_purchase_whose_completion_write_failed(store, catalog, make_user, make_provider):
    user = await make_user("20.00")
    provider = make_provider(lambda request: httpx.Response(200, text="10.0.0.1:8000:u:p\r\n10.0.0.2:8000:u:p"))
    workflow = PurchaseWorkflow(store, provider, LedgerService(store), catalog)
    original_cas = store.orders.compare_and_set

    async def fail_on_completion(order_id, expected, changes):
        if changes.get("status") == "completed":
            raise RuntimeError("primary stepped down")
        return await original_cas(order_id, expected, changes)

    store.orders.compare_and_set = fail_on_completion
    with pytest.raises(RuntimeError):
        await workflow.run(user.id, PurchaseRequest(region="US", quantity=2))
    store.orders.compare_and_set = original_cas

    (order,) = store.orders._orders.values()
    _backdate(store, order.id)
    await reconciliation.sweep_stalled_orders(store, older_than_minutes=15)

    done = await store.orders.get(order.id)
    assert (done.status, done.payment_status, done.stage) == ("completed", "paid", "completed")
    assert len(done.delivered) == 2
    assert all(p.status == "active" for p in await store.proxies.list_for_order(order.id))
    assert (await store.users.get(user.id)).balance == Decimal("15.00")


async def test_sweep_opens_case_when_paid_order_cannot_be_completed(store, make_user):
    user = await make_user()
    order = await _stalled(store, user.id, "debited")
    await _attach_proxy(store, order)

    async def broken_cas(order_id, expected, changes):
        raise RuntimeError("orders collection unavailable")

    store.orders.compare_and_set = broken_cas
    assert await reconciliation.sweep_stalled_orders(store, older_than_minutes=15) == 0

    (case,) = await store.reconciliation.list_open()
    assert case.kind == "stalled_order"
    assert case.order_id == order.id
    assert [p.status for p in await store.proxies.list_for_order(order.id)] == ["active"]


async def test_expire_proxies(store, make_user):
    user = await make_user()
    now = utcnow()
    old, current = await store.proxies.create_many([
        Proxy(order_id="o1", user_id=user.id, ip="1.1.1.1", port=80, username="u", password="p",
              country="US", expires_at=now - timedelta(minutes=1)),
        Proxy(order_id="o1", user_id=user.id, ip="1.1.1.2", port=80, username="u", password="p",
              country="US", expires_at=now + timedelta(days=1)),
    ])

    assert await reconciliation.expire_proxies(store) == 1
    statuses = {p.id: p.status for p in await store.proxies.list_for_order("o1")}
    assert statuses == {old.id: "expired", current.id: "active"}
