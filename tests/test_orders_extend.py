"""Order reads/cancellation and paid proxy extension."""

from datetime import timedelta
from decimal import Decimal

import pytest

from proxyshop.core.exceptions import BadRequestError, NotFoundError, ValidationError
from proxyshop.domain import Order, OrderDetails, Proxy, utcnow
from proxyshop.services import extensions, orders
from proxyshop.workflows import PurchaseRequest, PurchaseWorkflow


def _order(user_id: str, **kwargs) -> Order:
    details = OrderDetails(region="US", quantity=1, session_type="sticky", protocol="http", proxy_type="residential")
    return Order(user_id=user_id, details=details, total_amount=Decimal("2.50"), **kwargs)


async def _proxy(store, user_id: str, proxy_type: str = "residential") -> Proxy:
    order = await store.orders.create(_order(user_id, status="completed", stage="completed"))
    (proxy,) = await store.proxies.create_many([
        Proxy(
            order_id=order.id,
            user_id=user_id,
            ip="10.1.1.1",
            port=8080,
            username="u",
            password="p",
            country="US",
            proxy_type=proxy_type,
            expires_at=utcnow() + timedelta(days=3),
        )
    ])
    return proxy


async def test_get_order_returns_owned_order_with_proxies(store, catalog, ledger, make_user, echo_provider):
    user = await make_user("20.00")
    result = await PurchaseWorkflow(store, echo_provider, ledger, catalog).run(
        user.id, PurchaseRequest(region="US", quantity=2)
    )

    order, proxies = await orders.get_order(store, user.id, result.order.id)
    assert order.id == result.order.id
    assert {p.id for p in proxies} == {p.id for p in result.proxies}

    stranger = await make_user()
    with pytest.raises(NotFoundError):
        await orders.get_order(store, stranger.id, result.order.id)


async def test_cancel_pending_order(store, make_user):
    user = await make_user()
    order = await store.orders.create(_order(user.id, status="processing", stage="pending_order"))

    cancelled = await orders.cancel_order(store, user.id, order.id)
    assert cancelled.status == "cancelled"
    assert cancelled.stage == "cancelled"


@pytest.mark.parametrize(
    "status, stage",
    [("processing", "provisioning"), ("completed", "completed"), ("failed", "debit_failed")],
)
async def test_cannot_cancel_once_provisioning_started(store, make_user, status, stage):
    user = await make_user()
    order = await store.orders.create(_order(user.id, status=status, stage=stage))
    with pytest.raises(BadRequestError):
        await orders.cancel_order(store, user.id, order.id)
    assert (await store.orders.get(order.id)).status == status


async def test_extend_charges_by_type_and_pushes_expiry(store, catalog, ledger, make_user):
    user = await make_user("50.00")
    proxy = await _proxy(store, user.id, proxy_type="static_isp")

    extended, cost, warning = await extensions.extend_proxy(store, ledger, catalog, user.id, proxy.id, 10)

    assert cost == Decimal("15.00")
    assert extended.expires_at == proxy.expires_at + timedelta(days=10)
    assert warning.startswith("This is a local extension.")
    assert await ledger.get_balance(user.id) == Decimal("35.00")
    (entry,) = [e for e in await store.ledger.list_for_user(user.id) if e.kind == "purchase"]
    assert entry.metadata["proxy_id"] == proxy.id


@pytest.mark.parametrize("days", [0, 366, -5])
async def test_extend_rejects_out_of_range_days(store, catalog, ledger, make_user, days):
    user = await make_user("50.00")
    proxy = await _proxy(store, user.id)
    with pytest.raises(ValidationError):
        await extensions.extend_proxy(store, ledger, catalog, user.id, proxy.id, days)
    assert await ledger.get_balance(user.id) == Decimal("50.00")


async def test_extend_unknown_or_foreign_proxy(store, catalog, ledger, make_user):
    owner = await make_user("50.00")
    other = await make_user("50.00")
    proxy = await _proxy(store, owner.id)
    with pytest.raises(NotFoundError):
        await extensions.extend_proxy(store, ledger, catalog, other.id, proxy.id, 1)


async def test_extend_refunds_when_expiry_cannot_be_saved(store, catalog, ledger, make_user):
    user = await make_user("50.00")
    proxy = await _proxy(store, user.id)

    async def broken_save(_proxy):
        raise RuntimeError("write failed")

    store.proxies.save = broken_save
    with pytest.raises(RuntimeError):
        await extensions.extend_proxy(store, ledger, catalog, user.id, proxy.id, 5)

    assert await ledger.get_balance(user.id) == Decimal("50.00")
    kinds = sorted(e.kind for e in await store.ledger.list_for_user(user.id))
    assert kinds == ["purchase", "refund", "topup"]
