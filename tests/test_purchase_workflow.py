"""Purchase workflow: charge-after-delivery, failure paths, reconciliation."""

from decimal import Decimal

import httpx
import pytest

from proxyshop.core.exceptions import (
    ConflictError,
    InsufficientBalanceError,
    LedgerConflictError,
    UpstreamEmptyResponse,
    UpstreamError,
    ValidationError,
)
from proxyshop.services.ledger import LedgerService
from proxyshop.workflows import PurchaseRequest, PurchaseWorkflow


def _workflow(store, client, catalog, ledger=None):
    return PurchaseWorkflow(store, client, ledger or LedgerService(store), catalog)


async def _purchases(store, user_id):
    return [e for e in await store.ledger.list_for_user(user_id) if e.kind == "purchase"]


async def test_successful_purchase_charges_exact_total(store, catalog, make_user, echo_provider):
    user = await make_user("100.00")
    workflow = _workflow(store, echo_provider, catalog)

    result = await workflow.run(user.id, PurchaseRequest(region="us", quantity=3, proxy_type="datacenter"))

    assert result.order.status == "completed"
    assert result.order.payment_status == "paid"
    assert result.order.stage == "completed"
    assert result.order.total_amount == Decimal("4.50")
    assert len(result.proxies) == 3
    assert len(result.order.delivered) == 3
    assert all(p.status == "active" and p.order_id == result.order.id for p in result.proxies)
    assert (await store.users.get(user.id)).balance == Decimal("95.50")

    purchases = await _purchases(store, user.id)
    assert len(purchases) == 1
    assert purchases[0].amount == Decimal("-4.50")
    assert purchases[0].status == "completed"
    assert purchases[0].metadata["order_id"] == result.order.id


async def test_insufficient_balance_makes_no_writes(store, catalog, make_user, echo_provider, provider_calls):
    user = await make_user("10.00")
    workflow = _workflow(store, echo_provider, catalog)

    with pytest.raises(InsufficientBalanceError) as exc:
        await workflow.run(user.id, PurchaseRequest(region="US", quantity=10))

    assert exc.value.required == Decimal("25.00")
    assert exc.value.shortfall == Decimal("15.00")
    assert provider_calls == []
    assert store.orders._orders == {}
    assert (await store.users.get(user.id)).balance == Decimal("10.00")


async def test_invalid_request_is_rejected_before_any_side_effect(store, catalog, make_user, echo_provider, provider_calls):
    user = await make_user("100.00")
    workflow = _workflow(store, echo_provider, catalog)

    for request in (
        PurchaseRequest(region="ZZ", quantity=1),
        PurchaseRequest(region="US", quantity=101),
        PurchaseRequest(region="US", quantity=1, protocol="gopher"),
        PurchaseRequest(region="US", quantity=1, session_type="forever"),
    ):
        with pytest.raises(ValidationError):
            await workflow.run(user.id, request)
    assert provider_calls == []
    assert await _purchases(store, user.id) == []


@pytest.mark.parametrize(
    "response, error",
    [
        (httpx.Response(503, text="maintenance"), UpstreamError),
        (httpx.Response(200, text="bad-line\r\n:0"), UpstreamEmptyResponse),
    ],
)
async def test_provisioning_failure_fails_order_without_charge(
    store, catalog, make_user, make_provider, response, error
):
    user = await make_user("50.00")
    workflow = _workflow(store, make_provider(lambda request: response), catalog)

    with pytest.raises(error):
        await workflow.run(user.id, PurchaseRequest(region="US", quantity=2))

    (order,) = [o for o in store.orders._orders.values()]
    assert order.status == "failed"
    assert order.stage == "provisioning_failed"
    assert order.failure_reason
    assert (await store.users.get(user.id)).balance == Decimal("50.00")
    assert await _purchases(store, user.id) == []
    assert await store.proxies.list_for_order(order.id) == []


class RacingLedger(LedgerService):
    """Drains the balance right before the purchase debit, as a concurrent request would."""

    async def apply_ledger_mutation(self, user_id, amount, kind, description, metadata=None):
        if kind == "purchase" and not getattr(self, "_drained", False):
            self._drained = True
            balance = await self.get_balance(user_id)
            await super().apply_ledger_mutation(user_id, -balance, "withdrawal", "concurrent spend")
        return await super().apply_ledger_mutation(user_id, amount, kind, description, metadata)


async def test_debit_race_opens_reconciliation_case(store, catalog, make_user, echo_provider):
    user = await make_user("10.00")
    workflow = _workflow(store, echo_provider, catalog, ledger=RacingLedger(store))

    with pytest.raises(LedgerConflictError) as exc:
        await workflow.run(user.id, PurchaseRequest(region="US", quantity=2))

    order = await store.orders.get(exc.value.order_id)
    assert order.status == "failed"
    assert order.payment_status == "failed"
    assert order.stage == "debit_failed"

    proxies = await store.proxies.list_for_order(order.id)
    assert len(proxies) == 2
    assert all(p.status == "suspended" for p in proxies)

    (case,) = await store.reconciliation.list_open()
    assert case.id == exc.value.case_id
    assert case.kind == "ledger_conflict"
    assert case.amount == Decimal("5.00")
    assert sorted(case.proxy_ids) == sorted(p.id for p in proxies)

    assert (await store.users.get(user.id)).balance == Decimal("0.00")
    assert await _purchases(store, user.id) == []


async def test_cancelled_order_is_not_provisioned(store, catalog, make_user, make_provider, provider_calls):
    user = await make_user("10.00")
    holder = {}
    workflow = _workflow(store, make_provider(lambda request: httpx.Response(200, text="1.1.1.1:80")), catalog)
    original_create = store.orders.create

    async def create_then_cancel(order):
        created = await original_create(order)
        holder["order"] = created
        await store.orders.compare_and_set(created.id, {"stage": "pending_order"}, {"status": "cancelled", "stage": "cancelled"})
        return created

    store.orders.create = create_then_cancel
    with pytest.raises(ConflictError):
        await workflow.run(user.id, PurchaseRequest(region="US", quantity=1))

    order = await store.orders.get(holder["order"].id)
    assert order.status == "cancelled"
    assert provider_calls == []
    assert (await store.users.get(user.id)).balance == Decimal("10.00")


async def test_partial_persist_suspends_orphans_without_charge(store, catalog, make_user, echo_provider):
    user = await make_user("20.00")
    workflow = _workflow(store, echo_provider, catalog)
    original_create_many = store.proxies.create_many

    async def create_first_then_fail(proxies):
        await original_create_many(proxies[:1])
        raise RuntimeError("connection reset while inserting proxies")

    store.proxies.create_many = create_first_then_fail
    with pytest.raises(RuntimeError):
        await workflow.run(user.id, PurchaseRequest(region="US", quantity=3))

    (order,) = store.orders._orders.values()
    assert order.status == "failed"
    assert order.stage == "provisioning_failed"
    assert "connection reset" in order.failure_reason

    (orphan,) = await store.proxies.list_for_order(order.id)
    assert orphan.status == "suspended"
    (case,) = await store.reconciliation.list_open()
    assert case.kind == "persist_failed"
    assert case.proxy_ids == [orphan.id]
    assert (await store.users.get(user.id)).balance == Decimal("20.00")
    assert await _purchases(store, user.id) == []


async def test_internal_provider_error_still_fails_order(store, catalog, make_user, make_provider):
    user = await make_user("20.00")

    def explode(request):
        raise RuntimeError("unexpected client bug")

    workflow = _workflow(store, make_provider(explode), catalog)
    with pytest.raises(RuntimeError):
        await workflow.run(user.id, PurchaseRequest(region="US", quantity=1))

    (order,) = store.orders._orders.values()
    assert order.status == "failed"
    assert order.stage == "provisioning_failed"
    assert order.failure_reason == "unexpected client bug"
    assert (await store.users.get(user.id)).balance == Decimal("20.00")


async def test_cleanup_error_does_not_leave_order_processing(store, catalog, make_user, make_provider):
    user = await make_user("20.00")
    workflow = _workflow(store, make_provider(lambda request: httpx.Response(503, text="down")), catalog)

    async def broken_set_status(order_id, status):
        raise RuntimeError("proxies collection unavailable")

    store.proxies.set_status_for_order = broken_set_status
    with pytest.raises(UpstreamError):
        await workflow.run(user.id, PurchaseRequest(region="US", quantity=1))

    (order,) = store.orders._orders.values()
    assert order.status == "failed"
    assert order.stage == "provisioning_failed"
    assert order.failure_reason


async def test_debit_race_without_case_store_still_fails_order(store, catalog, make_user, echo_provider):
    user = await make_user("10.00")
    workflow = _workflow(store, echo_provider, catalog, ledger=RacingLedger(store))

    async def broken_open_case(case):
        raise RuntimeError("reconciliation collection unavailable")

    store.reconciliation.open_case = broken_open_case
    with pytest.raises(LedgerConflictError) as exc:
        await workflow.run(user.id, PurchaseRequest(region="US", quantity=2))

    assert exc.value.case_id is None
    order = await store.orders.get(exc.value.order_id)
    assert order.status == "failed"
    assert order.stage == "debit_failed"
    assert all(p.status == "suspended" for p in await store.proxies.list_for_order(order.id))


async def test_completion_write_failure_keeps_charge_and_opens_case(store, catalog, make_user, echo_provider):
    user = await make_user("20.00")
    workflow = _workflow(store, echo_provider, catalog)
    original_cas = store.orders.compare_and_set

    async def fail_on_completion(order_id, expected, changes):
        if changes.get("status") == "completed":
            raise RuntimeError("primary stepped down")
        return await original_cas(order_id, expected, changes)

    store.orders.compare_and_set = fail_on_completion
    with pytest.raises(RuntimeError):
        await workflow.run(user.id, PurchaseRequest(region="US", quantity=2))

    (order,) = store.orders._orders.values()
    assert order.status == "processing"
    assert order.stage == "debited"
    assert (await store.users.get(user.id)).balance == Decimal("15.00")
    assert len(await _purchases(store, user.id)) == 1
    assert all(p.status == "active" for p in await store.proxies.list_for_order(order.id))
    (case,) = await store.reconciliation.list_open()
    assert case.kind == "completion_failed"
    assert case.order_id == order.id
