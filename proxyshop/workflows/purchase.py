"""Purchase flow: quote -> balance check -> order -> provision -> persist -> debit -> complete.

The graph nodes are the workflow states. Pre-order failures end the run with no
writes; once the order exists every failure is routed to a node that leaves it
``failed``. Money only moves in ``debit``, strictly after the proxies are in hand.
"""

from datetime import timedelta
from typing import Any, Callable, TypedDict

from langgraph.graph import END, START, StateGraph
from pydantic import BaseModel

from proxyshop.core.catalog import ProxyCatalog
from proxyshop.core.exceptions import (
    AppError,
    ConflictError,
    InsufficientBalanceError,
    LedgerConflictError,
    ValidationError,
)
from proxyshop.core.logging import get_logger
from proxyshop.domain import LedgerEntry, Order, OrderDetails, Proxy, ReconciliationCase, utcnow
from proxyshop.services.ledger import LedgerService
from proxyshop.services.pricing import PricingEngine, Quote
from proxyshop.services.provisioning import ProvisioningClient, RawProxy
from proxyshop.stores.base import Store

log = get_logger(__name__)

CURRENCY = "USD"


class PurchaseRequest(BaseModel):
    region: str
    quantity: int
    session_type: str = "sticky"
    protocol: str = "http"
    proxy_type: str = "residential"


class PurchaseResult(BaseModel):
    order: Order
    proxies: list[Proxy]


class PurchaseState(TypedDict):
    user_id: str
    request: PurchaseRequest
    quote: Quote | None
    order: Order | None
    raw_proxies: list[RawProxy]
    proxies: list[Proxy]
    entry: LedgerEntry | None
    error: Exception | None


def _reason(error: Exception) -> str:
    message = error.message if isinstance(error, AppError) else (str(error) or type(error).__name__)
    return message[:500]


def _on_error(next_node: str, failure_node: str) -> Callable[[PurchaseState], str]:
    def route(state: PurchaseState) -> str:
        return failure_node if state["error"] is not None else next_node
    return route


class PurchaseWorkflow:
    def __init__(
        self,
        store: Store,
        client: ProvisioningClient,
        ledger: LedgerService,
        catalog: ProxyCatalog,
    ):
        self.store = store
        self.client = client
        self.ledger = ledger
        self.catalog = catalog
        self.pricing = PricingEngine(catalog)
        self._graph = self._build_graph()

    def _build_graph(self):
        builder = StateGraph(PurchaseState)
        builder.add_node("quote", self._quote)
        builder.add_node("check_balance", self._check_balance)
        builder.add_node("create_order", self._create_order)
        builder.add_node("provision", self._provision)
        builder.add_node("persist_proxies", self._persist_proxies)
        builder.add_node("debit", self._debit)
        builder.add_node("complete", self._complete)
        builder.add_node("provisioning_failed", self._provisioning_failed)
        builder.add_node("debit_failed", self._debit_failed)

        builder.add_edge(START, "quote")
        builder.add_conditional_edges("quote", _on_error("check_balance", END))
        builder.add_conditional_edges("check_balance", _on_error("create_order", END))
        builder.add_conditional_edges("create_order", _on_error("provision", END))
        builder.add_conditional_edges("provision", _on_error("persist_proxies", "provisioning_failed"))
        builder.add_conditional_edges("persist_proxies", _on_error("debit", "provisioning_failed"))
        builder.add_conditional_edges("debit", _on_error("complete", "debit_failed"))
        builder.add_edge("complete", END)
        builder.add_edge("provisioning_failed", END)
        builder.add_edge("debit_failed", END)
        return builder.compile()

    async def run(self, user_id: str, request: PurchaseRequest) -> PurchaseResult:
        """Run one purchase. Not idempotent: each call creates a new order."""
        initial: PurchaseState = {
            "user_id": user_id,
            "request": request,
            "quote": None,
            "order": None,
            "raw_proxies": [],
            "proxies": [],
            "entry": None,
            "error": None,
        }
        result = await self._graph.ainvoke(initial)
        if result["error"] is not None:
            raise result["error"]
        return PurchaseResult(order=result["order"], proxies=result["proxies"])

    # States

    async def _quote(self, state: PurchaseState) -> dict[str, Any]:
        req = state["request"]
        try:
            region = self.client.validate_region(req.region)
            proxy_type = self.client.validate_proxy_type(req.proxy_type)
            protocol = self.client.validate_protocol(req.protocol)
            if not 1 <= req.quantity <= self.catalog.max_purchase_quantity:
                raise ValidationError(
                    f"Quantity must be between 1 and {self.catalog.max_purchase_quantity}",
                    details={"quantity": req.quantity},
                )
            quote = self.pricing.calculate(req.quantity, region, req.session_type, proxy_type)
        except ValidationError as e:
            return {"error": e}
        normalized = req.model_copy(
            update={"region": region, "proxy_type": proxy_type, "protocol": protocol, "session_type": quote.session_type}
        )
        return {"quote": quote, "request": normalized, "error": None}

    async def _check_balance(self, state: PurchaseState) -> dict[str, Any]:
        quote = state["quote"]
        try:
            balance = await self.ledger.get_balance(state["user_id"])
        except AppError as e:
            return {"error": e}
        if balance < quote.total_price:
            return {"error": InsufficientBalanceError(required=quote.total_price, current=balance)}
        return {"error": None}

    async def _create_order(self, state: PurchaseState) -> dict[str, Any]:
        req, quote = state["request"], state["quote"]
        order = Order(
            user_id=state["user_id"],
            details=OrderDetails(
                region=req.region,
                quantity=req.quantity,
                session_type=req.session_type,
                protocol=req.protocol,
                proxy_type=req.proxy_type,
                pricing=quote.as_dict(),
            ),
            total_amount=quote.total_price,
            status="processing",
            stage="pending_order",
        )
        try:
            order = await self.store.orders.create(order)
        except Exception as e:
            log.exception("purchase_order_create_failed", user_id=state["user_id"])
            return {"error": e}
        log.info("purchase_order_created", order_id=order.id, order_number=order.order_number, total=str(order.total_amount))
        return {"order": order, "error": None}

    async def _provision(self, state: PurchaseState) -> dict[str, Any]:
        req, order = state["request"], state["order"]
        try:
            moved = await self.store.orders.compare_and_set(
                order.id,
                {"status": "processing", "stage": "pending_order"},
                {"stage": "provisioning"},
            )
            if moved is None:
                return {"error": ConflictError("Order was cancelled before provisioning", details={"order_id": order.id})}
            raw = await self.client.generate(
                region=req.region,
                count=req.quantity,
                session_type=req.session_type,
                protocol=req.protocol,
                proxy_type=req.proxy_type,
            )
        except Exception as e:
            return {"error": e}
        return {"order": moved, "raw_proxies": raw, "error": None}

    async def _persist_proxies(self, state: PurchaseState) -> dict[str, Any]:
        order = state["order"]
        expires_at = utcnow() + timedelta(days=self.catalog.default_ttl_days)
        proxies = [
            Proxy(order_id=order.id, user_id=order.user_id, expires_at=expires_at, **raw.model_dump())
            for raw in state["raw_proxies"]
        ]
        try:
            created = await self.store.proxies.create_many(proxies)
            moved = await self.store.orders.compare_and_set(
                order.id,
                {"status": "processing", "stage": "provisioning"},
                {"stage": "provisioned"},
            )
            if moved is None:
                raise ConflictError("Order changed while provisioning", details={"order_id": order.id})
        except Exception as e:
            return {"error": e}
        return {"order": moved, "proxies": created, "error": None}

    async def _debit(self, state: PurchaseState) -> dict[str, Any]:
        order, proxies = state["order"], state["proxies"]
        try:
            entry = await self.ledger.apply_ledger_mutation(
                order.user_id,
                -order.total_amount,
                "purchase",
                f"{order.details.proxy_type} proxy purchase - Order {order.order_number}",
                {
                    "currency": CURRENCY,
                    "order_id": order.id,
                    "proxy_type": order.details.proxy_type,
                    "proxy_count": len(proxies),
                },
            )
        except Exception as e:
            return {"error": e}
        # Marker only; complete() writes the final state.
        try:
            moved = await self.store.orders.compare_and_set(
                order.id,
                {"status": "processing", "stage": "provisioned"},
                {"stage": "debited"},
            )
        except Exception:
            log.exception("purchase_stage_write_failed", order_id=order.id, stage="debited")
            moved = None
        return {"entry": entry, "order": moved or order, "error": None}

    async def _complete(self, state: PurchaseState) -> dict[str, Any]:
        order, proxies = state["order"], state["proxies"]
        try:
            completed = await self.store.orders.compare_and_set(
                order.id,
                {"status": "processing"},
                {
                    "status": "completed",
                    "payment_status": "paid",
                    "stage": "completed",
                    "delivered": [p.snapshot() for p in proxies],
                },
            )
            if completed is None:
                # The stalled-order sweep may have finished it first.
                completed = await self.store.orders.get(order.id)
                if completed is None or completed.status != "completed":
                    raise ConflictError("Order changed before completion", details={"order_id": order.id})
        except Exception as e:
            # Charged and delivered, but the order row did not record it.
            log.exception("purchase_completion_failed", order_id=order.id)
            await self._try_open_case(order, "completion_failed", _reason(e), proxies)
            return {"error": e}
        log.info(
            "purchase_completed",
            order_id=completed.id,
            order_number=completed.order_number,
            proxy_count=len(proxies),
            total=str(completed.total_amount),
        )
        return {"order": completed, "error": None}

    async def _provisioning_failed(self, state: PurchaseState) -> dict[str, Any]:
        error, order = state["error"], state["order"]
        reason = _reason(error)
        order = await self._fail_order(order, "provisioning_failed", reason)
        log.warning(
            "purchase_provisioning_failed",
            order_id=order.id,
            error_type=type(error).__name__,
            reason=reason,
        )
        # Rows may exist if persisting failed part-way; they were never paid for.
        try:
            suspended = await self.store.proxies.set_status_for_order(order.id, "suspended")
            if suspended:
                orphans = await self.store.proxies.list_for_order(order.id)
                await self._open_case(order, "persist_failed", reason, orphans)
        except Exception:
            log.exception("purchase_cleanup_failed", order_id=order.id, stage="provisioning_failed")
        return {"order": order}

    async def _debit_failed(self, state: PurchaseState) -> dict[str, Any]:
        error, order, proxies = state["error"], state["order"], state["proxies"]
        reason = _reason(error)
        order = await self._fail_order(order, "debit_failed", reason)
        try:
            await self.store.proxies.set_status_for_order(order.id, "suspended")
        except Exception:
            log.exception("purchase_cleanup_failed", order_id=order.id, stage="debit_failed")
        case = await self._try_open_case(order, "ledger_conflict", reason, proxies)
        log.error(
            "purchase_ledger_conflict",
            order_id=order.id,
            reconciliation_case_id=case.id if case else None,
            proxy_count=len(proxies),
            reason=reason,
        )
        if isinstance(error, InsufficientBalanceError):
            error = LedgerConflictError(
                f"Balance changed before the charge could be applied: {reason}",
                order_id=order.id,
                case_id=case.id if case else None,
            )
        return {"order": order, "error": error}

    # Helpers

    async def _fail_order(self, order: Order, stage: str, reason: str) -> Order:
        """Best effort; an order left ``processing`` is picked up by the stalled-order sweep."""
        try:
            updated = await self.store.orders.compare_and_set(
                order.id,
                {"status": "processing"},
                {"status": "failed", "payment_status": "failed", "stage": stage, "failure_reason": reason},
            )
            if updated is not None:
                return updated
            return await self.store.orders.get(order.id) or order
        except Exception:
            log.exception("purchase_fail_order_failed", order_id=order.id, stage=stage)
            return order

    async def _open_case(self, order: Order, kind: str, reason: str, proxies: list[Proxy]) -> ReconciliationCase:
        case = await self.store.reconciliation.open_case(
            ReconciliationCase(
                kind=kind,
                order_id=order.id,
                user_id=order.user_id,
                amount=order.total_amount,
                proxy_ids=[p.id for p in proxies if p.id],
                reason=reason,
            )
        )
        log.error("reconciliation_case_opened", case_id=case.id, kind=kind, order_id=order.id)
        return case

    async def _try_open_case(
        self, order: Order, kind: str, reason: str, proxies: list[Proxy]
    ) -> ReconciliationCase | None:
        try:
            return await self._open_case(order, kind, reason, proxies)
        except Exception:
            log.exception("reconciliation_case_open_failed", kind=kind, order_id=order.id)
            return None
