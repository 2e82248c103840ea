"""In-process store backend for single-process development and the test suite.

Every write path is free of suspension points between its check and its write,
so a read-check-write is atomic with respect to other coroutines on the loop.
"""

from datetime import datetime
from typing import Any

from bson import ObjectId

from proxyshop.core.exceptions import ConflictError, InsufficientBalanceError, NotFoundError
from proxyshop.core.money import from_cents
from proxyshop.domain import Account, LedgerEntry, Order, Proxy, ReconciliationCase, utcnow
from proxyshop.stores.base import (
    LedgerStore,
    OrderStore,
    ProxyStore,
    ReconciliationStore,
    Store,
    UnitOfWork,
    UserStore,
)


def _new_id() -> str:
    return str(ObjectId())


def _matches(record: Any, expected: dict[str, Any]) -> bool:
    for field, want in expected.items():
        have = getattr(record, field)
        if isinstance(want, (list, tuple, set)):
            if have not in want:
                return False
        elif have != want:
            return False
    return True


class MemoryUnitOfWork(UnitOfWork):
    def __init__(self, store: "MemoryStore"):
        self._store = store
        self._deltas: dict[str, int] = {}
        self._entries: dict[str, LedgerEntry] = {}

    async def begin(self) -> None:
        self._deltas.clear()
        self._entries.clear()

    async def commit(self) -> None:
        balances = self._store._balances
        for user_id, delta in self._deltas.items():
            if balances[user_id] + delta < 0:
                raise InsufficientBalanceError(
                    required=from_cents(-delta), current=from_cents(balances[user_id])
                )
        for user_id, delta in self._deltas.items():
            balances[user_id] += delta
        for entry in self._entries.values():
            self._store._ledger[entry.id] = entry.model_copy(deep=True)
        self._deltas.clear()
        self._entries.clear()

    async def rollback(self) -> None:
        self._deltas.clear()
        self._entries.clear()

    async def apply_balance_delta(self, user_id: str, delta_cents: int) -> int:
        if user_id not in self._store._accounts:
            raise NotFoundError("User not found")
        current = self._store._balances[user_id] + self._deltas.get(user_id, 0)
        if current + delta_cents < 0:
            raise InsufficientBalanceError(required=from_cents(-delta_cents), current=from_cents(current))
        self._deltas[user_id] = self._deltas.get(user_id, 0) + delta_cents
        return current + delta_cents

    async def add_ledger_entry(self, entry: LedgerEntry) -> LedgerEntry:
        if entry.payment_id and await self.get_ledger_entry(entry.payment_id):
            raise ConflictError("Duplicate payment id", details={"payment_id": entry.payment_id})
        entry = entry.model_copy(update={"id": entry.id or _new_id()})
        self._entries[entry.id] = entry
        return entry.model_copy()

    async def get_ledger_entry(self, payment_id: str) -> LedgerEntry | None:
        for entry in list(self._entries.values()) + list(self._store._ledger.values()):
            if entry.payment_id == payment_id:
                pending = self._entries.get(entry.id, entry)
                return pending.model_copy()
        return None

    async def update_ledger_entry(self, entry: LedgerEntry) -> LedgerEntry:
        if entry.id not in self._store._ledger and entry.id not in self._entries:
            raise NotFoundError("Ledger entry not found")
        entry = entry.model_copy(update={"updated_at": utcnow()})
        self._entries[entry.id] = entry
        return entry.model_copy()


class MemoryUserStore(UserStore):
    def __init__(self, store: "MemoryStore"):
        self._store = store

    async def get(self, user_id: str) -> Account | None:
        account = self._store._accounts.get(user_id)
        if not account:
            return None
        return account.model_copy(update={"balance": from_cents(self._store._balances[user_id])})

    async def create(self, email: str) -> Account:
        account = Account(id=_new_id(), email=email.lower().strip())
        self._store._accounts[account.id] = account
        self._store._balances[account.id] = 0
        return account.model_copy()


class MemoryOrderStore(OrderStore):
    def __init__(self):
        self._orders: dict[str, Order] = {}

    async def create(self, order: Order) -> Order:
        if any(o.order_number == order.order_number for o in self._orders.values()):
            raise ConflictError("Duplicate order number")
        order = order.model_copy(deep=True, update={"id": _new_id()})
        self._orders[order.id] = order
        return order.model_copy(deep=True)

    async def get(self, order_id: str) -> Order | None:
        order = self._orders.get(order_id)
        return order.model_copy(deep=True) if order else None

    async def get_for_user(self, order_id: str, user_id: str) -> Order | None:
        order = self._orders.get(order_id)
        if not order or order.user_id != user_id:
            return None
        return order.model_copy(deep=True)

    async def compare_and_set(self, order_id: str, expected: dict[str, Any], changes: dict[str, Any]) -> Order | None:
        order = self._orders.get(order_id)
        if not order or not _matches(order, expected):
            return None
        order = order.model_copy(deep=True, update={**changes, "updated_at": utcnow()})
        self._orders[order_id] = order
        return order.model_copy(deep=True)

    async def find_stalled(self, older_than: datetime) -> list[Order]:
        return [
            o.model_copy(deep=True)
            for o in self._orders.values()
            if o.status == "processing" and o.updated_at < older_than
        ]


class MemoryProxyStore(ProxyStore):
    def __init__(self):
        self._proxies: dict[str, Proxy] = {}

    async def create_many(self, proxies: list[Proxy]) -> list[Proxy]:
        created = []
        for proxy in proxies:
            proxy = proxy.model_copy(update={"id": _new_id()})
            self._proxies[proxy.id] = proxy
            created.append(proxy.model_copy())
        return created

    async def get_for_user(self, proxy_id: str, user_id: str) -> Proxy | None:
        proxy = self._proxies.get(proxy_id)
        if not proxy or proxy.user_id != user_id:
            return None
        return proxy.model_copy()

    async def list_for_order(self, order_id: str) -> list[Proxy]:
        return [p.model_copy() for p in self._proxies.values() if p.order_id == order_id]

    async def save(self, proxy: Proxy) -> Proxy:
        if proxy.id not in self._proxies:
            raise NotFoundError("Proxy not found")
        proxy = proxy.model_copy(update={"updated_at": utcnow()})
        self._proxies[proxy.id] = proxy
        return proxy.model_copy()

    async def set_status_for_order(self, order_id: str, status: str) -> int:
        count = 0
        for proxy_id, proxy in self._proxies.items():
            if proxy.order_id == order_id:
                self._proxies[proxy_id] = proxy.model_copy(update={"status": status, "updated_at": utcnow()})
                count += 1
        return count

    async def expire_due(self, now: datetime) -> int:
        count = 0
        for proxy_id, proxy in self._proxies.items():
            if proxy.status == "active" and proxy.expires_at <= now:
                self._proxies[proxy_id] = proxy.model_copy(update={"status": "expired", "updated_at": now})
                count += 1
        return count


class MemoryLedgerStore(LedgerStore):
    def __init__(self, store: "MemoryStore"):
        self._store = store

    async def get_by_payment_id(self, payment_id: str) -> LedgerEntry | None:
        for entry in self._store._ledger.values():
            if entry.payment_id == payment_id:
                return entry.model_copy()
        return None

    async def list_for_user(self, user_id: str, status: str | None = None) -> list[LedgerEntry]:
        entries = [
            e.model_copy()
            for e in self._store._ledger.values()
            if e.user_id == user_id and (status is None or e.status == status)
        ]
        return sorted(entries, key=lambda e: e.created_at, reverse=True)


class MemoryReconciliationStore(ReconciliationStore):
    def __init__(self):
        self._cases: dict[str, ReconciliationCase] = {}

    async def open_case(self, case: ReconciliationCase) -> ReconciliationCase:
        case = case.model_copy(update={"id": _new_id()})
        self._cases[case.id] = case
        return case.model_copy()

    async def list_open(self) -> list[ReconciliationCase]:
        return [c.model_copy() for c in self._cases.values() if c.status == "open"]


class MemoryStore(Store):
    def __init__(self):
        self._accounts: dict[str, Account] = {}
        self._balances: dict[str, int] = {}
        self._ledger: dict[str, LedgerEntry] = {}
        self.users = MemoryUserStore(self)
        self.orders = MemoryOrderStore()
        self.proxies = MemoryProxyStore()
        self.ledger = MemoryLedgerStore(self)
        self.reconciliation = MemoryReconciliationStore()

    def unit_of_work(self) -> MemoryUnitOfWork:
        return MemoryUnitOfWork(self)

