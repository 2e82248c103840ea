from abc import ABC, abstractmethod
from datetime import datetime
from functools import lru_cache
from typing import Any

from proxyshop.core.config import get_settings
from proxyshop.domain import Account, LedgerEntry, Order, Proxy, ReconciliationCase


class RetryableTransactionError(Exception):
    """The store aborted a transaction on a write conflict; the whole unit may be retried."""


class UnitOfWork(ABC):
    """One data-store transaction around balance mutations and ledger rows.

    Everything done through a unit of work is committed on a clean exit from
    ``async with`` and rolled back when the block raises.
    """

    async def __aenter__(self) -> "UnitOfWork":
        await self.begin()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> bool:
        if exc_type is None:
            await self.commit()
        else:
            await self.rollback()
        return False

    @abstractmethod
    async def begin(self) -> None: ...

    @abstractmethod
    async def commit(self) -> None: ...

    @abstractmethod
    async def rollback(self) -> None: ...

    @abstractmethod
    async def apply_balance_delta(self, user_id: str, delta_cents: int) -> int:
        """Conditionally add ``delta_cents``; return the new balance in cents.

        Raises InsufficientBalanceError when a debit would go below zero and
        NotFoundError for an unknown user.
        """

    @abstractmethod
    async def add_ledger_entry(self, entry: LedgerEntry) -> LedgerEntry: ...

    @abstractmethod
    async def get_ledger_entry(self, payment_id: str) -> LedgerEntry | None: ...

    @abstractmethod
    async def update_ledger_entry(self, entry: LedgerEntry) -> LedgerEntry: ...


class UserStore(ABC):
    @abstractmethod
    async def get(self, user_id: str) -> Account | None: ...

    @abstractmethod
    async def create(self, email: str) -> Account: ...


class OrderStore(ABC):
    @abstractmethod
    async def create(self, order: Order) -> Order: ...

    @abstractmethod
    async def get(self, order_id: str) -> Order | None: ...

    @abstractmethod
    async def get_for_user(self, order_id: str, user_id: str) -> Order | None: ...

    @abstractmethod
    async def compare_and_set(
        self,
        order_id: str,
        expected: dict[str, Any],
        changes: dict[str, Any],
    ) -> Order | None:
        """Apply ``changes`` only if every field in ``expected`` matches (``list`` = any of)."""

    @abstractmethod
    async def find_stalled(self, older_than: datetime) -> list[Order]: ...


class ProxyStore(ABC):
    @abstractmethod
    async def create_many(self, proxies: list[Proxy]) -> list[Proxy]: ...

    @abstractmethod
    async def get_for_user(self, proxy_id: str, user_id: str) -> Proxy | None: ...

    @abstractmethod
    async def list_for_order(self, order_id: str) -> list[Proxy]: ...

    @abstractmethod
    async def save(self, proxy: Proxy) -> Proxy: ...

    @abstractmethod
    async def set_status_for_order(self, order_id: str, status: str) -> int: ...

    @abstractmethod
    async def expire_due(self, now: datetime) -> int: ...


class LedgerStore(ABC):
    """Read side of the ledger; writes go through a UnitOfWork."""

    @abstractmethod
    async def get_by_payment_id(self, payment_id: str) -> LedgerEntry | None: ...

    @abstractmethod
    async def list_for_user(self, user_id: str, status: str | None = None) -> list[LedgerEntry]: ...


class ReconciliationStore(ABC):
    @abstractmethod
    async def open_case(self, case: ReconciliationCase) -> ReconciliationCase: ...

    @abstractmethod
    async def list_open(self) -> list[ReconciliationCase]: ...


class Store(ABC):
    users: UserStore
    orders: OrderStore
    proxies: ProxyStore
    ledger: LedgerStore
    reconciliation: ReconciliationStore

    @abstractmethod
    def unit_of_work(self) -> UnitOfWork: ...


@lru_cache
def get_store() -> Store:
    settings = get_settings()
    if settings.store_backend == "memory":
        from proxyshop.stores.memory import MemoryStore
        return MemoryStore()
    from proxyshop.stores.mongo import MongoStore
    return MongoStore(use_transactions=settings.mongodb_transactions)
