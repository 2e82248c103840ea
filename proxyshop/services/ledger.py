"""Balance ledger: the only writer of balance mutations.

Each mutation runs inside one store unit of work, so the balance change and its
ledger entry are committed together or not at all.
"""

from decimal import Decimal
from typing import Any

from proxyshop.core.exceptions import NotFoundError, ValidationError
from proxyshop.core.logging import get_logger
from proxyshop.core.money import from_cents, quantize, to_cents
from proxyshop.domain import LedgerEntry, LedgerKind
from proxyshop.stores.base import RetryableTransactionError, Store, UnitOfWork

log = get_logger(__name__)

KINDS = ("topup", "purchase", "refund", "withdrawal")
MAX_TRANSACTION_ATTEMPTS = 3


class LedgerService:
    def __init__(self, store: Store):
        self.store = store

    async def get_balance(self, user_id: str) -> Decimal:
        account = await self.store.users.get(user_id)
        if not account:
            raise NotFoundError("User not found")
        return account.balance

    async def has_sufficient_balance(self, user_id: str, amount: Decimal) -> bool:
        """Quote-time read only; the debit itself re-checks inside its transaction."""
        return await self.get_balance(user_id) >= quantize(amount)

    async def _run(self, fn, *args):
        for attempt in range(1, MAX_TRANSACTION_ATTEMPTS + 1):
            try:
                async with self.store.unit_of_work() as uow:
                    return await fn(uow, *args)
            except RetryableTransactionError:
                if attempt == MAX_TRANSACTION_ATTEMPTS:
                    raise
                log.warning("ledger_transaction_retry", attempt=attempt)

    async def apply_ledger_mutation(
        self,
        user_id: str,
        amount: Decimal,
        kind: LedgerKind,
        description: str,
        metadata: dict[str, Any] | None = None,
    ) -> LedgerEntry:
        """Add signed ``amount`` to the balance and record a completed entry.

        A debit that would take the balance below zero raises
        InsufficientBalanceError and leaves both balance and ledger untouched.
        """
        if kind not in KINDS:
            raise ValidationError(f"Invalid ledger kind: {kind}")
        cents = to_cents(amount)
        if cents == 0:
            raise ValidationError("Ledger amount must be non-zero")

        async def mutate(uow: UnitOfWork) -> LedgerEntry:
            balance_after = await uow.apply_balance_delta(user_id, cents)
            return await uow.add_ledger_entry(
                LedgerEntry(
                    user_id=user_id,
                    amount=from_cents(cents),
                    kind=kind,
                    status="completed",
                    description=description,
                    balance_after=from_cents(balance_after),
                    metadata=metadata or {},
                )
            )

        entry = await self._run(mutate)
        log.info(
            "ledger_mutation",
            user_id=user_id,
            kind=kind,
            amount=str(entry.amount),
            balance_after=str(entry.balance_after),
            entry_id=entry.id,
        )
        return entry

    async def open_pending(
        self,
        user_id: str,
        amount: Decimal,
        kind: LedgerKind,
        description: str,
        payment_id: str,
        metadata: dict[str, Any] | None = None,
    ) -> LedgerEntry:
        """Record an intent (e.g. a gateway top-up) without touching the balance."""
        cents = to_cents(amount)

        async def record(uow: UnitOfWork) -> LedgerEntry:
            return await uow.add_ledger_entry(
                LedgerEntry(
                    user_id=user_id,
                    amount=from_cents(cents),
                    kind=kind,
                    status="pending",
                    description=description,
                    payment_id=payment_id,
                    metadata=metadata or {},
                )
            )

        return await self._run(record)

    async def settle_pending(self, payment_id: str, metadata: dict[str, Any] | None = None) -> LedgerEntry:
        """Apply a pending entry's amount to the balance and mark it completed.

        Repeated calls for an already settled entry return it unchanged.
        """

        async def settle(uow: UnitOfWork) -> tuple[LedgerEntry, bool]:
            entry = await uow.get_ledger_entry(payment_id)
            if entry is None:
                raise NotFoundError("Transaction not found")
            if entry.status != "pending":
                return entry, False
            balance_after = await uow.apply_balance_delta(entry.user_id, to_cents(entry.amount))
            entry = entry.model_copy(
                update={
                    "status": "completed",
                    "balance_after": from_cents(balance_after),
                    "metadata": {**entry.metadata, **(metadata or {})},
                }
            )
            return await uow.update_ledger_entry(entry), True

        entry, applied = await self._run(settle)
        if applied:
            log.info("ledger_pending_settled", payment_id=payment_id, user_id=entry.user_id, amount=str(entry.amount))
        else:
            log.info("ledger_pending_already_final", payment_id=payment_id, status=entry.status)
        return entry

    async def fail_pending(self, payment_id: str, status: str = "failed") -> LedgerEntry:
        if status not in ("failed", "cancelled"):
            raise ValidationError(f"Invalid terminal status: {status}")

        async def close(uow: UnitOfWork) -> LedgerEntry:
            entry = await uow.get_ledger_entry(payment_id)
            if entry is None:
                raise NotFoundError("Transaction not found")
            if entry.status != "pending":
                return entry
            return await uow.update_ledger_entry(entry.model_copy(update={"status": status}))

        entry = await self._run(close)
        log.info("ledger_pending_closed", payment_id=payment_id, status=entry.status)
        return entry
