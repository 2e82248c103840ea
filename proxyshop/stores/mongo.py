"""MongoDB store backend on Beanie documents.

Balances are updated with a conditional ``$inc`` (the filter carries the
sufficiency check), so a debit can never take a balance below zero even when
two requests race. With ``MONGODB_TRANSACTIONS`` enabled the balance update and
the ledger insert share one multi-document transaction.
"""

from datetime import datetime
from typing import Any

from beanie import PydanticObjectId
from bson.errors import InvalidId
from pydantic import BaseModel
from pymongo import ReturnDocument
from pymongo.errors import DuplicateKeyError, OperationFailure

from proxyshop.core.exceptions import ConflictError, InsufficientBalanceError, NotFoundError
from proxyshop.core.money import from_cents, to_cents
from proxyshop.db.init import get_client
from proxyshop.domain import Account, LedgerEntry, Order, OrderDetails, Proxy, ReconciliationCase, utcnow
from proxyshop.models import (
    OrderDocument,
    ProxyDocument,
    ReconciliationCaseDocument,
    TransactionDocument,
    UserDocument,
)
from proxyshop.stores.base import (
    LedgerStore,
    OrderStore,
    ProxyStore,
    ReconciliationStore,
    RetryableTransactionError,
    Store,
    UnitOfWork,
    UserStore,
)


def _bson(value: Any) -> Any:
    if isinstance(value, BaseModel):
        return value.model_dump()
    if isinstance(value, list):
        return [_bson(v) for v in value]
    return value


def _oid(value: str | None) -> PydanticObjectId | None:
    if not value:
        return None
    try:
        return PydanticObjectId(value)
    except (InvalidId, TypeError, ValueError):
        return None


def _account(doc: UserDocument) -> Account:
    return Account(
        id=str(doc.id),
        email=doc.email,
        balance=from_cents(doc.balance_cents),
        is_active=doc.is_active,
        created_at=doc.created_at,
    )


def _order(doc: OrderDocument) -> Order:
    return Order(
        id=str(doc.id),
        user_id=str(doc.user_id),
        order_number=doc.order_number,
        details=OrderDetails(
            region=doc.region,
            quantity=doc.quantity,
            session_type=doc.session_type,
            protocol=doc.protocol,
            proxy_type=doc.proxy_type,
            pricing=doc.pricing,
        ),
        total_amount=from_cents(doc.total_amount_cents),
        status=doc.status,
        payment_status=doc.payment_status,
        stage=doc.stage,
        failure_reason=doc.failure_reason,
        delivered=doc.delivered,
        created_at=doc.created_at,
        updated_at=doc.updated_at,
    )


def _order_doc(order: Order) -> OrderDocument:
    return OrderDocument(
        id=_oid(order.id),
        user_id=PydanticObjectId(order.user_id),
        order_number=order.order_number,
        region=order.details.region,
        quantity=order.details.quantity,
        session_type=order.details.session_type,
        protocol=order.details.protocol,
        proxy_type=order.details.proxy_type,
        pricing=order.details.pricing,
        total_amount_cents=to_cents(order.total_amount),
        status=order.status,
        payment_status=order.payment_status,
        stage=order.stage,
        failure_reason=order.failure_reason,
        delivered=order.delivered,
        created_at=order.created_at,
        updated_at=utcnow(),
    )


def _proxy(doc: ProxyDocument) -> Proxy:
    return Proxy(
        id=str(doc.id),
        order_id=str(doc.order_id),
        user_id=str(doc.user_id),
        **doc.model_dump(exclude={"id", "order_id", "user_id", "revision_id"}),
    )


def _proxy_doc(proxy: Proxy) -> ProxyDocument:
    return ProxyDocument(
        id=_oid(proxy.id),
        order_id=PydanticObjectId(proxy.order_id),
        user_id=PydanticObjectId(proxy.user_id),
        **proxy.model_dump(exclude={"id", "order_id", "user_id", "updated_at"}),
        updated_at=utcnow(),
    )


def _entry(doc: TransactionDocument) -> LedgerEntry:
    return LedgerEntry(
        id=str(doc.id),
        user_id=str(doc.user_id),
        amount=from_cents(doc.amount_cents),
        kind=doc.kind,
        status=doc.status,
        description=doc.description,
        payment_id=doc.payment_id,
        balance_after=from_cents(doc.balance_after_cents) if doc.balance_after_cents is not None else None,
        metadata=doc.metadata,
        created_at=doc.created_at,
        updated_at=doc.updated_at,
    )


def _entry_doc(entry: LedgerEntry) -> TransactionDocument:
    return TransactionDocument(
        id=_oid(entry.id),
        user_id=PydanticObjectId(entry.user_id),
        amount_cents=to_cents(entry.amount),
        kind=entry.kind,
        status=entry.status,
        description=entry.description,
        payment_id=entry.payment_id,
        balance_after_cents=to_cents(entry.balance_after) if entry.balance_after is not None else None,
        metadata=entry.metadata,
        created_at=entry.created_at,
        updated_at=utcnow(),
    )


class MongoUnitOfWork(UnitOfWork):
    def __init__(self, use_transactions: bool = True):
        self._use_transactions = use_transactions
        self._session = None

    async def begin(self) -> None:
        self._session = await get_client().start_session()
        if self._use_transactions:
            self._session.start_transaction()

    async def commit(self) -> None:
        try:
            if self._session.in_transaction:
                await self._session.commit_transaction()
        except OperationFailure as e:
            if e.has_error_label("TransientTransactionError"):
                raise RetryableTransactionError(str(e)) from e
            raise
        finally:
            await self._session.end_session()

    async def rollback(self) -> None:
        try:
            if self._session.in_transaction:
                await self._session.abort_transaction()
        finally:
            await self._session.end_session()

    async def apply_balance_delta(self, user_id: str, delta_cents: int) -> int:
        oid = _oid(user_id)
        if oid is None:
            raise NotFoundError("User not found")
        collection = UserDocument.get_motor_collection()
        query: dict[str, Any] = {"_id": oid}
        if delta_cents < 0:
            query["balance_cents"] = {"$gte": -delta_cents}
        try:
            raw = await collection.find_one_and_update(
                query,
                {"$inc": {"balance_cents": delta_cents}, "$set": {"updated_at": utcnow()}},
                return_document=ReturnDocument.AFTER,
                session=self._session,
            )
        except OperationFailure as e:
            if e.has_error_label("TransientTransactionError"):
                raise RetryableTransactionError(str(e)) from e
            raise
        if raw is not None:
            return raw["balance_cents"]
        current = await collection.find_one({"_id": oid}, {"balance_cents": 1}, session=self._session)
        if current is None:
            raise NotFoundError("User not found")
        raise InsufficientBalanceError(
            required=from_cents(-delta_cents),
            current=from_cents(current.get("balance_cents", 0)),
        )

    async def add_ledger_entry(self, entry: LedgerEntry) -> LedgerEntry:
        doc = _entry_doc(entry)
        try:
            await doc.insert(session=self._session)
        except DuplicateKeyError as e:
            raise ConflictError("Duplicate payment id", details={"payment_id": entry.payment_id}) from e
        return _entry(doc)

    async def get_ledger_entry(self, payment_id: str) -> LedgerEntry | None:
        doc = await TransactionDocument.find_one(
            TransactionDocument.payment_id == payment_id,
            session=self._session,
        )
        return _entry(doc) if doc else None

    async def update_ledger_entry(self, entry: LedgerEntry) -> LedgerEntry:
        doc = _entry_doc(entry)
        await doc.save(session=self._session)
        return _entry(doc)


class MongoUserStore(UserStore):
    async def get(self, user_id: str) -> Account | None:
        oid = _oid(user_id)
        doc = await UserDocument.get(oid) if oid else None
        return _account(doc) if doc else None

    async def create(self, email: str) -> Account:
        doc = UserDocument(email=email.lower().strip())
        try:
            await doc.insert()
        except DuplicateKeyError as e:
            raise ConflictError("Email already registered") from e
        return _account(doc)


class MongoOrderStore(OrderStore):
    async def create(self, order: Order) -> Order:
        doc = _order_doc(order)
        await doc.insert()
        return _order(doc)

    async def get(self, order_id: str) -> Order | None:
        oid = _oid(order_id)
        doc = await OrderDocument.get(oid) if oid else None
        return _order(doc) if doc else None

    async def get_for_user(self, order_id: str, user_id: str) -> Order | None:
        oid, uid = _oid(order_id), _oid(user_id)
        if oid is None or uid is None:
            return None
        doc = await OrderDocument.find_one(OrderDocument.id == oid, OrderDocument.user_id == uid)
        return _order(doc) if doc else None

    async def compare_and_set(self, order_id: str, expected: dict[str, Any], changes: dict[str, Any]) -> Order | None:
        oid = _oid(order_id)
        if oid is None:
            return None
        query: dict[str, Any] = {"_id": oid}
        for field, want in expected.items():
            query[field] = {"$in": list(want)} if isinstance(want, (list, tuple, set)) else want
        update = {field: _bson(value) for field, value in changes.items()}
        raw = await OrderDocument.get_motor_collection().find_one_and_update(
            query,
            {"$set": {**update, "updated_at": utcnow()}},
            return_document=ReturnDocument.AFTER,
        )
        if raw is None:
            return None
        doc = await OrderDocument.get(oid)
        return _order(doc) if doc else None

    async def find_stalled(self, older_than: datetime) -> list[Order]:
        docs = await OrderDocument.find(
            OrderDocument.status == "processing",
            OrderDocument.updated_at < older_than,
        ).to_list()
        return [_order(d) for d in docs]


class MongoProxyStore(ProxyStore):
    async def create_many(self, proxies: list[Proxy]) -> list[Proxy]:
        created = []
        for proxy in proxies:
            doc = _proxy_doc(proxy)
            await doc.insert()
            created.append(_proxy(doc))
        return created

    async def get_for_user(self, proxy_id: str, user_id: str) -> Proxy | None:
        oid, uid = _oid(proxy_id), _oid(user_id)
        if oid is None or uid is None:
            return None
        doc = await ProxyDocument.find_one(ProxyDocument.id == oid, ProxyDocument.user_id == uid)
        return _proxy(doc) if doc else None

    async def list_for_order(self, order_id: str) -> list[Proxy]:
        oid = _oid(order_id)
        if oid is None:
            return []
        docs = await ProxyDocument.find(ProxyDocument.order_id == oid).sort(-ProxyDocument.created_at).to_list()
        return [_proxy(d) for d in docs]

    async def save(self, proxy: Proxy) -> Proxy:
        doc = _proxy_doc(proxy)
        await doc.save()
        return _proxy(doc)

    async def set_status_for_order(self, order_id: str, status: str) -> int:
        oid = _oid(order_id)
        if oid is None:
            return 0
        result = await ProxyDocument.get_motor_collection().update_many(
            {"order_id": oid},
            {"$set": {"status": status, "updated_at": utcnow()}},
        )
        return result.modified_count

    async def expire_due(self, now: datetime) -> int:
        result = await ProxyDocument.get_motor_collection().update_many(
            {"status": "active", "expires_at": {"$lte": now}},
            {"$set": {"status": "expired", "updated_at": now}},
        )
        return result.modified_count


class MongoLedgerStore(LedgerStore):
    async def get_by_payment_id(self, payment_id: str) -> LedgerEntry | None:
        doc = await TransactionDocument.find_one(TransactionDocument.payment_id == payment_id)
        return _entry(doc) if doc else None

    async def list_for_user(self, user_id: str, status: str | None = None) -> list[LedgerEntry]:
        uid = _oid(user_id)
        if uid is None:
            return []
        filters = [TransactionDocument.user_id == uid]
        if status:
            filters.append(TransactionDocument.status == status)
        docs = await TransactionDocument.find(*filters).sort(-TransactionDocument.created_at).to_list()
        return [_entry(d) for d in docs]


class MongoReconciliationStore(ReconciliationStore):
    async def open_case(self, case: ReconciliationCase) -> ReconciliationCase:
        doc = ReconciliationCaseDocument(
            kind=case.kind,
            order_id=PydanticObjectId(case.order_id),
            user_id=PydanticObjectId(case.user_id),
            amount_cents=to_cents(case.amount),
            proxy_ids=case.proxy_ids,
            reason=case.reason,
        )
        await doc.insert()
        return case.model_copy(update={"id": str(doc.id)})

    async def list_open(self) -> list[ReconciliationCase]:
        docs = await ReconciliationCaseDocument.find(ReconciliationCaseDocument.status == "open").to_list()
        return [
            ReconciliationCase(
                id=str(d.id),
                kind=d.kind,
                order_id=str(d.order_id),
                user_id=str(d.user_id),
                amount=from_cents(d.amount_cents),
                proxy_ids=d.proxy_ids,
                reason=d.reason,
                status=d.status,
                created_at=d.created_at,
            )
            for d in docs
        ]


class MongoStore(Store):
    def __init__(self, use_transactions: bool = True):
        self._use_transactions = use_transactions
        self.users = MongoUserStore()
        self.orders = MongoOrderStore()
        self.proxies = MongoProxyStore()
        self.ledger = MongoLedgerStore()
        self.reconciliation = MongoReconciliationStore()

    def unit_of_work(self) -> MongoUnitOfWork:
        return MongoUnitOfWork(use_transactions=self._use_transactions)
