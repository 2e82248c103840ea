"""Plain records shared by services and store backends."""

import secrets
import string
import time
from datetime import datetime
from decimal import Decimal
from typing import Any, Literal

from pydantic import BaseModel, Field

OrderStatus = Literal["pending", "processing", "completed", "failed", "cancelled"]
PaymentStatus = Literal["pending", "paid", "failed", "refunded"]
OrderStage = Literal[
    "quoted",
    "pending_order",
    "provisioning",
    "provisioned",
    "debited",
    "completed",
    "provisioning_failed",
    "debit_failed",
    "cancelled",
]
ProxyStatus = Literal["active", "expired", "disabled", "suspended"]
LedgerKind = Literal["topup", "purchase", "refund", "withdrawal"]
LedgerStatus = Literal["pending", "completed", "failed", "cancelled"]
CaseKind = Literal["ledger_conflict", "persist_failed", "completion_failed", "stalled_order"]

TERMINAL_ORDER_STATUSES = ("completed", "failed", "cancelled")

_ORDER_SUFFIX_ALPHABET = string.ascii_uppercase + string.digits


def utcnow() -> datetime:
    return datetime.utcnow()


def generate_order_number() -> str:
    suffix = "".join(secrets.choice(_ORDER_SUFFIX_ALPHABET) for _ in range(9))
    return f"ORD-{int(time.time() * 1000)}-{suffix}"


class Account(BaseModel):
    id: str
    email: str
    balance: Decimal = Decimal("0.00")
    is_active: bool = True
    created_at: datetime = Field(default_factory=utcnow)


class OrderDetails(BaseModel):
    region: str
    quantity: int
    session_type: str
    protocol: str
    proxy_type: str
    pricing: dict[str, Any] = Field(default_factory=dict)


class DeliveredProxy(BaseModel):
    """Snapshot of a delivered proxy kept on the order itself."""

    proxy_id: str | None = None
    ip: str
    port: int
    username: str
    password: str
    country: str
    session_type: str
    proxy_type: str
    expires_at: datetime
    traffic_left: int
    status: ProxyStatus = "active"


class Order(BaseModel):
    id: str | None = None
    user_id: str
    order_number: str = Field(default_factory=generate_order_number)
    details: OrderDetails
    total_amount: Decimal
    status: OrderStatus = "pending"
    payment_status: PaymentStatus = "pending"
    stage: OrderStage = "quoted"
    failure_reason: str | None = None
    delivered: list[DeliveredProxy] = Field(default_factory=list)
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_ORDER_STATUSES


class Proxy(BaseModel):
    id: str | None = None
    order_id: str
    user_id: str
    ip: str
    port: int
    username: str
    password: str
    country: str
    state: str | None = None
    city: str | None = None
    session_type: str = "sticky"
    proxy_type: str = "residential"
    protocol: str = "http"
    expires_at: datetime
    traffic_left: int = 0
    status: ProxyStatus = "active"
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    def formatted(self, fmt: Literal["full", "ip:port"] = "full", protocol: str | None = None) -> str:
        if fmt == "ip:port":
            return f"{self.ip}:{self.port}"
        return f"{protocol or self.protocol}://{self.username}:{self.password}@{self.ip}:{self.port}"

    def is_expired(self, now: datetime | None = None) -> bool:
        return (now or utcnow()) > self.expires_at

    def snapshot(self) -> DeliveredProxy:
        return DeliveredProxy(
            proxy_id=self.id,
            ip=self.ip,
            port=self.port,
            username=self.username,
            password=self.password,
            country=self.country,
            session_type=self.session_type,
            proxy_type=self.proxy_type,
            expires_at=self.expires_at,
            traffic_left=self.traffic_left,
            status=self.status,
        )


class LedgerEntry(BaseModel):
    id: str | None = None
    user_id: str
    amount: Decimal  # positive = credit, negative = debit
    kind: LedgerKind
    status: LedgerStatus = "pending"
    description: str
    payment_id: str | None = None
    balance_after: Decimal | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)


class ReconciliationCase(BaseModel):
    id: str | None = None
    kind: CaseKind
    order_id: str
    user_id: str
    amount: Decimal = Decimal("0.00")
    proxy_ids: list[str] = Field(default_factory=list)
    reason: str = ""
    status: Literal["open", "resolved"] = "open"
    created_at: datetime = Field(default_factory=utcnow)
