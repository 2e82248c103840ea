from datetime import datetime
from typing import Any

from beanie import Document, Indexed, PydanticObjectId
from pydantic import Field

from proxyshop.domain import DeliveredProxy, OrderStage, OrderStatus, PaymentStatus


class OrderDocument(Document):
    user_id: PydanticObjectId
    order_number: Indexed(str, unique=True)
    region: str
    quantity: int
    session_type: str
    protocol: str
    proxy_type: str
    pricing: dict[str, Any] = Field(default_factory=dict)
    total_amount_cents: int
    status: OrderStatus = "pending"
    payment_status: PaymentStatus = "pending"
    stage: OrderStage = "quoted"
    failure_reason: str | None = None
    # Denormalized copy; survives deletion of the live proxy documents
    delivered: list[DeliveredProxy] = Field(default_factory=list)
    created_at: datetime = Field(default_factory=datetime.utcnow)
    updated_at: datetime = Field(default_factory=datetime.utcnow)

    class Settings:
        name = "orders"
        indexes = [
            [("user_id", 1), ("created_at", -1)],
            [("status", 1), ("updated_at", 1)],
        ]
