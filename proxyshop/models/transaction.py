from datetime import datetime
from typing import Any

import pymongo
from beanie import Document, PydanticObjectId
from pydantic import Field

from proxyshop.domain import LedgerKind, LedgerStatus


class TransactionDocument(Document):
    """Ledger entry; one per balance mutation (pending top-ups have none yet)."""
    user_id: PydanticObjectId
    amount_cents: int  # positive = credit, negative = debit
    kind: LedgerKind
    status: LedgerStatus = "pending"
    description: str
    payment_id: str | None = None
    balance_after_cents: int | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=datetime.utcnow)
    updated_at: datetime = Field(default_factory=datetime.utcnow)

    class Settings:
        name = "transactions"
        indexes = [
            [("user_id", 1), ("created_at", -1)],
            pymongo.IndexModel(
                [("payment_id", pymongo.ASCENDING)],
                unique=True,
                partialFilterExpression={"payment_id": {"$type": "string"}},
            ),
            [("status", 1)],
        ]
