"""Operator queue for money/resource inconsistencies that are not auto-corrected."""

from datetime import datetime
from typing import Literal

from beanie import Document, PydanticObjectId
from pydantic import Field

from proxyshop.domain import CaseKind


class ReconciliationCaseDocument(Document):
    kind: CaseKind
    order_id: PydanticObjectId
    user_id: PydanticObjectId
    amount_cents: int = 0
    proxy_ids: list[str] = Field(default_factory=list)
    reason: str = ""
    status: Literal["open", "resolved"] = "open"
    created_at: datetime = Field(default_factory=datetime.utcnow)

    class Settings:
        name = "reconciliation_cases"
        indexes = [[("status", 1), ("created_at", -1)], [("order_id", 1)]]
