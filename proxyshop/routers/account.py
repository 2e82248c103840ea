from decimal import Decimal

from fastapi import APIRouter, Depends, Query

from proxyshop.core.money import as_float
from proxyshop.deps import get_current_user, get_ledger
from proxyshop.domain import Account
from proxyshop.services.ledger import LedgerService

router = APIRouter()


@router.get("/balance")
async def balance(
    amount: float | None = Query(None, ge=0),
    user: Account = Depends(get_current_user),
    ledger: LedgerService = Depends(get_ledger),
):
    """Current balance; with ``amount``, also whether it covers that amount right now."""
    current = await ledger.get_balance(user.id)
    out = {"balance": as_float(current), "currency": "USD"}
    if amount is not None:
        out["sufficient"] = await ledger.has_sufficient_balance(user.id, Decimal(str(amount)))
    return out
