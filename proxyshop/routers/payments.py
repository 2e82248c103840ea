from fastapi import APIRouter, Depends, Header, Request
from pydantic import BaseModel, Field

from proxyshop.core.config import get_settings
from proxyshop.deps import get_current_user, get_ledger, get_store_dep
from proxyshop.domain import Account
from proxyshop.services import payments as payments_service
from proxyshop.services.ledger import LedgerService
from proxyshop.stores.base import Store

router = APIRouter()


class CreatePaymentRequest(BaseModel):
    amount: float = Field(..., gt=0)
    currency: str = "USD"


@router.post("")
async def create_payment(
    body: CreatePaymentRequest,
    request: Request,
    user: Account = Depends(get_current_user),
    ledger: LedgerService = Depends(get_ledger),
):
    """Create a Cryptomus invoice; the frontend redirects to payment_url."""
    callback_url = str(request.url_for("payment_webhook"))
    return await payments_service.create_payment(
        ledger, get_settings(), user.id, body.amount, body.currency, callback_url
    )


@router.post("/webhook", name="payment_webhook")
async def payment_webhook(
    request: Request,
    sign: str | None = Header(None),
    ledger: LedgerService = Depends(get_ledger),
):
    """Cryptomus webhook: paid -> credit balance (idempotent), cancel/fail -> mark failed."""
    body = await request.body()
    await payments_service.handle_webhook(ledger, get_settings(), body, sign)
    return {"status": "ok"}


@router.get("/{payment_id}")
async def payment_status(
    payment_id: str,
    user: Account = Depends(get_current_user),
    store: Store = Depends(get_store_dep),
):
    return {"payment": await payments_service.get_payment_status(store, user.id, payment_id)}
