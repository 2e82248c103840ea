"""Cryptomus top-ups: pending ledger entry, hosted invoice, signed webhook settlement."""

import time
from datetime import timedelta
from decimal import Decimal, InvalidOperation

import httpx
import orjson

from proxyshop.core.config import Settings
from proxyshop.core.exceptions import BadRequestError, NotFoundError, UpstreamError, ValidationError
from proxyshop.core.logging import get_logger
from proxyshop.core.money import as_float, quantize
from proxyshop.core.security import sign_payment_payload, verify_payment_webhook
from proxyshop.domain import utcnow
from proxyshop.services.ledger import LedgerService
from proxyshop.stores.base import Store

log = get_logger(__name__)

MIN_TOPUP = Decimal("1")
PAID_STATUSES = ("paid", "paid_over")
FAILED_STATUSES = ("cancel", "fail")


def _parse_amount(amount) -> Decimal:
    try:
        value = Decimal(str(amount))
    except (InvalidOperation, ValueError):
        raise ValidationError("Valid amount is required (minimum $1)") from None
    if not value.is_finite() or value < MIN_TOPUP:
        raise ValidationError("Valid amount is required (minimum $1)", details={"amount": str(amount)})
    return quantize(value)


async def _post_invoice(settings: Settings, body: bytes, http_client: httpx.AsyncClient | None) -> httpx.Response:
    url = f"{settings.cryptomus_base_url.rstrip('/')}/v1/payment"
    headers = {
        "Content-Type": "application/json",
        "merchant": settings.cryptomus_merchant_id,
        "sign": sign_payment_payload(body, settings.cryptomus_api_key),
    }
    if http_client is not None:
        return await http_client.post(url, content=body, headers=headers, timeout=settings.payment_timeout_seconds)
    async with httpx.AsyncClient(timeout=settings.payment_timeout_seconds) as client:
        return await client.post(url, content=body, headers=headers)


async def create_payment(
    ledger: LedgerService,
    settings: Settings,
    user_id: str,
    amount,
    currency: str = "USD",
    callback_url: str = "",
    http_client: httpx.AsyncClient | None = None,
) -> dict:
    """Open a pending top-up and return the gateway's hosted payment URL."""
    value = _parse_amount(amount)
    if not settings.payments_configured:
        raise BadRequestError("Payments not configured")
    currency = (currency or "USD").upper()
    payment_id = f"topup_{user_id}_{int(time.time() * 1000)}"

    await ledger.open_pending(
        user_id,
        value,
        "topup",
        f"Balance top-up of {value} {currency}",
        payment_id,
        {"currency": currency, "payment_method": "cryptomus"},
    )

    body = orjson.dumps(
        {
            "amount": str(value),
            "currency": currency,
            "order_id": payment_id,
            "url_callback": callback_url,
            "url_return": f"{settings.frontend_url}/dashboard?payment=success",
            "url_cancel": f"{settings.frontend_url}/dashboard?payment=cancel",
            "is_payment_multiple": False,
            "lifetime": settings.payment_lifetime_seconds,
        }
    )
    try:
        response = await _post_invoice(settings, body, http_client)
        result = response.json()
    except (httpx.HTTPError, ValueError) as e:
        await ledger.fail_pending(payment_id)
        log.error("payment_gateway_error", payment_id=payment_id, error=str(e))
        raise UpstreamError("Payment service error", upstream_message=str(e)) from e

    if not isinstance(result, dict) or result.get("state") != 0:
        await ledger.fail_pending(payment_id)
        message = (result.get("message") if isinstance(result, dict) else None) or "Payment creation failed"
        log.warning("payment_creation_rejected", payment_id=payment_id, upstream_status=response.status_code)
        raise UpstreamError(message, upstream_status=response.status_code, upstream_message=message)

    invoice = result.get("result")
    payment_url = invoice.get("url") if isinstance(invoice, dict) else None
    if not payment_url:
        await ledger.fail_pending(payment_id)
        log.warning("payment_creation_missing_url", payment_id=payment_id, upstream_status=response.status_code)
        raise UpstreamError("Payment service returned no payment URL", upstream_status=response.status_code)

    log.info("payment_created", payment_id=payment_id, user_id=user_id, amount=str(value), currency=currency)
    return {
        "payment_url": payment_url,
        "payment_id": payment_id,
        "amount": as_float(value),
        "currency": currency,
        "expires_at": utcnow() + timedelta(seconds=settings.payment_lifetime_seconds),
    }


async def handle_webhook(ledger: LedgerService, settings: Settings, payload: bytes, signature: str | None) -> None:
    """Verify the gateway signature over the raw body, then settle or close the top-up."""
    if not verify_payment_webhook(payload, signature, settings.cryptomus_api_key):
        log.warning("payment_webhook_invalid_signature")
        raise BadRequestError("Invalid signature")
    try:
        data = orjson.loads(payload)
    except orjson.JSONDecodeError:
        raise BadRequestError("Invalid webhook payload") from None
    payment_id = data.get("order_id")
    status = data.get("status")
    if not payment_id:
        raise BadRequestError("Invalid webhook payload")

    entry = await ledger.store.ledger.get_by_payment_id(payment_id)
    if entry is None:
        log.error("payment_webhook_unknown_payment", payment_id=payment_id)
        raise NotFoundError("Transaction not found")

    if status in PAID_STATUSES:
        await ledger.settle_pending(
            payment_id,
            {"gateway_status": status, "paid_amount": data.get("amount"), "paid_currency": data.get("currency")},
        )
    elif status in FAILED_STATUSES:
        await ledger.fail_pending(payment_id, "failed")
    else:
        log.info("payment_webhook_ignored", payment_id=payment_id, status=status)


async def get_payment_status(store: Store, user_id: str, payment_id: str) -> dict:
    entry = await store.ledger.get_by_payment_id(payment_id)
    if entry is None or entry.user_id != user_id:
        raise NotFoundError("Payment not found")
    return {
        "payment_id": payment_id,
        "status": entry.status,
        "amount": as_float(entry.amount),
        "currency": entry.metadata.get("currency", "USD"),
        "created_at": entry.created_at,
    }
