"""Paid extension of a proxy's local expiry."""

from datetime import timedelta
from decimal import Decimal

from proxyshop.core.catalog import ProxyCatalog
from proxyshop.core.exceptions import NotFoundError, ValidationError
from proxyshop.core.logging import get_logger
from proxyshop.core.money import quantize
from proxyshop.domain import Proxy
from proxyshop.services.ledger import LedgerService
from proxyshop.stores.base import Store

log = get_logger(__name__)

LOCAL_EXTENSION_WARNING = (
    "This is a local extension. The actual proxy may expire based on provider settings."
)


def extension_cost(catalog: ProxyCatalog, proxy_type: str, days: int) -> Decimal:
    info = catalog.proxy_types.get(proxy_type)
    multiplier = info.multiplier if info else Decimal("1")
    return quantize(Decimal(days) * catalog.extension_daily_rate * multiplier)


async def extend_proxy(
    store: Store,
    ledger: LedgerService,
    catalog: ProxyCatalog,
    user_id: str,
    proxy_id: str,
    days: int,
) -> tuple[Proxy, Decimal, str]:
    """Charge for ``days`` more and push ``expires_at`` forward.

    The provider is not told; only the local record changes. If the new expiry
    cannot be stored after the charge went through, the charge is refunded.
    """
    if isinstance(days, bool) or not isinstance(days, int) or not (
        catalog.min_extension_days <= days <= catalog.max_extension_days
    ):
        raise ValidationError(
            f"Days must be between {catalog.min_extension_days} and {catalog.max_extension_days}",
            details={"days": days},
        )
    proxy = await store.proxies.get_for_user(proxy_id, user_id)
    if not proxy:
        raise NotFoundError("Proxy not found")

    cost = extension_cost(catalog, proxy.proxy_type, days)
    await ledger.apply_ledger_mutation(
        user_id,
        -cost,
        "purchase",
        f"{proxy.proxy_type} proxy extension - {days} days for {proxy.ip}:{proxy.port}",
        {"currency": "USD", "proxy_id": proxy.id, "days": days, "proxy_type": proxy.proxy_type},
    )

    extended = proxy.model_copy(update={"expires_at": proxy.expires_at + timedelta(days=days)})
    try:
        extended = await store.proxies.save(extended)
    except Exception:
        log.exception("proxy_extension_save_failed", proxy_id=proxy.id, user_id=user_id)
        await ledger.apply_ledger_mutation(
            user_id,
            cost,
            "refund",
            f"Refund: proxy extension - {days} days",
            {"currency": "USD", "proxy_id": proxy.id, "days": days},
        )
        raise

    log.info("proxy_extended", proxy_id=proxy.id, days=days, cost=str(cost), expires_at=extended.expires_at.isoformat())
    return extended, cost, LOCAL_EXTENSION_WARNING
