from typing import Literal

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field

from proxyshop.core.catalog import ProxyCatalog, get_catalog
from proxyshop.core.money import as_float
from proxyshop.deps import get_current_user, get_ledger, get_purchase_workflow, get_store_dep
from proxyshop.domain import Account, Proxy
from proxyshop.services import extensions as extensions_service
from proxyshop.services.ledger import LedgerService
from proxyshop.services.pricing import PricingEngine
from proxyshop.stores.base import Store
from proxyshop.workflows import PurchaseRequest, PurchaseWorkflow

router = APIRouter()


class PurchaseBody(BaseModel):
    region: str
    quantity: int = Field(..., ge=1)
    session_type: str = Field("sticky", alias="sessionType")
    protocol: str = "http"
    proxy_type: str = Field("residential", alias="proxyType")

    model_config = {"populate_by_name": True}


ProxyFormat = Literal["full", "ip:port"]


class ExtendBody(BaseModel):
    days: int = 30


def proxy_out(proxy: Proxy, fmt: ProxyFormat = "full") -> dict:
    return {
        "id": proxy.id,
        "ip": proxy.ip,
        "port": proxy.port,
        "username": proxy.username,
        "password": proxy.password,
        "country": proxy.country,
        "sessionType": proxy.session_type,
        "proxyType": proxy.proxy_type,
        "protocol": proxy.protocol,
        "status": proxy.status,
        "expiresAt": proxy.expires_at.isoformat(),
        "trafficLeft": proxy.traffic_left,
        "proxy": proxy.formatted(fmt),
        "isExpired": proxy.is_expired(),
    }


@router.get("/locations")
async def locations(catalog: ProxyCatalog = Depends(get_catalog)):
    """Supported regions, session types and proxy types."""
    return {
        "locations": [{"code": code, "name": name} for code, name in catalog.regions.items()],
        "sessionTypes": list(catalog.session_types),
        "protocols": list(catalog.protocols),
        "proxyTypes": [
            {
                "type": name,
                "description": info.description,
                "priceMultiplier": float(info.multiplier),
                "estimatedSpeed": info.estimated_speed,
                "reliability": info.reliability,
            }
            for name, info in catalog.proxy_types.items()
        ],
    }


@router.get("/pricing")
async def pricing(
    quantity: int = Query(1),
    region: str = Query("US"),
    session_type: str = Query("sticky", alias="sessionType"),
    proxy_type: str = Query("residential", alias="proxyType"),
    catalog: ProxyCatalog = Depends(get_catalog),
):
    quote = PricingEngine(catalog).calculate(quantity, region, session_type, proxy_type)
    info = catalog.proxy_types[quote.proxy_type]
    return {
        "pricing": quote.as_dict(),
        "proxyTypeInfo": {
            "description": info.description,
            "estimatedSpeed": info.estimated_speed,
            "reliability": info.reliability,
        },
    }


@router.post("/purchase")
async def purchase(
    body: PurchaseBody,
    fmt: ProxyFormat = Query("full", alias="format"),
    user: Account = Depends(get_current_user),
    workflow: PurchaseWorkflow = Depends(get_purchase_workflow),
):
    """Quote, provision and charge in one call."""
    result = await workflow.run(
        user.id,
        PurchaseRequest(
            region=body.region,
            quantity=body.quantity,
            session_type=body.session_type,
            protocol=body.protocol,
            proxy_type=body.proxy_type,
        ),
    )
    order = result.order
    return {
        "order": {
            "id": order.id,
            "orderNumber": order.order_number,
            "status": order.status,
            "paymentStatus": order.payment_status,
            "totalAmount": as_float(order.total_amount),
            "pricing": order.details.pricing,
            "createdAt": order.created_at.isoformat(),
        },
        "proxies": [proxy_out(p, fmt) for p in result.proxies],
    }


@router.post("/extend/{proxy_id}")
async def extend(
    proxy_id: str,
    body: ExtendBody,
    user: Account = Depends(get_current_user),
    store: Store = Depends(get_store_dep),
    ledger: LedgerService = Depends(get_ledger),
    catalog: ProxyCatalog = Depends(get_catalog),
):
    proxy, cost, warning = await extensions_service.extend_proxy(
        store, ledger, catalog, user.id, proxy_id, body.days
    )
    return {
        "message": f"{proxy.proxy_type} proxy extended for {body.days} days (local extension only)",
        "proxy": proxy_out(proxy),
        "cost": as_float(cost),
        "warning": warning,
    }
