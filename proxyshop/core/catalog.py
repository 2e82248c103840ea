"""Immutable proxy catalog: price tables, regions and provider type map.

Built once per process by ``get_catalog()`` and handed to the pricing engine and
the provisioning client by reference.
"""

from decimal import Decimal
from functools import lru_cache

from pydantic import BaseModel, ConfigDict

from proxyshop.core.config import get_settings

SESSION_STICKY = "sticky"
SESSION_ROTATING = "rotating"


class ProviderType(BaseModel):
    model_config = ConfigDict(frozen=True)

    ptype: int
    zone: str


class ProxyTypeInfo(BaseModel):
    model_config = ConfigDict(frozen=True)

    multiplier: Decimal
    description: str
    estimated_speed: str
    reliability: int
    provider: ProviderType


class ProxyCatalog(BaseModel):
    model_config = ConfigDict(frozen=True)

    base_price: Decimal = Decimal("2.5")
    rotating_multiplier: Decimal = Decimal("1.2")
    # (threshold, multiplier); only the highest threshold <= quantity applies
    bulk_discounts: tuple[tuple[int, Decimal], ...] = (
        (100, Decimal("0.8")),
        (50, Decimal("0.9")),
    )
    proxy_types: dict[str, ProxyTypeInfo] = {
        "residential": ProxyTypeInfo(
            multiplier=Decimal("1.0"),
            description="Real residential IP addresses with high anonymity",
            estimated_speed="Medium (20-100ms)",
            reliability=85,
            provider=ProviderType(ptype=1, zone="custom"),
        ),
        "datacenter": ProxyTypeInfo(
            multiplier=Decimal("0.6"),
            description="Fast datacenter proxies with good speed",
            estimated_speed="Very Fast (1-5ms)",
            reliability=90,
            provider=ProviderType(ptype=2, zone="datacenter"),
        ),
        "static_isp": ProxyTypeInfo(
            multiplier=Decimal("1.5"),
            description="Static ISP proxies with consistent IP addresses",
            estimated_speed="Fast (5-20ms)",
            reliability=95,
            provider=ProviderType(ptype=3, zone="isp"),
        ),
        "mobile": ProxyTypeInfo(
            multiplier=Decimal("2.0"),
            description="Mobile carrier proxies with highest anonymity",
            estimated_speed="Variable (50-200ms)",
            reliability=75,
            provider=ProviderType(ptype=4, zone="mobile"),
        ),
    }
    session_types: tuple[str, ...] = (SESSION_STICKY, SESSION_ROTATING)
    protocols: tuple[str, ...] = ("http", "https", "socks5")
    regions: dict[str, str] = {
        "US": "United States",
        "UK": "United Kingdom",
        "CA": "Canada",
        "AU": "Australia",
        "DE": "Germany",
        "FR": "France",
        "JP": "Japan",
        "SG": "Singapore",
        "NL": "Netherlands",
        "IT": "Italy",
        "ES": "Spain",
        "BR": "Brazil",
        "IN": "India",
    }

    max_per_call: int = 100
    max_quote_quantity: int = 1000
    max_purchase_quantity: int = 100
    default_traffic_bytes: int = 1_000_000_000
    default_ttl_days: int = 30

    extension_daily_rate: Decimal = Decimal("1.0")
    min_extension_days: int = 1
    max_extension_days: int = 365

    def region_name(self, code: str) -> str:
        return self.regions.get(code, code)


@lru_cache
def get_catalog() -> ProxyCatalog:
    return ProxyCatalog(default_ttl_days=get_settings().proxy_ttl_days)
