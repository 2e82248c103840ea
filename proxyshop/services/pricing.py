"""Proxy pricing: type and session multipliers plus a single bulk tier."""

from decimal import Decimal

from pydantic import BaseModel

from proxyshop.core.catalog import SESSION_ROTATING, ProxyCatalog
from proxyshop.core.exceptions import ValidationError
from proxyshop.core.money import as_float, quantize


class Quote(BaseModel):
    price_per_proxy: Decimal
    total_price: Decimal
    quantity: int
    region: str
    session_type: str
    proxy_type: str
    discount_applied: bool
    discount_multiplier: Decimal
    type_multiplier: Decimal
    session_multiplier: Decimal

    def as_dict(self) -> dict:
        return {
            "pricePerProxy": as_float(self.price_per_proxy),
            "totalPrice": as_float(self.total_price),
            "quantity": self.quantity,
            "region": self.region,
            "sessionType": self.session_type,
            "proxyType": self.proxy_type,
            "discountApplied": self.discount_applied,
            "discountMultiplier": float(self.discount_multiplier),
            "typeMultiplier": float(self.type_multiplier),
            "sessionMultiplier": float(self.session_multiplier),
        }


class PricingEngine:
    def __init__(self, catalog: ProxyCatalog):
        self.catalog = catalog

    def bulk_multiplier(self, quantity: int) -> Decimal:
        """Multiplier of the highest tier whose threshold is <= quantity (1 if none)."""
        applicable = [(threshold, m) for threshold, m in self.catalog.bulk_discounts if quantity >= threshold]
        if not applicable:
            return Decimal("1")
        return max(applicable, key=lambda tier: tier[0])[1]

    def calculate(
        self,
        quantity: int,
        region: str = "US",
        session_type: str = "sticky",
        proxy_type: str = "residential",
    ) -> Quote:
        if isinstance(quantity, bool) or not isinstance(quantity, int) or quantity < 1:
            raise ValidationError("Quantity must be a positive integer", details={"quantity": quantity})
        if quantity > self.catalog.max_quote_quantity:
            raise ValidationError(
                f"Quantity must be between 1 and {self.catalog.max_quote_quantity}",
                details={"quantity": quantity},
            )
        session = (session_type or "").lower()
        if session not in self.catalog.session_types:
            raise ValidationError(
                f"Invalid session type: {session_type}",
                details={"supported": list(self.catalog.session_types)},
            )
        ptype = (proxy_type or "").lower()
        type_info = self.catalog.proxy_types.get(ptype)
        if type_info is None:
            raise ValidationError(
                f"Unsupported proxy type: {proxy_type}",
                details={"supported": list(self.catalog.proxy_types)},
            )

        session_multiplier = self.catalog.rotating_multiplier if session == SESSION_ROTATING else Decimal("1")
        discount = self.bulk_multiplier(quantity)
        # Exact Decimal arithmetic; the only rounding happens on the two outputs.
        unit = self.catalog.base_price * type_info.multiplier * session_multiplier * discount
        total = unit * quantity
        return Quote(
            price_per_proxy=quantize(unit),
            total_price=quantize(total),
            quantity=quantity,
            region=(region or "").upper(),
            session_type=session,
            proxy_type=ptype,
            discount_applied=discount != Decimal("1"),
            discount_multiplier=discount,
            type_multiplier=type_info.multiplier,
            session_multiplier=session_multiplier,
        )
