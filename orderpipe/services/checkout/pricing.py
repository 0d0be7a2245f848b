"""Pluggable tax and shipping policy for order intents."""

from typing import Protocol


class PricingPolicy(Protocol):
    def tax_cents(self, subtotal_cents: int) -> int: ...

    def shipping_cents(self, subtotal_cents: int, has_physical_items: bool, address: dict | None) -> int: ...


class FlatRatePricing:
    """Basis-point tax on the subtotal plus one flat shipping fee for product lines."""

    def __init__(self, tax_rate_bps: int = 0, shipping_flat_cents: int = 500) -> None:
        self.tax_rate_bps = tax_rate_bps
        self.shipping_flat_cents = shipping_flat_cents

    def tax_cents(self, subtotal_cents: int) -> int:
        return subtotal_cents * self.tax_rate_bps // 10_000

    def shipping_cents(self, subtotal_cents: int, has_physical_items: bool, address: dict | None) -> int:
        # Bookings are services; nothing ships.
        return self.shipping_flat_cents if has_physical_items else 0
