"""Lookup of gateway adapters by provider key."""

from orderpipe.common.errors import UnsupportedPaymentMethod
from orderpipe.services.provider_adapter.base import GatewayAdapter
from orderpipe.services.provider_adapter.cod import CashOnDeliveryAdapter
from orderpipe.services.provider_adapter.esewa import EsewaAdapter
from orderpipe.services.provider_adapter.khalti import KhaltiAdapter
from orderpipe.services.provider_adapter.npx import NpxAdapter

VERIFIABLE_PROVIDERS = ("esewa", "khalti", "npx")


class AdapterRegistry:
    """Holds one adapter instance per provider; tests inject their own."""

    def __init__(self, adapters: dict[str, GatewayAdapter] | None = None) -> None:
        self._adapters = adapters

    def _all(self) -> dict[str, GatewayAdapter]:
        if self._adapters is None:
            self._adapters = {
                "esewa": EsewaAdapter(),
                "khalti": KhaltiAdapter(),
                "npx": NpxAdapter(),
                "cod": CashOnDeliveryAdapter(),
            }
        return self._adapters

    def get(self, provider: str) -> GatewayAdapter:
        adapter = self._all().get(provider)
        if adapter is None:
            raise UnsupportedPaymentMethod(f"Unsupported payment method: {provider}")
        return adapter

    def verifier(self, provider: str) -> GatewayAdapter:
        if provider not in VERIFIABLE_PROVIDERS:
            raise UnsupportedPaymentMethod(f"Unsupported provider: {provider}")
        return self.get(provider)
