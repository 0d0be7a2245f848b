"""Pay-on-delivery: no gateway, no redirect, nothing to verify."""

from orderpipe.common.errors import UnsupportedPaymentMethod
from orderpipe.services.provider_adapter.base import (
    CheckoutContext,
    GatewayAdapter,
    GatewayVerification,
    RedirectInstruction,
)


class CashOnDeliveryAdapter(GatewayAdapter):
    name = "cod"
    redirects = False

    def build_signed_redirect(
        self, amount_cents: int, merchant_txn_id: str, context: CheckoutContext | None = None
    ) -> RedirectInstruction:
        return RedirectInstruction(payment_url=None, form_fields=None, external_transaction_id=merchant_txn_id)

    def verify(self, transaction_ref: str, expected_amount_cents: int) -> GatewayVerification:
        raise UnsupportedPaymentMethod("Unsupported provider: cod")
