"""Khalti ePayment (KPG-2) adapter.

Token based: initiation exchanges the server key for a `pidx` and a hosted
payment URL. Amounts are exchanged in paisa, so no major-unit conversion
happens here.
"""

from typing import Mapping

from orderpipe.common.config import settings
from orderpipe.common.errors import GatewayError, ValidationFailed
from orderpipe.services.provider_adapter.base import (
    BY_EXTERNAL_ID,
    COMPLETE,
    FAILED,
    PENDING,
    CheckoutContext,
    GatewayAdapter,
    GatewayNotification,
    GatewayVerification,
    RedirectInstruction,
)

_STATUS_MAP = {"Completed": COMPLETE, "Pending": PENDING, "Initiated": PENDING}
# Query fields Khalti appends to `return_url`; stored for audit only.
_CALLBACK_FIELDS = ("pidx", "status", "transaction_id", "tidx", "amount", "total_amount", "purchase_order_id")


class KhaltiAdapter(GatewayAdapter):
    name = "khalti"
    intent_lookup = BY_EXTERNAL_ID

    def __init__(self, client=None, timeout=None, secret_key=None, test_mode=None) -> None:
        super().__init__(client, timeout)
        self._secret_key = secret_key if secret_key is not None else settings.khalti_secret_key.get_secret_value()
        self.test_mode = settings.khalti_test_mode if test_mode is None else test_mode

    @property
    def base_url(self) -> str:
        return "https://dev.khalti.com/api/v2" if self.test_mode else "https://khalti.com/api/v2"

    def _headers(self) -> dict:
        return {"Authorization": f"Key {self._secret_key}"}

    def build_signed_redirect(
        self, amount_cents: int, merchant_txn_id: str, context: CheckoutContext | None = None
    ) -> RedirectInstruction:
        context = context or CheckoutContext()
        customer_info = {
            key: value
            for key, value in {
                "name": context.customer_name,
                "email": context.customer_email,
                "phone": context.customer_phone,
            }.items()
            if value
        }
        request = {
            "return_url": self.callback_url(),
            "website_url": settings.public_base_url,
            "amount": int(amount_cents),
            "purchase_order_id": merchant_txn_id,
            "purchase_order_name": context.order_name,
        }
        if customer_info:
            request["customer_info"] = customer_info
        body = self._post_json("initiate", f"{self.base_url}/epayment/initiate/", json=request, headers=self._headers())
        pidx = body.get("pidx")
        payment_url = body.get("payment_url")
        if not pidx or not payment_url:
            raise GatewayError("Khalti initiate response missing pidx or payment_url")
        return RedirectInstruction(payment_url=payment_url, form_fields=None, external_transaction_id=str(pidx))

    def parse_notification(self, params: Mapping[str, str]) -> GatewayNotification:
        pidx = params.get("pidx")
        if not pidx:
            raise ValidationFailed("Missing pidx parameter")
        claimed = {key: params[key] for key in _CALLBACK_FIELDS if key in params}
        return GatewayNotification(
            intent_key=BY_EXTERNAL_ID,
            intent_ref=pidx,
            verification_ref=pidx,
            external_transaction_id=pidx,
            claimed=claimed,
        )

    def parse_reference(self, transaction_ref: str, callback_data: str | None = None) -> GatewayNotification:
        return GatewayNotification(
            intent_key=BY_EXTERNAL_ID,
            intent_ref=transaction_ref,
            verification_ref=transaction_ref,
            external_transaction_id=transaction_ref,
        )

    def verify(self, transaction_ref: str, expected_amount_cents: int) -> GatewayVerification:
        body = self._post_json(
            "lookup",
            f"{self.base_url}/epayment/lookup/",
            json={"pidx": transaction_ref},
            headers=self._headers(),
        )
        gateway_status = body.get("status")
        if not gateway_status:
            raise GatewayError("Khalti lookup response missing status")
        total_amount = body.get("total_amount")
        try:
            confirmed = int(total_amount) if total_amount is not None else None
        except (TypeError, ValueError) as exc:
            raise GatewayError("Khalti lookup returned a non-integer amount") from exc
        return GatewayVerification(
            status=_STATUS_MAP.get(gateway_status, FAILED),
            confirmed_amount_cents=confirmed,
            provider_txn_id=body.get("transaction_id"),
            raw=body,
        )
