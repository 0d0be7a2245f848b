"""Nepal Payment (NPX / OnePG) adapter.

Two-step flow: `GetProcessId` issues a token for the merchant transaction,
then the buyer is posted to the gateway with it. The gateway assigns its own
transaction id only after redirect, so intents are found by our
`payment_intent_id` (sent as `MerchantTxnId`) rather than an external id.

Signing sorts payload keys, concatenates the values only, and hex-encodes an
HMAC-SHA512 in lowercase. Calls also carry HTTP Basic credentials.
"""

import hashlib
import hmac
from typing import Mapping

from orderpipe.common.config import settings
from orderpipe.common.errors import GatewayError, ValidationFailed
from orderpipe.common.money import format_major, to_minor_units
from orderpipe.services.provider_adapter.base import (
    BY_INTENT_ID,
    COMPLETE,
    FAILED,
    PENDING,
    CheckoutContext,
    GatewayAdapter,
    GatewayNotification,
    GatewayVerification,
    RedirectInstruction,
)

_STATUS_MAP = {"Success": COMPLETE, "Pending": PENDING, "Fail": FAILED}


def npx_signature(payload: Mapping[str, str], security_key: str) -> str:
    message = "".join(str(payload[key]) for key in sorted(payload))
    return hmac.new(security_key.encode(), message.encode(), hashlib.sha512).hexdigest().lower()


def _error_message(body: dict) -> str:
    errors = body.get("errors") or []
    if errors and isinstance(errors[0], dict) and errors[0].get("error_message"):
        return str(errors[0]["error_message"])
    return str(body.get("message") or "Unknown error")


class NpxAdapter(GatewayAdapter):
    name = "npx"
    intent_lookup = BY_INTENT_ID

    def __init__(
        self,
        client=None,
        timeout=None,
        merchant_id=None,
        api_username=None,
        api_password=None,
        security_key=None,
        test_mode=None,
    ) -> None:
        super().__init__(client, timeout)
        self.merchant_id = merchant_id or settings.npx_merchant_id
        self.api_username = api_username or settings.npx_api_username
        self._api_password = api_password if api_password is not None else settings.npx_api_password.get_secret_value()
        self._security_key = (
            security_key if security_key is not None else settings.npx_security_key.get_secret_value()
        )
        self.test_mode = settings.npx_test_mode if test_mode is None else test_mode

    @property
    def api_url(self) -> str:
        return "https://apisandbox.nepalpayment.com" if self.test_mode else "https://apigateway.nepalpayment.com"

    @property
    def gateway_url(self) -> str:
        if self.test_mode:
            return "https://gatewaysandbox.nepalpayment.com/Payment/Index"
        return "https://gateway.nepalpayment.com/payment/index"

    def _signed(self, payload: dict) -> dict:
        return {**payload, "Signature": npx_signature(payload, self._security_key)}

    def _call(self, operation: str, payload: dict) -> dict:
        body = self._post_json(
            operation,
            f"{self.api_url}/{operation}",
            json=self._signed(payload),
            auth=(self.api_username, self._api_password),
        )
        if str(body.get("code")) != "0" or not isinstance(body.get("data"), dict):
            raise GatewayError(f"NPX {operation} error: {_error_message(body)}")
        return body

    def get_process_id(self, amount_cents: int, merchant_txn_id: str) -> str:
        body = self._call(
            "GetProcessId",
            {
                "Amount": format_major(amount_cents),
                "MerchantId": self.merchant_id,
                "MerchantName": self.api_username,
                "MerchantTxnId": merchant_txn_id,
            },
        )
        process_id = body["data"].get("ProcessId")
        if not process_id:
            raise GatewayError("NPX GetProcessId response missing ProcessId")
        return str(process_id)

    def build_signed_redirect(
        self, amount_cents: int, merchant_txn_id: str, context: CheckoutContext | None = None
    ) -> RedirectInstruction:
        context = context or CheckoutContext()
        process_id = self.get_process_id(amount_cents, merchant_txn_id)
        fields = {
            "MerchantId": self.merchant_id,
            "MerchantName": self.api_username,
            "Amount": format_major(amount_cents),
            "MerchantTxnId": merchant_txn_id,
            "ProcessId": process_id,
            "ResponseUrl": self.callback_url(),
            "TransactionRemarks": context.order_name,
            # Empty shows every instrument to the buyer.
            "InstrumentCode": "",
        }
        # The gateway transaction id is not known until notification.
        return RedirectInstruction(payment_url=self.gateway_url, form_fields=fields, external_transaction_id=None)

    def parse_notification(self, params: Mapping[str, str]) -> GatewayNotification:
        merchant_txn_id = params.get("MerchantTxnId")
        gateway_txn_id = params.get("GatewayTxnId")
        if not merchant_txn_id or not gateway_txn_id:
            raise ValidationFailed("Missing MerchantTxnId or GatewayTxnId")
        return GatewayNotification(
            intent_key=BY_INTENT_ID,
            intent_ref=merchant_txn_id,
            verification_ref=merchant_txn_id,
            external_transaction_id=gateway_txn_id,
            claimed={"MerchantTxnId": merchant_txn_id, "GatewayTxnId": gateway_txn_id},
        )

    def parse_reference(self, transaction_ref: str, callback_data: str | None = None) -> GatewayNotification:
        return GatewayNotification(
            intent_key=BY_INTENT_ID,
            intent_ref=transaction_ref,
            verification_ref=transaction_ref,
            external_transaction_id=None,
        )

    def verify(self, transaction_ref: str, expected_amount_cents: int) -> GatewayVerification:
        body = self._call(
            "CheckTransactionStatus",
            {
                "MerchantId": self.merchant_id,
                "MerchantName": self.api_username,
                "MerchantTxnId": transaction_ref,
            },
        )
        data = body["data"]
        amount = data.get("Amount")
        return GatewayVerification(
            status=_STATUS_MAP.get(str(data.get("Status")), FAILED),
            confirmed_amount_cents=to_minor_units(amount) if amount not in (None, "") else None,
            provider_txn_id=data.get("GatewayReferenceNo"),
            raw=body,
        )
