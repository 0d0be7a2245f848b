"""eSewa ePay v2 adapter.

Signing: HMAC-SHA256 over `total_amount=..,transaction_uuid=..,product_code=..`
(fixed order, comma-joined), base64 encoded. The buyer returns with a base64
JSON `data` blob signed the same way over its own `signed_field_names`.
Verification always re-asks the status endpoint.
"""

import base64
import binascii
import hashlib
import hmac
import json
from typing import Mapping
from uuid import uuid4

from orderpipe.common.config import settings
from orderpipe.common.errors import GatewayError, InvalidSignature, ValidationFailed
from orderpipe.common.money import format_major, to_minor_units
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

SIGNED_FIELD_NAMES = "total_amount,transaction_uuid,product_code"

_STATUS_MAP = {"COMPLETE": COMPLETE, "PENDING": PENDING, "AMBIGUOUS": PENDING}


def esewa_signature(fields: Mapping[str, str], signed_field_names: str, secret_key: str) -> str:
    """Base64 HMAC-SHA256 of `name=value` pairs in `signed_field_names` order."""

    message = ",".join(f"{name}={fields[name]}" for name in signed_field_names.split(","))
    digest = hmac.new(secret_key.encode(), message.encode(), hashlib.sha256).digest()
    return base64.b64encode(digest).decode()


class EsewaAdapter(GatewayAdapter):
    name = "esewa"
    intent_lookup = BY_EXTERNAL_ID

    def __init__(self, client=None, timeout=None, merchant_code=None, secret_key=None, test_mode=None) -> None:
        super().__init__(client, timeout)
        self.merchant_code = merchant_code or settings.esewa_merchant_code
        self._secret_key = secret_key if secret_key is not None else settings.esewa_secret_key.get_secret_value()
        self.test_mode = settings.esewa_test_mode if test_mode is None else test_mode

    @property
    def base_url(self) -> str:
        return "https://rc-epay.esewa.com.np" if self.test_mode else "https://epay.esewa.com.np"

    def build_signed_redirect(
        self, amount_cents: int, merchant_txn_id: str, context: CheckoutContext | None = None
    ) -> RedirectInstruction:
        """Produce the auto-submit form; `transaction_uuid` is fresh per attempt."""

        transaction_uuid = str(uuid4())
        total = format_major(amount_cents)
        fields = {
            "amount": total,
            "tax_amount": "0",
            "total_amount": total,
            "transaction_uuid": transaction_uuid,
            "product_code": self.merchant_code,
            "product_service_charge": "0",
            "product_delivery_charge": "0",
            "success_url": self.callback_url(),
            "failure_url": f"{settings.public_base_url.rstrip('/')}/checkout?payment_failed=true",
            "signed_field_names": SIGNED_FIELD_NAMES,
        }
        fields["signature"] = esewa_signature(fields, SIGNED_FIELD_NAMES, self._secret_key)
        return RedirectInstruction(
            payment_url=f"{self.base_url}/api/epay/main/v2/form",
            form_fields=fields,
            external_transaction_id=transaction_uuid,
        )

    def decode_callback(self, data: str) -> dict:
        """Decode and authenticate the `data` blob eSewa appends to `success_url`."""

        try:
            payload = json.loads(base64.b64decode(data, validate=False))
        except (binascii.Error, ValueError) as exc:
            raise ValidationFailed("Malformed eSewa callback data") from exc
        if not isinstance(payload, dict):
            raise ValidationFailed("Malformed eSewa callback data")
        signed_field_names = payload.get("signed_field_names")
        signature = payload.get("signature")
        if not signed_field_names or not signature:
            raise InvalidSignature()
        try:
            expected = esewa_signature(payload, signed_field_names, self._secret_key)
        except KeyError as exc:
            raise InvalidSignature() from exc
        if not hmac.compare_digest(expected, str(signature)):
            raise InvalidSignature()
        if not payload.get("transaction_uuid"):
            raise ValidationFailed("Missing transaction_uuid")
        return payload

    def parse_notification(self, params: Mapping[str, str]) -> GatewayNotification:
        data = params.get("data")
        if not data:
            raise ValidationFailed("Missing data parameter")
        payload = self.decode_callback(data)
        txn = str(payload["transaction_uuid"])
        claimed = {key: value for key, value in payload.items() if key != "signature"}
        return GatewayNotification(
            intent_key=BY_EXTERNAL_ID,
            intent_ref=txn,
            verification_ref=txn,
            external_transaction_id=txn,
            claimed=claimed,
        )

    def parse_reference(self, transaction_ref: str, callback_data: str | None = None) -> GatewayNotification:
        claimed = {}
        if callback_data:
            payload = self.decode_callback(callback_data)
            if str(payload["transaction_uuid"]) != transaction_ref:
                raise InvalidSignature("Callback data does not match transaction reference")
            claimed = {key: value for key, value in payload.items() if key != "signature"}
        return GatewayNotification(
            intent_key=BY_EXTERNAL_ID,
            intent_ref=transaction_ref,
            verification_ref=transaction_ref,
            external_transaction_id=transaction_ref,
            claimed=claimed,
        )

    def verify(self, transaction_ref: str, expected_amount_cents: int) -> GatewayVerification:
        body = self._post_json(
            "status",
            f"{self.base_url}/api/epay/transaction/status/",
            json={
                "product_code": self.merchant_code,
                "total_amount": format_major(expected_amount_cents),
                "transaction_uuid": transaction_ref,
            },
            auth=(self.merchant_code, self._secret_key),
        )
        gateway_status = str(body.get("status") or "").upper()
        if not gateway_status:
            raise GatewayError("eSewa status response missing status")
        confirmed = body.get("total_amount")
        return GatewayVerification(
            status=_STATUS_MAP.get(gateway_status, FAILED),
            confirmed_amount_cents=to_minor_units(confirmed) if confirmed is not None else None,
            provider_txn_id=body.get("ref_id") or transaction_ref,
            raw=body,
        )
