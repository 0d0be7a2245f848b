"""Shared adapter interface and HTTP plumbing for payment gateways.

Adapters turn gateway-specific protocols into three plain results:
`RedirectInstruction` (where to send the buyer), `GatewayNotification` (what
an inbound notification or client reference points at) and
`GatewayVerification` (what the gateway says server-to-server). Network and
parsing failures are raised as `GatewayTimeout`/`GatewayError` so no `httpx`
exception escapes an adapter.
"""

from dataclasses import dataclass, field
from time import perf_counter
from typing import Any, Mapping

import httpx

from orderpipe.common.config import settings
from orderpipe.common.errors import GatewayError, GatewayTimeout
from orderpipe.common.logging import logger
from orderpipe.common.metrics import gateway_call_seconds, gateway_errors_total
from orderpipe.common.tracing import tracer

COMPLETE = "complete"
PENDING = "pending"
FAILED = "failed"

# How an adapter's notifications locate their payment intent.
BY_EXTERNAL_ID = "external_transaction_id"
BY_INTENT_ID = "payment_intent_id"


@dataclass
class RedirectInstruction:
    """Where the buyer goes next. `form_fields` set means an auto-submitted POST form."""

    payment_url: str | None
    form_fields: dict[str, str] | None = None
    external_transaction_id: str | None = None


@dataclass
class GatewayNotification:
    """Parsed push/pull input. `claimed` fields are audit-only, never trusted."""

    intent_key: str
    intent_ref: str
    verification_ref: str
    external_transaction_id: str | None = None
    claimed: dict[str, Any] = field(default_factory=dict)


@dataclass
class GatewayVerification:
    status: str
    confirmed_amount_cents: int | None
    provider_txn_id: str | None
    raw: dict[str, Any] = field(default_factory=dict)


@dataclass
class CheckoutContext:
    """Buyer-facing details some gateways require at initiation."""

    order_name: str = "Order"
    customer_name: str | None = None
    customer_email: str | None = None
    customer_phone: str | None = None


class GatewayAdapter:
    """Base class for a gateway codec; subclasses set `name` and `intent_lookup`."""

    name = ""
    intent_lookup = BY_EXTERNAL_ID
    redirects = True

    def __init__(self, client: httpx.Client | None = None, timeout: float | None = None) -> None:
        self.timeout = settings.gateway_timeout_seconds if timeout is None else timeout
        self._client = client

    @property
    def client(self) -> httpx.Client:
        if self._client is None:
            self._client = httpx.Client(timeout=self.timeout)
        return self._client

    def callback_url(self, path: str = "/payment/callback") -> str:
        return f"{settings.public_base_url.rstrip('/')}{path}?provider={self.name}"

    def build_signed_redirect(
        self, amount_cents: int, merchant_txn_id: str, context: CheckoutContext | None = None
    ) -> RedirectInstruction:
        raise NotImplementedError

    def verify(self, transaction_ref: str, expected_amount_cents: int) -> GatewayVerification:
        raise NotImplementedError

    def parse_notification(self, params: Mapping[str, str]) -> GatewayNotification:
        raise NotImplementedError

    def parse_reference(self, transaction_ref: str, callback_data: str | None = None) -> GatewayNotification:
        raise NotImplementedError

    def _post_json(self, operation: str, url: str, *, json: dict, headers: dict | None = None, auth=None) -> dict:
        """POST and return a JSON object body, mapping every failure to a gateway error."""

        start = perf_counter()
        try:
            with tracer.start_as_current_span(f"gateway.{self.name}.{operation}") as span:
                span.set_attribute("payment.provider", self.name)
                response = self.client.post(
                    url,
                    json=json,
                    headers={"Accept": "application/json", **(headers or {})},
                    auth=auth,
                    timeout=self.timeout,
                )
                span.set_attribute("http.status_code", response.status_code)
        except httpx.TimeoutException as exc:
            self._record_error(operation, "timeout")
            logger.warning("gateway timeout provider=%s operation=%s", self.name, operation)
            raise GatewayTimeout(f"{self.name} {operation} timed out") from exc
        except httpx.HTTPError as exc:
            self._record_error(operation, "network")
            logger.warning("gateway network error provider=%s operation=%s error=%s", self.name, operation, exc)
            raise GatewayError(f"{self.name} {operation} network error") from exc
        finally:
            gateway_call_seconds.labels(provider=self.name, operation=operation).observe(
                max(0.0, perf_counter() - start)
            )

        if response.status_code >= 400:
            self._record_error(operation, f"http_{response.status_code}")
            logger.warning(
                "gateway rejected call provider=%s operation=%s status_code=%s",
                self.name,
                operation,
                response.status_code,
            )
            raise GatewayError(f"{self.name} {operation} returned status {response.status_code}")
        if "application/json" not in response.headers.get("content-type", ""):
            self._record_error(operation, "content_type")
            raise GatewayError(f"Invalid response format from {self.name}")
        try:
            body = response.json()
        except ValueError as exc:
            self._record_error(operation, "malformed")
            raise GatewayError(f"Malformed response from {self.name}") from exc
        if not isinstance(body, dict):
            self._record_error(operation, "malformed")
            raise GatewayError(f"Malformed response from {self.name}")
        return body

    def _record_error(self, operation: str, error_type: str) -> None:
        gateway_errors_total.labels(provider=self.name, operation=operation, error_type=error_type).inc()
