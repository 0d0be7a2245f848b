"""Order intent orchestration.

Turns the caller's cart into a priced, gateway-ready `PaymentIntent` with a
soft inventory hold. The priced lines are snapshotted into the intent so that
finalization builds the order from exactly what was paid for.
"""

from dataclasses import dataclass
from datetime import timedelta
from time import time
from uuid import uuid4

from sqlalchemy import exists, select, update

from orderpipe.common.access import UserScope
from orderpipe.common.auth import CurrentUser
from orderpipe.common.config import settings
from orderpipe.common.db import as_utc, utcnow
from orderpipe.common.errors import (
    ComboUnavailable,
    EmptyCart,
    GatewayError,
    InsufficientInventory,
    PaymentInitFailed,
)
from orderpipe.common.logging import logger, payment_intent_id_ctx
from orderpipe.common.metrics import order_intents_total
from orderpipe.common.models import InventoryReservation, PaymentIntent, Product, ProductVariant
from orderpipe.common.queue import enqueue_job
from orderpipe.common.state_machine import validate_transition
from orderpipe.services.checkout.pricing import FlatRatePricing, PricingPolicy
from orderpipe.services.inventory.ledger import InventoryLedger
from orderpipe.services.provider_adapter.base import CheckoutContext
from orderpipe.services.provider_adapter.registry import AdapterRegistry


@dataclass
class IntentResult:
    intent: PaymentIntent
    payment_url: str | None
    form_fields: dict[str, str] | None
    wake_worker: bool = False


def new_payment_intent_id(provider: str) -> str:
    return f"pi_{provider}_{int(time())}_{uuid4().hex[:8]}"


class CheckoutService:
    """Builds order intents and sweeps the ones that were never paid."""

    def __init__(
        self,
        session_factory,
        registry: AdapterRegistry | None = None,
        ledger: InventoryLedger | None = None,
        pricing: PricingPolicy | None = None,
        service_name: str = "checkout",
    ) -> None:
        self.session_factory = session_factory
        self.registry = registry or AdapterRegistry()
        self.ledger = ledger or InventoryLedger()
        self.pricing = pricing or FlatRatePricing(settings.tax_rate_bps, settings.shipping_flat_cents)
        self.service_name = service_name

    def _snapshot_cart(self, db, scope: UserScope) -> tuple[str, list[dict], list[dict]]:
        cart = scope.cart()
        if cart is None:
            raise EmptyCart()
        items = scope.cart_items(cart)
        bookings = scope.cart_bookings(cart)
        if not items and not bookings:
            raise EmptyCart()

        lines = []
        for item in items:
            variant = db.get(ProductVariant, item.variant_id)
            product = db.get(Product, variant.product_id) if variant else None
            if variant is None or product is None:
                raise InsufficientInventory(item.variant_id, item.quantity, 0)
            lines.append(
                {
                    "cart_item_id": item.id,
                    "variant_id": variant.id,
                    "product_id": product.id,
                    "vendor_id": product.vendor_id,
                    "product_name": product.name,
                    "quantity": item.quantity,
                    "unit_price_cents": item.price_snapshot_cents,
                    "combo_id": item.combo_id,
                    "combo_group_id": item.combo_group_id,
                }
            )
        booking_lines = [
            {
                "booking_id": booking.id,
                "stylist_id": booking.stylist_id,
                "service_name": booking.service_name,
                "price_cents": booking.price_cents,
                "start_time": as_utc(booking.start_time).isoformat(),
            }
            for booking in bookings
        ]
        return cart.id, lines, booking_lines

    def _check_combos(self, db, lines: list[dict]) -> None:
        """Each combo is checked on its own; every unavailable one is reported."""

        groups: dict[str, set[str]] = {}
        for line in lines:
            if line["combo_id"]:
                groups.setdefault(line["combo_id"], set()).add(line["combo_group_id"] or line["cart_item_id"])

        problems = []
        for combo_id, group_ids in sorted(groups.items()):
            requested = len(group_ids)
            combo = db.get(Product, combo_id)
            if combo is None or not combo.is_combo or not combo.is_active:
                problems.append({"combo_id": combo_id, "reason": "inactive"})
                continue
            if combo.combo_quantity_limit is not None:
                remaining = combo.combo_quantity_limit - (combo.combo_quantity_sold or 0)
                if requested > remaining:
                    problems.append(
                        {
                            "combo_id": combo_id,
                            "name": combo.name,
                            "reason": "sold_out",
                            "requested": requested,
                            "remaining": max(remaining, 0),
                        }
                    )
        if problems:
            raise ComboUnavailable(details=problems)

    def _supersede_pending(self, db, cart_id: str) -> None:
        """Fail older live intents of this cart so only the new one holds stock."""

        stale = db.execute(
            select(PaymentIntent.payment_intent_id).where(
                PaymentIntent.cart_id == cart_id, PaymentIntent.status == "pending"
            )
        ).scalars()
        for payment_intent_id in list(stale):
            db.execute(
                update(PaymentIntent)
                .where(PaymentIntent.payment_intent_id == payment_intent_id, PaymentIntent.status == "pending")
                .values(status="failed", updated_at=utcnow())
                .execution_options(synchronize_session=False)
            )
            self.ledger.release(db, payment_intent_id, reason="superseded")
            logger.info("payment intent superseded payment_intent_id=%s cart_id=%s", payment_intent_id, cart_id)

    def create_order_intent(self, user: CurrentUser, payment_method: str, shipping_address: dict | None) -> IntentResult:
        """Price the cart, prepare the gateway hand-off, persist the intent and hold stock."""

        adapter = self.registry.get(payment_method)

        with self.session_factory() as db:
            scope = UserScope(db, user.user_id)
            cart_id, lines, bookings = self._snapshot_cart(db, scope)
            self._check_combos(db, lines)

        subtotal = sum(line["unit_price_cents"] * line["quantity"] for line in lines)
        subtotal += sum(booking["price_cents"] for booking in bookings)
        tax = self.pricing.tax_cents(subtotal)
        shipping = self.pricing.shipping_cents(subtotal, bool(lines), shipping_address)
        total = subtotal + tax + shipping

        payment_intent_id = new_payment_intent_id(adapter.name)
        payment_intent_id_ctx.set(payment_intent_id)
        context = CheckoutContext(
            order_name=f"Order {payment_intent_id}",
            customer_name=(shipping_address or {}).get("name"),
            customer_email=user.email,
            customer_phone=(shipping_address or {}).get("phone"),
        )
        try:
            redirect = adapter.build_signed_redirect(total, payment_intent_id, context)
        except GatewayError as exc:
            order_intents_total.labels(service=self.service_name, provider=adapter.name, outcome="init_failed").inc()
            logger.error("payment init failed provider=%s error=%s", adapter.name, exc.message)
            raise PaymentInitFailed() from exc

        expires_at = utcnow() + timedelta(minutes=settings.payment_intent_ttl_minutes)
        intent = PaymentIntent(
            payment_intent_id=payment_intent_id,
            external_transaction_id=redirect.external_transaction_id,
            user_id=user.user_id,
            cart_id=cart_id,
            provider=adapter.name,
            amount_cents=total,
            currency=settings.currency,
            status="pending",
            meta={
                "items": lines,
                "bookings": bookings,
                "subtotal_cents": subtotal,
                "tax_cents": tax,
                "shipping_cents": shipping,
                "shipping_address": shipping_address,
                "buyer_email": user.email,
            },
            expires_at=expires_at,
        )
        with self.session_factory() as db:
            self._supersede_pending(db, cart_id)
            db.add(intent)
            db.commit()

        try:
            with self.session_factory() as db:
                self.ledger.reserve(db, payment_intent_id, [(line["variant_id"], line["quantity"]) for line in lines])
                db.commit()
        except InsufficientInventory:
            self._mark_failed(payment_intent_id)
            intent.status = "failed"
            order_intents_total.labels(service=self.service_name, provider=adapter.name, outcome="out_of_stock").inc()
            raise

        if not adapter.redirects:
            return self._confirm_cash_on_delivery(intent)

        order_intents_total.labels(service=self.service_name, provider=adapter.name, outcome="created").inc()
        logger.info("payment intent created provider=%s amount_cents=%s", adapter.name, total)
        return IntentResult(intent=intent, payment_url=redirect.payment_url, form_fields=redirect.form_fields)

    def _mark_failed(self, payment_intent_id: str) -> None:
        with self.session_factory() as db:
            db.execute(
                update(PaymentIntent)
                .where(PaymentIntent.payment_intent_id == payment_intent_id, PaymentIntent.status == "pending")
                .values(status="failed", updated_at=utcnow())
            )
            db.commit()

    def _confirm_cash_on_delivery(self, intent: PaymentIntent) -> IntentResult:
        """Pay-on-delivery needs no verification: succeed and queue finalization now."""

        validate_transition(intent.status, "succeeded")
        with self.session_factory() as db:
            db.execute(
                update(PaymentIntent)
                .where(PaymentIntent.payment_intent_id == intent.payment_intent_id)
                .values(status="succeeded", updated_at=utcnow())
            )
            enqueue_job(
                db,
                "finalize_order",
                {"payment_intent_id": intent.payment_intent_id, "provider": intent.provider},
                idempotency_key=f"payment_{intent.provider}_{intent.external_transaction_id}",
                priority=1,
                max_attempts=settings.job_max_attempts,
                commit=False,
            )
            db.commit()
        intent.status = "succeeded"
        order_intents_total.labels(service=self.service_name, provider=intent.provider, outcome="created").inc()
        logger.info("cash on delivery intent confirmed amount_cents=%s", intent.amount_cents)
        return IntentResult(intent=intent, payment_url=None, form_fields=None, wake_worker=True)

    def get_order_intent(self, user: CurrentUser, payment_intent_id: str) -> dict:
        with self.session_factory() as db:
            scope = UserScope(db, user.user_id)
            intent = scope.payment_intent(payment_intent_id)
            order = scope.order_for_intent(payment_intent_id)
            return {
                "payment_intent_id": intent.payment_intent_id,
                "status": intent.status,
                "provider": intent.provider,
                "amount_cents": intent.amount_cents,
                "expires_at": as_utc(intent.expires_at),
                "order_id": order.id if order else None,
            }

    def expire_stale_intents(self, limit: int = 100) -> int:
        """Fail pending intents past `expires_at` and queue release of their holds."""

        now = utcnow()
        expired = 0
        with self.session_factory() as db:
            candidates = list(
                db.execute(
                    select(PaymentIntent.payment_intent_id)
                    .where(PaymentIntent.status == "pending", PaymentIntent.expires_at < now)
                    .order_by(PaymentIntent.expires_at)
                    .limit(limit)
                ).scalars()
            )
            for payment_intent_id in candidates:
                result = db.execute(
                    update(PaymentIntent)
                    .where(PaymentIntent.payment_intent_id == payment_intent_id, PaymentIntent.status == "pending")
                    .values(status="failed", updated_at=now)
                )
                if result.rowcount != 1:
                    db.rollback()
                    continue
                db.commit()
                enqueue_job(
                    db,
                    "handle_payment_failure",
                    {"payment_intent_id": payment_intent_id, "reason": "expired"},
                    idempotency_key=f"expire_{payment_intent_id}",
                    priority=8,
                    max_attempts=settings.job_max_attempts,
                )
                expired += 1

            # Verification already failed these; their holds still wait for release.
            failed_with_holds = db.execute(
                select(PaymentIntent.payment_intent_id)
                .where(
                    PaymentIntent.status == "failed",
                    PaymentIntent.expires_at < now,
                    exists().where(
                        InventoryReservation.payment_intent_id == PaymentIntent.payment_intent_id,
                        InventoryReservation.status == "held",
                    ),
                )
                .limit(limit)
            ).scalars()
            for payment_intent_id in list(failed_with_holds):
                enqueue_job(
                    db,
                    "handle_payment_failure",
                    {"payment_intent_id": payment_intent_id, "reason": "payment_failed"},
                    idempotency_key=f"expire_{payment_intent_id}",
                    priority=8,
                    max_attempts=settings.job_max_attempts,
                )
        if expired:
            logger.info("expired stale payment intents count=%s", expired)
        return expired
