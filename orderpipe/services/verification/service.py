"""Server-to-server payment verification.

Push (webhook) and pull (client fallback) notifications share one pipeline:

1. short-circuit if `(provider, external_transaction_id)` was already recorded
2. find the intent by the provider's lookup key
3. ask the gateway itself; notification status/amount fields are never trusted
4. classify as success / amount_mismatch / failed / pending
5. in one transaction: append the audit record, move the intent and, on
   success only, queue `finalize_order` (a unique-key race is benign)
6. tell the caller to wake the order worker

A gateway error aborts before step 5, leaving nothing recorded so the next
notification can retry. A `pending` answer also stops before step 5.
"""

from dataclasses import dataclass

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError

from orderpipe.common.access import PrivilegedScope
from orderpipe.common.config import settings
from orderpipe.common.db import utcnow
from orderpipe.common.errors import NotFound, ValidationFailed
from orderpipe.common.logging import logger, payment_intent_id_ctx
from orderpipe.common.metrics import (
    amount_mismatch_total,
    duplicate_notifications_total,
    verification_outcomes_total,
)
from orderpipe.common.models import GatewayVerification, PaymentIntent
from orderpipe.common.money import amounts_match
from orderpipe.common.queue import enqueue_job
from orderpipe.common.state_machine import PAYMENT_INTENT_TRANSITIONS
from orderpipe.services.provider_adapter.base import (
    BY_INTENT_ID,
    COMPLETE,
    PENDING,
    GatewayAdapter,
    GatewayNotification,
)
from orderpipe.services.provider_adapter.registry import AdapterRegistry

SUCCESS = "success"
AMOUNT_MISMATCH = "amount_mismatch"
FAILED = "failed"
PENDING_STATUS = "pending"

# Verification status -> payment intent status it drives.
_INTENT_STATUS = {SUCCESS: "succeeded", AMOUNT_MISMATCH: "failed", FAILED: "failed"}


@dataclass
class VerificationOutcome:
    provider: str
    payment_intent_id: str
    external_transaction_id: str
    status: str
    amount_cents: int
    already_verified: bool = False
    job_enqueued: bool = False

    @property
    def wake_worker(self) -> bool:
        return self.status == SUCCESS and not self.already_verified


@dataclass
class _IntentView:
    payment_intent_id: str
    user_id: str
    provider: str
    amount_cents: int
    status: str


class VerificationService:
    """Re-verifies gateway notifications and queues finalization."""

    def __init__(self, session_factory, registry: AdapterRegistry | None = None, service_name: str = "verification") -> None:
        self.session_factory = session_factory
        self.registry = registry or AdapterRegistry()
        self.service_name = service_name

    def handle_webhook(self, provider: str, params) -> VerificationOutcome:
        adapter = self.registry.verifier(provider)
        return self._process(adapter, adapter.parse_notification(params))

    def verify_payment(
        self, provider: str, transaction_ref: str, callback_data: str | None = None, user_id: str | None = None
    ) -> VerificationOutcome:
        adapter = self.registry.verifier(provider)
        notification = adapter.parse_reference(transaction_ref, callback_data)
        return self._process(adapter, notification, user_id=user_id)

    def _existing_record(self, provider: str, external_transaction_id: str) -> GatewayVerification | None:
        with self.session_factory() as db:
            return db.execute(
                select(GatewayVerification).where(
                    GatewayVerification.provider == provider,
                    GatewayVerification.external_transaction_id == external_transaction_id,
                )
            ).scalar_one_or_none()

    def _cached(self, record: GatewayVerification, user_id: str | None) -> VerificationOutcome:
        with self.session_factory() as db:
            intent = PrivilegedScope(db).payment_intent(record.payment_intent_id)
            if user_id is not None and (intent is None or intent.user_id != user_id):
                raise NotFound("Payment intent not found")
            amount = intent.amount_cents if intent else record.amount_verified_cents or 0
        duplicate_notifications_total.labels(service=self.service_name, provider=record.provider).inc()
        logger.info(
            "duplicate notification skipped provider=%s external_transaction_id=%s",
            record.provider,
            record.external_transaction_id,
        )
        return VerificationOutcome(
            provider=record.provider,
            payment_intent_id=record.payment_intent_id,
            external_transaction_id=record.external_transaction_id,
            status=record.status,
            amount_cents=amount,
            already_verified=True,
        )

    def _load_intent(self, adapter: GatewayAdapter, notification: GatewayNotification, user_id: str | None) -> _IntentView:
        with self.session_factory() as db:
            scope = PrivilegedScope(db)
            if notification.intent_key == BY_INTENT_ID:
                intent = scope.payment_intent(notification.intent_ref)
            else:
                intent = scope.payment_intent_by_external_id(adapter.name, notification.intent_ref)
            if intent is None or intent.provider != adapter.name:
                raise NotFound("Payment intent not found")
            if user_id is not None and intent.user_id != user_id:
                raise NotFound("Payment intent not found")
            return _IntentView(
                payment_intent_id=intent.payment_intent_id,
                user_id=intent.user_id,
                provider=intent.provider,
                amount_cents=intent.amount_cents,
                status=intent.status,
            )

    def _process(
        self, adapter: GatewayAdapter, notification: GatewayNotification, user_id: str | None = None
    ) -> VerificationOutcome:
        if notification.external_transaction_id:
            record = self._existing_record(adapter.name, notification.external_transaction_id)
            if record is not None:
                return self._cached(record, user_id)

        intent = self._load_intent(adapter, notification, user_id)
        payment_intent_id_ctx.set(intent.payment_intent_id)

        verification = adapter.verify(notification.verification_ref, intent.amount_cents)

        external_id = notification.external_transaction_id
        if adapter.intent_lookup == BY_INTENT_ID:
            gateway_id = verification.provider_txn_id
            if external_id and gateway_id and str(gateway_id) != external_id:
                logger.warning(
                    "gateway transaction id mismatch provider=%s notified=%s verified=%s",
                    adapter.name,
                    external_id,
                    gateway_id,
                )
                raise ValidationFailed("Gateway transaction id mismatch")
            if not external_id:
                # Gateway has not assigned an id yet; key the record on our own id.
                external_id = str(gateway_id) if gateway_id else intent.payment_intent_id
                record = self._existing_record(adapter.name, external_id)
                if record is not None:
                    return self._cached(record, user_id)

        status = self._classify(adapter.name, intent, verification)
        verification_outcomes_total.labels(service=self.service_name, provider=adapter.name, status=status).inc()
        outcome = VerificationOutcome(
            provider=adapter.name,
            payment_intent_id=intent.payment_intent_id,
            external_transaction_id=external_id,
            status=status,
            amount_cents=intent.amount_cents,
        )
        if status == PENDING_STATUS:
            # Not final: the replay key stays free for the gateway's eventual answer.
            logger.info("payment still pending provider=%s external_transaction_id=%s", adapter.name, external_id)
            return outcome

        outcome.job_enqueued = self._persist(adapter, external_id, intent, verification, status, notification)
        logger.info(
            "payment verified provider=%s external_transaction_id=%s status=%s",
            adapter.name,
            external_id,
            status,
        )
        return outcome

    def _classify(self, provider: str, intent: _IntentView, verification) -> str:
        if verification.status == COMPLETE:
            confirmed = verification.confirmed_amount_cents
            if confirmed is not None and amounts_match(intent.amount_cents, confirmed):
                return SUCCESS
            amount_mismatch_total.labels(service=self.service_name, provider=provider).inc()
            logger.error(
                "fraud_signal amount_mismatch provider=%s expected_cents=%s confirmed_cents=%s",
                provider,
                intent.amount_cents,
                confirmed,
            )
            return AMOUNT_MISMATCH
        if verification.status == PENDING:
            return PENDING_STATUS
        return FAILED

    def _persist(
        self, adapter: GatewayAdapter, external_id: str, intent: _IntentView, verification, status: str, notification
    ) -> bool:
        """Write the audit row, the intent move and the finalize job in one transaction.

        Returns True when a finalize job was queued. A unique-key clash means a
        concurrent notification for the same transaction committed all three first.
        """

        with self.session_factory() as db:
            db.add(
                GatewayVerification(
                    provider=adapter.name,
                    external_transaction_id=external_id,
                    payment_intent_id=intent.payment_intent_id,
                    verification_response={"gateway": verification.raw, "notification": notification.claimed},
                    amount_verified_cents=verification.confirmed_amount_cents,
                    status=status,
                )
            )
            target = self._apply_to_intent(db, adapter, intent, external_id, status)
            if status == SUCCESS:
                enqueue_job(
                    db,
                    "finalize_order",
                    {
                        "payment_intent_id": intent.payment_intent_id,
                        "provider": adapter.name,
                        "external_transaction_id": external_id,
                    },
                    idempotency_key=f"payment_{adapter.name}_{external_id}",
                    priority=1,
                    max_attempts=settings.job_max_attempts,
                    commit=False,
                )
            try:
                db.commit()
            except IntegrityError:
                db.rollback()
                logger.info(
                    "verification already written by a concurrent notification provider=%s external_transaction_id=%s",
                    adapter.name,
                    external_id,
                )
                return False
        if target:
            intent.status = target
        return status == SUCCESS

    def _apply_to_intent(self, db, adapter: GatewayAdapter, intent: _IntentView, external_id: str, status: str) -> str | None:
        values = {"updated_at": utcnow()}
        if adapter.intent_lookup == BY_INTENT_ID:
            values["external_transaction_id"] = external_id
        target = _INTENT_STATUS.get(status)
        if target and target != intent.status:
            if target not in PAYMENT_INTENT_TRANSITIONS.get(intent.status, set()):
                logger.warning(
                    "payment intent not moved current=%s target=%s verification_status=%s",
                    intent.status,
                    target,
                    status,
                )
                target = None
            else:
                values["status"] = target
        else:
            target = None
        if len(values) == 1:
            return None
        db.execute(
            update(PaymentIntent)
            .where(
                PaymentIntent.payment_intent_id == intent.payment_intent_id,
                PaymentIntent.status == intent.status,
            )
            .values(**values)
        )
        return target
