"""Order worker: drains the job queue and turns verified payments into orders.

Jobs are executed at least once (an expired lock makes a job claimable
again), so every handler is idempotent: finalization returns an existing
order, failure handling only releases holds still `held`, and refunds skip
orders already refunded.
"""

import asyncio
from dataclasses import dataclass, field
from time import perf_counter
from uuid import uuid4

from sqlalchemy import delete, select, update
from sqlalchemy.exc import IntegrityError, OperationalError

from orderpipe.common.access import PrivilegedScope
from orderpipe.common.config import settings
from orderpipe.common.db import utcnow
from orderpipe.common.errors import NotFound, PipelineError
from orderpipe.common.logging import log_context, logger
from orderpipe.common.metrics import job_duration_seconds, jobs_processed_total
from orderpipe.common.models import CartBooking, CartItem, Order, OrderItem, Product
from orderpipe.common.queue import (
    claim_next_job,
    complete_job,
    enqueue_job,
    fail_job,
    update_queue_backlog_metrics,
)
from orderpipe.common.state_machine import ORDER_TRANSITIONS, validate_transition
from orderpipe.common.tracing import tracer
from orderpipe.services.inventory.ledger import InventoryLedger
from orderpipe.services.notification.service import Notifier


@dataclass
class JobOutcome:
    success: bool
    message: str
    data: dict = field(default_factory=dict)
    retryable: bool = False


def new_worker_id() -> str:
    return f"worker_{uuid4().hex[:8]}"


def new_order_number() -> str:
    return f"ORD-{utcnow():%Y%m%d}-{uuid4().hex[:6].upper()}"


class OrderWorkerService:
    """Claims jobs with mutual exclusion and dispatches them by `job_type`."""

    def __init__(
        self,
        session_factory,
        ledger: InventoryLedger | None = None,
        notifier: Notifier | None = None,
        worker_id: str | None = None,
        service_name: str = "order-worker",
    ) -> None:
        self.session_factory = session_factory
        self.ledger = ledger or InventoryLedger()
        self.notifier = notifier or Notifier(session_factory)
        self.worker_id = worker_id or new_worker_id()
        self.service_name = service_name
        self.handlers = {
            "finalize_order": self.finalize_order,
            "handle_payment_failure": self.handle_payment_failure,
            "process_refund": self.process_refund,
        }

    def process_jobs(self, max_jobs: int | None = None, job_type: str | None = None) -> list[dict]:
        """Claim and run jobs until the queue is empty or `max_jobs` is reached."""

        limit = settings.worker_max_jobs if max_jobs is None else max_jobs
        results = []
        while len(results) < limit:
            with self.session_factory() as db:
                job = claim_next_job(db, self.worker_id, settings.worker_lock_timeout_seconds, job_type)
            if job is None:
                break
            results.append(self._run(job))
        with self.session_factory() as db:
            update_queue_backlog_metrics(db, self.service_name)
        return results

    def _run(self, job) -> dict:
        payment_intent_id = (job.payload or {}).get("payment_intent_id")
        with log_context(job_id=job.id, payment_intent_id=payment_intent_id):
            with tracer.start_as_current_span(f"job.{job.job_type}") as span:
                span.set_attribute("job.id", job.id)
                span.set_attribute("job.attempt", job.attempts or 0)
                return self._execute(job)

    def _execute(self, job) -> dict:
        handler = self.handlers.get(job.job_type)
        start = perf_counter()
        if handler is None:
            outcome = JobOutcome(False, f"Unknown job type: {job.job_type}")
        else:
            try:
                outcome = handler(job.payload or {})
            except PipelineError as exc:
                outcome = JobOutcome(False, exc.message, retryable=exc.retryable)
            except ValueError as exc:
                # State machine violations are permanent.
                outcome = JobOutcome(False, str(exc))
            except OperationalError as exc:
                logger.warning("job hit a database error job_type=%s error=%s", job.job_type, exc)
                outcome = JobOutcome(False, f"Database error: {exc.orig}", retryable=True)
            except Exception as exc:
                logger.exception("job crashed job_type=%s", job.job_type)
                outcome = JobOutcome(False, f"{type(exc).__name__}: {exc}")
        job_duration_seconds.labels(service=self.service_name, job_type=job.job_type).observe(
            max(0.0, perf_counter() - start)
        )

        with self.session_factory() as db:
            if outcome.success:
                complete_job(db, job, self.worker_id)
                final_status = "completed"
            else:
                final_status = fail_job(db, job, self.worker_id, outcome.message, outcome.retryable) or "lock_lost"
        jobs_processed_total.labels(service=self.service_name, job_type=job.job_type, result=final_status).inc()
        logger.info("job finished job_type=%s status=%s message=%s", job.job_type, final_status, outcome.message)
        return {
            "job_id": job.id,
            "job_type": job.job_type,
            "success": outcome.success,
            "message": outcome.message,
            "data": outcome.data,
        }

    def finalize_order(self, payload: dict) -> JobOutcome:
        """Create the order from the intent snapshot and commit its stock."""

        payment_intent_id = payload.get("payment_intent_id")
        with self.session_factory() as db:
            scope = PrivilegedScope(db)
            intent = scope.payment_intent(payment_intent_id) if payment_intent_id else None
            if intent is None:
                return JobOutcome(False, "Payment intent not found")
            existing = scope.order_for_intent(payment_intent_id)
            if existing is not None:
                return JobOutcome(True, "Order already exists", {"order_id": existing.id, "created": False})

            validate_transition(intent.status, "succeeded")
            intent.status = "succeeded"

            snapshot = intent.meta or {}
            items = snapshot.get("items", [])
            bookings = snapshot.get("bookings", [])
            order = Order(
                id=str(uuid4()),
                order_number=new_order_number(),
                user_id=intent.user_id,
                payment_intent_id=payment_intent_id,
                status="confirmed",
                subtotal_cents=snapshot.get("subtotal_cents", intent.amount_cents),
                tax_cents=snapshot.get("tax_cents", 0),
                shipping_cents=snapshot.get("shipping_cents", 0),
                total_cents=intent.amount_cents,
                shipping_address=snapshot.get("shipping_address"),
            )
            db.add(order)
            try:
                # The unique order per intent is the claim; stock and cart work follow it.
                db.flush()
            except IntegrityError:
                db.rollback()
                existing_id = db.execute(select(Order.id).where(Order.payment_intent_id == payment_intent_id)).scalar()
                if existing_id is None:
                    raise
                logger.info("order created by a concurrent run payment_intent_id=%s order_id=%s", payment_intent_id, existing_id)
                return JobOutcome(True, "Order already exists", {"order_id": existing_id, "created": False})
            self.ledger.commit(db, payment_intent_id, order.id, [(item["variant_id"], item["quantity"]) for item in items])
            for item in items:
                db.add(
                    OrderItem(
                        order_id=order.id,
                        variant_id=item["variant_id"],
                        product_id=item["product_id"],
                        vendor_id=item["vendor_id"],
                        product_name=item["product_name"],
                        quantity=item["quantity"],
                        unit_price_cents=item["unit_price_cents"],
                        total_price_cents=item["unit_price_cents"] * item["quantity"],
                        combo_id=item.get("combo_id"),
                    )
                )
            self._confirm_bookings(db, order.id, bookings)
            self._count_combo_sales(db, items)
            cart_item_ids = [item["cart_item_id"] for item in items]
            if cart_item_ids:
                db.execute(delete(CartItem).where(CartItem.id.in_(cart_item_ids)))
            db.commit()
            order_id = order.id
            order_number = order.order_number

        logger.info("order created order_id=%s order_number=%s", order_id, order_number)
        try:
            self.notifier.notify_order_created(order_id, snapshot.get("buyer_email"))
        except Exception:
            logger.exception("notification fan-out failed order_id=%s", order_id)
        return JobOutcome(True, "Order created", {"order_id": order_id, "order_number": order_number, "created": True})

    def _confirm_bookings(self, db, order_id: str, bookings: list[dict]) -> None:
        booking_ids = [booking["booking_id"] for booking in bookings]
        if not booking_ids:
            return
        db.execute(
            update(CartBooking)
            .where(CartBooking.id.in_(booking_ids), CartBooking.status == "reserved")
            .values(status="confirmed", order_id=order_id)
            .execution_options(synchronize_session=False)
        )

    def _count_combo_sales(self, db, items: list[dict]) -> None:
        groups: dict[str, set[str]] = {}
        for item in items:
            if item.get("combo_id"):
                groups.setdefault(item["combo_id"], set()).add(item.get("combo_group_id") or item["cart_item_id"])
        for combo_id, group_ids in groups.items():
            db.execute(
                update(Product)
                .where(Product.id == combo_id)
                .values(combo_quantity_sold=Product.combo_quantity_sold + len(group_ids))
                .execution_options(synchronize_session=False)
            )

    def handle_payment_failure(self, payload: dict) -> JobOutcome:
        """Fail the intent's order (if any) and release its held stock."""

        payment_intent_id = payload.get("payment_intent_id")
        reason = payload.get("reason", "payment_failed")
        with self.session_factory() as db:
            scope = PrivilegedScope(db)
            intent = scope.payment_intent(payment_intent_id) if payment_intent_id else None
            if intent is None:
                return JobOutcome(False, "Payment intent not found")
            if intent.status == "succeeded":
                return JobOutcome(True, "Payment succeeded; nothing to release", {"released_units": 0})
            order = scope.order_for_intent(payment_intent_id)
            if order is not None and order.status != "failed":
                validate_transition(order.status, "failed", ORDER_TRANSITIONS)
                order.status = "failed"
            if intent.status == "pending":
                intent.status = "failed"
            released = self.ledger.release(db, payment_intent_id, reason=reason)
            db.commit()
        return JobOutcome(True, "Reservation released", {"released_units": released})

    def process_refund(self, payload: dict) -> JobOutcome:
        """Mark the order refunded and put each line's stock back with a `return` movement."""

        order_id = payload.get("order_id")
        with self.session_factory() as db:
            order = PrivilegedScope(db).order(order_id) if order_id else None
            if order is None:
                return JobOutcome(False, "Order not found")
            if order.status == "refunded":
                return JobOutcome(True, "Order already refunded", {"order_id": order.id})
            validate_transition(order.status, "refunded", ORDER_TRANSITIONS)
            items = list(
                db.execute(
                    select(OrderItem).where(OrderItem.order_id == order.id).order_by(OrderItem.variant_id)
                ).scalars()
            )
            for item in items:
                self.ledger.restock(db, item.variant_id, item.quantity, order.id, payload.get("reason"))
            order.status = "refunded"
            order.refunded_cents = payload.get("refund_amount_cents") or order.total_cents
            db.commit()
        logger.info("order refunded order_id=%s", order_id)
        return JobOutcome(True, "Order refunded", {"order_id": order_id, "restocked_lines": len(items)})

    def enqueue_refund(self, order_id: str, refund_amount_cents: int | None = None, reason: str | None = None) -> bool:
        with self.session_factory() as db:
            order = PrivilegedScope(db).order(order_id)
            if order is None:
                raise NotFound("Order not found")
            return enqueue_job(
                db,
                "process_refund",
                {"order_id": order_id, "refund_amount_cents": refund_amount_cents, "reason": reason},
                idempotency_key=f"refund_{order_id}",
                priority=3,
                max_attempts=settings.job_max_attempts,
            )

    async def run_forever(self, interval_seconds: float) -> None:
        """Periodic sweep so jobs progress even when no wake-up arrives."""

        while True:
            try:
                await asyncio.to_thread(self.process_jobs)
            except Exception as exc:
                logger.exception("order worker sweep failed: %s", exc)
            await asyncio.sleep(interval_seconds)
