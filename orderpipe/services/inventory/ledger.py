"""Optimistic-concurrency stock ledger.

Every stock mutation reads `(quantity_available, quantity_reserved, version)`
and writes back only if `version` is unchanged, bumping it by one. A rejected
write re-reads and retries up to `max_retries` times. No method commits; the
caller's transaction makes a reservation or an order commit all-or-nothing.
"""

from sqlalchemy import select, update

from orderpipe.common.config import settings
from orderpipe.common.db import utcnow
from orderpipe.common.errors import InsufficientInventory, InventoryConflict
from orderpipe.common.logging import logger
from orderpipe.common.metrics import inventory_version_conflicts_total
from orderpipe.common.models import InventoryMovement, InventoryReservation, StockLevel


def aggregate_lines(lines) -> list[tuple[str, int]]:
    """Sum quantities per variant; sorted so concurrent callers touch rows in one order."""

    totals: dict[str, int] = {}
    for variant_id, quantity in lines:
        if quantity <= 0:
            continue
        totals[variant_id] = totals.get(variant_id, 0) + int(quantity)
    return sorted(totals.items())


class InventoryLedger:
    def __init__(self, max_retries: int | None = None) -> None:
        self.max_retries = settings.inventory_max_retries if max_retries is None else max_retries

    def _read(self, db, variant_id: str):
        return db.execute(
            select(StockLevel.quantity_available, StockLevel.quantity_reserved, StockLevel.version).where(
                StockLevel.variant_id == variant_id
            )
        ).one_or_none()

    def _compare_and_set(self, db, variant_id: str, version: int, available: int, reserved: int) -> bool:
        result = db.execute(
            update(StockLevel)
            .where(StockLevel.variant_id == variant_id, StockLevel.version == version)
            .values(
                quantity_available=available,
                quantity_reserved=reserved,
                version=version + 1,
                updated_at=utcnow(),
            )
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    def _adjust(
        self,
        db,
        variant_id: str,
        operation: str,
        available_delta: int,
        reserved_delta: int,
        requested: int,
        conflict_is_shortage: bool = False,
    ) -> None:
        """Apply deltas under the version guard, re-reading on every conflict."""

        available = 0
        for attempt in range(self.max_retries + 1):
            row = self._read(db, variant_id)
            if row is None:
                raise InsufficientInventory(variant_id, requested, 0)
            available = row.quantity_available
            new_available = row.quantity_available + available_delta
            new_reserved = row.quantity_reserved + reserved_delta
            if new_available < 0 or new_reserved < 0:
                raise InsufficientInventory(variant_id, requested, row.quantity_available)
            if self._compare_and_set(db, variant_id, row.version, new_available, new_reserved):
                return
            inventory_version_conflicts_total.labels(operation=operation).inc()
            logger.info(
                "inventory version conflict variant_id=%s operation=%s attempt=%s", variant_id, operation, attempt + 1
            )
        if conflict_is_shortage:
            raise InsufficientInventory(variant_id, requested, available)
        raise InventoryConflict(f"Inventory for {variant_id} kept changing during {operation}")

    def _movement(self, db, variant_id: str, movement_type: str, quantity: int, reference_id: str, notes=None) -> None:
        db.add(
            InventoryMovement(
                variant_id=variant_id,
                movement_type=movement_type,
                quantity=quantity,
                reference_id=reference_id,
                notes=notes,
            )
        )

    def _reservations(self, db, payment_intent_id: str, status: str | None = None) -> list[InventoryReservation]:
        query = select(InventoryReservation).where(InventoryReservation.payment_intent_id == payment_intent_id)
        if status:
            query = query.where(InventoryReservation.status == status)
        return list(db.execute(query.order_by(InventoryReservation.variant_id)).scalars())

    def reserve(self, db, payment_intent_id: str, lines) -> list[InventoryReservation]:
        """Soft-hold stock for every line of an intent.

        Raises `InsufficientInventory` naming the first short variant; the
        caller must roll back so no partial hold survives.
        """

        existing = self._reservations(db, payment_intent_id)
        if existing:
            return existing
        reservations = []
        for variant_id, quantity in aggregate_lines(lines):
            self._adjust(db, variant_id, "reserve", -quantity, quantity, quantity, conflict_is_shortage=True)
            reservation = InventoryReservation(
                payment_intent_id=payment_intent_id,
                variant_id=variant_id,
                quantity=quantity,
                status="held",
            )
            db.add(reservation)
            reservations.append(reservation)
            self._movement(db, variant_id, "reserve", quantity, payment_intent_id)
        db.flush()
        return reservations

    def release(self, db, payment_intent_id: str, reason: str = "payment_failed") -> int:
        """Return held quantities to available stock. Returns units released."""

        released = 0
        for reservation in self._reservations(db, payment_intent_id, status="held"):
            self._adjust(db, reservation.variant_id, "release", reservation.quantity, -reservation.quantity, 0)
            reservation.status = "released"
            released += reservation.quantity
            self._movement(db, reservation.variant_id, "release", reservation.quantity, payment_intent_id, reason)
        db.flush()
        if released:
            logger.info("inventory released payment_intent_id=%s units=%s reason=%s", payment_intent_id, released, reason)
        return released

    def commit(self, db, payment_intent_id: str, order_id: str, lines) -> None:
        """Turn an intent's holds into a permanent decrement for `order_id`.

        A line whose hold was released (expiry sweep) is taken straight from
        available stock under the same guard, or the whole commit fails.
        """

        by_variant = {res.variant_id: res for res in self._reservations(db, payment_intent_id)}
        for variant_id, quantity in aggregate_lines(lines):
            reservation = by_variant.get(variant_id)
            if reservation is not None and reservation.status == "committed":
                continue
            if reservation is not None and reservation.status == "held":
                claimed = db.execute(
                    update(InventoryReservation)
                    .where(InventoryReservation.id == reservation.id, InventoryReservation.status == "held")
                    .values(status="committed", order_id=order_id, updated_at=utcnow())
                    .execution_options(synchronize_session=False)
                )
                if claimed.rowcount != 1:
                    # Another finalizer or a release got to this hold first.
                    raise InventoryConflict(f"Reservation for {variant_id} changed during commit")
                extra = quantity - reservation.quantity
                self._adjust(db, variant_id, "commit", -extra, -reservation.quantity, quantity)
            else:
                self._adjust(db, variant_id, "commit", -quantity, 0, quantity)
                if reservation is None:
                    reservation = InventoryReservation(
                        payment_intent_id=payment_intent_id, variant_id=variant_id, quantity=quantity
                    )
                    db.add(reservation)
            reservation.quantity = quantity
            reservation.status = "committed"
            reservation.order_id = order_id
            self._movement(db, variant_id, "sale", quantity, order_id)
        db.flush()

    def restock(self, db, variant_id: str, quantity: int, reference_id: str, notes: str | None = None) -> None:
        """Put sold units back on the shelf (refunds) and record a `return` movement."""

        if quantity <= 0:
            return
        self._adjust(db, variant_id, "restock", quantity, 0, quantity)
        self._movement(db, variant_id, "return", quantity, reference_id, notes)
        db.flush()
