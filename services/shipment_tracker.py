"""
Shipment Tracker - reconciles observed courier status with stored state.

Given the status a shipment had when it was read and the status the courier
now reports, the tracker:
1. Writes the new status to the shipment row (compare-and-swap)
2. Applies the mapped order-status transition through OrderStore
3. Emits a StatusChangeEvent to the notifier (best-effort)

Key design decisions:
- Step 1 is `UPDATE ... WHERE id = :id AND status = :previous`. Of two
  reconcilers that observed the same change only the one whose UPDATE hits
  a row goes on to steps 2 and 3; the other reports UNCHANGED. Calling
  reconcile twice with the same inputs therefore transitions the order and
  notifies exactly once.
- Steps 1 and 2 commit together. A storage error rolls both back and is
  re-raised; the caller retries the whole check + reconcile.
- The notification is sent after the commit. A failing notifier is logged
  and never undoes the status write.
- A courier status that maps to UNKNOWN is not stored as a transition; the
  raw code is already on the row from the status check.
- Shipment status mirrors the courier. Order status is protected by
  OrderStore: an order in a terminal status is left alone (a cancelled
  order never becomes delivered).
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Optional, Dict, Any, Union

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from models.delivery import Shipment, ShipmentStatus
from models.order import OrderStatus
from services.errors import OrchestrationError, OrchestrationErrorKind
from services.notifier import Notifier, LoggingNotifier, StatusChangeEvent
from services.order_store import OrderStore, OrderStatusRejected

logger = logging.getLogger(__name__)


# Shipment status -> order status. failed/cancelled are left for manual review.
ORDER_STATUS_TRANSITIONS = {
    ShipmentStatus.PICKED_UP: OrderStatus.SHIPPED,
    ShipmentStatus.IN_TRANSIT: OrderStatus.SHIPPED,
    ShipmentStatus.DELIVERED: OrderStatus.DELIVERED,
    ShipmentStatus.RETURNED: OrderStatus.RETURNED,
}


class ReconcileOutcome(str, Enum):
    UNCHANGED = "unchanged"
    UPDATED = "updated"


@dataclass
class ReconcileResult:
    outcome: ReconcileOutcome
    shipment_id: str
    previous_status: ShipmentStatus
    new_status: ShipmentStatus
    order_status_update: Optional[Dict[str, Any]] = None
    notified: bool = False

    @property
    def changed(self) -> bool:
        return self.outcome == ReconcileOutcome.UPDATED

    def to_dict(self) -> Dict[str, Any]:
        return {
            "outcome": self.outcome.value,
            "changed": self.changed,
            "shipment_id": self.shipment_id,
            "previous_status": self.previous_status.value,
            "new_status": self.new_status.value,
            "order_status_update": self.order_status_update,
        }


class ShipmentTracker:
    """
    Applies shipment status changes exactly once.

    Usage:
        tracker = ShipmentTracker(db, notifier)
        check = delivery_service.check_shipment_status(shipment_id)
        result = tracker.reconcile(shipment_id, check.previous_status, check.status, check.raw_status)
    """

    def __init__(
        self,
        db: Session,
        notifier: Optional[Notifier] = None,
        order_store: Optional[OrderStore] = None,
    ):
        self.db = db
        self.notifier = notifier or LoggingNotifier()
        self.orders = order_store or OrderStore(db)

    def reconcile(
        self,
        shipment_id: str,
        previous_status: Union[ShipmentStatus, str],
        new_status: Union[ShipmentStatus, str],
        raw_status: Optional[str] = None,
    ) -> ReconcileResult:
        """
        Apply `previous_status -> new_status` to a shipment if it still holds.

        Raises:
            OrchestrationError(shipment_not_found): Unknown shipment id
            SQLAlchemyError: Storage failure (rolled back)
        """
        previous = ShipmentStatus.coerce(previous_status)
        new = ShipmentStatus.coerce(new_status)
        result = ReconcileResult(ReconcileOutcome.UNCHANGED, shipment_id, previous, new)

        if previous == new:
            return result

        if new == ShipmentStatus.UNKNOWN:
            logger.warning(
                f"Shipment {shipment_id}: courier status {raw_status!r} is unmapped - "
                f"keeping {previous.value}"
            )
            return result

        values = {Shipment.status: new.value, Shipment.updated_at: datetime.utcnow()}
        if raw_status is not None:
            values[Shipment.raw_status] = raw_status

        try:
            updated = (
                self.db.query(Shipment)
                .filter(Shipment.id == shipment_id, Shipment.status == previous.value)
                .update(values, synchronize_session="fetch")
            )

            if updated == 0:
                self.db.rollback()
                current = self.db.query(Shipment.status).filter(Shipment.id == shipment_id).scalar()
                if current is None:
                    raise OrchestrationError(
                        OrchestrationErrorKind.SHIPMENT_NOT_FOUND,
                        f"Shipment with ID {shipment_id} not found",
                    )
                logger.info(
                    f"Shipment {shipment_id}: stored status is {current}, not {previous.value} - "
                    f"already reconciled elsewhere"
                )
                return result

            order_id = self.db.query(Shipment.order_id).filter(Shipment.id == shipment_id).scalar()
            order = self.orders.get_order(order_id)
            contact = (order.customer_phone, order.customer_email) if order is not None else (None, None)
            result.order_status_update = self._apply_order_transition(order_id, new)
            self.db.commit()
        except SQLAlchemyError as e:
            self.db.rollback()
            logger.error(f"Reconcile failed for shipment {shipment_id}: {e}")
            raise

        result.outcome = ReconcileOutcome.UPDATED
        logger.info(f"Shipment {shipment_id} status: {previous.value} -> {new.value}")

        result.notified = self._notify(StatusChangeEvent(
            shipment_id=shipment_id,
            order_id=order_id,
            previous_status=previous.value,
            new_status=new.value,
            customer_phone=contact[0],
            customer_email=contact[1],
        ))
        return result

    def _apply_order_transition(self, order_id: str, status: ShipmentStatus) -> Optional[Dict[str, Any]]:
        target = ORDER_STATUS_TRANSITIONS.get(status)
        if target is None:
            logger.info(f"Order {order_id}: shipment {status.value} - no automatic order change, left for review")
            return None

        try:
            return self.orders.update_order_status(order_id, target)
        except OrderStatusRejected as e:
            logger.warning(f"Order {order_id}: {e}")
        except LookupError as e:
            logger.error(f"Order {order_id}: {e}")
        return None

    def _notify(self, event: StatusChangeEvent) -> bool:
        try:
            self.notifier.notify(event)
            return True
        except Exception as e:
            logger.error(
                f"Notification failed for shipment {event.shipment_id} "
                f"({event.previous_status} -> {event.new_status}): {e}",
                exc_info=True,
            )
            return False
