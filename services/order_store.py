"""
Order Store - the order subsystem as seen by fulfillment.

Fulfillment never assigns order.status directly; every change goes through
`update_order_status`, which refuses to move an order out of a terminal
status unless the move is a known compensating action
(delivered -> returned).

The refusal is enforced in the UPDATE itself (WHERE status = :current),
so a concurrent writer cannot slip a terminal status in between the read
and the write.
"""

import logging
from datetime import datetime
from typing import Optional, Dict, Any

from sqlalchemy.orm import Session

from models.order import Order, TERMINAL_ORDER_STATUSES, COMPENSATING_TRANSITIONS

logger = logging.getLogger(__name__)


class OrderStatusRejected(Exception):
    """Raised when a status change would leave a terminal status."""

    def __init__(self, order_id: str, current: str, requested: str):
        super().__init__(f"Order {order_id} is {current}; refusing transition to {requested}")
        self.order_id = order_id
        self.current = current
        self.requested = requested


class OrderStore:
    """Reads orders and applies guarded status transitions."""

    def __init__(self, db: Session):
        self.db = db

    def get_order(self, order_id: str) -> Optional[Order]:
        return self.db.query(Order).filter(Order.id == order_id).first()

    @staticmethod
    def is_transition_allowed(current: str, requested: str) -> bool:
        if current == requested:
            return True
        if current not in TERMINAL_ORDER_STATUSES:
            return True
        return (current, requested) in COMPENSATING_TRANSITIONS

    def update_order_status(self, order_id: str, status: str) -> Optional[Dict[str, Any]]:
        """
        Move an order to `status`. Does not commit.

        Returns:
            {"order_id", "previous_status", "new_status"} if the status changed,
            None if the order already had that status

        Raises:
            LookupError: Order does not exist
            OrderStatusRejected: Current status is terminal and the move is not compensating
        """
        order = self.get_order(order_id)
        if order is None:
            raise LookupError(f"Order {order_id} not found")

        current = order.status
        if current == status:
            return None
        if not self.is_transition_allowed(current, status):
            raise OrderStatusRejected(order_id, current, status)

        updated = (
            self.db.query(Order)
            .filter(Order.id == order_id, Order.status == current)
            .update(
                {Order.status: status, Order.updated_at: datetime.utcnow()},
                synchronize_session="fetch",
            )
        )
        if updated != 1:
            # Someone changed it since we read it; re-evaluate against the new value
            self.db.expire(order)
            return self.update_order_status(order_id, status)

        logger.info(f"Order {order_id} status: {current} -> {status}")
        return {"order_id": order_id, "previous_status": current, "new_status": status}
