"""
COD Ledger - cash-on-delivery collection state machine.

State Flow:
    awaiting → collected → returned
        ↓
      failed → returned

The ledger knows nothing about order status. Coupling a ledger event to an
order transition (collected → delivered, returned → returned) is done by
the caller as a separate step (see FulfillmentAPI.record_cod_event).

Every transition is one conditional UPDATE:
    UPDATE cod_tracking SET state = :target, ...
    WHERE order_id = :order_id AND state IN (:allowed_from)
A rowcount of 0 means the row is missing or in a state the move is not
legal from; nothing is overwritten in either case.
"""

import logging
from datetime import datetime
from decimal import Decimal, InvalidOperation
from typing import Optional, Dict, Any

from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from models.cod_tracking import CODTracking, CODState, CODFailureReason, LEGAL_COD_TRANSITIONS
from models.order import Order
from services.errors import CODError, CODErrorKind

logger = logging.getLogger(__name__)


class CODLedger:
    """
    Records COD collection, failure and return events.

    Usage:
        ledger = CODLedger(db)
        ledger.init_tracking("O2")
        ledger.record_collection("O2", "agent_7", 1500, "r123")
    """

    def __init__(self, db: Session):
        self.db = db

    def get_tracking(self, order_id: str) -> Optional[CODTracking]:
        return self.db.query(CODTracking).filter(CODTracking.order_id == order_id).first()

    def init_tracking(self, order_id: str) -> CODTracking:
        """Create the `awaiting` row for a COD order. Returns the existing row if there is one."""
        existing = self.get_tracking(order_id)
        if existing is not None:
            return existing

        if self.db.query(Order.id).filter(Order.id == order_id).scalar() is None:
            raise CODError(CODErrorKind.ORDER_NOT_FOUND, f"Order {order_id} not found")

        now = datetime.utcnow()
        tracking = CODTracking(
            order_id=order_id,
            state=CODState.AWAITING,
            delivery_attempts=0,
            created_at=now,
            updated_at=now,
        )
        self.db.add(tracking)
        try:
            self.db.commit()
        except IntegrityError:
            self.db.rollback()
            return self.get_tracking(order_id)
        except SQLAlchemyError as e:
            self.db.rollback()
            raise CODError(CODErrorKind.PERSISTENCE_FAILURE, f"Failed to init COD tracking: {e}")

        logger.info(f"COD tracking initialised for order {order_id}")
        return tracking

    # ------------------------------------------------------------------
    # Events
    # ------------------------------------------------------------------

    def record_collection(
        self,
        order_id: str,
        collected_by: str,
        collected_amount,
        receipt_ref: Optional[str] = None,
    ) -> CODTracking:
        """
        Record that the courier collected the cash. Legal only from `awaiting`.

        Raises:
            ValueError: Missing collector or non-numeric/negative amount
            CODError: invalid_state, order_not_found or persistence_failure
        """
        if not collected_by:
            raise ValueError("collected_by is required")
        try:
            amount = Decimal(str(collected_amount))
        except (InvalidOperation, ValueError):
            raise ValueError(f"Invalid collected_amount: {collected_amount!r}")
        if amount < 0:
            raise ValueError(f"Invalid collected_amount: {collected_amount!r}")

        now = datetime.utcnow()
        tracking = self._transition(order_id, CODState.COLLECTED, {
            CODTracking.collected_by: collected_by,
            CODTracking.collected_amount: amount,
            CODTracking.collected_at: now,
            CODTracking.receipt_ref: receipt_ref,
            CODTracking.delivery_attempts: CODTracking.delivery_attempts + 1,
            CODTracking.last_attempt_at: now,
        })
        logger.info(f"COD collected for order {order_id}: {amount} by {collected_by}")
        return tracking

    def record_failure(self, order_id: str, reason: str, notes: Optional[str] = None) -> CODTracking:
        """
        Record a failed collection attempt. Legal only from `awaiting`.

        Raises:
            ValueError: Reason not one of CODFailureReason
            CODError: invalid_state, order_not_found or persistence_failure
        """
        if reason not in CODFailureReason.ALL:
            raise ValueError(f"Invalid failure reason: {reason!r}")

        now = datetime.utcnow()
        tracking = self._transition(order_id, CODState.FAILED, {
            CODTracking.failure_reason: reason,
            CODTracking.notes: notes,
            CODTracking.delivery_attempts: CODTracking.delivery_attempts + 1,
            CODTracking.last_attempt_at: now,
        })
        logger.info(f"COD failure for order {order_id}: {reason}")
        return tracking

    def mark_returned(self, order_id: str) -> CODTracking:
        """Mark the parcel returned to the merchant. Legal from `collected` or `failed`."""
        tracking = self._transition(order_id, CODState.RETURNED, {})
        logger.info(f"COD order {order_id} marked returned")
        return tracking

    # ------------------------------------------------------------------
    # Internal
    # ------------------------------------------------------------------

    def _transition(self, order_id: str, target: str, values: Dict[Any, Any]) -> CODTracking:
        allowed_from = LEGAL_COD_TRANSITIONS[target]
        values = dict(values)
        values[CODTracking.state] = target
        values[CODTracking.updated_at] = datetime.utcnow()

        try:
            updated = (
                self.db.query(CODTracking)
                .filter(CODTracking.order_id == order_id, CODTracking.state.in_(allowed_from))
                .update(values, synchronize_session=False)
            )
            if updated == 0:
                self.db.rollback()
                current = self.db.query(CODTracking.state).filter(CODTracking.order_id == order_id).scalar()
                if current is None:
                    raise CODError(CODErrorKind.ORDER_NOT_FOUND, f"No COD tracking for order {order_id}")
                logger.warning(f"COD order {order_id}: refusing {current} -> {target}")
                raise CODError(
                    CODErrorKind.INVALID_STATE,
                    f"Cannot move COD order {order_id} from {current} to {target}",
                    current_state=current,
                )
            self.db.commit()
        except SQLAlchemyError as e:
            self.db.rollback()
            logger.error(f"COD {target} failed for order {order_id}: {e}")
            raise CODError(CODErrorKind.PERSISTENCE_FAILURE, f"Failed to record COD {target}: {e}")

        tracking = self.get_tracking(order_id)
        self.db.refresh(tracking)
        return tracking
