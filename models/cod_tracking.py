"""
COD Tracking SQLAlchemy model.

One row per cash-on-delivery order.

State Flow:
awaiting → collected → returned
    ↓
  failed → returned

No other path is legal. A second collection on an already-collected row
is rejected, never overwritten (see CODLedger).
"""

from datetime import datetime

from sqlalchemy import Column, Integer, String, Text, DateTime, Numeric, CheckConstraint

from db.session import Base


class CODState:
    """COD collection states."""
    AWAITING = "awaiting"
    COLLECTED = "collected"
    FAILED = "failed"
    RETURNED = "returned"


class CODFailureReason:
    """Reasons a courier could not collect cash."""
    NOT_HOME = "not_home"
    REFUSED = "refused"
    NO_CASH = "no_cash"
    WRONG_ADDRESS = "wrong_address"
    OTHER = "other"

    ALL = frozenset({NOT_HOME, REFUSED, NO_CASH, WRONG_ADDRESS, OTHER})


# target state -> states it may be entered from
LEGAL_COD_TRANSITIONS = {
    CODState.COLLECTED: (CODState.AWAITING,),
    CODState.FAILED: (CODState.AWAITING,),
    CODState.RETURNED: (CODState.COLLECTED, CODState.FAILED),
}


class CODTracking(Base):
    """Cash-on-delivery ledger row."""
    __tablename__ = "cod_tracking"

    order_id = Column(String(64), primary_key=True)
    state = Column(String(20), nullable=False, default=CODState.AWAITING, index=True)

    # Collection
    collected_by = Column(String(100), nullable=True)
    collected_amount = Column(Numeric(12, 2), nullable=True)
    collected_at = Column(DateTime, nullable=True)
    receipt_ref = Column(String(255), nullable=True)

    # Failure
    failure_reason = Column(String(30), nullable=True)
    notes = Column(Text, nullable=True)

    # Attempts
    delivery_attempts = Column(Integer, nullable=False, default=0)
    last_attempt_at = Column(DateTime, nullable=True)

    # Timestamps
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    __table_args__ = (
        CheckConstraint(
            "state IN ('awaiting', 'collected', 'failed', 'returned')",
            name="ck_cod_tracking_state",
        ),
    )

    def to_dict(self) -> dict:
        return {
            "order_id": self.order_id,
            "state": self.state,
            "collected_by": self.collected_by,
            "collected_amount": float(self.collected_amount) if self.collected_amount is not None else None,
            "collected_at": self.collected_at.isoformat() if self.collected_at else None,
            "receipt_ref": self.receipt_ref,
            "failure_reason": self.failure_reason,
            "notes": self.notes,
            "delivery_attempts": self.delivery_attempts,
            "last_attempt_at": self.last_attempt_at.isoformat() if self.last_attempt_at else None,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
        }

    def __repr__(self):
        return f"<CODTracking(order_id={self.order_id}, state={self.state})>"
