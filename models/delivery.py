"""
Delivery SQLAlchemy models.

Tables:
- DeliveryProvider: A configured courier integration (credentials + config as JSON text)
- Shipment: One courier-side delivery attempt for one order

Notes:
- Shipments are never deleted; a returned/cancelled shipment is superseded
  by creating a new one for the same order.
- `status` only ever holds a ShipmentStatus value. Couriers' own vocabulary
  is kept verbatim in `raw_status`.
- `status` is written with compare-and-swap updates
  (UPDATE ... WHERE status = :expected), see ShipmentTracker.
- `idempotency_key` is UNIQUE so a retried creation call can never persist
  a second row for the same (order, provider, attempt).
"""

from datetime import datetime
from enum import Enum

from sqlalchemy import (
    Column, String, Text, Boolean, DateTime,
    ForeignKey, Index, UniqueConstraint
)
from sqlalchemy.orm import relationship

from db.session import Base


class ShipmentStatus(str, Enum):
    """Canonical shipment status."""
    PENDING = "pending"
    PICKED_UP = "picked_up"
    IN_TRANSIT = "in_transit"
    DELIVERED = "delivered"
    FAILED = "failed"
    CANCELLED = "cancelled"
    RETURNED = "returned"
    UNKNOWN = "unknown"  # transient: courier reported an unmapped code

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_SHIPMENT_STATUSES

    @classmethod
    def coerce(cls, value) -> "ShipmentStatus":
        """Return the enum member for `value`; anything unrecognised is UNKNOWN."""
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value).lower())
        except ValueError:
            return cls.UNKNOWN


TERMINAL_SHIPMENT_STATUSES = frozenset({
    ShipmentStatus.DELIVERED,
    ShipmentStatus.FAILED,
    ShipmentStatus.CANCELLED,
    ShipmentStatus.RETURNED,
})

ACTIVE_SHIPMENT_STATUSES = tuple(
    s.value for s in ShipmentStatus if s not in TERMINAL_SHIPMENT_STATUSES
)


class ProviderType:
    """Supported courier adapter types."""
    PATHAO = "pathao"
    STEADFAST = "steadfast"


class DeliveryProvider(Base):
    """A configured courier integration."""
    __tablename__ = "delivery_providers"

    id = Column(String(64), primary_key=True)
    name = Column(String(100), nullable=False)
    type = Column(String(30), nullable=False, index=True)  # pathao, steadfast

    # JSON text; opaque to orchestration, parsed by the adapter factory
    credentials = Column(Text, nullable=False, default="{}")
    config = Column(Text, nullable=False, default="{}")

    is_active = Column(Boolean, nullable=False, default=True, index=True)

    # Timestamps
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    shipments = relationship("Shipment", back_populates="provider")

    def __repr__(self):
        return f"<DeliveryProvider(id={self.id}, type={self.type}, active={self.is_active})>"


class Shipment(Base):
    """One courier-side delivery attempt for one order."""
    __tablename__ = "delivery_shipments"

    id = Column(String(64), primary_key=True)
    order_id = Column(String(64), ForeignKey("orders.id"), nullable=False, index=True)
    provider_id = Column(String(64), ForeignKey("delivery_providers.id"), nullable=False, index=True)
    provider_type = Column(String(30), nullable=False)

    # Courier references (nullable until the courier confirms)
    external_id = Column(String(100), nullable=True, index=True)
    tracking_ref = Column(String(100), nullable=True, index=True)

    # Current status
    status = Column(String(20), nullable=False, default=ShipmentStatus.PENDING.value, index=True)
    raw_status = Column(String(100), nullable=True)
    last_checked = Column(DateTime, nullable=True)

    idempotency_key = Column(String(64), nullable=True)
    provider_metadata = Column("metadata", Text, nullable=True)

    # Timestamps
    created_at = Column(DateTime, default=datetime.utcnow, index=True)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    # Relationships
    provider = relationship("DeliveryProvider", back_populates="shipments")

    __table_args__ = (
        UniqueConstraint("idempotency_key", name="uq_delivery_shipments_idempotency_key"),
        Index("ix_delivery_shipments_order_provider_status", "order_id", "provider_id", "status"),
    )

    @property
    def status_enum(self) -> ShipmentStatus:
        return ShipmentStatus.coerce(self.status)

    @property
    def is_active(self) -> bool:
        return not self.status_enum.is_terminal

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "order_id": self.order_id,
            "provider_id": self.provider_id,
            "provider_type": self.provider_type,
            "external_id": self.external_id,
            "tracking_ref": self.tracking_ref,
            "status": self.status,
            "raw_status": self.raw_status,
            "last_checked": self.last_checked.isoformat() if self.last_checked else None,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
        }

    def __repr__(self):
        return f"<Shipment(id={self.id}, order={self.order_id}, status={self.status})>"
