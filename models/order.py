"""
Order SQLAlchemy model (subset used by fulfillment).

The order record is owned by the order subsystem; fulfillment only reads
the delivery-relevant columns and moves `status` through OrderStore.

Status Flow:
pending → confirmed → processing → shipped → delivered
   ↓                                  ↓          ↓
cancelled                          returned ← (compensating COD return)
"""

from datetime import datetime

from sqlalchemy import Column, String, Text, DateTime, Numeric

from db.session import Base


class OrderStatus:
    """Order status values."""
    PENDING = "pending"
    CONFIRMED = "confirmed"
    PROCESSING = "processing"
    SHIPPED = "shipped"
    DELIVERED = "delivered"
    CANCELLED = "cancelled"
    RETURNED = "returned"


# No automatic transition may leave these
TERMINAL_ORDER_STATUSES = frozenset({
    OrderStatus.DELIVERED,
    OrderStatus.CANCELLED,
    OrderStatus.RETURNED,
})

# Explicit compensating actions: (from, to)
COMPENSATING_TRANSITIONS = frozenset({
    (OrderStatus.DELIVERED, OrderStatus.RETURNED),
})


class Order(Base):
    """Order record as seen by fulfillment."""
    __tablename__ = "orders"

    id = Column(String(64), primary_key=True)
    status = Column(String(20), nullable=False, default=OrderStatus.PENDING, index=True)

    # Customer
    customer_name = Column(String(255), nullable=True)
    customer_phone = Column(String(50), nullable=True)
    customer_email = Column(String(255), nullable=True)

    # Shipping address; city/zone/area carry courier location ids
    shipping_address = Column(Text, nullable=True)
    city = Column(String(50), nullable=True)
    zone = Column(String(50), nullable=True)
    area = Column(String(50), nullable=True)
    city_name = Column(String(100), nullable=True)
    zone_name = Column(String(100), nullable=True)
    area_name = Column(String(100), nullable=True)

    # Totals
    total_amount = Column(Numeric(12, 2), nullable=False, default=0)
    shipping_charge = Column(Numeric(12, 2), nullable=False, default=0)
    discount_amount = Column(Numeric(12, 2), nullable=True)
    payment_method = Column(String(30), nullable=True)

    notes = Column(Text, nullable=True)

    # Timestamps
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    @property
    def amount_due(self):
        """Cash to collect on delivery."""
        return (self.total_amount or 0) + (self.shipping_charge or 0) - (self.discount_amount or 0)

    def __repr__(self):
        return f"<Order(id={self.id}, status={self.status})>"
