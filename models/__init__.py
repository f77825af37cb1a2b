"""Models module for fulfillment orchestration."""
from models.order import Order, OrderStatus, TERMINAL_ORDER_STATUSES
from models.delivery import (
    DeliveryProvider, Shipment, ShipmentStatus, ProviderType,
    TERMINAL_SHIPMENT_STATUSES, ACTIVE_SHIPMENT_STATUSES
)
from models.cod_tracking import CODTracking, CODState, CODFailureReason
