"""Services module for fulfillment orchestration."""

from services.errors import (
    ProviderError,
    ProviderErrorKind,
    OrchestrationError,
    OrchestrationErrorKind,
    CODError,
    CODErrorKind,
)
from services.circuit_breaker import CircuitBreaker, CircuitState
from services.provider_registry import ProviderRegistry, ProviderInfo
from services.order_store import OrderStore, OrderStatusRejected
from services.notifier import Notifier, LoggingNotifier, StatusChangeEvent
from services.delivery_service import DeliveryService, StatusCheck
from services.shipment_tracker import ShipmentTracker, ReconcileOutcome, ReconcileResult
from services.cod_ledger import CODLedger
from services.fulfillment_api import FulfillmentAPI

__all__ = [
    # Errors
    "ProviderError",
    "ProviderErrorKind",
    "OrchestrationError",
    "OrchestrationErrorKind",
    "CODError",
    "CODErrorKind",
    # Providers
    "CircuitBreaker",
    "CircuitState",
    "ProviderRegistry",
    "ProviderInfo",
    # Collaborators
    "OrderStore",
    "OrderStatusRejected",
    "Notifier",
    "LoggingNotifier",
    "StatusChangeEvent",
    # Core services
    "DeliveryService",
    "StatusCheck",
    "ShipmentTracker",
    "ReconcileOutcome",
    "ReconcileResult",
    "CODLedger",
    # Exposed contract
    "FulfillmentAPI",
]
