"""
Typed errors for fulfillment orchestration.

Every error carries a `kind` so callers branch on the failure class
instead of parsing messages:

    try:
        service.create_shipment(order_id, provider_id)
    except OrchestrationError as e:
        if e.kind == OrchestrationErrorKind.PROVIDER_FAILURE:
            logger.warning(f"Courier said: {e.provider_error.message}")
"""

from enum import Enum
from typing import Optional


class ProviderErrorKind(str, Enum):
    AUTH = "auth"
    UNAVAILABLE = "unavailable"
    NOT_FOUND = "not_found"
    INVALID_REQUEST = "invalid_request"
    UNKNOWN = "unknown"


class OrchestrationErrorKind(str, Enum):
    ORDER_NOT_FOUND = "order_not_found"
    PROVIDER_NOT_FOUND = "provider_not_found"
    SHIPMENT_NOT_FOUND = "shipment_not_found"
    DUPLICATE_ACTIVE_SHIPMENT = "duplicate_active_shipment"
    PROVIDER_FAILURE = "provider_failure"


class CODErrorKind(str, Enum):
    INVALID_STATE = "invalid_state"
    ORDER_NOT_FOUND = "order_not_found"
    PERSISTENCE_FAILURE = "persistence_failure"


class ProviderError(Exception):
    """Raised by a provider adapter; the only exception that crosses the adapter contract."""

    def __init__(
        self,
        kind: ProviderErrorKind,
        message: str,
        provider_id: Optional[str] = None,
        status_code: Optional[int] = None,
    ):
        super().__init__(message)
        self.kind = ProviderErrorKind(kind)
        self.message = message
        self.provider_id = provider_id
        self.status_code = status_code

    def __repr__(self):
        return f"ProviderError(kind={self.kind.value}, provider={self.provider_id}, message={self.message!r})"


class OrchestrationError(Exception):
    """Raised by DeliveryService."""

    def __init__(
        self,
        kind: OrchestrationErrorKind,
        message: str,
        provider_error: Optional[ProviderError] = None,
        provider_id: Optional[str] = None,
    ):
        super().__init__(message)
        self.kind = OrchestrationErrorKind(kind)
        self.message = message
        self.provider_error = provider_error
        self.provider_id = provider_id or (provider_error.provider_id if provider_error else None)

    def __repr__(self):
        return f"OrchestrationError(kind={self.kind.value}, message={self.message!r})"


class CODError(Exception):
    """Raised by CODLedger."""

    def __init__(self, kind: CODErrorKind, message: str, current_state: Optional[str] = None):
        super().__init__(message)
        self.kind = CODErrorKind(kind)
        self.message = message
        self.current_state = current_state

    def __repr__(self):
        return f"CODError(kind={self.kind.value}, state={self.current_state}, message={self.message!r})"
