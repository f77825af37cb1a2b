"""
Provider Adapter - the contract every courier integration implements.

An adapter translates the uniform shipment contract into one courier's API
and maps that courier's status vocabulary onto ShipmentStatus. Adapters
hold credentials and an HTTP transport, nothing else; they never touch the
database.

Contract:
- create_shipment(order, options) -> ShipmentHandle
- fetch_status(reference) -> RawStatus      (pure read)
- map_status(raw) -> ShipmentStatus          (total; unmapped -> UNKNOWN)

Failure semantics:
- Every network, HTTP, auth or parse failure surfaces as ProviderError.
  No other exception leaves an adapter's public methods.
- Every HTTP call is bounded by `timeout`; a timeout is
  ProviderError(kind=unavailable), never a hang.
- A per-adapter CircuitBreaker refuses calls while the courier is down.

Idempotency:
- The caller's idempotency key is sent as the courier-side merchant
  reference. Couriers that enforce unique merchant references (Steadfast
  invoices) reject a duplicate; couriers that don't (Pathao) give
  at-most-one-attempt semantics per call only, so a blind retry with a new
  key can still create a second consignment there.
"""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal, InvalidOperation
from typing import Optional, Dict, Any, Union

import requests

from config import settings
from models.delivery import ShipmentStatus
from services.circuit_breaker import CircuitBreaker
from services.errors import ProviderError, ProviderErrorKind

logger = logging.getLogger(__name__)


# HTTP status -> error kind
AUTH_STATUS_CODES = {401, 403}
INVALID_REQUEST_STATUS_CODES = {400, 409, 422}
UNAVAILABLE_STATUS_CODES = {408, 429, 500, 502, 503, 504}


def error_kind_for_status(status_code: int) -> ProviderErrorKind:
    """Classify a non-2xx courier response."""
    if status_code in AUTH_STATUS_CODES:
        return ProviderErrorKind.AUTH
    if status_code == 404:
        return ProviderErrorKind.NOT_FOUND
    if status_code in INVALID_REQUEST_STATUS_CODES:
        return ProviderErrorKind.INVALID_REQUEST
    if status_code in UNAVAILABLE_STATUS_CODES or status_code >= 500:
        return ProviderErrorKind.UNAVAILABLE
    return ProviderErrorKind.UNKNOWN


@dataclass
class OrderDetails:
    """The parts of an order a courier needs, detached from the ORM session."""
    order_id: str
    customer_name: Optional[str] = None
    customer_phone: Optional[str] = None
    shipping_address: Optional[str] = None
    city: Optional[str] = None
    zone: Optional[str] = None
    area: Optional[str] = None
    city_name: Optional[str] = None
    zone_name: Optional[str] = None
    area_name: Optional[str] = None
    amount_due: Decimal = Decimal("0")
    notes: Optional[str] = None

    @classmethod
    def from_order(cls, order) -> "OrderDetails":
        return cls(
            order_id=order.id,
            customer_name=order.customer_name,
            customer_phone=order.customer_phone,
            shipping_address=order.shipping_address,
            city=order.city,
            zone=order.zone,
            area=order.area,
            city_name=order.city_name,
            zone_name=order.zone_name,
            area_name=order.area_name,
            amount_due=Decimal(str(order.amount_due)),
            notes=order.notes,
        )


def _optional_number(value, cast, name: str):
    """Cast an optional numeric option; bad input is a ValueError."""
    if value is None or value == "":
        return None
    if isinstance(value, bool):
        raise ValueError(f"Invalid {name}: {value!r}")
    try:
        return cast(value)
    except (TypeError, ValueError):
        raise ValueError(f"Invalid {name}: {value!r}")


@dataclass
class ShipmentOptions:
    """
    Provider-agnostic shipment options.

    Numeric fields are normalised on construction; a value that is not a
    number raises ValueError before any courier is called. The idempotency
    key is derived from attempt_id by DeliveryService and is never read
    from caller input.
    """
    delivery_type: Optional[int] = None
    item_type: Optional[int] = None
    item_weight: Optional[float] = None
    item_count: int = 1
    cod_amount: Optional[Decimal] = None
    note: Optional[str] = None
    attempt_id: Optional[str] = None
    idempotency_key: Optional[str] = None

    INPUT_FIELDS = ("delivery_type", "item_type", "item_weight", "item_count", "cod_amount", "note", "attempt_id")

    def __post_init__(self):
        self.delivery_type = _optional_number(self.delivery_type, int, "delivery_type")
        self.item_type = _optional_number(self.item_type, int, "item_type")
        self.item_weight = _optional_number(self.item_weight, float, "item_weight")
        self.item_count = _optional_number(self.item_count, int, "item_count")
        if self.item_count is None:
            self.item_count = 1
        elif self.item_count < 1:
            raise ValueError(f"Invalid item_count: {self.item_count}")

        if self.cod_amount == "":
            self.cod_amount = None
        if self.cod_amount is not None:
            try:
                amount = Decimal(str(self.cod_amount).strip())
            except InvalidOperation:
                raise ValueError(f"Invalid cod_amount: {self.cod_amount!r}")
            if not amount.is_finite() or amount < 0:
                raise ValueError(f"Invalid cod_amount: {self.cod_amount!r}")
            self.cod_amount = amount

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "ShipmentOptions":
        """Build options from request input. Unknown keys are ignored."""
        if not data:
            return cls()
        known = {k: v for k, v in data.items() if k in cls.INPUT_FIELDS}
        return cls(**known)

    def amount_to_collect(self, order: OrderDetails) -> Decimal:
        if self.cod_amount is not None:
            return self.cod_amount
        return order.amount_due

    def merchant_reference(self, order: OrderDetails) -> str:
        """Reference sent to the courier: readable order id, unique per attempt."""
        if self.idempotency_key:
            return f"{order.order_id}-{self.idempotency_key[:8]}"
        return order.order_id


@dataclass
class ShipmentHandle:
    """What a courier returns for a created consignment."""
    external_id: str
    tracking_ref: Optional[str]
    status: ShipmentStatus
    raw_status: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)


@dataclass
class RawStatus:
    """A courier's status as observed, before mapping."""
    code: str
    metadata: Dict[str, Any] = field(default_factory=dict)
    observed_at: datetime = field(default_factory=datetime.utcnow)


@dataclass
class WebhookUpdate:
    """A status pushed by the courier."""
    external_id: Optional[str]
    tracking_ref: Optional[str]
    raw: RawStatus


class ProviderAdapter(ABC):
    """
    Base class for courier adapters.

    Usage:
        adapter = PathaoProvider("prov_1", credentials, config)
        handle = adapter.create_shipment(OrderDetails.from_order(order), ShipmentOptions())
        raw = adapter.fetch_status(handle.external_id)
        status = adapter.map_status(raw)
    """

    provider_type: str = ""
    display_name: str = ""

    def __init__(
        self,
        provider_id: str,
        credentials: Dict[str, Any],
        config: Optional[Dict[str, Any]] = None,
        http: Optional[requests.Session] = None,
        timeout: Optional[float] = None,
        breaker: Optional[CircuitBreaker] = None,
    ):
        self.provider_id = provider_id
        self.credentials = credentials or {}
        self.config = config or {}
        self.http = http or requests.Session()
        self.timeout = timeout or settings.PROVIDER_TIMEOUT_SECONDS
        self.breaker = breaker or CircuitBreaker(name=f"{self.provider_type}:{provider_id}")

    # ------------------------------------------------------------------
    # Contract
    # ------------------------------------------------------------------

    @abstractmethod
    def create_shipment(self, order: OrderDetails, options: ShipmentOptions) -> ShipmentHandle:
        """Create a consignment with the courier. Raises ProviderError."""
        raise NotImplementedError

    @abstractmethod
    def fetch_status(self, reference: str) -> RawStatus:
        """Read the courier's current status for a consignment. Raises ProviderError."""
        raise NotImplementedError

    @abstractmethod
    def _map_raw_status(self, code: str) -> ShipmentStatus:
        """Courier-specific mapping of a lower-cased raw code."""
        raise NotImplementedError

    def map_status(self, raw: Union[RawStatus, str, None]) -> ShipmentStatus:
        """
        Map a raw courier status to ShipmentStatus.

        Total: anything the courier-specific table does not recognise
        (including empty or non-string codes) maps to UNKNOWN and is logged.
        """
        code = raw.code if isinstance(raw, RawStatus) else raw
        if not isinstance(code, str) or not code.strip():
            logger.warning(f"[{self.display_name}] Empty status code from courier - mapping to unknown")
            return ShipmentStatus.UNKNOWN

        status = self._map_raw_status(code.strip().lower())
        if status == ShipmentStatus.UNKNOWN:
            logger.warning(f"[{self.display_name}] Unmapped status: {code!r} - defaulting to unknown")
        else:
            logger.debug(f"[{self.display_name}] Mapped status {code!r} -> {status.value}")
        return status

    def parse_webhook(self, payload: Dict[str, Any]) -> WebhookUpdate:
        """
        Extract the consignment reference and raw status from a courier push.

        Raises:
            ProviderError(invalid_request): Payload lacks a reference or status
        """
        raise self._error(ProviderErrorKind.INVALID_REQUEST, f"{self.display_name} does not send webhooks")

    def test_connection(self) -> Dict[str, Any]:
        """Check credentials against the courier. Never raises."""
        return {"success": True, "message": "Connection check not supported"}

    def tracking_url(self, tracking_ref: Optional[str]) -> Optional[str]:
        """Public tracking link for customers, if the courier has one."""
        return None

    # ------------------------------------------------------------------
    # HTTP helpers
    # ------------------------------------------------------------------

    def _error(self, kind: ProviderErrorKind, message: str, status_code: Optional[int] = None) -> ProviderError:
        return ProviderError(kind, message, provider_id=self.provider_id, status_code=status_code)

    def _request(self, method: str, url: str, **kwargs) -> requests.Response:
        """
        Make a bounded HTTP request with error classification.

        Raises:
            ProviderError: On transport failure, timeout, open circuit or non-2xx status
        """
        if not self.breaker.allow_request():
            raise self._error(
                ProviderErrorKind.UNAVAILABLE,
                f"{self.display_name} temporarily unavailable (circuit open)",
            )

        try:
            response = self.http.request(method, url, timeout=self.timeout, **kwargs)
        except requests.Timeout:
            self.breaker.record_failure()
            logger.error(f"[{self.display_name}] {method} {url} timed out after {self.timeout}s")
            raise self._error(ProviderErrorKind.UNAVAILABLE, f"{self.display_name} request timed out")
        except requests.RequestException as e:
            self.breaker.record_failure()
            logger.error(f"[{self.display_name}] {method} {url} failed: {e}")
            raise self._error(ProviderErrorKind.UNAVAILABLE, f"{self.display_name} request failed: {e}")

        if 200 <= response.status_code < 300:
            self.breaker.record_success()
            return response

        kind = error_kind_for_status(response.status_code)
        if kind == ProviderErrorKind.UNAVAILABLE:
            self.breaker.record_failure()
        else:
            # The courier answered; it is up
            self.breaker.record_success()

        message = self._extract_message(response) or f"HTTP {response.status_code}"
        logger.error(f"[{self.display_name}] {method} {url} -> HTTP {response.status_code}: {message}")
        raise self._error(kind, f"API Error: {message}", status_code=response.status_code)

    def _json(self, response: requests.Response) -> Dict[str, Any]:
        """Parse a JSON object body or raise ProviderError(unknown)."""
        try:
            data = response.json()
        except ValueError:
            snippet = (getattr(response, "text", "") or "")[:100]
            raise self._error(ProviderErrorKind.UNKNOWN, f"Invalid JSON response: {snippet}")
        if not isinstance(data, dict):
            raise self._error(ProviderErrorKind.UNKNOWN, "Unexpected response shape from courier")
        return data

    @staticmethod
    def _extract_message(response: requests.Response) -> Optional[str]:
        try:
            data = response.json()
        except ValueError:
            return None
        if isinstance(data, dict):
            message = data.get("message") or data.get("error")
            return str(message) if message else None
        return None
