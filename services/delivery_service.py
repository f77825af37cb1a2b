"""
Delivery Service - creates shipments and reads courier status.

Owns no state beyond what it reads and writes per call:
- create_shipment: resolve provider → courier create → persist Shipment
- get_shipments / get_latest_shipment: newest first
- check_shipment_status: courier read + map, stamps last_checked

Key design decisions:
- check_shipment_status does NOT reconcile. It returns what it saw together
  with the status stored at the time of the read; ShipmentTracker.reconcile
  acts on it. Checking and acting are retried independently.
- No internal retries. A failed courier call persists nothing and surfaces
  as OrchestrationError(provider_failure) wrapping the ProviderError.
- Duplicate protection: an order may not get a second active shipment with
  the same provider (or with any provider when
  ALLOW_MULTI_PROVIDER_SHIPMENTS is off). With an attempt_id the creation
  is idempotent: the same (order, provider, attempt) returns the shipment
  already persisted and never reaches the courier twice.
"""

import json
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Optional, Dict, Any, List, Union

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from config import settings
from models.delivery import Shipment, ShipmentStatus, ACTIVE_SHIPMENT_STATUSES
from services.errors import (
    ProviderError, ProviderErrorKind, OrchestrationError, OrchestrationErrorKind
)
from services.order_store import OrderStore
from services.provider_registry import ProviderRegistry
from services.providers import OrderDetails, ShipmentOptions
from utils import generate_idempotency_key, generate_shipment_id

logger = logging.getLogger(__name__)


@dataclass
class StatusCheck:
    """Result of one courier status read."""
    shipment_id: str
    order_id: str
    previous_status: ShipmentStatus
    status: ShipmentStatus
    raw_status: str
    last_checked: datetime
    metadata: Dict[str, Any] = field(default_factory=dict)

    @property
    def changed(self) -> bool:
        return self.status != self.previous_status


class DeliveryService:
    """
    Service for creating shipments and checking their courier status.

    Usage:
        service = DeliveryService(db, registry)
        shipment = service.create_shipment(order_id, provider_id, {"attempt_id": "a1"})
        check = service.check_shipment_status(shipment.id)
    """

    def __init__(
        self,
        db: Session,
        registry: ProviderRegistry,
        order_store: Optional[OrderStore] = None,
        allow_multi_provider: Optional[bool] = None,
    ):
        self.db = db
        self.registry = registry
        self.orders = order_store or OrderStore(db)
        self.allow_multi_provider = (
            settings.ALLOW_MULTI_PROVIDER_SHIPMENTS if allow_multi_provider is None else allow_multi_provider
        )

    # ------------------------------------------------------------------
    # Create
    # ------------------------------------------------------------------

    def create_shipment(
        self,
        order_id: str,
        provider_id: str,
        options: Union[ShipmentOptions, Dict[str, Any], None] = None,
    ) -> Shipment:
        """
        Create a shipment with a courier and persist it.

        Raises:
            OrchestrationError: order_not_found, provider_not_found,
                duplicate_active_shipment or provider_failure
            ValueError: Malformed options (non-numeric cod_amount, item_count, ...)
        """
        if not isinstance(options, ShipmentOptions):
            options = ShipmentOptions.from_dict(options)

        order = self.orders.get_order(order_id)
        if order is None:
            raise OrchestrationError(
                OrchestrationErrorKind.ORDER_NOT_FOUND, f"Order with ID {order_id} not found"
            )

        adapter = self.registry.resolve(provider_id)

        options.idempotency_key = None
        if options.attempt_id:
            options.idempotency_key = generate_idempotency_key(order_id, provider_id, options.attempt_id)
            existing = self._get_by_idempotency_key(options.idempotency_key)
            if existing is not None:
                logger.info(
                    f"Shipment {existing.id} already created for order {order_id} "
                    f"(attempt {options.attempt_id}) - returning it"
                )
                return existing

        active = self._find_active_shipment(order_id, provider_id)
        if active is not None:
            raise OrchestrationError(
                OrchestrationErrorKind.DUPLICATE_ACTIVE_SHIPMENT,
                f"Order {order_id} already has active shipment {active.id} "
                f"with provider {active.provider_id} ({active.status})",
                provider_id=provider_id,
            )

        order_details = OrderDetails.from_order(order)
        try:
            handle = adapter.create_shipment(order_details, options)
        except ProviderError as e:
            logger.error(f"Shipment creation failed for order {order_id} via {provider_id}: {e.kind.value} - {e.message}")
            raise OrchestrationError(
                OrchestrationErrorKind.PROVIDER_FAILURE,
                f"Failed to create shipment: {e.message}",
                provider_error=e,
                provider_id=provider_id,
            )

        now = datetime.utcnow()
        shipment = Shipment(
            id=generate_shipment_id(),
            order_id=order_id,
            provider_id=provider_id,
            provider_type=adapter.provider_type,
            external_id=handle.external_id,
            tracking_ref=handle.tracking_ref,
            status=handle.status.value,
            raw_status=handle.raw_status,
            idempotency_key=options.idempotency_key,
            provider_metadata=json.dumps(handle.metadata or {}, default=str),
            created_at=now,
            updated_at=now,
        )
        self.db.add(shipment)
        try:
            self.db.commit()
        except IntegrityError:
            # Same attempt persisted concurrently
            self.db.rollback()
            existing = self._get_by_idempotency_key(options.idempotency_key) if options.idempotency_key else None
            if existing is None:
                raise
            logger.warning(
                f"Concurrent creation for order {order_id} (attempt {options.attempt_id}); "
                f"courier consignment {handle.external_id} is unreferenced"
            )
            return existing

        logger.info(
            f"Shipment {shipment.id} created for order {order_id} via {adapter.display_name} "
            f"(consignment {handle.external_id}, status {shipment.status})"
        )
        return shipment

    def _get_by_idempotency_key(self, key: str) -> Optional[Shipment]:
        return self.db.query(Shipment).filter(Shipment.idempotency_key == key).first()

    def _find_active_shipment(self, order_id: str, provider_id: str) -> Optional[Shipment]:
        query = self.db.query(Shipment).filter(
            Shipment.order_id == order_id,
            Shipment.status.in_(ACTIVE_SHIPMENT_STATUSES),
        )
        if self.allow_multi_provider:
            query = query.filter(Shipment.provider_id == provider_id)
        return query.order_by(Shipment.created_at.desc()).first()

    # ------------------------------------------------------------------
    # Read
    # ------------------------------------------------------------------

    def get_shipment(self, shipment_id: str) -> Optional[Shipment]:
        return self.db.query(Shipment).filter(Shipment.id == shipment_id).first()

    def get_shipments(self, order_id: str) -> List[Shipment]:
        """All shipments for an order, any status, newest first."""
        return (
            self.db.query(Shipment)
            .filter(Shipment.order_id == order_id)
            .order_by(Shipment.created_at.desc(), Shipment.id.desc())
            .all()
        )

    def get_latest_shipment(self, order_id: str) -> Optional[Shipment]:
        return (
            self.db.query(Shipment)
            .filter(Shipment.order_id == order_id)
            .order_by(Shipment.created_at.desc(), Shipment.id.desc())
            .first()
        )

    def get_active_shipments(self, max_age_days: Optional[int] = None, limit: Optional[int] = None) -> List[Shipment]:
        """Non-terminal shipments with a courier reference, oldest check first."""
        max_age_days = max_age_days if max_age_days is not None else settings.TRACKING_MAX_AGE_DAYS
        cutoff = datetime.utcnow() - timedelta(days=max_age_days)

        query = (
            self.db.query(Shipment)
            .filter(
                Shipment.status.in_(ACTIVE_SHIPMENT_STATUSES),
                Shipment.created_at >= cutoff,
                Shipment.external_id.isnot(None),
            )
            .order_by(Shipment.last_checked.is_(None).desc(), Shipment.last_checked.asc())
        )
        if limit:
            query = query.limit(limit)
        return query.all()

    def find_by_courier_reference(
        self,
        provider_type: str,
        external_id: Optional[str] = None,
        tracking_ref: Optional[str] = None,
    ) -> Optional[Shipment]:
        """Locate a shipment from the identifiers a courier pushes back."""
        base = self.db.query(Shipment).filter(Shipment.provider_type == provider_type)
        shipment = None
        if external_id:
            shipment = base.filter(Shipment.external_id == external_id).order_by(Shipment.created_at.desc()).first()
        if shipment is None and tracking_ref:
            shipment = base.filter(Shipment.tracking_ref == tracking_ref).order_by(Shipment.created_at.desc()).first()
        return shipment

    # ------------------------------------------------------------------
    # Status check
    # ------------------------------------------------------------------

    def check_shipment_status(self, shipment_id: str) -> StatusCheck:
        """
        Ask the courier for the shipment's current status.

        Stamps last_checked and raw_status; leaves `status` alone.

        Raises:
            OrchestrationError: shipment_not_found, provider_not_found or provider_failure
        """
        shipment = self.get_shipment(shipment_id)
        if shipment is None:
            raise OrchestrationError(
                OrchestrationErrorKind.SHIPMENT_NOT_FOUND, f"Shipment with ID {shipment_id} not found"
            )

        adapter = self.registry.resolve(shipment.provider_id)
        previous_status = shipment.status_enum

        reference = shipment.external_id or shipment.tracking_ref
        if not reference:
            raise OrchestrationError(
                OrchestrationErrorKind.PROVIDER_FAILURE,
                f"Shipment {shipment_id} has no courier reference yet",
                provider_error=ProviderError(
                    ProviderErrorKind.NOT_FOUND, "No courier reference", provider_id=shipment.provider_id
                ),
            )

        try:
            raw = adapter.fetch_status(reference)
        except ProviderError as e:
            logger.warning(f"Status check failed for shipment {shipment_id}: {e.kind.value} - {e.message}")
            raise OrchestrationError(
                OrchestrationErrorKind.PROVIDER_FAILURE,
                f"Failed to check shipment status: {e.message}",
                provider_error=e,
                provider_id=shipment.provider_id,
            )

        status = adapter.map_status(raw)
        now = datetime.utcnow()
        self.db.query(Shipment).filter(Shipment.id == shipment_id).update(
            {Shipment.last_checked: now, Shipment.raw_status: raw.code},
            synchronize_session=False,
        )
        self.db.commit()

        logger.info(
            f"Shipment {shipment_id}: courier reports {raw.code!r} -> {status.value} "
            f"(stored {previous_status.value})"
        )
        return StatusCheck(
            shipment_id=shipment_id,
            order_id=shipment.order_id,
            previous_status=previous_status,
            status=status,
            raw_status=raw.code,
            last_checked=now,
            metadata=raw.metadata,
        )
