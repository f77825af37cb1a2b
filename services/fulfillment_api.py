"""
Fulfillment API - the contract the admin/API layer calls.

Wires DeliveryService, ShipmentTracker and CODLedger together and turns
their typed errors into result dictionaries:

    {"success": True, ...payload}
    {"success": False, "error": "<kind>", "message": "<text for the user>"}

so callers branch on `error` and never see a raw exception.

Exposed operations:
- create_shipment / list_shipments
- check_status          (check + reconcile; on failure: last known state)
- record_cod_event      (ledger event, then the coupled order transition)
- get_cod_tracking
- handle_webhook        (courier push, same reconcile path as polling)
- sweep_active_shipments (scheduled poll of every active shipment)
"""

import logging
from typing import Optional, Dict, Any, List

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from config import settings
from models.cod_tracking import CODState
from models.delivery import Shipment
from models.order import OrderStatus
from services.cod_ledger import CODLedger
from services.delivery_service import DeliveryService
from services.errors import (
    ProviderError, OrchestrationError, OrchestrationErrorKind, CODError, CODErrorKind
)
from services.notifier import Notifier
from services.order_store import OrderStore, OrderStatusRejected
from services.provider_registry import ProviderRegistry
from services.shipment_tracker import ShipmentTracker

logger = logging.getLogger(__name__)

STATUS_REFRESH_FAILED_MESSAGE = "Could not refresh status, showing last known state"
COD_INVALID_STATE_MESSAGE = "This action is not valid for the order's current COD state"

# COD ledger state reached -> coupled order status
COD_ORDER_TRANSITIONS = {
    CODState.COLLECTED: OrderStatus.DELIVERED,
    CODState.RETURNED: OrderStatus.RETURNED,
}

COD_ACTIONS = (CODState.COLLECTED, CODState.FAILED, CODState.RETURNED)


def _error_result(kind, message: str, **extra) -> Dict[str, Any]:
    result = {"success": False, "error": getattr(kind, "value", kind), "message": message}
    result.update(extra)
    return result


class FulfillmentAPI:
    """
    Usage:
        with get_session() as db:
            api = FulfillmentAPI(db, registry)
            result = api.check_status(shipment_id)
            if not result["success"]:
                show(result["message"], result.get("status"))
    """

    def __init__(
        self,
        db: Session,
        registry: ProviderRegistry,
        notifier: Optional[Notifier] = None,
    ):
        self.db = db
        self.registry = registry
        self.orders = OrderStore(db)
        self.delivery = DeliveryService(db, registry, order_store=self.orders)
        self.tracker = ShipmentTracker(db, notifier=notifier, order_store=self.orders)
        self.ledger = CODLedger(db)

    # ------------------------------------------------------------------
    # Shipments
    # ------------------------------------------------------------------

    def create_shipment(self, order_id: str, provider_id: str, options: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        try:
            shipment = self.delivery.create_shipment(order_id, provider_id, options)
        except OrchestrationError as e:
            extra = {"provider_id": e.provider_id}
            if e.provider_error is not None:
                extra["provider_error"] = e.provider_error.kind.value
            return _error_result(e.kind, e.message, **extra)
        except ValueError as e:
            return _error_result("invalid_request", str(e))

        return {
            "success": True,
            "message": "Shipment created",
            "shipment": self._shipment_view(shipment),
        }

    def list_shipments(self, order_id: str) -> List[Dict[str, Any]]:
        return [self._shipment_view(s) for s in self.delivery.get_shipments(order_id)]

    def list_providers(self, active_only: bool = True) -> List[Dict[str, Any]]:
        return [p.to_dict() for p in self.registry.list(active_only=active_only)]

    def _shipment_view(self, shipment: Shipment) -> Dict[str, Any]:
        data = shipment.to_dict()
        info = self.registry.get_info(shipment.provider_id)
        data["provider_name"] = info.name if info else None
        try:
            adapter = self.registry.resolve(shipment.provider_id)
            data["tracking_url"] = adapter.tracking_url(shipment.tracking_ref or shipment.external_id)
        except OrchestrationError:
            data["tracking_url"] = None
        return data

    # ------------------------------------------------------------------
    # Status
    # ------------------------------------------------------------------

    def check_status(self, shipment_id: str) -> Dict[str, Any]:
        """Refresh one shipment from its courier and apply any change."""
        try:
            check = self.delivery.check_shipment_status(shipment_id)
            result = self.tracker.reconcile(
                shipment_id, check.previous_status, check.status, check.raw_status
            )
        except OrchestrationError as e:
            if e.kind == OrchestrationErrorKind.SHIPMENT_NOT_FOUND:
                return _error_result(e.kind, e.message)
            return self._last_known_state(shipment_id, e.kind, e.message)
        except SQLAlchemyError as e:
            self.db.rollback()
            return self._last_known_state(shipment_id, "persistence_failure", str(e))

        shipment = self.delivery.get_shipment(shipment_id)
        return {
            "success": True,
            "shipment_id": shipment_id,
            "status": shipment.status,
            "reported_status": check.status.value,
            "raw_status": check.raw_status,
            "changed": result.changed,
            "last_checked": check.last_checked.isoformat(),
            "order_status_update": result.order_status_update,
        }

    def _last_known_state(self, shipment_id: str, kind, detail: str) -> Dict[str, Any]:
        shipment = self.delivery.get_shipment(shipment_id)
        logger.warning(f"Status refresh failed for shipment {shipment_id}: {detail}")
        return _error_result(
            kind,
            STATUS_REFRESH_FAILED_MESSAGE,
            detail=detail,
            shipment_id=shipment_id,
            status=shipment.status if shipment else None,
            changed=False,
            last_checked=shipment.last_checked.isoformat() if shipment and shipment.last_checked else None,
        )

    def handle_webhook(self, provider_type: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        """
        Apply a status pushed by a courier.

        Pushes for shipments we do not know are acknowledged and ignored so
        the courier does not keep redelivering them.
        """
        try:
            adapter = self.registry.resolve_type(provider_type)
            update = adapter.parse_webhook(payload or {})
        except OrchestrationError as e:
            return _error_result(e.kind, e.message)
        except ProviderError as e:
            logger.warning(f"Rejected {provider_type} webhook: {e.message}")
            return _error_result(e.kind, e.message)

        shipment = self.delivery.find_by_courier_reference(
            provider_type, external_id=update.external_id, tracking_ref=update.tracking_ref
        )
        if shipment is None:
            logger.info(
                f"{provider_type} webhook for unknown consignment "
                f"{update.external_id or update.tracking_ref} - ignored"
            )
            return {"success": True, "ignored": True, "message": "Unknown shipment"}

        shipment_id = shipment.id
        try:
            # Map with the adapter of the provider row that owns the shipment
            owner = self.registry.resolve(shipment.provider_id)
            status = owner.map_status(update.raw)
            result = self.tracker.reconcile(shipment_id, shipment.status_enum, status, update.raw.code)
        except OrchestrationError as e:
            return _error_result(e.kind, e.message, shipment_id=shipment_id)
        except SQLAlchemyError as e:
            self.db.rollback()
            logger.error(f"Webhook reconcile failed for shipment {shipment_id}: {e}")
            return _error_result("persistence_failure", "Failed to apply status update", shipment_id=shipment_id)

        return {
            "success": True,
            "shipment_id": shipment_id,
            "status": status.value,
            "changed": result.changed,
            "order_status_update": result.order_status_update,
        }

    def sweep_active_shipments(self, limit: Optional[int] = None, max_age_days: Optional[int] = None) -> Dict[str, Any]:
        """
        Check and reconcile every active shipment.

        One courier failing does not stop the sweep; its shipments are
        counted as failed (unreachable) or skipped (provider not loaded).

        Returns:
            Summary dict with counters
        """
        shipments = self.delivery.get_active_shipments(
            max_age_days=max_age_days, limit=limit or settings.SWEEP_BATCH_SIZE
        )
        shipment_ids = [s.id for s in shipments]

        summary = {
            "total": len(shipment_ids),
            "updated": 0,
            "unchanged": 0,
            "failed": 0,
            "skipped": 0,
            "errors": [],
        }
        logger.info(f"Sweeping {summary['total']} active shipments")

        for shipment_id in shipment_ids:
            try:
                check = self.delivery.check_shipment_status(shipment_id)
                result = self.tracker.reconcile(
                    shipment_id, check.previous_status, check.status, check.raw_status
                )
            except OrchestrationError as e:
                if e.kind == OrchestrationErrorKind.PROVIDER_NOT_FOUND:
                    summary["skipped"] += 1
                else:
                    summary["failed"] += 1
                    summary["errors"].append({"shipment_id": shipment_id, "error": e.kind.value, "message": e.message})
                continue
            except SQLAlchemyError as e:
                self.db.rollback()
                summary["failed"] += 1
                summary["errors"].append({"shipment_id": shipment_id, "error": "persistence_failure", "message": str(e)})
                logger.error(f"Sweep: storage error on shipment {shipment_id}: {e}")
                continue

            if result.changed:
                summary["updated"] += 1
            else:
                summary["unchanged"] += 1

        logger.info(
            f"Sweep complete: {summary['updated']} updated, {summary['unchanged']} unchanged, "
            f"{summary['failed']} failed, {summary['skipped']} skipped"
        )
        return summary

    # ------------------------------------------------------------------
    # COD
    # ------------------------------------------------------------------

    def get_cod_tracking(self, order_id: str) -> Optional[Dict[str, Any]]:
        tracking = self.ledger.get_tracking(order_id)
        return tracking.to_dict() if tracking else None

    def record_cod_event(self, order_id: str, action: str, payload: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        """
        Record a COD event, then apply the coupled order transition.

        Args:
            action: collected | failed | returned
            payload: collected_by + collected_amount (+ receipt_ref) for
                collected; reason (+ notes) for failed
        """
        payload = payload or {}
        if action not in COD_ACTIONS:
            return _error_result("invalid_request", f"Invalid action: {action!r}")

        try:
            if action == CODState.COLLECTED:
                if not payload.get("collected_by") or payload.get("collected_amount") is None:
                    return _error_result(
                        "invalid_request", "collected_by and collected_amount are required for collection"
                    )
                tracking = self.ledger.record_collection(
                    order_id,
                    payload["collected_by"],
                    payload["collected_amount"],
                    payload.get("receipt_ref"),
                )
                message = "COD collection recorded"
            elif action == CODState.FAILED:
                if not payload.get("reason"):
                    return _error_result("invalid_request", "reason is required for failed delivery")
                tracking = self.ledger.record_failure(order_id, payload["reason"], payload.get("notes"))
                message = "COD failure recorded"
            else:
                tracking = self.ledger.mark_returned(order_id)
                message = "Order marked as returned"
        except ValueError as e:
            return _error_result("invalid_request", str(e))
        except CODError as e:
            if e.kind == CODErrorKind.INVALID_STATE:
                return _error_result(e.kind, COD_INVALID_STATE_MESSAGE, current_state=e.current_state)
            return _error_result(e.kind, e.message)

        result = {
            "success": True,
            "message": message,
            "tracking": tracking.to_dict(),
            "order_status_update": None,
        }

        target = COD_ORDER_TRANSITIONS.get(action)
        if target is not None:
            result["order_status_update"] = self._apply_order_status(order_id, target, result)
        return result

    def _apply_order_status(self, order_id: str, status: str, result: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        try:
            update = self.orders.update_order_status(order_id, status)
            self.db.commit()
            return update
        except OrderStatusRejected as e:
            logger.warning(f"COD event recorded but order left unchanged: {e}")
            result["warning"] = str(e)
        except (LookupError, SQLAlchemyError) as e:
            self.db.rollback()
            logger.error(f"COD event recorded but order {order_id} status update failed: {e}")
            result["warning"] = f"Order status not updated: {e}"
        return None
