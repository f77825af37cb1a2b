"""
Steadfast Provider - courier adapter for the Steadfast Courier API.

Credentials (delivery_providers.credentials JSON):
    base_url, api_key, secret_key

Key design decisions:
- Auth is two static headers (Api-Key / Secret-Key); no token lifecycle.
- The merchant reference (order id + idempotency key prefix) is sent as
  `invoice`. Steadfast rejects a second consignment with an invoice it
  has already seen, so a retried create with the same attempt cannot
  produce a duplicate on the courier side.
- Status is read by consignment id (status_by_cid), which is the
  shipment's external_id. The customer-facing tracking_code is kept as
  tracking_ref for links.
"""

import logging
from typing import Optional, Dict, Any
from urllib.parse import quote

from models.delivery import ShipmentStatus, ProviderType
from services.errors import ProviderError, ProviderErrorKind
from services.providers.base import (
    ProviderAdapter, OrderDetails, ShipmentOptions, ShipmentHandle, RawStatus, WebhookUpdate
)
from utils import join_url, mask_secret

logger = logging.getLogger(__name__)


class SteadfastProvider(ProviderAdapter):
    """Steadfast courier adapter."""

    provider_type = ProviderType.STEADFAST
    display_name = "Steadfast"

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.base_url = (self.credentials.get("base_url") or "").strip()
        if not self.credentials.get("api_key") or not self.credentials.get("secret_key"):
            logger.warning(f"[Steadfast] Provider {self.provider_id} has incomplete API credentials")
        else:
            logger.debug(f"[Steadfast] Provider {self.provider_id} using API key {mask_secret(self.credentials['api_key'])}")

    def _headers(self) -> Dict[str, str]:
        return {
            "Api-Key": (self.credentials.get("api_key") or "").strip(),
            "Secret-Key": (self.credentials.get("secret_key") or "").strip(),
            "Content-Type": "application/json",
        }

    # ------------------------------------------------------------------
    # Contract
    # ------------------------------------------------------------------

    def create_shipment(self, order: OrderDetails, options: ShipmentOptions) -> ShipmentHandle:
        address_parts = [order.shipping_address, order.area_name, order.zone_name, order.city_name]
        full_address = ", ".join(part for part in address_parts if part)

        payload = {
            "invoice": options.merchant_reference(order),
            "recipient_name": order.customer_name,
            "recipient_phone": order.customer_phone,
            "recipient_address": full_address,
            "cod_amount": float(options.amount_to_collect(order)),
            "note": options.note or order.notes or None,
        }

        logger.info(f"[Steadfast] Creating consignment for order {order.order_id}")
        response = self._request(
            "POST", join_url(self.base_url, "create_order"), json=payload, headers=self._headers()
        )
        data = self._json(response)

        consignment = data.get("consignment") or {}
        if data.get("status") != 200 or not consignment.get("consignment_id"):
            raise self._error(
                ProviderErrorKind.INVALID_REQUEST,
                f"API Error: {data.get('message') or 'Unknown error'}",
            )

        raw_status = consignment.get("status") or "in_review"
        consignment_id = str(consignment["consignment_id"])
        logger.info(f"[Steadfast] Consignment {consignment_id} created for order {order.order_id}")
        return ShipmentHandle(
            external_id=consignment_id,
            tracking_ref=consignment.get("tracking_code"),
            status=self.map_status(raw_status),
            raw_status=raw_status,
            metadata=consignment,
        )

    def fetch_status(self, reference: str) -> RawStatus:
        response = self._request(
            "GET",
            join_url(self.base_url, f"status_by_cid/{quote(str(reference), safe='')}"),
            headers=self._headers(),
        )
        data = self._json(response)

        delivery_status = data.get("delivery_status")
        if not delivery_status:
            raise self._error(
                ProviderErrorKind.UNKNOWN,
                f"Failed to check status: {data.get('message') or 'no delivery_status in response'}",
            )
        return RawStatus(code=str(delivery_status), metadata=data)

    def _map_raw_status(self, code: str) -> ShipmentStatus:
        if "pending" in code or code == "in_review":
            return ShipmentStatus.PENDING
        if "delivered" in code:  # includes partial_delivered
            return ShipmentStatus.DELIVERED
        if "cancelled" in code:
            return ShipmentStatus.CANCELLED
        if code == "unknown":
            # Steadfast reports consignments it has dropped as "unknown"
            return ShipmentStatus.CANCELLED
        if "transit" in code:
            return ShipmentStatus.IN_TRANSIT
        if "pick" in code:
            return ShipmentStatus.PICKED_UP
        if "return" in code:
            return ShipmentStatus.RETURNED
        if "fail" in code:
            return ShipmentStatus.FAILED
        return ShipmentStatus.UNKNOWN

    def parse_webhook(self, payload: Dict[str, Any]) -> WebhookUpdate:
        consignment_id = payload.get("consignment_id")
        tracking_code = payload.get("tracking_code")
        raw_status = payload.get("status") or payload.get("delivery_status")

        if not raw_status or (not consignment_id and not tracking_code):
            raise self._error(ProviderErrorKind.INVALID_REQUEST, "Missing status or consignment identifiers")

        return WebhookUpdate(
            external_id=str(consignment_id) if consignment_id else None,
            tracking_ref=tracking_code,
            raw=RawStatus(code=str(raw_status), metadata=payload),
        )

    # ------------------------------------------------------------------
    # Extras
    # ------------------------------------------------------------------

    def test_connection(self) -> Dict[str, Any]:
        try:
            self._request(
                "GET", join_url(self.base_url, "status_by_invoice/test"), headers=self._headers()
            )
        except ProviderError as e:
            # An unknown invoice still proves the keys were accepted
            if e.kind == ProviderErrorKind.NOT_FOUND:
                return {"success": True, "message": "Connection successful"}
            return {"success": False, "message": f"Connection failed: {e.message}"}
        return {"success": True, "message": "Connection successful"}

    def tracking_url(self, tracking_ref: Optional[str]) -> Optional[str]:
        if not tracking_ref:
            return None
        return f"https://steadfast.com.bd/t/{quote(tracking_ref, safe='')}"
