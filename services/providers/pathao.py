"""
Pathao Provider - courier adapter for the Pathao merchant API (aladdin).

Credentials (delivery_providers.credentials JSON):
    base_url, client_id, client_secret, username, password
Config (delivery_providers.config JSON):
    store_id, default_delivery_type (48 regular / 12 express),
    default_item_type (1 document / 2 parcel), default_item_weight (kg, min 0.5)

Key design decisions:
- Access tokens come from the password grant and are cached on the adapter
  instance with an explicit TTL (reported expiry minus a safety margin).
  `invalidate_token()` drops the cache; a 401 on any call does so too.
- Pathao needs its own city/zone ids. They are read from the order's
  city/zone/area columns; a missing city or zone is invalid_request.
- Pathao does not deduplicate merchant_order_id, so creation is
  at-most-one-attempt per call. Retrying with the same attempt_id is safe
  only because DeliveryService short-circuits on the idempotency key.
"""

import logging
from datetime import datetime, timedelta
from typing import Optional, Dict, Any
from urllib.parse import quote

from config import settings
from models.delivery import ShipmentStatus, ProviderType
from services.errors import ProviderError, ProviderErrorKind
from services.providers.base import (
    ProviderAdapter, OrderDetails, ShipmentOptions, ShipmentHandle, RawStatus, WebhookUpdate
)
from utils import join_url, mask_secret

logger = logging.getLogger(__name__)

ISSUE_TOKEN_PATH = "/aladdin/api/v1/issue-token"
ORDERS_PATH = "/aladdin/api/v1/orders"
STORES_PATH = "/aladdin/api/v1/stores"

DEFAULT_DELIVERY_TYPE = 48
DEFAULT_ITEM_TYPE = 2
DEFAULT_ITEM_WEIGHT = 0.5


class PathaoProvider(ProviderAdapter):
    """Pathao courier adapter."""

    provider_type = ProviderType.PATHAO
    display_name = "Pathao"

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.base_url = self.credentials.get("base_url", "")
        self._access_token: Optional[str] = None
        self._token_expiry: Optional[datetime] = None

    # ------------------------------------------------------------------
    # Token handling
    # ------------------------------------------------------------------

    def invalidate_token(self):
        """Forget the cached access token; the next call re-authenticates."""
        self._access_token = None
        self._token_expiry = None

    def _get_access_token(self) -> str:
        """Get a valid access token, refreshing if necessary."""
        now = datetime.utcnow()
        if self._access_token and self._token_expiry and self._token_expiry > now:
            return self._access_token

        try:
            response = self._request(
                "POST",
                join_url(self.base_url, ISSUE_TOKEN_PATH),
                json={
                    "client_id": self.credentials.get("client_id"),
                    "client_secret": self.credentials.get("client_secret"),
                    "grant_type": "password",
                    "username": self.credentials.get("username"),
                    "password": self.credentials.get("password"),
                },
                headers={"Content-Type": "application/json"},
            )
        except ProviderError as e:
            if e.kind == ProviderErrorKind.UNAVAILABLE:
                raise
            raise self._error(
                ProviderErrorKind.AUTH,
                f"Failed to obtain Pathao access token: {e.message}",
                status_code=e.status_code,
            )

        data = self._json(response)
        token = data.get("access_token")
        if not token:
            raise self._error(ProviderErrorKind.AUTH, "Failed to obtain Pathao access token: no token in response")

        expires_in = int(data.get("expires_in") or 0)
        ttl = max(expires_in - settings.PATHAO_TOKEN_SAFETY_MARGIN_SECONDS, 0)
        self._access_token = token
        self._token_expiry = now + timedelta(seconds=ttl)
        logger.info(
            f"[Pathao] Access token refreshed for client {mask_secret(self.credentials.get('client_id'))} "
            f"(valid for {ttl}s)"
        )
        return token

    def _authorized_request(self, method: str, path: str, **kwargs):
        token = self._get_access_token()
        headers = {"Authorization": f"Bearer {token}", "Content-Type": "application/json"}
        try:
            return self._request(method, join_url(self.base_url, path), headers=headers, **kwargs)
        except ProviderError as e:
            if e.kind == ProviderErrorKind.AUTH:
                self.invalidate_token()
            raise

    def _location_id(self, value: str, field_name: str) -> int:
        try:
            return int(value)
        except (TypeError, ValueError):
            raise self._error(
                ProviderErrorKind.INVALID_REQUEST,
                f"Invalid Pathao {field_name} id: {value!r}",
            )

    # ------------------------------------------------------------------
    # Contract
    # ------------------------------------------------------------------

    def create_shipment(self, order: OrderDetails, options: ShipmentOptions) -> ShipmentHandle:
        if not order.city or not order.zone:
            missing = " ".join(name for name, value in (("city", order.city), ("zone", order.zone)) if not value)
            raise self._error(
                ProviderErrorKind.INVALID_REQUEST,
                f"Missing required location information: {missing}",
            )

        payload = {
            "store_id": int(self.config.get("store_id") or 0),
            "merchant_order_id": options.merchant_reference(order),
            "recipient_name": order.customer_name,
            "recipient_phone": order.customer_phone,
            "recipient_address": order.shipping_address,
            "recipient_city": self._location_id(order.city, "city"),
            "recipient_zone": self._location_id(order.zone, "zone"),
            "recipient_area": self._location_id(order.area, "area") if order.area else None,
            "delivery_type": options.delivery_type or self.config.get("default_delivery_type", DEFAULT_DELIVERY_TYPE),
            "item_type": options.item_type or self.config.get("default_item_type", DEFAULT_ITEM_TYPE),
            "special_instruction": options.note or order.notes or None,
            "item_quantity": options.item_count,
            "item_weight": options.item_weight or self.config.get("default_item_weight", DEFAULT_ITEM_WEIGHT),
            "amount_to_collect": float(options.amount_to_collect(order)),
        }

        logger.info(f"[Pathao] Creating consignment for order {order.order_id}")
        response = self._authorized_request("POST", ORDERS_PATH, json=payload)
        data = self._json(response)

        consignment = data.get("data") or {}
        if data.get("code") != 200 or not consignment.get("consignment_id"):
            raise self._error(
                ProviderErrorKind.INVALID_REQUEST,
                f"API Error: {data.get('message') or 'Unknown error'}",
            )

        raw_status = consignment.get("order_status") or "Pending"
        consignment_id = str(consignment["consignment_id"])
        logger.info(f"[Pathao] Consignment {consignment_id} created for order {order.order_id}")
        return ShipmentHandle(
            external_id=consignment_id,
            tracking_ref=consignment_id,
            status=self.map_status(raw_status),
            raw_status=raw_status,
            metadata=consignment,
        )

    def fetch_status(self, reference: str) -> RawStatus:
        response = self._authorized_request("GET", f"{ORDERS_PATH}/{quote(str(reference), safe='')}/info")
        data = self._json(response)

        info = data.get("data") or {}
        if data.get("code") != 200 or "order_status" not in info:
            raise self._error(
                ProviderErrorKind.UNKNOWN,
                f"Failed to check status: {data.get('message') or 'malformed response'}",
            )
        return RawStatus(code=str(info["order_status"]), metadata=info)

    def _map_raw_status(self, code: str) -> ShipmentStatus:
        if "pickup cancelled" in code or "pickup_cancelled" in code:
            return ShipmentStatus.CANCELLED
        if "pending" in code:
            return ShipmentStatus.PENDING
        if ("pick" in code and "cancel" not in code) or "accepted" in code:
            return ShipmentStatus.PICKED_UP
        if "transit" in code or "processing" in code:
            return ShipmentStatus.IN_TRANSIT
        if "delivered" in code:
            return ShipmentStatus.DELIVERED
        if "failed" in code or "unknown" in code:
            return ShipmentStatus.FAILED
        if "cancel" in code:
            return ShipmentStatus.CANCELLED
        if "return" in code:
            return ShipmentStatus.RETURNED
        return ShipmentStatus.UNKNOWN

    def parse_webhook(self, payload: Dict[str, Any]) -> WebhookUpdate:
        consignment_id = payload.get("consignment_id")
        raw_status = payload.get("order_status_slug") or payload.get("order_status")

        if not consignment_id or not raw_status:
            raise self._error(ProviderErrorKind.INVALID_REQUEST, "Missing consignment_id or order_status")

        return WebhookUpdate(
            external_id=str(consignment_id),
            tracking_ref=str(consignment_id),
            raw=RawStatus(code=str(raw_status), metadata=payload),
        )

    # ------------------------------------------------------------------
    # Extras
    # ------------------------------------------------------------------

    def test_connection(self) -> Dict[str, Any]:
        try:
            self._get_access_token()

            store_id = self.config.get("store_id")
            if store_id:
                response = self._authorized_request("GET", STORES_PATH)
                data = self._json(response)
                stores = (data.get("data") or {}).get("data") or []
                if not any(str(store.get("store_id")) == str(store_id) for store in stores):
                    return {"success": False, "message": f"Store ID {store_id} not found in your account."}

            return {"success": True, "message": "Connection successful"}
        except ProviderError as e:
            return {"success": False, "message": f"Connection failed: {e.message}"}

    def tracking_url(self, tracking_ref: Optional[str]) -> Optional[str]:
        if not tracking_ref:
            return None
        return f"https://merchant.pathao.com/tracking?consignment_id={quote(tracking_ref, safe='')}"
