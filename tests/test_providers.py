# =============================================================================
# Tests for the Pathao and Steadfast adapters
# =============================================================================
# The HTTP transport is a MagicMock standing in for requests.Session; each
# test scripts the responses with side_effect lists.
# =============================================================================

import json
from decimal import Decimal
from unittest.mock import MagicMock

import pytest
import requests

from models.delivery import DeliveryProvider, ShipmentStatus
from services.circuit_breaker import CircuitBreaker, CircuitState
from services.errors import ProviderError, ProviderErrorKind
from services.providers import (
    create_adapter, PathaoProvider, SteadfastProvider, OrderDetails, ShipmentOptions
)
from services.providers.base import error_kind_for_status


PATHAO_CREDENTIALS = {
    "base_url": "https://api-hermes.pathao.com",
    "client_id": "client",
    "client_secret": "secret",
    "username": "merchant@example.com",
    "password": "hunter2",
}
STEADFAST_CREDENTIALS = {
    "base_url": "https://portal.packzy.com/api/v1/",
    "api_key": "key-123",
    "secret_key": "secret-456",
}


def _response(status_code=200, data=None):
    response = MagicMock()
    response.status_code = status_code
    if isinstance(data, Exception):
        response.json.side_effect = data
        response.text = "<html>Bad Gateway</html>"
    else:
        response.json.return_value = data
    return response


def _token_response(expires_in=432000):
    return _response(200, {"token_type": "Bearer", "expires_in": expires_in, "access_token": "tok-1"})


@pytest.fixture
def order_details():
    return OrderDetails(
        order_id="O1",
        customer_name="Rahim Uddin",
        customer_phone="01711000000",
        shipping_address="House 12, Road 5",
        city="1",
        zone="52",
        area="10",
        city_name="Dhaka",
        zone_name="Banani",
        area_name="Block C",
        amount_due=Decimal("1500"),
    )


@pytest.fixture
def http():
    return MagicMock()


@pytest.fixture
def pathao(http):
    return PathaoProvider("P-pathao", PATHAO_CREDENTIALS, {"store_id": "7"}, http=http, timeout=5)


@pytest.fixture
def steadfast(http):
    return SteadfastProvider("P-steadfast", STEADFAST_CREDENTIALS, http=http, timeout=5)


# =============================================================================
# Error classification
# =============================================================================

@pytest.mark.parametrize("status_code, kind", [
    (401, ProviderErrorKind.AUTH),
    (403, ProviderErrorKind.AUTH),
    (404, ProviderErrorKind.NOT_FOUND),
    (400, ProviderErrorKind.INVALID_REQUEST),
    (422, ProviderErrorKind.INVALID_REQUEST),
    (429, ProviderErrorKind.UNAVAILABLE),
    (503, ProviderErrorKind.UNAVAILABLE),
    (418, ProviderErrorKind.UNKNOWN),
])
def test_error_kind_for_status(status_code, kind):
    assert error_kind_for_status(status_code) == kind


# =============================================================================
# Pathao
# =============================================================================

class TestPathao:

    def test_create_shipment(self, pathao, http, order_details):
        http.request.side_effect = [
            _token_response(),
            _response(200, {
                "code": 200,
                "message": "Order Created Successfully",
                "data": {"consignment_id": "DL121224VS8TTJ", "merchant_order_id": "O1", "order_status": "Pending"},
            }),
        ]
        options = ShipmentOptions(idempotency_key="abcdef0123456789")

        handle = pathao.create_shipment(order_details, options)

        assert handle.external_id == "DL121224VS8TTJ"
        assert handle.tracking_ref == "DL121224VS8TTJ"
        assert handle.status == ShipmentStatus.PENDING

        method, url = http.request.call_args.args
        payload = http.request.call_args.kwargs["json"]
        assert (method, url) == ("POST", "https://api-hermes.pathao.com/aladdin/api/v1/orders")
        assert http.request.call_args.kwargs["headers"]["Authorization"] == "Bearer tok-1"
        assert http.request.call_args.kwargs["timeout"] == 5
        assert payload["merchant_order_id"] == "O1-abcdef01"
        assert payload["store_id"] == 7
        assert payload["recipient_city"] == 1
        assert payload["recipient_zone"] == 52
        assert payload["amount_to_collect"] == 1500.0

    def test_create_shipment_uses_explicit_cod_amount(self, pathao, http, order_details):
        http.request.side_effect = [
            _token_response(),
            _response(200, {"code": 200, "data": {"consignment_id": "DL1", "order_status": "Pending"}}),
        ]

        pathao.create_shipment(order_details, ShipmentOptions(cod_amount=Decimal("0")))

        assert http.request.call_args.kwargs["json"]["amount_to_collect"] == 0.0

    @pytest.mark.parametrize("options", [
        {"cod_amount": "abc"},
        {"cod_amount": "-5"},
        {"cod_amount": "NaN"},
        {"item_count": "two"},
        {"item_weight": [1]},
    ])
    def test_malformed_options_are_value_errors(self, options):
        with pytest.raises(ValueError):
            ShipmentOptions.from_dict(options)

    def test_options_normalise_numeric_strings(self):
        options = ShipmentOptions.from_dict({"cod_amount": " 750.50 ", "item_count": "2", "item_weight": "0.5"})

        assert options.cod_amount == Decimal("750.50")
        assert options.item_count == 2
        assert options.item_weight == 0.5

    def test_options_ignore_caller_idempotency_key(self):
        options = ShipmentOptions.from_dict({"idempotency_key": "deadbeef" * 4})

        assert options.idempotency_key is None

    def test_create_shipment_without_zone_is_invalid_request(self, pathao, http, order_details):
        order_details.zone = None

        with pytest.raises(ProviderError) as exc_info:
            pathao.create_shipment(order_details, ShipmentOptions())

        assert exc_info.value.kind == ProviderErrorKind.INVALID_REQUEST
        assert "zone" in exc_info.value.message
        http.request.assert_not_called()

    def test_create_shipment_rejected_by_courier(self, pathao, http, order_details):
        http.request.side_effect = [
            _token_response(),
            _response(422, {"message": "Please fix the given errors", "code": 422}),
        ]

        with pytest.raises(ProviderError) as exc_info:
            pathao.create_shipment(order_details, ShipmentOptions())

        assert exc_info.value.kind == ProviderErrorKind.INVALID_REQUEST
        assert exc_info.value.message == "API Error: Please fix the given errors"
        assert exc_info.value.provider_id == "P-pathao"

    def test_token_is_cached_between_calls(self, pathao, http):
        info = _response(200, {"code": 200, "data": {"consignment_id": "DL1", "order_status": "In_Transit"}})
        http.request.side_effect = [_token_response(), info, info]

        pathao.fetch_status("DL1")
        raw = pathao.fetch_status("DL1")

        assert raw.code == "In_Transit"
        assert http.request.call_count == 3
        token_calls = [c for c in http.request.call_args_list if c.args[1].endswith("issue-token")]
        assert len(token_calls) == 1

    def test_token_inside_safety_margin_is_not_cached(self, pathao, http):
        info = _response(200, {"code": 200, "data": {"order_status": "Pending"}})
        http.request.side_effect = [_token_response(expires_in=60), info, _token_response(expires_in=60), info]

        pathao.fetch_status("DL1")
        pathao.fetch_status("DL1")

        assert http.request.call_count == 4

    def test_auth_failure_invalidates_token(self, pathao, http):
        http.request.side_effect = [_token_response(), _response(401, {"message": "Unauthenticated."})]

        with pytest.raises(ProviderError) as exc_info:
            pathao.fetch_status("DL1")

        assert exc_info.value.kind == ProviderErrorKind.AUTH
        assert pathao._access_token is None

    def test_token_rejection_is_auth_error(self, pathao, http):
        http.request.side_effect = [_response(400, {"message": "The user credentials were incorrect."})]

        with pytest.raises(ProviderError) as exc_info:
            pathao.fetch_status("DL1")

        assert exc_info.value.kind == ProviderErrorKind.AUTH

    def test_fetch_status_url(self, pathao, http):
        http.request.side_effect = [
            _token_response(),
            _response(200, {"code": 200, "data": {"order_status": "Delivered"}}),
        ]

        raw = pathao.fetch_status("DL12/34")

        method, url = http.request.call_args.args
        assert method == "GET"
        assert url == "https://api-hermes.pathao.com/aladdin/api/v1/orders/DL12%2F34/info"
        assert pathao.map_status(raw) == ShipmentStatus.DELIVERED

    def test_timeout_is_unavailable(self, pathao, http):
        http.request.side_effect = requests.Timeout("read timed out")

        with pytest.raises(ProviderError) as exc_info:
            pathao.fetch_status("DL1")

        assert exc_info.value.kind == ProviderErrorKind.UNAVAILABLE

    def test_invalid_json_is_unknown(self, pathao, http):
        http.request.side_effect = [_token_response(), _response(200, ValueError("No JSON"))]

        with pytest.raises(ProviderError) as exc_info:
            pathao.fetch_status("DL1")

        assert exc_info.value.kind == ProviderErrorKind.UNKNOWN

    def test_parse_webhook(self, pathao):
        update = pathao.parse_webhook({"consignment_id": "DL1", "order_status_slug": "Delivered"})

        assert update.external_id == "DL1"
        assert update.raw.code == "Delivered"

    def test_parse_webhook_without_status(self, pathao):
        with pytest.raises(ProviderError) as exc_info:
            pathao.parse_webhook({"consignment_id": "DL1"})

        assert exc_info.value.kind == ProviderErrorKind.INVALID_REQUEST

    def test_test_connection_unknown_store(self, pathao, http):
        http.request.side_effect = [
            _token_response(),
            _response(200, {"code": 200, "data": {"data": [{"store_id": 3, "store_name": "Main"}]}}),
        ]

        result = pathao.test_connection()

        assert result["success"] is False
        assert "Store ID 7" in result["message"]

    def test_tracking_url(self, pathao):
        assert pathao.tracking_url("DL1") == "https://merchant.pathao.com/tracking?consignment_id=DL1"
        assert pathao.tracking_url(None) is None


# =============================================================================
# Steadfast
# =============================================================================

class TestSteadfast:

    def test_create_shipment(self, steadfast, http, order_details):
        http.request.return_value = _response(200, {
            "status": 200,
            "message": "Consignment has been created successfully.",
            "consignment": {
                "consignment_id": 1424107,
                "invoice": "O1",
                "tracking_code": "15BAEB8A",
                "status": "in_review",
            },
        })

        handle = steadfast.create_shipment(order_details, ShipmentOptions())

        assert handle.external_id == "1424107"
        assert handle.tracking_ref == "15BAEB8A"
        assert handle.status == ShipmentStatus.PENDING

        method, url = http.request.call_args.args
        kwargs = http.request.call_args.kwargs
        assert (method, url) == ("POST", "https://portal.packzy.com/api/v1/create_order")
        assert kwargs["headers"]["Api-Key"] == "key-123"
        assert kwargs["headers"]["Secret-Key"] == "secret-456"
        assert kwargs["json"]["invoice"] == "O1"
        assert kwargs["json"]["recipient_address"] == "House 12, Road 5, Block C, Banani, Dhaka"
        assert kwargs["json"]["cod_amount"] == 1500.0

    def test_duplicate_invoice_is_invalid_request(self, steadfast, http, order_details):
        http.request.return_value = _response(422, {"message": "The invoice has already been taken."})

        with pytest.raises(ProviderError) as exc_info:
            steadfast.create_shipment(order_details, ShipmentOptions(idempotency_key="abcdef0123456789"))

        assert exc_info.value.kind == ProviderErrorKind.INVALID_REQUEST
        assert exc_info.value.message == "API Error: The invoice has already been taken."
        assert http.request.call_args.kwargs["json"]["invoice"] == "O1-abcdef01"

    def test_fetch_status(self, steadfast, http):
        http.request.return_value = _response(200, {"status": 200, "delivery_status": "delivered"})

        raw = steadfast.fetch_status("1424107")

        assert http.request.call_args.args == ("GET", "https://portal.packzy.com/api/v1/status_by_cid/1424107")
        assert steadfast.map_status(raw) == ShipmentStatus.DELIVERED

    def test_fetch_status_missing_field(self, steadfast, http):
        http.request.return_value = _response(200, {"status": 200})

        with pytest.raises(ProviderError) as exc_info:
            steadfast.fetch_status("1424107")

        assert exc_info.value.kind == ProviderErrorKind.UNKNOWN

    def test_connection_error_is_unavailable(self, steadfast, http):
        http.request.side_effect = requests.ConnectionError("connection refused")

        with pytest.raises(ProviderError) as exc_info:
            steadfast.fetch_status("1424107")

        assert exc_info.value.kind == ProviderErrorKind.UNAVAILABLE

    def test_test_connection_accepts_unknown_invoice(self, steadfast, http):
        http.request.return_value = _response(404, {"message": "Consignment not found"})

        assert steadfast.test_connection()["success"] is True

    def test_test_connection_bad_keys(self, steadfast, http):
        http.request.return_value = _response(401, {"message": "Unauthorized"})

        result = steadfast.test_connection()

        assert result["success"] is False
        assert "Unauthorized" in result["message"]

    def test_parse_webhook_by_tracking_code(self, steadfast):
        update = steadfast.parse_webhook({"tracking_code": "15BAEB8A", "status": "delivered"})

        assert update.external_id is None
        assert update.tracking_ref == "15BAEB8A"
        assert update.raw.code == "delivered"


# =============================================================================
# Circuit breaker integration
# =============================================================================

def test_circuit_opens_after_repeated_unavailable(http, order_details):
    breaker = CircuitBreaker(failure_threshold=2, reset_timeout=300, name="steadfast")
    adapter = SteadfastProvider("P-steadfast", STEADFAST_CREDENTIALS, http=http, breaker=breaker)
    http.request.side_effect = requests.ConnectionError("connection refused")

    for _ in range(2):
        with pytest.raises(ProviderError):
            adapter.fetch_status("1")

    with pytest.raises(ProviderError) as exc_info:
        adapter.fetch_status("1")

    assert breaker.state == CircuitState.OPEN
    assert exc_info.value.kind == ProviderErrorKind.UNAVAILABLE
    assert "circuit open" in exc_info.value.message
    assert http.request.call_count == 2


def test_client_errors_do_not_open_circuit(http):
    breaker = CircuitBreaker(failure_threshold=2, reset_timeout=300, name="steadfast")
    adapter = SteadfastProvider("P-steadfast", STEADFAST_CREDENTIALS, http=http, breaker=breaker)
    http.request.return_value = _response(404, {"message": "Consignment not found"})

    for _ in range(3):
        with pytest.raises(ProviderError):
            adapter.fetch_status("1")

    assert breaker.state == CircuitState.CLOSED


# =============================================================================
# Factory
# =============================================================================

class TestCreateAdapter:

    def test_builds_adapter_for_type(self):
        row = DeliveryProvider(
            id="P1", name="Pathao Live", type="pathao",
            credentials=json.dumps(PATHAO_CREDENTIALS), config=json.dumps({"store_id": 7}),
        )

        adapter = create_adapter(row, http=MagicMock())

        assert isinstance(adapter, PathaoProvider)
        assert adapter.provider_id == "P1"
        assert adapter.config["store_id"] == 7

    def test_unsupported_type(self):
        row = DeliveryProvider(id="P1", name="Carrier Pigeon", type="pigeon", credentials="{}", config="{}")

        with pytest.raises(ValueError, match="Unsupported provider type"):
            create_adapter(row)

    def test_broken_credentials(self):
        row = DeliveryProvider(id="P1", name="Steadfast", type="steadfast", credentials="{not json", config="{}")

        with pytest.raises(ValueError, match="Invalid credentials format"):
            create_adapter(row)
