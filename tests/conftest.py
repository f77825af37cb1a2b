"""Pytest configuration and fixtures for fulfillment tests."""
import os

# Must be set before config/db.session are imported
os.environ["DATABASE_URL"] = "sqlite://"

import json
from datetime import datetime
from decimal import Decimal
from typing import List, Optional
from unittest.mock import MagicMock

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

import models  # noqa: F401
from db.session import Base
from models.delivery import DeliveryProvider, Shipment, ShipmentStatus
from models.order import Order, OrderStatus
from services.circuit_breaker import CircuitBreaker
from services.errors import ProviderErrorKind
from services.notifier import Notifier, StatusChangeEvent
from services.provider_registry import ProviderRegistry, ProviderInfo
from services.providers import ProviderAdapter, ShipmentHandle, RawStatus, WebhookUpdate
from utils import generate_shipment_id


class FakeAdapter(ProviderAdapter):
    """Scripted courier: statuses are served in order, the last one repeats."""

    provider_type = "fake"
    display_name = "Fake"

    def __init__(self, provider_id: str = "P1", statuses: Optional[List[str]] = None, create_status: str = "pending"):
        super().__init__(
            provider_id, {}, {}, http=MagicMock(), breaker=CircuitBreaker(failure_threshold=100, name=provider_id)
        )
        self.statuses = list(statuses or ["pending"])
        self.create_status = create_status
        self.create_calls = []
        self.fetch_calls = []
        self.create_error = None
        self.fetch_error = None

    def create_shipment(self, order, options):
        self.create_calls.append((order, options))
        if self.create_error:
            raise self.create_error
        n = len(self.create_calls)
        return ShipmentHandle(
            external_id=f"{self.provider_id}-C{n}",
            tracking_ref=f"{self.provider_id}-T{n}",
            status=self.map_status(self.create_status),
            raw_status=self.create_status,
            metadata={"merchant_reference": options.merchant_reference(order)},
        )

    def fetch_status(self, reference):
        self.fetch_calls.append(reference)
        if self.fetch_error:
            raise self.fetch_error
        code = self.statuses.pop(0) if len(self.statuses) > 1 else self.statuses[0]
        return RawStatus(code=code)

    def _map_raw_status(self, code):
        return ShipmentStatus.coerce(code)

    def parse_webhook(self, payload):
        if not payload.get("consignment_id") or not payload.get("status"):
            raise self._error(ProviderErrorKind.INVALID_REQUEST, "Missing consignment_id or status")
        return WebhookUpdate(
            external_id=payload["consignment_id"],
            tracking_ref=None,
            raw=RawStatus(code=payload["status"], metadata=payload),
        )

    def tracking_url(self, tracking_ref):
        return f"https://fake.example/track/{tracking_ref}" if tracking_ref else None


class RecordingNotifier(Notifier):
    """Keeps every event; raises instead when `fail` is set."""

    def __init__(self, fail: bool = False):
        self.events: List[StatusChangeEvent] = []
        self.fail = fail

    def notify(self, event: StatusChangeEvent) -> None:
        if self.fail:
            raise RuntimeError("push gateway down")
        self.events.append(event)


# =============================================================================
# Database
# =============================================================================

@pytest.fixture
def engine():
    """Fresh in-memory database shared by every session of one test."""
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(bind=engine, autoflush=False)


@pytest.fixture
def db(session_factory):
    session = session_factory()
    yield session
    session.close()


@pytest.fixture
def make_order(db):
    def _make(order_id: str = "O1", status: str = OrderStatus.PENDING, **kwargs) -> Order:
        values = dict(
            customer_name="Rahim Uddin",
            customer_phone="01711000000",
            shipping_address="House 12, Road 5",
            city="1",
            zone="52",
            area="10",
            city_name="Dhaka",
            zone_name="Banani",
            area_name="Block C",
            total_amount=Decimal("1400"),
            shipping_charge=Decimal("100"),
            discount_amount=Decimal("0"),
            payment_method="cod",
        )
        values.update(kwargs)
        order = Order(id=order_id, status=status, **values)
        db.add(order)
        db.commit()
        return order
    return _make


@pytest.fixture
def make_provider(db):
    def _make(provider_id: str = "P1", type: str = "fake", is_active: bool = True,
              credentials: Optional[dict] = None, config: Optional[dict] = None) -> DeliveryProvider:
        provider = DeliveryProvider(
            id=provider_id,
            name=f"Provider {provider_id}",
            type=type,
            credentials=json.dumps(credentials or {}),
            config=json.dumps(config or {}),
            is_active=is_active,
        )
        db.add(provider)
        db.commit()
        return provider
    return _make


@pytest.fixture
def make_shipment(db):
    def _make(order_id: str = "O1", provider_id: str = "P1", status: str = ShipmentStatus.PENDING.value,
              external_id: Optional[str] = None, created_at: Optional[datetime] = None,
              provider_type: str = "fake") -> Shipment:
        shipment_id = generate_shipment_id()
        shipment = Shipment(
            id=shipment_id,
            order_id=order_id,
            provider_id=provider_id,
            provider_type=provider_type,
            external_id=external_id or f"EXT-{shipment_id[:8]}",
            tracking_ref=f"TRK-{shipment_id[:8]}",
            status=status,
            created_at=created_at or datetime.utcnow(),
            updated_at=created_at or datetime.utcnow(),
        )
        db.add(shipment)
        db.commit()
        return shipment
    return _make


# =============================================================================
# Providers
# =============================================================================

@pytest.fixture
def fake_adapter():
    return FakeAdapter("P1")


@pytest.fixture
def registry(fake_adapter):
    registry = ProviderRegistry()
    registry.register(ProviderInfo("P1", "Fake One", "fake", True), fake_adapter)
    return registry


@pytest.fixture
def notifier():
    return RecordingNotifier()
