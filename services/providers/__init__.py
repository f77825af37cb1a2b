"""Courier adapters and the factory that builds them from provider rows."""

import logging
from typing import Dict, Type

from models.delivery import DeliveryProvider, ProviderType
from services.providers.base import (
    ProviderAdapter, OrderDetails, ShipmentOptions, ShipmentHandle, RawStatus, WebhookUpdate
)
from services.providers.pathao import PathaoProvider
from services.providers.steadfast import SteadfastProvider
from utils import parse_json_field

logger = logging.getLogger(__name__)

ADAPTER_TYPES: Dict[str, Type[ProviderAdapter]] = {
    ProviderType.PATHAO: PathaoProvider,
    ProviderType.STEADFAST: SteadfastProvider,
}


def create_adapter(provider: DeliveryProvider, **kwargs) -> ProviderAdapter:
    """
    Build the adapter for a provider row.

    Raises:
        ValueError: Unsupported type or unparsable credentials/config
    """
    adapter_cls = ADAPTER_TYPES.get(provider.type)
    if adapter_cls is None:
        raise ValueError(f"Unsupported provider type: {provider.type}")

    credentials = parse_json_field(provider.credentials, "credentials")
    config = parse_json_field(provider.config, "config")

    logger.info(f"Creating {adapter_cls.display_name} adapter for provider {provider.id} ({provider.name})")
    return adapter_cls(provider.id, credentials, config, **kwargs)


__all__ = [
    "ADAPTER_TYPES",
    "create_adapter",
    "ProviderAdapter",
    "OrderDetails",
    "ShipmentOptions",
    "ShipmentHandle",
    "RawStatus",
    "WebhookUpdate",
    "PathaoProvider",
    "SteadfastProvider",
]
