"""
Provider Registry - resolves provider IDs to ready adapters.

Read path only. Provider rows are created and edited by the admin settings
screens; the registry reads them at startup and whenever `reload()` is
called after a settings change. Nothing reads provider credentials per
request.

Key design decisions:
- The registry is an explicit object handed to services, not a module
  global reached from deep call chains.
- A provider with broken credentials/config is skipped and logged; the
  other providers stay usable.
- Inactive providers are listed but do not resolve.
- A reload keeps the existing adapter for a provider whose type,
  credentials and config are unchanged, so its circuit breaker and cached
  courier token survive periodic reloads.
"""

import logging
import threading
from typing import Callable, Dict, List, Optional, Tuple

from sqlalchemy.orm import Session

from models.delivery import DeliveryProvider
from services.errors import OrchestrationError, OrchestrationErrorKind
from services.providers import ProviderAdapter, create_adapter

logger = logging.getLogger(__name__)


class ProviderInfo:
    """Read-only view of a configured provider (no credentials)."""

    def __init__(self, id: str, name: str, type: str, is_active: bool):
        self.id = id
        self.name = name
        self.type = type
        self.is_active = is_active

    @classmethod
    def from_row(cls, row: DeliveryProvider) -> "ProviderInfo":
        return cls(id=row.id, name=row.name, type=row.type, is_active=bool(row.is_active))

    def to_dict(self) -> dict:
        return {"id": self.id, "name": self.name, "type": self.type, "is_active": self.is_active}

    def __repr__(self):
        return f"<ProviderInfo(id={self.id}, type={self.type}, active={self.is_active})>"


class ProviderRegistry:
    """
    Usage:
        registry = ProviderRegistry.from_db(db)
        adapter = registry.resolve(shipment.provider_id)
    """

    def __init__(
        self,
        adapters: Optional[Dict[str, ProviderAdapter]] = None,
        providers: Optional[List[ProviderInfo]] = None,
        adapter_factory: Callable[[DeliveryProvider], ProviderAdapter] = create_adapter,
    ):
        self._adapters: Dict[str, ProviderAdapter] = dict(adapters or {})
        self._providers: Dict[str, ProviderInfo] = {p.id: p for p in (providers or [])}
        self._adapter_factory = adapter_factory
        self._fingerprints: Dict[str, Tuple] = {}
        self._lock = threading.Lock()

    @classmethod
    def from_db(cls, db: Session, **kwargs) -> "ProviderRegistry":
        registry = cls(**kwargs)
        registry.reload(db)
        return registry

    def reload(self, db: Session) -> int:
        """
        Rebuild adapters from the delivery_providers table.

        Providers whose type, credentials and config are unchanged keep
        their current adapter instance.

        Returns:
            Number of active providers that resolved to an adapter
        """
        rows = db.query(DeliveryProvider).order_by(DeliveryProvider.updated_at.desc()).all()

        adapters: Dict[str, ProviderAdapter] = {}
        providers: Dict[str, ProviderInfo] = {}
        fingerprints: Dict[str, Tuple] = {}
        reused = 0
        for row in rows:
            providers[row.id] = ProviderInfo.from_row(row)
            if not row.is_active:
                continue
            fingerprint = (row.type, row.credentials, row.config)
            current = self._adapters.get(row.id)
            if current is not None and self._fingerprints.get(row.id) == fingerprint:
                adapters[row.id] = current
                fingerprints[row.id] = fingerprint
                reused += 1
                continue
            try:
                adapters[row.id] = self._adapter_factory(row)
                fingerprints[row.id] = fingerprint
            except ValueError as e:
                logger.error(f"Skipping provider {row.id} ({row.type}): {e}")

        with self._lock:
            self._adapters = adapters
            self._providers = providers
            self._fingerprints = fingerprints

        logger.info(f"Provider registry loaded: {len(adapters)} active of {len(providers)} configured ({reused} unchanged)")
        return len(adapters)

    def register(self, info: ProviderInfo, adapter: ProviderAdapter):
        """Add an adapter directly (startup wiring and tests)."""
        with self._lock:
            self._providers[info.id] = info
            self._fingerprints.pop(info.id, None)
            if info.is_active:
                self._adapters[info.id] = adapter

    def resolve(self, provider_id: str) -> ProviderAdapter:
        """
        Raises:
            OrchestrationError(provider_not_found): Unknown, inactive or unloadable provider
        """
        adapter = self._adapters.get(provider_id)
        if adapter is None:
            raise OrchestrationError(
                OrchestrationErrorKind.PROVIDER_NOT_FOUND,
                f"Provider with ID {provider_id} not found",
                provider_id=provider_id,
            )
        return adapter

    def resolve_type(self, provider_type: str) -> ProviderAdapter:
        """
        First active adapter of a courier type (webhooks name the courier, not the provider row).

        Raises:
            OrchestrationError(provider_not_found): No active provider of that type
        """
        for adapter in self._adapters.values():
            if adapter.provider_type == provider_type:
                return adapter
        raise OrchestrationError(
            OrchestrationErrorKind.PROVIDER_NOT_FOUND,
            f"No active provider of type {provider_type}",
        )

    def list(self, active_only: bool = False) -> List[ProviderInfo]:
        providers = list(self._providers.values())
        if active_only:
            providers = [p for p in providers if p.is_active and p.id in self._adapters]
        return providers

    def get_info(self, provider_id: str) -> Optional[ProviderInfo]:
        return self._providers.get(provider_id)
