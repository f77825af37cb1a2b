"""
Notifier - the notification collaborator.

Delivery of pushes/SMS/email is outside fulfillment. This module defines
the event the reconciler emits and the interface it emits to. The event
carries the customer's phone and email so a sender needs no order lookup.
`notify` is fire-and-forget: callers log a failure and carry on.
"""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field, asdict
from datetime import datetime
from typing import Dict, Any, Optional

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class StatusChangeEvent:
    """One observed shipment status change. Not persisted."""
    shipment_id: str
    order_id: str
    previous_status: str
    new_status: str
    customer_phone: Optional[str] = None
    customer_email: Optional[str] = None
    occurred_at: datetime = field(default_factory=datetime.utcnow)

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["occurred_at"] = self.occurred_at.isoformat()
        return data


class Notifier(ABC):
    """Notification sender interface."""

    @abstractmethod
    def notify(self, event: StatusChangeEvent) -> None:
        raise NotImplementedError


class LoggingNotifier(Notifier):
    """Default sender: writes the event to the log."""

    def notify(self, event: StatusChangeEvent) -> None:
        logger.info(
            f"[NOTIFY] Shipment {event.shipment_id} (order {event.order_id}): "
            f"{event.previous_status} -> {event.new_status}"
        )
