"""
Utility functions for fulfillment orchestration.

Provides common utilities:
- Idempotency keys for shipment creation
- Shipment ID generation
- URL joining for courier base URLs (with or without trailing slash)
- Secret masking for log lines
"""

import hashlib
import json
import logging
import uuid
from typing import Any, Dict, Optional

logger = logging.getLogger(__name__)


def generate_idempotency_key(order_id: str, provider_id: str, attempt_id: str) -> str:
    """
    Derive the idempotency key for one shipment creation attempt.

    The same (order, provider, attempt) always yields the same key, so a
    caller retrying a creation call with the same attempt_id cannot create
    a second courier consignment through us.

    Args:
        order_id: Local order ID
        provider_id: Configured provider ID
        attempt_id: Caller-chosen attempt identifier

    Returns:
        32-char hex string
    """
    raw = f"{order_id}:{provider_id}:{attempt_id}"
    return hashlib.sha256(raw.encode("utf-8")).hexdigest()[:32]


def generate_shipment_id() -> str:
    """New local shipment ID."""
    return uuid.uuid4().hex


def join_url(base_url: str, path: str) -> str:
    """Join a courier base URL and an API path regardless of slashes."""
    return f"{base_url.strip().rstrip('/')}/{path.lstrip('/')}"


def mask_secret(value: Optional[str], visible: int = 4) -> str:
    """Mask a credential for logging: 'abcd1234efgh' -> 'abcd********'."""
    if not value:
        return ""
    if len(value) <= visible:
        return "*" * len(value)
    return value[:visible] + "*" * (len(value) - visible)


def parse_json_field(value: Any, field_name: str = "value") -> Dict[str, Any]:
    """
    Parse a JSON text column (credentials / config) into a dict.

    Raises:
        ValueError: If the text is not a JSON object
    """
    if value is None or value == "":
        return {}
    if isinstance(value, dict):
        return value
    try:
        parsed = json.loads(value)
    except (TypeError, json.JSONDecodeError) as e:
        raise ValueError(f"Invalid {field_name} format: {e}") from e
    if not isinstance(parsed, dict):
        raise ValueError(f"Invalid {field_name} format: expected a JSON object")
    return parsed
