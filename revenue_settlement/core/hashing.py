"""Deterministic hashing utilities for settlement items.

Item sets are fingerprinted so two calculations over unchanged inputs can be
compared byte for byte, and each credit-note request carries an idempotency
key derived from the item's content. A recalculation that yields the same
item therefore yields the same key, and the invoice bridge deduplicates it.
"""

import hashlib
import json
from datetime import date, datetime
from decimal import Decimal
from typing import Any
from uuid import UUID

from revenue_settlement.core.config import settings


def canonical_json(data: Any) -> str:
    """Produce a deterministic JSON string (sorted keys, no whitespace)."""
    return json.dumps(data, sort_keys=True, separators=(",", ":"), default=_json_default)


def _json_default(obj: Any) -> str:
    if isinstance(obj, Decimal):
        # str() keeps the exact quantized value ("10.00" stays "10.00")
        return str(obj)
    if isinstance(obj, (datetime, date)):
        return obj.isoformat()
    if isinstance(obj, UUID):
        return str(obj)
    raise TypeError(f"Object of type {type(obj)} is not JSON serializable")


def compute_digest(payload: Any, salt: str | None = None) -> str:
    """Compute a hex digest over the canonical JSON payload.

    Args:
        payload: Any JSON-compatible structure (Decimals, dates and UUIDs allowed).
        salt: Optional prefix mixed into the hash, e.g. a settlement id.

    Returns:
        Hex-encoded hash digest.
    """
    h = hashlib.new(settings.settlement_hash_algorithm)
    if salt:
        h.update(salt.encode("utf-8"))
    h.update(canonical_json(payload).encode("utf-8"))
    return h.hexdigest()


def item_fingerprint(item: Any) -> dict[str, Any]:
    """The financially relevant fields of an allocation/settlement item."""
    return {
        "recipient_entity_id": item.recipient_entity_id,
        "turbine_id": item.turbine_id,
        "production_share_kwh": item.production_share_kwh,
        "production_share_pct": item.production_share_pct,
        "revenue_share_eur": item.revenue_share_eur,
        "distribution_key": item.distribution_key,
    }


def items_digest(items: list[Any]) -> str:
    """Fingerprint an ordered item set."""
    return compute_digest([item_fingerprint(item) for item in items])


def idempotency_key(settlement_id: UUID, item: Any) -> str:
    """Idempotency key for issuing the credit note of one settlement item."""
    digest = compute_digest(item_fingerprint(item), salt=str(settlement_id))
    return f"settlement-{settlement_id}-{digest[:32]}"
