"""HTTP client for the production aggregator service.

The aggregator owns metering ingestion (CSV imports, SCADA) and answers one
question for us: how much did each turbine of a park produce in a period,
and which recipient entity operates it. Values are trusted as delivered.
"""

from __future__ import annotations

import logging
import uuid
from decimal import Decimal
from typing import Any

import httpx

from revenue_settlement.core.config import settings
from revenue_settlement.services.distribution_engine import ProductionRecord

logger = logging.getLogger(__name__)


class ProductionAggregatorError(Exception):
    def __init__(self, status: int, detail: str):
        self.status = status
        self.detail = detail
        super().__init__(f"ProductionAggregator {status}: {detail}")


def _base_url() -> str:
    return settings.production_aggregator_url.rstrip("/")


def _parse_record(row: dict[str, Any]) -> ProductionRecord:
    try:
        return ProductionRecord(
            recipient_entity_id=str(row["recipient_entity_id"]),
            turbine_id=str(row["turbine_id"]) if row.get("turbine_id") is not None else None,
            production_kwh=Decimal(str(row["production_kwh"])),
        )
    except (KeyError, TypeError, ArithmeticError) as exc:
        raise ProductionAggregatorError(0, f"Malformed production record {row!r}: {exc}") from exc


async def get_park_production(
    park_id: uuid.UUID,
    year: int,
    month: int | None = None,
    *,
    transport: httpx.AsyncBaseTransport | None = None,
) -> list[ProductionRecord]:
    """GET /api/v1/parks/{park_id}/production: per-turbine production for a period.

    Args:
        park_id: Park whose turbines to fetch.
        year: Settlement year.
        month: Settlement month, or None for the whole year.
        transport: Optional httpx transport (tests inject a mock transport).

    Raises:
        ProductionAggregatorError: On transport failure, an error status or a
            malformed payload.
    """
    params: dict[str, Any] = {"year": year}
    if month is not None:
        params["month"] = month

    url = f"{_base_url()}/api/v1/parks/{park_id}/production"
    try:
        async with httpx.AsyncClient(
            timeout=settings.production_aggregator_timeout_seconds, transport=transport
        ) as client:
            resp = await client.get(url, params=params)
    except (httpx.ConnectError, httpx.TimeoutException) as exc:
        raise ProductionAggregatorError(
            0, f"Cannot reach production aggregator at {_base_url()}: {exc}"
        ) from exc

    if resp.status_code >= 400:
        raise ProductionAggregatorError(resp.status_code, resp.text[:200])

    try:
        data = resp.json()
    except ValueError as exc:
        raise ProductionAggregatorError(0, f"Malformed payload: {exc}") from exc
    rows = data.get("records", []) if isinstance(data, dict) else data
    if not isinstance(rows, list):
        raise ProductionAggregatorError(
            0, f"Malformed payload {str(data)[:200]!r}: expected a list of records"
        )
    records = [_parse_record(row) for row in rows]

    logger.info(
        "Fetched %d production record(s) for park %s period %s%s",
        len(records), park_id, f"{month:02d}/" if month else "", year,
    )
    return records
