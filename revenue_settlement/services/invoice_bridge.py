"""Async client for the invoice bridge, which issues credit notes.

Each request carries:
- a JSON body describing one settlement item (recipient, amount, period, description)
- an ``Idempotency-Key`` header derived from the item's content

Retries on transient failures (5xx, 408, 429, timeouts, connection errors)
with exponential backoff. Every retry re-sends the same idempotency key, so
the bridge returns the already-created document instead of issuing a
duplicate. Other 4xx responses are not retried.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from dataclasses import dataclass
from datetime import date
from decimal import Decimal
from typing import Any

import httpx

from revenue_settlement.core.config import settings

logger = logging.getLogger(__name__)

_RETRYABLE_STATUS = {408, 429}


class InvoiceBridgeError(Exception):
    def __init__(self, status: int, detail: str, retryable: bool = False):
        self.status = status
        self.detail = detail
        self.retryable = retryable
        super().__init__(f"InvoiceBridge {status}: {detail}")


@dataclass(frozen=True)
class CreditNoteRequest:
    """Everything the bridge needs to issue one credit note."""

    idempotency_key: str
    settlement_id: uuid.UUID
    item_id: uuid.UUID
    park_id: uuid.UUID
    recipient_entity_id: str
    turbine_id: str | None
    description: str
    period_label: str
    production_kwh: Decimal
    amount: Decimal
    currency: str
    invoice_date: date
    due_date: date
    service_start: date
    service_end: date
    payment_reference: str

    def to_payload(self) -> dict[str, Any]:
        return {
            "document_type": "CREDIT_NOTE",
            "settlement_id": str(self.settlement_id),
            "settlement_item_id": str(self.item_id),
            "park_id": str(self.park_id),
            "recipient_entity_id": self.recipient_entity_id,
            "turbine_id": self.turbine_id,
            "description": self.description,
            "period": self.period_label,
            "quantity": str(self.production_kwh),
            "unit": "kWh",
            "net_amount": str(self.amount),
            "currency": self.currency,
            "invoice_date": self.invoice_date.isoformat(),
            "due_date": self.due_date.isoformat(),
            "service_start": self.service_start.isoformat(),
            "service_end": self.service_end.isoformat(),
            "payment_reference": self.payment_reference,
        }


@dataclass(frozen=True)
class CreditNoteReceipt:
    invoice_ref: str
    invoice_number: str | None = None


def _base_url() -> str:
    return settings.invoice_bridge_url.rstrip("/")


def _parse_receipt(data: dict[str, Any]) -> CreditNoteReceipt:
    invoice_ref = data.get("id") or data.get("invoice_id")
    if not invoice_ref:
        raise InvoiceBridgeError(0, f"Invoice bridge response has no document id: {data!r}")
    return CreditNoteReceipt(invoice_ref=str(invoice_ref), invoice_number=data.get("invoice_number"))


async def create_credit_note(
    request: CreditNoteRequest,
    *,
    transport: httpx.AsyncBaseTransport | None = None,
) -> CreditNoteReceipt:
    """POST /api/v1/credit-notes with retries.  Returns the issued document's reference.

    Raises:
        InvoiceBridgeError: On a non-retryable rejection, or once retries are exhausted.
    """
    headers = {
        "Content-Type": "application/json",
        "Idempotency-Key": request.idempotency_key,
    }
    payload = request.to_payload()
    url = f"{_base_url()}/api/v1/credit-notes"

    attempts = max(1, settings.invoice_bridge_max_retries)
    backoff = settings.invoice_bridge_backoff_seconds
    last_error = "no attempt made"

    for attempt in range(1, attempts + 1):
        try:
            async with httpx.AsyncClient(
                timeout=settings.invoice_bridge_timeout_seconds, transport=transport
            ) as client:
                resp = await client.post(url, json=payload, headers=headers)
        except (httpx.TimeoutException, httpx.ConnectError) as exc:
            last_error = f"{type(exc).__name__}: {exc}"
            logger.warning(
                "Credit note request failed: item=%s attempt=%d error=%s",
                request.item_id, attempt, exc,
            )
        else:
            if resp.status_code < 300:
                receipt = _parse_receipt(resp.json())
                logger.info(
                    "Credit note issued: item=%s ref=%s attempt=%d",
                    request.item_id, receipt.invoice_ref, attempt,
                )
                return receipt
            if resp.status_code < 500 and resp.status_code not in _RETRYABLE_STATUS:
                logger.warning(
                    "Credit note rejected (non-retryable): item=%s status=%d body=%s",
                    request.item_id, resp.status_code, resp.text[:200],
                )
                raise InvoiceBridgeError(resp.status_code, resp.text[:200])
            last_error = f"HTTP {resp.status_code}"
            logger.warning(
                "Invoice bridge error: item=%s status=%d attempt=%d",
                request.item_id, resp.status_code, attempt,
            )

        if attempt < attempts:
            await asyncio.sleep(backoff)
            backoff = min(backoff * 2, settings.invoice_bridge_max_backoff_seconds)

    logger.error(
        "Credit note request exhausted retries: item=%s key=%s",
        request.item_id, request.idempotency_key,
    )
    raise InvoiceBridgeError(
        0, f"Gave up after {attempts} attempt(s): {last_error}", retryable=True
    )
