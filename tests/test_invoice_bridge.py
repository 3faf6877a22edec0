"""Tests for the invoice bridge client: payload, idempotency header, retries."""

import json
import uuid
from datetime import date
from decimal import Decimal

import httpx
import pytest

from revenue_settlement.core.config import settings
from revenue_settlement.services.invoice_bridge import (
    CreditNoteRequest,
    InvoiceBridgeError,
    create_credit_note,
)


def make_request(**overrides) -> CreditNoteRequest:
    fields = dict(
        idempotency_key="settlement-abc-0123456789abcdef0123456789abcdef",
        settlement_id=uuid.uuid4(),
        item_id=uuid.uuid4(),
        park_id=uuid.uuid4(),
        recipient_entity_id="ENT-A",
        turbine_id="T1",
        description="Energy revenue 03/2026 - Windpark Nordfeld - Turbine T1",
        period_label="03/2026",
        production_kwh=Decimal("100000.000"),
        amount=Decimal("13333.33"),
        currency="EUR",
        invoice_date=date(2026, 4, 2),
        due_date=date(2026, 4, 16),
        service_start=date(2026, 3, 1),
        service_end=date(2026, 3, 31),
        payment_reference="ENERGY-NORDFELD-03/2026",
    )
    fields.update(overrides)
    return CreditNoteRequest(**fields)


class Recorder:
    """Mock transport handler replaying a scripted list of responses."""

    def __init__(self, *responses):
        self.responses = list(responses)
        self.requests: list[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        outcome = self.responses.pop(0)
        if isinstance(outcome, Exception):
            raise outcome
        return outcome

    @property
    def transport(self):
        return httpx.MockTransport(self)


class TestPayload:

    def test_amounts_are_strings(self):
        payload = make_request().to_payload()
        assert payload["net_amount"] == "13333.33"
        assert payload["quantity"] == "100000.000"
        assert payload["document_type"] == "CREDIT_NOTE"
        assert payload["due_date"] == "2026-04-16"

    @pytest.mark.asyncio
    async def test_posts_with_idempotency_key(self):
        rec = Recorder(httpx.Response(201, json={"id": "CN-1", "invoice_number": "GS-1"}))
        req = make_request()

        receipt = await create_credit_note(req, transport=rec.transport)

        assert receipt.invoice_ref == "CN-1"
        assert receipt.invoice_number == "GS-1"
        sent = rec.requests[0]
        assert sent.method == "POST"
        assert sent.url.path == "/api/v1/credit-notes"
        assert sent.headers["Idempotency-Key"] == req.idempotency_key
        assert json.loads(sent.content)["recipient_entity_id"] == "ENT-A"


class TestRetries:

    @pytest.mark.asyncio
    async def test_retries_server_errors_with_same_key(self):
        rec = Recorder(
            httpx.Response(500),
            httpx.Response(429),
            httpx.Response(200, json={"invoice_id": "CN-9"}),
        )
        receipt = await create_credit_note(make_request(), transport=rec.transport)

        assert receipt.invoice_ref == "CN-9"
        assert len(rec.requests) == 3
        assert len({r.headers["Idempotency-Key"] for r in rec.requests}) == 1

    @pytest.mark.asyncio
    async def test_retries_transport_failures(self):
        rec = Recorder(
            httpx.ConnectTimeout("slow"),
            httpx.Response(200, json={"id": "CN-2"}),
        )
        receipt = await create_credit_note(make_request(), transport=rec.transport)
        assert receipt.invoice_ref == "CN-2"

    @pytest.mark.asyncio
    async def test_gives_up_after_max_attempts(self, monkeypatch):
        monkeypatch.setattr(settings, "invoice_bridge_max_retries", 2)
        rec = Recorder(httpx.Response(502), httpx.Response(503))

        with pytest.raises(InvoiceBridgeError) as exc_info:
            await create_credit_note(make_request(), transport=rec.transport)

        assert exc_info.value.retryable is True
        assert "2 attempt" in str(exc_info.value)
        assert len(rec.requests) == 2

    @pytest.mark.asyncio
    async def test_client_error_is_not_retried(self):
        rec = Recorder(httpx.Response(422, text="unknown recipient"))

        with pytest.raises(InvoiceBridgeError) as exc_info:
            await create_credit_note(make_request(), transport=rec.transport)

        assert exc_info.value.status == 422
        assert exc_info.value.retryable is False
        assert len(rec.requests) == 1

    @pytest.mark.asyncio
    async def test_response_without_id_is_rejected(self):
        rec = Recorder(httpx.Response(200, json={"status": "ok"}))
        with pytest.raises(InvoiceBridgeError, match="no document id"):
            await create_credit_note(make_request(), transport=rec.transport)
