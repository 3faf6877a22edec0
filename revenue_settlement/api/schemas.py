"""Pydantic schemas for the REST API request/response models."""

import uuid
from datetime import date, datetime
from decimal import Decimal
from typing import Any

from pydantic import BaseModel, Field

from revenue_settlement.models.settlement import DistributionMode, SettlementStatus


# ── Park ──────────────────────────────────────────────────────────────────────


class ParkCreate(BaseModel):
    name: str = Field(..., min_length=1, max_length=200)
    short_name: str | None = Field(default=None, max_length=50)
    default_distribution_mode: DistributionMode | None = None
    default_tolerance_percentage: Decimal | None = Field(default=None, ge=0, le=100)


class ParkResponse(BaseModel):
    id: uuid.UUID
    name: str
    short_name: str | None
    default_distribution_mode: DistributionMode | None
    default_tolerance_percentage: Decimal | None
    created_at: datetime

    model_config = {"from_attributes": True}


# ── Settlement ────────────────────────────────────────────────────────────────


class SettlementCreate(BaseModel):
    """Request body for creating a DRAFT settlement."""

    park_id: uuid.UUID
    year: int = Field(..., ge=2000, le=2100)
    month: int | None = Field(
        default=None, ge=1, le=12, description="Omit for an annual settlement"
    )
    net_operator_revenue_eur: Decimal = Field(
        ...,
        ge=0,
        decimal_places=2,
        description="Net revenue paid by the grid operator for the period",
        examples=["50000.00"],
    )
    net_operator_reference: str | None = Field(default=None, max_length=100)
    total_production_kwh: Decimal | None = Field(default=None, ge=0)
    distribution_mode: DistributionMode | None = Field(
        default=None, description="Defaults to the park's mode, then the service default"
    )
    smoothing_factor: Decimal | None = Field(default=None, ge=0, le=1)
    tolerance_percentage: Decimal | None = Field(default=None, ge=0, le=100)
    notes: str | None = Field(default=None, max_length=2000)


class SettlementUpdate(BaseModel):
    """Partial update; only fields present in the body are applied."""

    net_operator_revenue_eur: Decimal | None = Field(default=None, ge=0, decimal_places=2)
    net_operator_reference: str | None = Field(default=None, max_length=100)
    total_production_kwh: Decimal | None = Field(default=None, ge=0)
    distribution_mode: DistributionMode | None = None
    smoothing_factor: Decimal | None = Field(default=None, ge=0, le=1)
    tolerance_percentage: Decimal | None = Field(default=None, ge=0, le=100)
    notes: str | None = Field(default=None, max_length=2000)


class SettlementItemResponse(BaseModel):
    id: uuid.UUID
    position: int
    recipient_entity_id: str
    turbine_id: str | None
    production_share_kwh: Decimal
    production_share_pct: Decimal
    revenue_share_eur: Decimal
    distribution_key: str
    invoice_ref: str | None

    model_config = {"from_attributes": True}


class SettlementResponse(BaseModel):
    id: uuid.UUID
    park_id: uuid.UUID
    year: int
    month: int | None
    period_label: str
    total_production_kwh: Decimal | None
    net_operator_revenue_eur: Decimal
    net_operator_reference: str | None
    distribution_mode: DistributionMode
    smoothing_factor: Decimal | None
    tolerance_percentage: Decimal | None
    status: SettlementStatus
    notes: str | None
    version: int
    created_at: datetime
    updated_at: datetime
    park: ParkResponse
    items: list[SettlementItemResponse]

    model_config = {"from_attributes": True}


class SettlementListResponse(BaseModel):
    data: list[SettlementResponse]
    pagination: dict[str, int]
    aggregations: dict[str, Decimal | int]


# ── Calculation ───────────────────────────────────────────────────────────────


class CalculationDetails(BaseModel):
    """Intermediate figures of a distribution run. Returned, not stored."""

    total_production_kwh: Decimal
    average_production_kwh: Decimal
    price_per_kwh: Decimal
    net_revenue_eur: Decimal
    residual_eur: Decimal
    smoothing_factor: Decimal | None = None
    tolerance_percentage: Decimal | None = None
    tolerance_band_kwh: Decimal | None = None
    deviations_kwh: dict[str, Decimal] = Field(
        default_factory=dict, description="Deviation from the average, keyed by row"
    )
    adjustments_eur: dict[str, Decimal] = Field(
        default_factory=dict, description="Money moved away from (+) or toward (-) a row"
    )


class CalculationResponse(BaseModel):
    settlement: SettlementResponse
    mode: DistributionMode
    items_digest: str
    details: CalculationDetails


# ── Invoicing ─────────────────────────────────────────────────────────────────


class CreateInvoicesRequest(BaseModel):
    invoice_date: date | None = Field(default=None, description="Defaults to today (UTC)")
    payment_term_days: int | None = Field(default=None, ge=0, le=365)


class IssuedInvoiceResponse(BaseModel):
    item_id: uuid.UUID
    recipient_entity_id: str
    turbine_id: str | None
    amount_eur: Decimal
    invoice_ref: str
    invoice_number: str | None

    model_config = {"from_attributes": True}


class InvoiceRunResponse(BaseModel):
    settlement: SettlementResponse
    invoices: list[IssuedInvoiceResponse]
    summary: dict[str, Any]


class ErrorResponse(BaseModel):
    error: dict[str, Any]
