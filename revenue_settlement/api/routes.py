"""REST API routes for the energy revenue settlement service."""

import logging
import uuid

from fastapi import APIRouter, Depends, Query, Response, status
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from revenue_settlement.api.schemas import (
    CalculationDetails,
    CalculationResponse,
    CreateInvoicesRequest,
    ErrorResponse,
    InvoiceRunResponse,
    IssuedInvoiceResponse,
    ParkCreate,
    ParkResponse,
    SettlementCreate,
    SettlementListResponse,
    SettlementResponse,
    SettlementUpdate,
)
from revenue_settlement.core.database import get_session
from revenue_settlement.core.errors import DOMAIN_ERRORS, to_http_exception
from revenue_settlement.models.park import Park
from revenue_settlement.models.settlement import SettlementStatus
from revenue_settlement.services import settlement_lifecycle as lifecycle

logger = logging.getLogger(__name__)

router = APIRouter()

_ERRORS = {
    404: {"model": ErrorResponse, "description": "Settlement or park not found"},
    409: {"model": ErrorResponse, "description": "Illegal state or concurrent modification"},
    422: {"model": ErrorResponse, "description": "Invalid input"},
}


# ── Parks ─────────────────────────────────────────────────────────────────────


@router.post(
    "/parks",
    response_model=ParkResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Register a wind park",
)
async def create_park(
    body: ParkCreate,
    session: AsyncSession = Depends(get_session),
) -> Park:
    park = Park(
        name=body.name,
        short_name=body.short_name,
        default_distribution_mode=(
            body.default_distribution_mode.value if body.default_distribution_mode else None
        ),
        default_tolerance_percentage=body.default_tolerance_percentage,
    )
    session.add(park)
    await session.flush()
    logger.info("Created park %s (%s)", park.id, park.name)
    return park


@router.get("/parks", response_model=list[ParkResponse], summary="List parks")
async def list_parks(session: AsyncSession = Depends(get_session)) -> list[Park]:
    result = await session.execute(select(Park).order_by(Park.name))
    return list(result.scalars().all())


# ── Settlements ───────────────────────────────────────────────────────────────


@router.post(
    "/settlements",
    response_model=SettlementResponse,
    status_code=status.HTTP_201_CREATED,
    responses=_ERRORS,
    summary="Create a DRAFT settlement for a park and period",
)
async def create_settlement(
    body: SettlementCreate,
    session: AsyncSession = Depends(get_session),
) -> SettlementResponse:
    try:
        settlement = await lifecycle.create_settlement(session, **body.model_dump())
    except DOMAIN_ERRORS as exc:
        raise to_http_exception(exc)
    return SettlementResponse.model_validate(settlement)


@router.get(
    "/settlements",
    response_model=SettlementListResponse,
    summary="List settlements with filters, pagination and totals",
)
async def list_settlements(
    year: int | None = Query(default=None, ge=2000, le=2100),
    month: int | None = Query(default=None, ge=1, le=12),
    park_id: uuid.UUID | None = None,
    status_filter: SettlementStatus | None = Query(default=None, alias="status"),
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=50, ge=1, le=200),
    session: AsyncSession = Depends(get_session),
) -> SettlementListResponse:
    result = await lifecycle.list_settlements(
        session,
        year=year,
        month=month,
        park_id=park_id,
        status=status_filter,
        page=page,
        limit=limit,
    )
    return SettlementListResponse(
        data=[SettlementResponse.model_validate(s) for s in result.settlements],
        pagination={
            "page": result.page,
            "limit": result.limit,
            "total": result.total,
            "total_pages": -(-result.total // result.limit),
        },
        aggregations={
            "total_revenue_eur": result.total_revenue_eur,
            "total_production_kwh": result.total_production_kwh,
            "count": result.total,
        },
    )


@router.get(
    "/settlements/{settlement_id}",
    response_model=SettlementResponse,
    responses=_ERRORS,
    summary="Get a settlement with its items",
)
async def get_settlement(
    settlement_id: uuid.UUID,
    session: AsyncSession = Depends(get_session),
) -> SettlementResponse:
    try:
        settlement = await lifecycle.get_settlement(session, settlement_id)
    except DOMAIN_ERRORS as exc:
        raise to_http_exception(exc)
    return SettlementResponse.model_validate(settlement)


@router.patch(
    "/settlements/{settlement_id}",
    response_model=SettlementResponse,
    responses=_ERRORS,
    summary="Edit a DRAFT or CALCULATED settlement",
    description=(
        "Changing revenue, production, mode or a mode parameter discards the "
        "calculated items and resets the settlement to DRAFT."
    ),
)
async def update_settlement(
    settlement_id: uuid.UUID,
    body: SettlementUpdate,
    session: AsyncSession = Depends(get_session),
) -> SettlementResponse:
    try:
        settlement = await lifecycle.update_settlement(
            session, settlement_id, body.model_dump(exclude_unset=True)
        )
    except DOMAIN_ERRORS as exc:
        raise to_http_exception(exc)
    return SettlementResponse.model_validate(settlement)


@router.delete(
    "/settlements/{settlement_id}",
    status_code=status.HTTP_204_NO_CONTENT,
    responses=_ERRORS,
    summary="Delete a DRAFT or CALCULATED settlement",
)
async def delete_settlement(
    settlement_id: uuid.UUID,
    session: AsyncSession = Depends(get_session),
) -> Response:
    try:
        await lifecycle.delete_settlement(session, settlement_id)
    except DOMAIN_ERRORS as exc:
        raise to_http_exception(exc)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.post(
    "/settlements/{settlement_id}/calculate",
    response_model=CalculationResponse,
    responses={
        **_ERRORS,
        502: {"model": ErrorResponse, "description": "Production aggregator unavailable"},
    },
    summary="Distribute the settlement's revenue across turbines",
    description=(
        "Pulls per-turbine production for the period from the production "
        "aggregator and replaces the settlement's items. Allowed in DRAFT and "
        "CALCULATED. Recalculating with unchanged inputs yields identical items "
        "and the same items_digest."
    ),
)
async def calculate(
    settlement_id: uuid.UUID,
    session: AsyncSession = Depends(get_session),
) -> CalculationResponse:
    try:
        outcome = await lifecycle.calculate_settlement(session, settlement_id)
    except DOMAIN_ERRORS as exc:
        logger.warning("Calculation failed for %s: %s", settlement_id, exc)
        raise to_http_exception(exc)

    result = outcome.result
    row_labels = [
        f"{item.recipient_entity_id}/{item.turbine_id}" if item.turbine_id else item.recipient_entity_id
        for item in result.items
    ]
    details = CalculationDetails(
        total_production_kwh=result.total_production_kwh,
        average_production_kwh=result.average_production_kwh,
        price_per_kwh=result.price_per_kwh,
        net_revenue_eur=result.net_revenue_eur,
        residual_eur=result.residual_eur,
        smoothing_factor=result.smoothing_factor,
        tolerance_percentage=result.tolerance_percentage,
        tolerance_band_kwh=result.tolerance_band_kwh,
        deviations_kwh={k: i.deviation_kwh for k, i in zip(row_labels, result.items)},
        adjustments_eur={k: i.adjustment_eur for k, i in zip(row_labels, result.items)},
    )
    return CalculationResponse(
        settlement=SettlementResponse.model_validate(outcome.settlement),
        mode=result.mode,
        items_digest=outcome.items_digest,
        details=details,
    )


@router.post(
    "/settlements/{settlement_id}/create-invoices",
    response_model=InvoiceRunResponse,
    responses={
        **_ERRORS,
        502: {"model": ErrorResponse, "description": "One or more credit notes failed"},
    },
    summary="Issue one credit note per settlement item",
    description=(
        "All-or-nothing: if any credit note fails, no references are stored and "
        "the settlement stays CALCULATED. Retrying re-sends the same idempotency "
        "keys, so documents already issued are not duplicated."
    ),
)
async def create_invoices(
    settlement_id: uuid.UUID,
    body: CreateInvoicesRequest | None = None,
    session: AsyncSession = Depends(get_session),
) -> InvoiceRunResponse:
    body = body or CreateInvoicesRequest()
    try:
        run = await lifecycle.create_invoices(
            session,
            settlement_id,
            invoice_date=body.invoice_date,
            payment_term_days=body.payment_term_days,
        )
    except DOMAIN_ERRORS as exc:
        logger.warning("Invoice run failed for %s: %s", settlement_id, exc)
        raise to_http_exception(exc)

    return InvoiceRunResponse(
        settlement=SettlementResponse.model_validate(run.settlement),
        invoices=[IssuedInvoiceResponse.model_validate(inv) for inv in run.invoices],
        summary=run.summary,
    )


@router.post(
    "/settlements/{settlement_id}/close",
    response_model=SettlementResponse,
    responses=_ERRORS,
    summary="Close an INVOICED settlement",
)
async def close(
    settlement_id: uuid.UUID,
    session: AsyncSession = Depends(get_session),
) -> SettlementResponse:
    try:
        settlement = await lifecycle.close_settlement(session, settlement_id)
    except DOMAIN_ERRORS as exc:
        raise to_http_exception(exc)
    return SettlementResponse.model_validate(settlement)
