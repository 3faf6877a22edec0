"""Settlement lifecycle manager: the state machine around the distribution engine.

This module:
1. Creates settlements (DRAFT) with mode/parameter defaults resolved.
2. Calculates them: pulls production from the aggregator, runs the pure
   distribution engine, and replaces the item set in one flush (CALCULATED).
3. Issues one credit note per item through the invoice bridge and writes the
   references back (INVOICED).
4. Closes (CLOSED, terminal) or deletes them.

Every operation that changes an existing settlement runs under its
exclusive lock and checks the transition table before touching anything.
Computation happens before any mutation, so a failing operation leaves
the settlement exactly as it was.

Invoice runs are all-or-nothing: if any item cannot be invoiced after the
bridge's own retries, no reference is stored, the settlement stays
CALCULATED and InvoiceCreationPartialFailureError reports which items
succeeded. Retrying the run re-sends the same idempotency keys, so documents
that were already issued are returned by the bridge rather than duplicated.
"""

import asyncio
import calendar
import enum
import logging
import uuid
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from datetime import date, datetime, timedelta, timezone
from decimal import Decimal
from typing import Any

from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm.exc import StaleDataError

from revenue_settlement.core.config import settings
from revenue_settlement.core.hashing import idempotency_key, items_digest
from revenue_settlement.core.locking import ConcurrentModificationError, settlement_lock
from revenue_settlement.models.park import Park
from revenue_settlement.models.settlement import (
    DistributionMode,
    EnergySettlement,
    EnergySettlementItem,
    SettlementStatus,
)
from revenue_settlement.services import invoice_bridge, production_client
from revenue_settlement.services.distribution_engine import (
    DistributionResult,
    InvalidParameterError,
    ProductionRecord,
    coerce_mode,
    compute_distribution,
    validate_parameters,
    validate_revenue,
)
from revenue_settlement.services.invoice_bridge import CreditNoteReceipt, CreditNoteRequest

logger = logging.getLogger(__name__)

CreditNoteIssuer = Callable[[CreditNoteRequest], Awaitable[CreditNoteReceipt]]


# ── Errors ────────────────────────────────────────────────────────────────────


class SettlementError(Exception):
    """Base class for lifecycle errors."""


class SettlementNotFoundError(SettlementError):
    pass


class ParkNotFoundError(SettlementError):
    pass


class DuplicateSettlementError(SettlementError):
    """A settlement for the same park and period already exists."""


class SettlementAction(str, enum.Enum):
    CALCULATE = "calculate"
    CREATE_INVOICES = "create_invoices"
    CLOSE = "close"
    DELETE = "delete"
    UPDATE = "update"


class IllegalStateError(SettlementError):
    """The requested operation is not valid in the settlement's current status."""

    def __init__(self, settlement_id: uuid.UUID, status: SettlementStatus, action: SettlementAction, detail: str | None = None):
        self.settlement_id = settlement_id
        self.status = status
        self.action = action
        super().__init__(
            detail
            or f"Cannot {action.value.replace('_', ' ')} settlement {settlement_id} "
            f"in status {status.value}"
        )


class InvoiceCreationPartialFailureError(SettlementError):
    """Some credit notes could not be issued; nothing was written back."""

    def __init__(
        self,
        settlement_id: uuid.UUID,
        succeeded: dict[uuid.UUID, CreditNoteReceipt],
        failed: dict[uuid.UUID, str],
    ):
        self.settlement_id = settlement_id
        self.succeeded = succeeded
        self.failed = failed
        super().__init__(
            f"Invoice creation for settlement {settlement_id} failed for "
            f"{len(failed)} of {len(failed) + len(succeeded)} item(s); "
            f"settlement left in CALCULATED"
        )


# ── State machine ─────────────────────────────────────────────────────────────

# (status, action) -> resulting status; None means the settlement is removed.
# Pairs that are absent are illegal.
TRANSITIONS: dict[tuple[SettlementStatus, SettlementAction], SettlementStatus | None] = {
    (SettlementStatus.DRAFT, SettlementAction.CALCULATE): SettlementStatus.CALCULATED,
    (SettlementStatus.CALCULATED, SettlementAction.CALCULATE): SettlementStatus.CALCULATED,
    (SettlementStatus.CALCULATED, SettlementAction.CREATE_INVOICES): SettlementStatus.INVOICED,
    (SettlementStatus.INVOICED, SettlementAction.CLOSE): SettlementStatus.CLOSED,
    (SettlementStatus.DRAFT, SettlementAction.DELETE): None,
    (SettlementStatus.CALCULATED, SettlementAction.DELETE): None,
    (SettlementStatus.DRAFT, SettlementAction.UPDATE): SettlementStatus.DRAFT,
    (SettlementStatus.CALCULATED, SettlementAction.UPDATE): SettlementStatus.CALCULATED,
}


def next_status(
    settlement: EnergySettlement, action: SettlementAction
) -> SettlementStatus | None:
    """Resulting status of ``action``, or raise IllegalStateError."""
    key = (settlement.status, action)
    if key not in TRANSITIONS:
        raise IllegalStateError(settlement.id, settlement.status, action)
    return TRANSITIONS[key]


# ── Results ───────────────────────────────────────────────────────────────────


@dataclass
class CalculationOutcome:
    settlement: EnergySettlement
    result: DistributionResult
    items_digest: str


@dataclass
class IssuedInvoice:
    item_id: uuid.UUID
    recipient_entity_id: str
    turbine_id: str | None
    amount_eur: Decimal
    invoice_ref: str
    invoice_number: str | None


@dataclass
class InvoiceRun:
    settlement: EnergySettlement
    invoices: list[IssuedInvoice]
    summary: dict[str, Any]


@dataclass
class SettlementPage:
    settlements: list[EnergySettlement]
    total: int
    page: int
    limit: int
    total_revenue_eur: Decimal
    total_production_kwh: Decimal


# ── Helpers ───────────────────────────────────────────────────────────────────


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


async def _load_settlement(session: AsyncSession, settlement_id: uuid.UUID) -> EnergySettlement:
    """Load a settlement (with park and items) or raise SettlementNotFoundError."""
    stmt = (
        select(EnergySettlement)
        .where(EnergySettlement.id == settlement_id)
        .execution_options(populate_existing=True)
    )
    result = await session.execute(stmt)
    settlement = result.scalar_one_or_none()
    if settlement is None:
        raise SettlementNotFoundError(f"Settlement {settlement_id} not found")
    return settlement


async def _flush(session: AsyncSession, settlement_id: uuid.UUID) -> None:
    """Flush, turning a lost optimistic version check into ConcurrentModificationError."""
    try:
        await session.flush()
    except StaleDataError as exc:
        await session.rollback()
        logger.warning("Stale write rejected for settlement %s", settlement_id)
        raise ConcurrentModificationError(
            settlement_id,
            f"Settlement {settlement_id} was changed by another writer; reload and retry",
        ) from exc


def _resolve_parameters(
    mode: DistributionMode,
    smoothing_factor: Any,
    tolerance_percentage: Any,
    park: Park,
) -> tuple[Any, Any]:
    """Fill in the parameter the mode requires when the caller left it out."""
    if mode is DistributionMode.SMOOTHED and smoothing_factor is None:
        smoothing_factor = settings.default_smoothing_factor
    if mode is DistributionMode.TOLERATED and tolerance_percentage is None:
        tolerance_percentage = (
            park.default_tolerance_percentage
            if park.default_tolerance_percentage is not None
            else settings.default_tolerance_percentage
        )
    return smoothing_factor, tolerance_percentage


def _decimal_or_none(value: Any) -> Decimal | None:
    return None if value is None else Decimal(str(value))


def _service_period(year: int, month: int | None) -> tuple[date, date]:
    if month:
        return date(year, month, 1), date(year, month, calendar.monthrange(year, month)[1])
    return date(year, 1, 1), date(year, 12, 31)


def _build_credit_note(
    settlement: EnergySettlement,
    item: EnergySettlementItem,
    invoice_date: date,
    payment_term_days: int,
) -> CreditNoteRequest:
    park = settlement.park
    description = f"Energy revenue {settlement.period_label} - {park.name}"
    if item.turbine_id:
        description += f" - Turbine {item.turbine_id}"
    service_start, service_end = _service_period(settlement.year, settlement.month)

    return CreditNoteRequest(
        idempotency_key=idempotency_key(settlement.id, item),
        settlement_id=settlement.id,
        item_id=item.id,
        park_id=settlement.park_id,
        recipient_entity_id=item.recipient_entity_id,
        turbine_id=item.turbine_id,
        description=description,
        period_label=settlement.period_label,
        production_kwh=item.production_share_kwh,
        amount=item.revenue_share_eur,
        currency=settings.currency,
        invoice_date=invoice_date,
        due_date=invoice_date + timedelta(days=payment_term_days),
        service_start=service_start,
        service_end=service_end,
        payment_reference=f"ENERGY-{park.short_name or park.name}-{settlement.period_label}",
    )


# ── Create / read / update ────────────────────────────────────────────────────


async def create_settlement(
    session: AsyncSession,
    *,
    park_id: uuid.UUID,
    year: int,
    net_operator_revenue_eur: Any,
    month: int | None = None,
    distribution_mode: DistributionMode | str | None = None,
    smoothing_factor: Any = None,
    tolerance_percentage: Any = None,
    total_production_kwh: Any = None,
    net_operator_reference: str | None = None,
    notes: str | None = None,
) -> EnergySettlement:
    """Create a DRAFT settlement for a park and period.

    The mode falls back to the park's default, then the service default. A
    SMOOTHED settlement without a factor gets ``default_smoothing_factor``; a
    TOLERATED one without a percentage gets the park's, then the service's
    default tolerance.

    Raises:
        ParkNotFoundError: Unknown park.
        DuplicateSettlementError: The park already has a settlement for the period.
        InvalidParameterError: Bad month, revenue or mode/parameter combination.
    """
    park = await session.get(Park, park_id)
    if park is None:
        raise ParkNotFoundError(f"Park {park_id} not found")

    if month is not None and not 1 <= month <= 12:
        raise InvalidParameterError(f"month must be within 1..12, got {month}")

    period = EnergySettlement.month.is_(None) if month is None else EnergySettlement.month == month
    stmt = select(EnergySettlement.id).where(
        EnergySettlement.park_id == park_id,
        EnergySettlement.year == year,
        period,
    )
    if (await session.execute(stmt)).scalar_one_or_none() is not None:
        label = f"{month:02d}/{year}" if month else f"year {year}"
        raise DuplicateSettlementError(f"Park {park.name} already has a settlement for {label}")

    mode = coerce_mode(
        distribution_mode or park.default_distribution_mode or settings.default_distribution_mode
    )
    smoothing_factor, tolerance_percentage = _resolve_parameters(
        mode, smoothing_factor, tolerance_percentage, park
    )
    validate_parameters(mode, smoothing_factor, tolerance_percentage)
    net = validate_revenue(net_operator_revenue_eur)

    settlement = EnergySettlement(
        park=park,
        year=year,
        month=month,
        net_operator_revenue_eur=net,
        net_operator_reference=net_operator_reference,
        total_production_kwh=_decimal_or_none(total_production_kwh),
        distribution_mode=mode,
        smoothing_factor=_decimal_or_none(smoothing_factor),
        tolerance_percentage=_decimal_or_none(tolerance_percentage),
        status=SettlementStatus.DRAFT,
        notes=notes,
        items=[],
    )
    session.add(settlement)
    try:
        await session.flush()
    except IntegrityError as exc:
        await session.rollback()
        raise DuplicateSettlementError(
            f"Park {park_id} already has a settlement for {month or '-'}/{year}"
        ) from exc

    logger.info(
        "Created settlement %s for park %s period %s (%s, revenue=%s EUR)",
        settlement.id, park.name, settlement.period_label, mode.value, net,
    )
    return settlement


async def get_settlement(session: AsyncSession, settlement_id: uuid.UUID) -> EnergySettlement:
    return await _load_settlement(session, settlement_id)


async def list_settlements(
    session: AsyncSession,
    *,
    year: int | None = None,
    month: int | None = None,
    park_id: uuid.UUID | None = None,
    status: SettlementStatus | None = None,
    page: int = 1,
    limit: int = 50,
) -> SettlementPage:
    """Filtered, paginated settlements plus sums over the whole filtered set."""
    conditions = []
    if year is not None:
        conditions.append(EnergySettlement.year == year)
    if month is not None:
        conditions.append(EnergySettlement.month == month)
    if park_id is not None:
        conditions.append(EnergySettlement.park_id == park_id)
    if status is not None:
        conditions.append(EnergySettlement.status == status)

    stmt = (
        select(EnergySettlement)
        .where(*conditions)
        .order_by(
            EnergySettlement.year.desc(),
            EnergySettlement.month.desc(),
            EnergySettlement.created_at.desc(),
        )
        .offset((page - 1) * limit)
        .limit(limit)
    )
    settlements = list((await session.execute(stmt)).scalars().all())

    totals_stmt = select(
        func.count(EnergySettlement.id),
        func.coalesce(func.sum(EnergySettlement.net_operator_revenue_eur), 0),
        func.coalesce(func.sum(EnergySettlement.total_production_kwh), 0),
    ).where(*conditions)
    total, revenue, production = (await session.execute(totals_stmt)).one()

    return SettlementPage(
        settlements=settlements,
        total=total,
        page=page,
        limit=limit,
        total_revenue_eur=Decimal(str(revenue)),
        total_production_kwh=Decimal(str(production)),
    )


_UPDATABLE_FIELDS = {
    "net_operator_revenue_eur",
    "net_operator_reference",
    "total_production_kwh",
    "distribution_mode",
    "smoothing_factor",
    "tolerance_percentage",
    "notes",
}


async def update_settlement(
    session: AsyncSession,
    settlement_id: uuid.UUID,
    changes: dict[str, Any],
) -> EnergySettlement:
    """Edit a DRAFT or CALCULATED settlement.

    Changing revenue, production, mode or a mode parameter discards the
    current items and resets the settlement to DRAFT; it must be calculated
    again. Reference and notes edits keep the status. When the mode changes,
    parameters that no longer apply are dropped and a missing required one
    is filled from the defaults.
    """
    unknown = set(changes) - _UPDATABLE_FIELDS
    if unknown:
        raise InvalidParameterError(f"Fields cannot be updated: {', '.join(sorted(unknown))}")

    async with settlement_lock(settlement_id):
        settlement = await _load_settlement(session, settlement_id)
        target = next_status(settlement, SettlementAction.UPDATE)

        mode = coerce_mode(changes.get("distribution_mode") or settlement.distribution_mode)
        factor = changes.get("smoothing_factor", settlement.smoothing_factor)
        tolerance = changes.get("tolerance_percentage", settlement.tolerance_percentage)
        if mode is not DistributionMode.SMOOTHED and "smoothing_factor" not in changes:
            factor = None
        if mode is not DistributionMode.TOLERATED and "tolerance_percentage" not in changes:
            tolerance = None
        factor, tolerance = _resolve_parameters(mode, factor, tolerance, settlement.park)
        validate_parameters(mode, factor, tolerance)
        factor = _decimal_or_none(factor)
        tolerance = _decimal_or_none(tolerance)

        net = validate_revenue(
            changes.get("net_operator_revenue_eur", settlement.net_operator_revenue_eur)
        )
        production = settlement.total_production_kwh
        if "total_production_kwh" in changes:
            production = _decimal_or_none(changes["total_production_kwh"])

        inputs_changed = (
            net != settlement.net_operator_revenue_eur
            or mode is not settlement.distribution_mode
            or factor != settlement.smoothing_factor
            or tolerance != settlement.tolerance_percentage
            or production != settlement.total_production_kwh
        )

        settlement.net_operator_revenue_eur = net
        settlement.distribution_mode = mode
        settlement.smoothing_factor = factor
        settlement.tolerance_percentage = tolerance
        settlement.total_production_kwh = production
        if "net_operator_reference" in changes:
            settlement.net_operator_reference = changes["net_operator_reference"]
        if "notes" in changes:
            settlement.notes = changes["notes"]

        if inputs_changed and settlement.status is not SettlementStatus.DRAFT:
            settlement.items = []
            settlement.status = SettlementStatus.DRAFT
            logger.info("Settlement %s inputs changed; items discarded, back to DRAFT", settlement_id)
        else:
            settlement.status = target
        settlement.updated_at = _utcnow()
        await _flush(session, settlement_id)

    return settlement


# ── Calculate ─────────────────────────────────────────────────────────────────


async def calculate_settlement(
    session: AsyncSession,
    settlement_id: uuid.UUID,
    production_records: list[ProductionRecord] | None = None,
) -> CalculationOutcome:
    """Distribute the settlement's revenue and replace its items.

    Args:
        session: Async database session.
        settlement_id: Settlement to calculate.
        production_records: Pre-fetched production (for testing). If None,
            records are fetched from the production aggregator.

    Returns:
        The updated settlement, the full distribution result and a digest
        of the item set. Unchanged inputs always give the same digest.

    Raises:
        SettlementNotFoundError, IllegalStateError, ConcurrentModificationError,
        ProductionAggregatorError, and the engine's DistributionError subclasses.
        In every case the settlement is left unchanged.
    """
    async with settlement_lock(settlement_id):
        settlement = await _load_settlement(session, settlement_id)
        target = next_status(settlement, SettlementAction.CALCULATE)

        if production_records is None:
            production_records = await production_client.get_park_production(
                settlement.park_id, settlement.year, settlement.month
            )

        result = compute_distribution(
            production_records,
            settlement.net_operator_revenue_eur,
            settlement.distribution_mode,
            smoothing_factor=settlement.smoothing_factor,
            tolerance_percentage=settlement.tolerance_percentage,
        )

        if (
            settlement.total_production_kwh is not None
            and settlement.total_production_kwh != result.total_production_kwh
        ):
            logger.warning(
                "Settlement %s: reported production %s kWh differs from metered %s kWh; "
                "using metered total",
                settlement_id, settlement.total_production_kwh, result.total_production_kwh,
            )

        settlement.items = [
            EnergySettlementItem(
                position=position,
                recipient_entity_id=item.recipient_entity_id,
                turbine_id=item.turbine_id,
                production_share_kwh=item.production_share_kwh,
                production_share_pct=item.production_share_pct,
                revenue_share_eur=item.revenue_share_eur,
                distribution_key=item.distribution_key,
                invoice_ref=None,
            )
            for position, item in enumerate(result.items)
        ]
        settlement.total_production_kwh = result.total_production_kwh
        settlement.status = target
        settlement.updated_at = _utcnow()
        await _flush(session, settlement_id)

    digest = items_digest(result.items)
    logger.info(
        "Calculated settlement %s: %d item(s), mode=%s, price=%.6f EUR/kWh, residual=%s, digest=%s",
        settlement_id,
        len(result.items),
        result.mode.value,
        result.price_per_kwh,
        result.residual_eur,
        digest[:12],
    )
    return CalculationOutcome(settlement=settlement, result=result, items_digest=digest)


# ── Invoice ───────────────────────────────────────────────────────────────────


async def create_invoices(
    session: AsyncSession,
    settlement_id: uuid.UUID,
    *,
    invoice_date: date | None = None,
    payment_term_days: int | None = None,
    issue_credit_note: CreditNoteIssuer | None = None,
) -> InvoiceRun:
    """Issue one credit note per item and move the settlement to INVOICED.

    Args:
        session: Async database session.
        settlement_id: Settlement to invoice; must be CALCULATED.
        invoice_date: Document date (defaults to today, UTC).
        payment_term_days: Days until due (defaults to ``default_payment_term_days``).
        issue_credit_note: Issuer coroutine (for testing). Defaults to the
            HTTP invoice bridge client.

    Raises:
        IllegalStateError: Not CALCULATED, no items, or items already invoiced.
        InvoiceCreationPartialFailureError: At least one credit note failed;
            nothing was stored and the settlement is still CALCULATED.
    """
    issue = issue_credit_note or invoice_bridge.create_credit_note
    invoice_date = invoice_date or _utcnow().date()
    if payment_term_days is None:
        payment_term_days = settings.default_payment_term_days

    async with settlement_lock(settlement_id):
        settlement = await _load_settlement(session, settlement_id)
        target = next_status(settlement, SettlementAction.CREATE_INVOICES)

        if not settlement.items:
            raise IllegalStateError(
                settlement.id, settlement.status, SettlementAction.CREATE_INVOICES,
                f"Settlement {settlement_id} has no items to invoice",
            )
        already = [item for item in settlement.items if item.invoice_ref is not None]
        if already:
            raise IllegalStateError(
                settlement.id, settlement.status, SettlementAction.CREATE_INVOICES,
                f"{len(already)} of {len(settlement.items)} item(s) of settlement "
                f"{settlement_id} already carry an invoice reference",
            )

        requests = [
            _build_credit_note(settlement, item, invoice_date, payment_term_days)
            for item in settlement.items
        ]
        outcomes = await asyncio.gather(*(issue(req) for req in requests), return_exceptions=True)

        succeeded: dict[uuid.UUID, CreditNoteReceipt] = {}
        failed: dict[uuid.UUID, str] = {}
        for req, outcome in zip(requests, outcomes):
            if isinstance(outcome, BaseException):
                if not isinstance(outcome, Exception):
                    raise outcome
                failed[req.item_id] = str(outcome) or type(outcome).__name__
            else:
                succeeded[req.item_id] = outcome

        if failed:
            logger.error(
                "Invoice run for settlement %s failed for %d of %d item(s): %s",
                settlement_id, len(failed), len(requests), failed,
            )
            raise InvoiceCreationPartialFailureError(settlement_id, succeeded, failed)

        invoices = []
        for item in settlement.items:
            receipt = succeeded[item.id]
            item.invoice_ref = receipt.invoice_ref
            invoices.append(
                IssuedInvoice(
                    item_id=item.id,
                    recipient_entity_id=item.recipient_entity_id,
                    turbine_id=item.turbine_id,
                    amount_eur=item.revenue_share_eur,
                    invoice_ref=receipt.invoice_ref,
                    invoice_number=receipt.invoice_number,
                )
            )
        settlement.status = target
        settlement.updated_at = _utcnow()
        await _flush(session, settlement_id)

    summary = {
        "count": len(invoices),
        "total_amount_eur": sum((inv.amount_eur for inv in invoices), Decimal("0.00")),
        "period": settlement.period_label,
        "park": settlement.park.name,
    }
    logger.info(
        "Issued %d credit note(s) for settlement %s (total=%s EUR)",
        summary["count"], settlement_id, summary["total_amount_eur"],
    )
    return InvoiceRun(settlement=settlement, invoices=invoices, summary=summary)


# ── Close / delete ────────────────────────────────────────────────────────────


async def close_settlement(session: AsyncSession, settlement_id: uuid.UUID) -> EnergySettlement:
    """INVOICED → CLOSED. Closed settlements are read-only."""
    async with settlement_lock(settlement_id):
        settlement = await _load_settlement(session, settlement_id)
        settlement.status = next_status(settlement, SettlementAction.CLOSE)
        settlement.updated_at = _utcnow()
        await _flush(session, settlement_id)

    logger.info("Closed settlement %s", settlement_id)
    return settlement


async def delete_settlement(session: AsyncSession, settlement_id: uuid.UUID) -> None:
    """Remove a DRAFT or CALCULATED settlement together with its items."""
    async with settlement_lock(settlement_id):
        settlement = await _load_settlement(session, settlement_id)
        next_status(settlement, SettlementAction.DELETE)
        await session.delete(settlement)
        await _flush(session, settlement_id)

    logger.info("Deleted settlement %s", settlement_id)
