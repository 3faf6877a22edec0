"""Distribution engine: splits a grid operator's revenue across turbines.

Pure computation with no I/O and no shared state. Given the production of
each turbine for one metering period and the net revenue paid for it, the
engine computes each row's revenue share under one of three policies:

- PROPORTIONAL: revenue follows the production share.
- SMOOTHED: each row's deviation from the fleet average is priced at the
  period's realized price per kWh and a ``smoothing_factor`` of it is moved
  back toward the average.
- TOLERATED: deviations inside ``tolerance_percentage`` of the average are
  left alone; only the part of a deviation beyond the band is moved.

Conservation is restored explicitly for every mode. Shares are rounded to
cents and whatever residual remains goes to the row with the largest
production (lowest turbine id, then lowest recipient id, on ties). The same
rule makes the production percentages add up to exactly 100.

Invalid input always raises. A financial figure that cannot be computed
exactly is rejected, never approximated.
"""

import logging
import math
from collections.abc import Iterable
from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation, localcontext
from typing import Any

from revenue_settlement.models.settlement import DistributionMode

logger = logging.getLogger(__name__)

MONEY_QUANTUM = Decimal("0.01")
PERCENT_QUANTUM = Decimal("0.0001")
KWH_QUANTUM = Decimal("0.001")  # metering resolution: 1 Wh

_HUNDRED = Decimal(100)
_ZERO = Decimal(0)
_PRECISION = 34


class DistributionError(Exception):
    """Base class for caller errors raised by the distribution engine."""


class EmptyInputError(DistributionError):
    """No production records were supplied."""


class ZeroProductionError(DistributionError):
    """Total production for the period is zero, so nothing can be distributed."""


class InvalidParameterError(DistributionError):
    """Mode/parameter mismatch, out-of-range parameter or malformed amount."""


class NegativeShareError(DistributionError):
    """The residual would push a row's revenue share below zero."""


@dataclass(frozen=True)
class ProductionRecord:
    """Production of one turbine for the period, as supplied by the aggregator."""

    recipient_entity_id: str
    turbine_id: str | None
    production_kwh: Decimal


@dataclass(frozen=True)
class AllocationItem:
    """One computed row of a distribution."""

    recipient_entity_id: str
    turbine_id: str | None
    production_share_kwh: Decimal
    production_share_pct: Decimal
    revenue_share_eur: Decimal
    distribution_key: str
    # Reporting only: deviation from the fleet average and the money moved
    # away from (positive) or toward (negative) this row before rounding.
    deviation_kwh: Decimal
    adjustment_eur: Decimal


@dataclass(frozen=True)
class DistributionResult:
    mode: DistributionMode
    items: list[AllocationItem]
    total_production_kwh: Decimal
    average_production_kwh: Decimal
    price_per_kwh: Decimal
    net_revenue_eur: Decimal
    residual_eur: Decimal
    smoothing_factor: Decimal | None = None
    tolerance_percentage: Decimal | None = None
    tolerance_band_kwh: Decimal | None = None


# ── Parameter handling ────────────────────────────────────────────────────────


def _to_decimal(value: Any, name: str) -> Decimal:
    if isinstance(value, bool):
        raise InvalidParameterError(f"{name} must be a number, got {value!r}")
    if isinstance(value, float):
        if not math.isfinite(value):
            raise InvalidParameterError(f"{name} must be finite, got {value!r}")
        value = repr(value)
    try:
        result = value if isinstance(value, Decimal) else Decimal(value)
    except (InvalidOperation, TypeError, ValueError) as exc:
        raise InvalidParameterError(f"{name} must be a number, got {value!r}") from exc
    if not result.is_finite():
        raise InvalidParameterError(f"{name} must be finite, got {value!r}")
    return result


def _optional_decimal(value: Any, name: str) -> Decimal | None:
    return None if value is None else _to_decimal(value, name)


def coerce_mode(mode: DistributionMode | str) -> DistributionMode:
    """Turn a mode name into a :class:`DistributionMode`."""
    if isinstance(mode, DistributionMode):
        return mode
    try:
        return DistributionMode(str(mode).upper())
    except ValueError as exc:
        raise InvalidParameterError(f"Unknown distribution mode: {mode!r}") from exc


def validate_parameters(
    mode: DistributionMode | str,
    smoothing_factor: Any = None,
    tolerance_percentage: Any = None,
) -> DistributionMode:
    """Check that the parameters match the mode and lie in range.

    ``smoothing_factor`` is required for SMOOTHED and forbidden otherwise;
    ``tolerance_percentage`` is required for TOLERATED and forbidden otherwise.

    Returns:
        The validated mode.

    Raises:
        InvalidParameterError: On any mismatch or out-of-range value.
    """
    mode = coerce_mode(mode)
    factor = _optional_decimal(smoothing_factor, "smoothing_factor")
    tolerance = _optional_decimal(tolerance_percentage, "tolerance_percentage")

    if mode is DistributionMode.SMOOTHED:
        if factor is None:
            raise InvalidParameterError("SMOOTHED distribution requires a smoothing_factor")
        if not _ZERO <= factor <= 1:
            raise InvalidParameterError(f"smoothing_factor must be within [0, 1], got {factor}")
    elif factor is not None:
        raise InvalidParameterError(
            f"smoothing_factor is only allowed for SMOOTHED distribution, not {mode.value}"
        )

    if mode is DistributionMode.TOLERATED:
        if tolerance is None:
            raise InvalidParameterError("TOLERATED distribution requires a tolerance_percentage")
        if not _ZERO <= tolerance <= _HUNDRED:
            raise InvalidParameterError(
                f"tolerance_percentage must be within [0, 100], got {tolerance}"
            )
    elif tolerance is not None:
        raise InvalidParameterError(
            f"tolerance_percentage is only allowed for TOLERATED distribution, not {mode.value}"
        )

    return mode


def validate_revenue(net_revenue_eur: Any) -> Decimal:
    """Return the revenue as a cent-quantized Decimal.

    Raises:
        InvalidParameterError: If negative or more precise than one cent.
    """
    net = _to_decimal(net_revenue_eur, "net_revenue_eur")
    if net < 0:
        raise InvalidParameterError(f"net_revenue_eur must be >= 0, got {net}")
    if net != net.quantize(MONEY_QUANTUM):
        raise InvalidParameterError(
            f"net_revenue_eur must not be more precise than {MONEY_QUANTUM}, got {net}"
        )
    return net.quantize(MONEY_QUANTUM)


# ── Distribution keys ─────────────────────────────────────────────────────────


def _format_factor(factor: Decimal) -> str:
    if factor == factor.quantize(MONEY_QUANTUM):
        return f"{factor:.2f}"
    return format(factor.normalize(), "f")


def _format_percentage(percentage: Decimal) -> str:
    return format(percentage.normalize(), "f")


# ── Rows and residual anchor ──────────────────────────────────────────────────


def _row_key(turbine_id: str | None, recipient_entity_id: str) -> tuple[str, str]:
    return (turbine_id or "", recipient_entity_id)


def _merge_records(
    records: Iterable[ProductionRecord],
) -> list[tuple[str | None, str, Decimal]]:
    """Sum production per (turbine, recipient) and order rows deterministically."""
    merged: dict[tuple[str | None, str], Decimal] = {}
    for record in records:
        kwh = _to_decimal(record.production_kwh, "production_kwh")
        if kwh < 0:
            raise InvalidParameterError(
                f"production_kwh must be >= 0, got {kwh} for turbine "
                f"{record.turbine_id!r} / recipient {record.recipient_entity_id!r}"
            )
        if kwh != kwh.quantize(KWH_QUANTUM):
            raise InvalidParameterError(
                f"production_kwh must not be more precise than {KWH_QUANTUM}, got {kwh} for "
                f"turbine {record.turbine_id!r} / recipient {record.recipient_entity_id!r}"
            )
        key = (record.turbine_id, record.recipient_entity_id)
        merged[key] = merged.get(key, _ZERO) + kwh

    rows = [
        (turbine_id, entity_id, kwh.quantize(KWH_QUANTUM))
        for (turbine_id, entity_id), kwh in merged.items()
    ]
    rows.sort(key=lambda row: _row_key(row[0], row[1]))
    return rows


def residual_anchor(rows: list[tuple[str | None, str, Decimal]]) -> int:
    """Index of the row that absorbs rounding residuals.

    Largest production wins; ties go to the lowest turbine id, then the
    lowest recipient id.
    """
    return min(
        range(len(rows)),
        key=lambda i: (-rows[i][2], _row_key(rows[i][0], rows[i][1])),
    )


def _assign_residual(values: list[Decimal], target: Decimal, anchor: int) -> Decimal:
    residual = target - sum(values, _ZERO)
    values[anchor] += residual
    return residual


# ── Public API ────────────────────────────────────────────────────────────────


def compute_distribution(
    records: Iterable[ProductionRecord],
    net_revenue_eur: Any,
    mode: DistributionMode | str,
    smoothing_factor: Any = None,
    tolerance_percentage: Any = None,
) -> DistributionResult:
    """Distribute ``net_revenue_eur`` across the production records.

    Args:
        records: Per-turbine production for the period. Rows sharing a
            (turbine, recipient) pair are summed.
        net_revenue_eur: Amount to distribute, in euros with at most cent precision.
        mode: Distribution policy.
        smoothing_factor: Required for SMOOTHED, within [0, 1].
        tolerance_percentage: Required for TOLERATED, within [0, 100].

    Returns:
        A :class:`DistributionResult` whose item revenue shares sum to
        ``net_revenue_eur`` exactly and whose percentages sum to exactly 100.

    Raises:
        EmptyInputError: No records.
        ZeroProductionError: Total production is zero.
        InvalidParameterError: Negative production or revenue, sub-cent
            revenue, sub-Wh production, or a bad mode/parameter combination.
        NegativeShareError: The residual exceeds the share of the row that
            absorbs it, typically when TOLERATED clipping is lopsided.
    """
    records = list(records)
    if not records:
        raise EmptyInputError("At least one production record is required")

    mode = validate_parameters(mode, smoothing_factor, tolerance_percentage)
    factor = _optional_decimal(smoothing_factor, "smoothing_factor")
    tolerance = _optional_decimal(tolerance_percentage, "tolerance_percentage")

    net = validate_revenue(net_revenue_eur)
    rows = _merge_records(records)

    with localcontext() as ctx:
        ctx.prec = _PRECISION

        total = sum((kwh for _, _, kwh in rows), _ZERO)
        if total <= 0:
            raise ZeroProductionError(
                f"Total production across {len(rows)} row(s) is zero; nothing to distribute"
            )

        price = net / total
        average = total / len(rows)
        band = average * tolerance / _HUNDRED if mode is DistributionMode.TOLERATED else None

        shares: list[Decimal] = []
        keys: list[str] = []
        deviations: list[Decimal] = []
        adjustments: list[Decimal] = []

        for turbine_id, entity_id, kwh in rows:
            raw_share = net * kwh / total
            deviation = kwh - average

            if mode is DistributionMode.PROPORTIONAL:
                adjustment = _ZERO
                key = "PROPORTIONAL"
            elif mode is DistributionMode.SMOOTHED:
                adjustment = factor * deviation * price
                key = f"SMOOTHED:{_format_factor(factor)}"
            else:
                clipped = min(abs(deviation), band)
                if deviation > 0:
                    excess = deviation - clipped
                elif deviation < 0:
                    excess = deviation + clipped
                else:
                    excess = _ZERO
                adjustment = excess * price
                within_band = band > 0 and abs(deviation) <= band
                key = (
                    f"TOLERATED:{_format_percentage(tolerance)}%:"
                    f"{'WITHIN_BAND' if within_band else 'ADJUSTED'}"
                )

            shares.append(raw_share - adjustment)
            keys.append(key)
            deviations.append(deviation)
            adjustments.append(adjustment)

        percentages = [
            (_HUNDRED * kwh / total).quantize(PERCENT_QUANTUM, rounding=ROUND_HALF_UP)
            for _, _, kwh in rows
        ]

    rounded = [share.quantize(MONEY_QUANTUM, rounding=ROUND_HALF_UP) for share in shares]
    anchor = residual_anchor(rows)
    residual = _assign_residual(rounded, net, anchor)
    _assign_residual(percentages, _HUNDRED, anchor)

    if rounded[anchor] < 0:
        raise NegativeShareError(
            f"{mode.value} distribution leaves turbine {rows[anchor][0]!r} / recipient "
            f"{rows[anchor][1]!r} with {rounded[anchor]} EUR after absorbing a residual of "
            f"{residual} EUR"
        )

    if residual.copy_abs() > MONEY_QUANTUM * len(rows):
        logger.info(
            "Residual %s EUR assigned to turbine %s (mode=%s, rows=%d)",
            residual, rows[anchor][0], mode.value, len(rows),
        )

    items = [
        AllocationItem(
            recipient_entity_id=entity_id,
            turbine_id=turbine_id,
            production_share_kwh=kwh,
            production_share_pct=percentages[i],
            revenue_share_eur=rounded[i],
            distribution_key=keys[i],
            deviation_kwh=deviations[i].quantize(KWH_QUANTUM, rounding=ROUND_HALF_UP),
            adjustment_eur=adjustments[i].quantize(MONEY_QUANTUM, rounding=ROUND_HALF_UP),
        )
        for i, (turbine_id, entity_id, kwh) in enumerate(rows)
    ]

    return DistributionResult(
        mode=mode,
        items=items,
        total_production_kwh=total,
        average_production_kwh=average.quantize(KWH_QUANTUM, rounding=ROUND_HALF_UP),
        price_per_kwh=price,
        net_revenue_eur=net,
        residual_eur=residual,
        smoothing_factor=factor,
        tolerance_percentage=tolerance,
        tolerance_band_kwh=(
            band.quantize(KWH_QUANTUM, rounding=ROUND_HALF_UP) if band is not None else None
        ),
    )


def allocate(
    records: Iterable[ProductionRecord],
    net_revenue_eur: Any,
    mode: DistributionMode | str,
    smoothing_factor: Any = None,
    tolerance_percentage: Any = None,
) -> list[AllocationItem]:
    """Allocation items only; see :func:`compute_distribution`."""
    return compute_distribution(
        records, net_revenue_eur, mode, smoothing_factor, tolerance_percentage
    ).items
