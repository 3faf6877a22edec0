"""Energy settlement models.

A settlement distributes one grid-operator revenue payment for a park and
metering period across the recipient entities of the park's turbines. Its
items are owned exclusively by the settlement and are replaced wholesale on
every calculation. Once credit notes have been issued (INVOICED) the items
are frozen except for the invoice reference written back by the bridge.
"""

import enum
import uuid
from datetime import datetime, timezone
from decimal import Decimal

from sqlalchemy import (
    DateTime,
    Enum,
    ForeignKey,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
    Uuid,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from revenue_settlement.core.database import Base
from revenue_settlement.models.park import Park


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class DistributionMode(str, enum.Enum):
    PROPORTIONAL = "PROPORTIONAL"  # revenue follows production share
    SMOOTHED = "SMOOTHED"          # blend toward the fleet average by a factor
    TOLERATED = "TOLERATED"        # deviations inside a band are forgiven


class SettlementStatus(str, enum.Enum):
    DRAFT = "DRAFT"
    CALCULATED = "CALCULATED"
    INVOICED = "INVOICED"
    CLOSED = "CLOSED"  # terminal


class EnergySettlement(Base):
    __tablename__ = "energy_settlements"
    __table_args__ = (
        UniqueConstraint("park_id", "year", "month", name="uq_energy_settlement_period"),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    park_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("parks.id"), nullable=False, index=True
    )

    year: Mapped[int] = mapped_column(Integer, nullable=False)
    # None means an annual settlement
    month: Mapped[int | None] = mapped_column(Integer, nullable=True)

    total_production_kwh: Mapped[Decimal | None] = mapped_column(Numeric(16, 3), nullable=True)
    net_operator_revenue_eur: Mapped[Decimal] = mapped_column(Numeric(14, 2), nullable=False)
    net_operator_reference: Mapped[str | None] = mapped_column(String(100), nullable=True)

    distribution_mode: Mapped[DistributionMode] = mapped_column(
        Enum(
            DistributionMode,
            name="distribution_mode",
            values_callable=lambda obj: [e.value for e in obj],
        ),
        nullable=False,
    )
    smoothing_factor: Mapped[Decimal | None] = mapped_column(Numeric(5, 4), nullable=True)
    tolerance_percentage: Mapped[Decimal | None] = mapped_column(Numeric(7, 4), nullable=True)

    status: Mapped[SettlementStatus] = mapped_column(
        Enum(
            SettlementStatus,
            name="settlement_status",
            values_callable=lambda obj: [e.value for e in obj],
        ),
        nullable=False,
        default=SettlementStatus.DRAFT,
    )

    notes: Mapped[str | None] = mapped_column(Text, nullable=True)

    # Optimistic concurrency counter, bumped by the ORM on every UPDATE
    version: Mapped[int] = mapped_column(Integer, nullable=False)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow, onupdate=_utcnow
    )

    park: Mapped[Park] = relationship(lazy="joined")
    items: Mapped[list["EnergySettlementItem"]] = relationship(
        back_populates="settlement",
        cascade="all, delete-orphan",
        order_by="EnergySettlementItem.position",
        lazy="selectin",
    )

    __mapper_args__ = {"version_id_col": version}

    @property
    def period_label(self) -> str:
        """``MM/YYYY`` for monthly settlements, ``YYYY`` for annual ones."""
        if self.month:
            return f"{self.month:02d}/{self.year}"
        return str(self.year)

    def __repr__(self) -> str:
        return (
            f"<EnergySettlement {self.id} | park={self.park_id} {self.period_label} "
            f"{self.distribution_mode.value} status={self.status.value}>"
        )


class EnergySettlementItem(Base):
    __tablename__ = "energy_settlement_items"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    settlement_id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        ForeignKey("energy_settlements.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    position: Mapped[int] = mapped_column(Integer, nullable=False)

    recipient_entity_id: Mapped[str] = mapped_column(String(64), nullable=False)
    # None when the row aggregates several turbines of one recipient
    turbine_id: Mapped[str | None] = mapped_column(String(64), nullable=True)

    production_share_kwh: Mapped[Decimal] = mapped_column(Numeric(16, 3), nullable=False)
    production_share_pct: Mapped[Decimal] = mapped_column(Numeric(9, 4), nullable=False)
    revenue_share_eur: Mapped[Decimal] = mapped_column(Numeric(14, 2), nullable=False)
    distribution_key: Mapped[str] = mapped_column(String(64), nullable=False)

    # Written back by the invoice bridge, never by the distribution engine
    invoice_ref: Mapped[str | None] = mapped_column(String(64), nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)

    settlement: Mapped[EnergySettlement] = relationship(back_populates="items")

    def __repr__(self) -> str:
        return (
            f"<EnergySettlementItem {self.recipient_entity_id}/{self.turbine_id} "
            f"{self.revenue_share_eur} EUR key={self.distribution_key}>"
        )
