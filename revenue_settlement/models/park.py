"""Wind park reference model.

Only what settlements need: the name used on credit notes and the
distribution defaults applied when a settlement is created.
"""

import uuid
from datetime import datetime, timezone
from decimal import Decimal

from sqlalchemy import DateTime, Numeric, String, Uuid
from sqlalchemy.orm import Mapped, mapped_column

from revenue_settlement.core.database import Base


class Park(Base):
    __tablename__ = "parks"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    name: Mapped[str] = mapped_column(String(200), nullable=False)
    short_name: Mapped[str | None] = mapped_column(String(50), nullable=True)

    # "PROPORTIONAL" | "SMOOTHED" | "TOLERATED"
    default_distribution_mode: Mapped[str | None] = mapped_column(String(16), nullable=True)
    default_tolerance_percentage: Mapped[Decimal | None] = mapped_column(
        Numeric(7, 4), nullable=True
    )

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(timezone.utc)
    )

    def __repr__(self) -> str:
        return f"<Park {self.id} | {self.name}>"
