from revenue_settlement.models.park import Park
from revenue_settlement.models.settlement import (
    DistributionMode,
    EnergySettlement,
    EnergySettlementItem,
    SettlementStatus,
)

__all__ = [
    "DistributionMode",
    "EnergySettlement",
    "EnergySettlementItem",
    "Park",
    "SettlementStatus",
]
