"""Core data models for the financing ledger."""

from arcpool.models.financing import (
    FINANCING_TRANSITIONS,
    FinancingAuthorization,
    FinancingRecord,
    FinancingState,
    Pool,
    PoolStatus,
    RepaymentBreakdown,
)

__all__ = [
    "FINANCING_TRANSITIONS",
    "FinancingAuthorization",
    "FinancingRecord",
    "FinancingState",
    "Pool",
    "PoolStatus",
    "RepaymentBreakdown",
]
