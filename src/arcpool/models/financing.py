"""Financing models — pool status, financing records, authorization terms.

All amounts are integers in token base units. All timestamps are unix
seconds. No floats anywhere in the ledger.

Invariants enforced by these models:
- A financing record moves FINANCED → REPAID exactly once, never back
- A record's terms are fixed at creation; only the repaid flag changes
- Repayment breakdowns are internally consistent
  (protocol_fee + lp_interest == total_interest)
"""

from __future__ import annotations

import enum
from dataclasses import dataclass
from typing import Any, Dict


class FinancingState(str, enum.Enum):
    """Lifecycle state of an invoice.

    State machine:
        UNFINANCED → FINANCED → REPAID

    There is no cancellation and no clawback path.
    """
    UNFINANCED = "unfinanced"
    FINANCED = "financed"
    REPAID = "repaid"


FINANCING_TRANSITIONS: Dict[FinancingState, frozenset] = {
    FinancingState.UNFINANCED: frozenset({FinancingState.FINANCED}),
    FinancingState.FINANCED: frozenset({FinancingState.REPAID}),
    FinancingState.REPAID: frozenset(),
}


@dataclass(frozen=True)
class FinancingAuthorization:
    """The terms an authorizer signs for one invoice.

    Mirrors the FinancingRequest typed-data struct field for field.
    """
    invoice_id: str
    supplier: str
    payout_amount: int
    repayment_amount: int
    due_date: int
    nonce: int
    deadline: int

    def to_dict(self) -> Dict[str, Any]:
        return {
            "invoice_id": self.invoice_id,
            "supplier": self.supplier,
            "payout_amount": self.payout_amount,
            "repayment_amount": self.repayment_amount,
            "due_date": self.due_date,
            "nonce": self.nonce,
            "deadline": self.deadline,
        }

    @staticmethod
    def from_dict(data: Dict[str, Any]) -> FinancingAuthorization:
        return FinancingAuthorization(
            invoice_id=data["invoice_id"],
            supplier=data["supplier"],
            payout_amount=int(data["payout_amount"]),
            repayment_amount=int(data["repayment_amount"]),
            due_date=int(data["due_date"]),
            nonce=int(data["nonce"]),
            deadline=int(data["deadline"]),
        )


@dataclass
class FinancingRecord:
    """A financed invoice.

    Mutable only through mark_repaid(). Records are never deleted.
    """
    invoice_id: str
    supplier: str
    payout_amount: int
    repayment_amount: int
    due_date: int
    created_at: int
    repaid: bool = False

    @property
    def state(self) -> FinancingState:
        return FinancingState.REPAID if self.repaid else FinancingState.FINANCED

    def mark_repaid(self) -> None:
        """Transition FINANCED → REPAID, rejecting anything else."""
        allowed = FINANCING_TRANSITIONS[self.state]
        if FinancingState.REPAID not in allowed:
            raise ValueError(
                f"Invalid financing transition: {self.state.value} → "
                f"{FinancingState.REPAID.value}"
            )
        self.repaid = True


@dataclass(frozen=True)
class PoolStatus:
    """Read-only view of pool totals."""
    total: int
    available: int
    utilized: int
    financed: int


@dataclass(frozen=True)
class RepaymentBreakdown:
    """Full breakdown of a repayment.

    Invariants:
        required_amount == repayment_amount + late_fee
        total_interest == repayment_amount - principal + late_fee
        protocol_fee + lp_interest == total_interest
    """
    invoice_id: str
    principal: int
    repayment_amount: int
    late_fee: int
    required_amount: int
    total_interest: int
    protocol_fee: int
    lp_interest: int
    refund: int = 0


@dataclass
class Pool:
    """Singleton pool totals and fee settings.

    Invariant: 0 <= available_liquidity <= total_pool_size.
    total_financed is cumulative and never decreases.
    """
    protocol_fee_receiver: str
    protocol_fee_rate_bps: int
    total_pool_size: int = 0
    available_liquidity: int = 0
    total_financed: int = 0
    total_interest_earned: int = 0
