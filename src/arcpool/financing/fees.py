"""Fee engine — late fees and the protocol/LP interest split.

All arithmetic is integer and floors, matching the settlement contract:

    days_late     = (now - due_date) // 86400
    late_fee      = min(repayment × days_late × 1%, repayment × 30%)
    protocol_fee  = total_interest × protocol_fee_rate_bps // 10000
    lp_interest   = total_interest - protocol_fee

The protocol fee rate is capped at 50% when it is configured, not when
interest is split. Pure functions, no state.
"""

from __future__ import annotations

from typing import Tuple

from arcpool.errors import InvalidFeeRate

SECONDS_PER_DAY = 86_400
BPS_DENOMINATOR = 10_000
LATE_FEE_BPS_PER_DAY = 100  # 1% per full day late
LATE_FEE_CAP_BPS = 3_000  # 30% of repayment amount
MAX_PROTOCOL_FEE_BPS = 5_000  # 50%
DEFAULT_PROTOCOL_FEE_BPS = 1_000  # 10%


def late_fee(repayment_amount: int, due_date: int, now: int) -> int:
    """Late fee owed on top of the repayment amount at time ``now``."""
    if now <= due_date:
        return 0
    days_late = (now - due_date) // SECONDS_PER_DAY
    fee = repayment_amount * days_late * LATE_FEE_BPS_PER_DAY // BPS_DENOMINATOR
    cap = repayment_amount * LATE_FEE_CAP_BPS // BPS_DENOMINATOR
    return min(fee, cap)


def split_interest(total_interest: int, protocol_fee_rate_bps: int) -> Tuple[int, int]:
    """Split realized interest into (protocol_fee, lp_interest)."""
    protocol_fee = total_interest * protocol_fee_rate_bps // BPS_DENOMINATOR
    return protocol_fee, total_interest - protocol_fee


def validate_protocol_fee_rate(rate_bps: int) -> int:
    if rate_bps < 0 or rate_bps > MAX_PROTOCOL_FEE_BPS:
        raise InvalidFeeRate(
            f"Protocol fee rate must be in [0, {MAX_PROTOCOL_FEE_BPS}] bps, "
            f"got {rate_bps}",
            field="protocol_fee_rate_bps",
        )
    return rate_bps
