"""Ledger store — the shared mutable state of one financing pool.

Holds the pool totals, per-LP deposit positions, financing records, and
the used-invoice set. Every mutation checks all of its preconditions
before touching anything, so a rejected call leaves the store unchanged.

The store has no notion of callers, signatures, or transfers. The state
machine owns ordering and rollback; snapshot()/restore() are the
primitives it uses to undo a whole operation.

LP positions record deposits only. Interest is credited to the pool
total and to available liquidity, not to individual positions, so the
sum of positions trails total_pool_size by all interest earned to date.
"""

from __future__ import annotations

from dataclasses import dataclass, replace
from typing import Dict, FrozenSet, Optional

from arcpool.errors import (
    InsufficientBalance,
    InsufficientLiquidity,
    InvalidAmount,
    InvoiceAlreadyFinanced,
    InvoiceNotFinanced,
)
from arcpool.financing.fees import validate_protocol_fee_rate
from arcpool.models.financing import FinancingRecord, Pool, PoolStatus


@dataclass(frozen=True)
class LedgerSnapshot:
    """Opaque point-in-time copy of a LedgerStore."""
    pool: Pool
    positions: Dict[str, int]
    records: Dict[str, FinancingRecord]
    used_invoices: FrozenSet[str]


class LedgerStore:
    """In-memory ledger for one pool instance.

    Usage:
        store = LedgerStore(fee_receiver, protocol_fee_rate_bps=1000)
        store.credit(lp, 1_000_000)
        store.reserve(98_000)
        store.release(98_000, 1_800, total_interest=2_000)
    """

    def __init__(self, fee_receiver: str, protocol_fee_rate_bps: int) -> None:
        self._pool = Pool(
            protocol_fee_receiver=fee_receiver,
            protocol_fee_rate_bps=validate_protocol_fee_rate(protocol_fee_rate_bps),
        )
        self._positions: Dict[str, int] = {}
        self._records: Dict[str, FinancingRecord] = {}
        self._used_invoices: set[str] = set()

    # ------------------------------------------------------------------
    # Pool accounting
    # ------------------------------------------------------------------

    def credit(self, account: str, amount: int) -> None:
        """Record an LP deposit."""
        _require_positive(amount)
        self._positions[account] = self._positions.get(account, 0) + amount
        self._pool.total_pool_size += amount
        self._pool.available_liquidity += amount

    def debit(self, account: str, amount: int) -> None:
        """Record an LP withdrawal.

        Bounded by both the LP's own position and the liquidity not
        currently lent out.
        """
        _require_positive(amount)
        position = self._positions.get(account, 0)
        if amount > position:
            raise InsufficientBalance(
                f"Withdrawal {amount} exceeds LP balance {position}",
                field="amount",
            )
        if amount > self._pool.available_liquidity:
            raise InsufficientLiquidity(
                f"Withdrawal {amount} exceeds available liquidity "
                f"{self._pool.available_liquidity}",
                field="amount",
            )
        remaining = position - amount
        if remaining:
            self._positions[account] = remaining
        else:
            del self._positions[account]
        self._pool.total_pool_size -= amount
        self._pool.available_liquidity -= amount

    def reserve(self, amount: int) -> None:
        """Move liquidity out to a financing."""
        if amount > self._pool.available_liquidity:
            raise InsufficientLiquidity(
                f"Payout {amount} exceeds available liquidity "
                f"{self._pool.available_liquidity}",
                field="payout_amount",
            )
        self._pool.available_liquidity -= amount
        self._pool.total_financed += amount

    def release(
        self,
        principal: int,
        interest_share: int,
        total_interest: Optional[int] = None,
    ) -> None:
        """Return repaid principal plus the LPs' interest share.

        Principal never left total_pool_size, so only the interest share
        grows it. total_interest_earned counts the full interest,
        protocol fee included.
        """
        if total_interest is None:
            total_interest = interest_share
        self._pool.available_liquidity += principal + interest_share
        self._pool.total_pool_size += interest_share
        self._pool.total_interest_earned += total_interest

    # ------------------------------------------------------------------
    # Invoices and records
    # ------------------------------------------------------------------

    def is_invoice_used(self, invoice_id: str) -> bool:
        return invoice_id in self._used_invoices

    def mark_invoice_used(self, invoice_id: str) -> None:
        """Insert into the used set. The set only ever grows."""
        if invoice_id in self._used_invoices:
            raise InvoiceAlreadyFinanced(
                f"Invoice already financed: {invoice_id}", field="invoice_id"
            )
        self._used_invoices.add(invoice_id)

    def add_record(self, record: FinancingRecord) -> None:
        if record.invoice_id in self._records:
            raise InvoiceAlreadyFinanced(
                f"Financing record already exists: {record.invoice_id}",
                field="invoice_id",
            )
        self._records[record.invoice_id] = record

    def get_record(self, invoice_id: str) -> FinancingRecord:
        record = self._records.get(invoice_id)
        if record is None:
            raise InvoiceNotFinanced(
                f"Invoice not financed: {invoice_id}", field="invoice_id"
            )
        return record

    def find_record(self, invoice_id: str) -> Optional[FinancingRecord]:
        """Copy of a record, or None. Callers cannot mutate the store through it."""
        record = self._records.get(invoice_id)
        return replace(record) if record is not None else None

    # ------------------------------------------------------------------
    # Fee settings
    # ------------------------------------------------------------------

    def set_protocol_fee_rate(self, rate_bps: int) -> None:
        self._pool.protocol_fee_rate_bps = validate_protocol_fee_rate(rate_bps)

    def set_fee_receiver(self, receiver: str) -> None:
        self._pool.protocol_fee_receiver = receiver

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    @property
    def pool(self) -> Pool:
        """Copy of the pool totals."""
        return replace(self._pool)

    def status(self) -> PoolStatus:
        return PoolStatus(
            total=self._pool.total_pool_size,
            available=self._pool.available_liquidity,
            utilized=self._pool.total_pool_size - self._pool.available_liquidity,
            financed=self._pool.total_financed,
        )

    def position(self, account: str) -> int:
        return self._positions.get(account, 0)

    def positions(self) -> Dict[str, int]:
        return dict(self._positions)

    # ------------------------------------------------------------------
    # Rollback
    # ------------------------------------------------------------------

    def snapshot(self) -> LedgerSnapshot:
        return LedgerSnapshot(
            pool=replace(self._pool),
            positions=dict(self._positions),
            records={k: replace(v) for k, v in self._records.items()},
            used_invoices=frozenset(self._used_invoices),
        )

    def restore(self, snapshot: LedgerSnapshot) -> None:
        self._pool = replace(snapshot.pool)
        self._positions = dict(snapshot.positions)
        self._records = {k: replace(v) for k, v in snapshot.records.items()}
        self._used_invoices = set(snapshot.used_invoices)


def _require_positive(amount: int) -> None:
    if amount <= 0:
        raise InvalidAmount(f"Amount must be positive, got {amount}", field="amount")
