"""Invoice mirror — off-chain view of the ledger built purely from events.

The mirror never queries the ledger. It subscribes to an EventLog (or
replays a persisted one) and maintains:
- invoice status: FINANCED after FinancingWithdrawn, PAID after Repayment
- LP balances from Deposit / Withdrawal
- pool totals, reconstructed from the deltas each event carries

If the mirror's pool status ever disagrees with the ledger's, an event
is missing a field it needs.
"""

from __future__ import annotations

import enum
from dataclasses import dataclass
from typing import Dict, Iterable, Optional

from arcpool.models.financing import PoolStatus
from arcpool.persistence.event_log import EventKind, EventLog, EventRecord


class InvoiceStatus(str, enum.Enum):
    """Off-chain invoice status, matching the invoices table vocabulary."""
    FINANCED = "FINANCED"
    PAID = "PAID"


@dataclass
class MirroredInvoice:
    invoice_id: str
    supplier: str
    payout_amount: int
    repayment_amount: int
    due_date: int
    status: InvoiceStatus = InvoiceStatus.FINANCED
    repaid_amount: int = 0
    late_fee: int = 0
    payer: Optional[str] = None


class InvoiceMirror:
    """Event-driven mirror of invoices and pool totals.

    Usage:
        mirror = InvoiceMirror()
        mirror.attach(pool.event_log)    # follow live
        # or
        mirror = InvoiceMirror.replay(EventLog(path).events())
    """

    def __init__(self) -> None:
        self._invoices: Dict[str, MirroredInvoice] = {}
        self._lp_balances: Dict[str, int] = {}
        self._total = 0
        self._available = 0
        self._financed = 0
        self._interest_earned = 0
        self._authorizer: Optional[str] = None
        self._processed = 0

    @classmethod
    def replay(cls, events: Iterable[EventRecord]) -> InvoiceMirror:
        mirror = cls()
        for event in events:
            mirror.apply(event)
        return mirror

    def attach(self, event_log: EventLog) -> None:
        """Catch up on the log so far, then follow new events."""
        for event in event_log.events():
            self.apply(event)
        event_log.subscribe(self.apply)

    def apply(self, event: EventRecord) -> None:
        p = event.payload
        kind = event.event_kind

        if kind == EventKind.DEPOSIT:
            self._lp_balances[p["lp"]] = self._lp_balances.get(p["lp"], 0) + p["amount"]
            self._total += p["amount"]
            self._available += p["amount"]

        elif kind == EventKind.WITHDRAWAL:
            remaining = self._lp_balances.get(p["lp"], 0) - p["amount"]
            if remaining:
                self._lp_balances[p["lp"]] = remaining
            else:
                self._lp_balances.pop(p["lp"], None)
            self._total -= p["amount"]
            self._available -= p["amount"]

        elif kind == EventKind.FINANCING_WITHDRAWN:
            self._invoices[p["invoice_id"]] = MirroredInvoice(
                invoice_id=p["invoice_id"],
                supplier=p["supplier"],
                payout_amount=p["amount"],
                repayment_amount=p["repayment_amount"],
                due_date=p["due_date"],
            )
            self._available -= p["amount"]
            self._financed += p["amount"]

        elif kind == EventKind.REPAYMENT:
            invoice = self._invoices.get(p["invoice_id"])
            if invoice is None:
                raise ValueError(f"Repayment for unknown invoice: {p['invoice_id']}")
            invoice.status = InvoiceStatus.PAID
            invoice.repaid_amount = p["amount"]
            invoice.late_fee = p["late_fee"]
            invoice.payer = p["payer"]
            self._available += p["principal"]

        elif kind == EventKind.INTEREST_DISTRIBUTED:
            self._available += p["lp_interest"]
            self._total += p["lp_interest"]
            self._interest_earned += p["total_interest"]

        elif kind == EventKind.AUTHORIZER_UPDATED:
            self._authorizer = p["new_authorizer"]

        self._processed += 1

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def invoice(self, invoice_id: str) -> Optional[MirroredInvoice]:
        return self._invoices.get(invoice_id)

    def invoices(self, status: Optional[InvoiceStatus] = None) -> list[MirroredInvoice]:
        if status is None:
            return list(self._invoices.values())
        return [i for i in self._invoices.values() if i.status == status]

    def lp_balance(self, lp: str) -> int:
        return self._lp_balances.get(lp, 0)

    def pool_status(self) -> PoolStatus:
        return PoolStatus(
            total=self._total,
            available=self._available,
            utilized=self._total - self._available,
            financed=self._financed,
        )

    @property
    def total_interest_earned(self) -> int:
        return self._interest_earned

    @property
    def authorizer(self) -> Optional[str]:
        """Latest rotated authorizer, or None if no rotation has been seen."""
        return self._authorizer

    @property
    def events_processed(self) -> int:
        return self._processed
