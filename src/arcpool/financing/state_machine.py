"""Financing state machine — every public ledger operation runs here.

Per invoice:
    UNFINANCED → FINANCED   (withdraw_financing with a valid authorization)
    FINANCED → REPAID       (repay; terminal)

Each mutating operation is one atomic, serialized unit:
1. Entry is refused with ReentrancyBlocked if another operation on this
   instance is still in flight (e.g. a transfer recipient calling back).
2. Ledger and role state are snapshotted.
3. Checks run; then ledger mutations; then external transfers.
4. Any exception restores the snapshot, reverses transfers already made
   in this operation, discards buffered events, and re-raises.
5. Only on success are the buffered events appended to the event log,
   as one batch and after the guard is released.

Ledger mutations always precede transfers, so a recipient that observes
the ledger mid-transfer sees the post-operation state and has nothing
left to double-spend.
"""

from __future__ import annotations

import logging
import time
from contextlib import contextmanager
from dataclasses import replace
from typing import Any, Callable, Iterator, List, Optional, Tuple, Union

from arcpool.crypto.authorization import (
    MAX_UINT256,
    AuthorizationVerifier,
    DomainParams,
    Signature,
)
from arcpool.crypto.identifiers import (
    normalize_identity,
    normalize_invoice_id,
    require_identity,
)
from arcpool.errors import (
    AlreadyRepaid,
    InsufficientLiquidity,
    InsufficientRepayment,
    InvalidAmount,
    InvalidDueDate,
    InvalidTerms,
    InvoiceAlreadyFinanced,
    InvoiceNotFinanced,
    LedgerError,
    ReentrancyBlocked,
    SignatureExpired,
    TransferFailed,
    TransferFailure,
)
from arcpool.financing import fees
from arcpool.financing.access import AccessControl, Role
from arcpool.financing.ledger import LedgerStore
from arcpool.financing.transfer import TransferGateway, TransferReceipt
from arcpool.models.financing import (
    FinancingAuthorization,
    FinancingRecord,
    FinancingState,
    PoolStatus,
    RepaymentBreakdown,
)
from arcpool.persistence.event_log import EventKind, EventLog, EventRecord

logger = logging.getLogger(__name__)

InvoiceRef = Union[str, bytes]


class FinancingStateMachine:
    """One financing pool: LP funds, authorized payouts, repayments.

    Usage:
        pool = FinancingStateMachine(
            domain=DomainParams(ledger_address, chain_id=421614),
            admin=admin,
            authorizer=authorizer,
            gateway=InMemoryTransferGateway(),
        )
        pool.deposit(lp, 1_000_000)
        record = pool.withdraw_financing(
            invoice_id, 98_000, 100_000, due_date, nonce, deadline,
            signature, caller=supplier,
        )
        breakdown = pool.repay(invoice_id, 100_000, caller=buyer)
    """

    def __init__(
        self,
        domain: DomainParams,
        admin: str,
        authorizer: str,
        gateway: TransferGateway,
        fee_receiver: Optional[str] = None,
        protocol_fee_rate_bps: int = fees.DEFAULT_PROTOCOL_FEE_BPS,
        initial_liquidity: int = 0,
        event_log: Optional[EventLog] = None,
        clock: Optional[Callable[[], int]] = None,
    ) -> None:
        if not isinstance(gateway, TransferGateway):
            raise TypeError(
                f"Gateway must implement TransferGateway Protocol, got {type(gateway)}"
            )
        self._verifier = AuthorizationVerifier(domain)
        self._access = AccessControl(admin, authorizer)
        admin = require_identity(admin, "admin")
        receiver = admin if fee_receiver is None else require_identity(fee_receiver, "fee_receiver")
        self._ledger = LedgerStore(receiver, protocol_fee_rate_bps)
        self._gateway = gateway
        self._event_log = event_log if event_log is not None else EventLog()
        self._clock = clock or (lambda: int(time.time()))

        # Continue numbering from a persisted log to avoid ID collisions
        self._event_counter = self._event_log.count
        self._in_progress: Optional[str] = None
        self._pending_events: List[Tuple[EventKind, str, dict[str, Any], int]] = []
        self._completed_transfers: List[TransferReceipt] = []

        if initial_liquidity:
            self.deposit(admin, initial_liquidity)

    # ------------------------------------------------------------------
    # Liquidity providers
    # ------------------------------------------------------------------

    def deposit(self, account: str, amount: int, now: Optional[int] = None) -> int:
        """Credit an LP deposit. Returns the LP's new balance."""
        now = self._now(now)
        with self._operation("deposit"):
            lp = require_identity(account, "account")
            self._ledger.credit(lp, amount)
            self._emit(EventKind.DEPOSIT, lp, {
                "lp": lp,
                "amount": amount,
                "new_total_pool_size": self._ledger.status().total,
            }, now)
        logger.info("Deposit of %d from %s", amount, lp)
        return self._ledger.position(lp)

    def withdraw(self, account: str, amount: int, now: Optional[int] = None) -> int:
        """Pay an LP out of available liquidity. Returns the LP's new balance."""
        now = self._now(now)
        with self._operation("withdraw"):
            lp = require_identity(account, "account")
            self._ledger.debit(lp, amount)
            self._pay(lp, amount, "withdrawal", field="amount")
            self._emit(EventKind.WITHDRAWAL, lp, {
                "lp": lp,
                "amount": amount,
                "new_total_pool_size": self._ledger.status().total,
            }, now)
        logger.info("Withdrawal of %d to %s", amount, lp)
        return self._ledger.position(lp)

    # ------------------------------------------------------------------
    # Financing
    # ------------------------------------------------------------------

    def withdraw_financing(
        self,
        invoice_id: InvoiceRef,
        payout_amount: int,
        repayment_amount: int,
        due_date: int,
        nonce: int,
        deadline: int,
        signature: Signature,
        caller: str,
        now: Optional[int] = None,
    ) -> FinancingRecord:
        """Pay out against an invoice the authorizer has signed for.

        The invoice id is consumed only if the whole operation succeeds,
        payout transfer included.
        """
        now = self._now(now)
        with self._operation("withdraw_financing"):
            invoice_id = normalize_invoice_id(invoice_id)
            supplier = require_identity(caller, "caller")

            if self._ledger.is_invoice_used(invoice_id):
                raise InvoiceAlreadyFinanced(
                    f"Invoice already financed: {invoice_id}", field="invoice_id"
                )
            if now > deadline:
                raise SignatureExpired(
                    f"Authorization expired at {deadline} (now {now})", field="deadline"
                )
            available = self._ledger.status().available
            if payout_amount > available:
                raise InsufficientLiquidity(
                    f"Payout {payout_amount} exceeds available liquidity {available}",
                    field="payout_amount",
                )
            if payout_amount <= 0:
                raise InvalidAmount(
                    f"Payout must be positive, got {payout_amount}", field="payout_amount"
                )
            if repayment_amount <= payout_amount:
                raise InvalidTerms(
                    f"Repayment {repayment_amount} must exceed payout {payout_amount}",
                    field="repayment_amount",
                )
            if due_date <= now:
                raise InvalidDueDate(
                    f"Due date {due_date} is not in the future (now {now})",
                    field="due_date",
                )
            for name, value in (
                ("repayment_amount", repayment_amount),
                ("due_date", due_date),
                ("nonce", nonce),
                ("deadline", deadline),
            ):
                if not 0 <= value <= MAX_UINT256:
                    raise InvalidTerms(f"{name} is not a uint256: {value}", field=name)

            message = FinancingAuthorization(
                invoice_id=invoice_id,
                supplier=supplier,
                payout_amount=payout_amount,
                repayment_amount=repayment_amount,
                due_date=due_date,
                nonce=nonce,
                deadline=deadline,
            )
            self._verifier.verify(message, signature, self._access.authorizer, now)

            self._ledger.mark_invoice_used(invoice_id)
            self._ledger.reserve(payout_amount)
            record = FinancingRecord(
                invoice_id=invoice_id,
                supplier=supplier,
                payout_amount=payout_amount,
                repayment_amount=repayment_amount,
                due_date=due_date,
                created_at=now,
            )
            self._ledger.add_record(record)

            self._pay(supplier, payout_amount, f"financing:{invoice_id}", field="payout_amount")
            self._emit(EventKind.FINANCING_WITHDRAWN, supplier, {
                "invoice_id": invoice_id,
                "supplier": supplier,
                "amount": payout_amount,
                "repayment_amount": repayment_amount,
                "due_date": due_date,
                "timestamp": now,
            }, now)
        logger.info(
            "Financed invoice %s: %d paid to %s, %d due at %d",
            invoice_id, payout_amount, supplier, repayment_amount, due_date,
        )
        return replace(record)

    def repay(
        self,
        invoice_id: InvoiceRef,
        supplied_amount: int,
        caller: str,
        now: Optional[int] = None,
    ) -> RepaymentBreakdown:
        """Settle a financed invoice.

        Anyone may repay. Anything supplied beyond the required amount is
        refunded to the caller.
        """
        now = self._now(now)
        with self._operation("repay"):
            invoice_id = normalize_invoice_id(invoice_id)
            payer = require_identity(caller, "caller")
            record = self._financed_record(invoice_id)
            if record.repaid:
                raise AlreadyRepaid(f"Invoice already repaid: {invoice_id}", field="invoice_id")

            breakdown = self._breakdown(record, now)
            if supplied_amount < breakdown.required_amount:
                raise InsufficientRepayment(
                    f"Supplied {supplied_amount}, required {breakdown.required_amount} "
                    f"(repayment {breakdown.repayment_amount} + late fee {breakdown.late_fee})",
                    field="supplied_amount",
                )
            breakdown = replace(breakdown, refund=supplied_amount - breakdown.required_amount)

            record.mark_repaid()
            self._ledger.release(record.payout_amount, breakdown.lp_interest, breakdown.total_interest)

            fee_receiver = self._ledger.pool.protocol_fee_receiver
            if breakdown.protocol_fee > 0:
                self._pay(fee_receiver, breakdown.protocol_fee, f"protocol_fee:{invoice_id}")
            if breakdown.refund > 0:
                self._pay(payer, breakdown.refund, f"refund:{invoice_id}", field="supplied_amount")

            self._emit(EventKind.REPAYMENT, payer, {
                "invoice_id": invoice_id,
                "payer": payer,
                "principal": record.payout_amount,
                "amount": breakdown.required_amount,
                "late_fee": breakdown.late_fee,
                "refund": breakdown.refund,
            }, now)
            self._emit(EventKind.INTEREST_DISTRIBUTED, payer, {
                "invoice_id": invoice_id,
                "total_interest": breakdown.total_interest,
                "protocol_fee": breakdown.protocol_fee,
                "lp_interest": breakdown.lp_interest,
                "fee_receiver": fee_receiver,
            }, now)
        logger.info(
            "Repaid invoice %s: %d received, late fee %d, protocol fee %d, LP interest %d",
            invoice_id, breakdown.required_amount, breakdown.late_fee,
            breakdown.protocol_fee, breakdown.lp_interest,
        )
        return breakdown

    # ------------------------------------------------------------------
    # Administration
    # ------------------------------------------------------------------

    def rotate_authorizer(self, new_identity: str, caller: str, now: Optional[int] = None) -> str:
        """Replace the authorizer. Returns the new authorizer."""
        now = self._now(now)
        with self._operation("rotate_authorizer"):
            old, new = self._access.rotate_authorizer(new_identity, caller)
            self._emit(EventKind.AUTHORIZER_UPDATED, normalize_identity(caller), {
                "old_authorizer": old,
                "new_authorizer": new,
            }, now)
        logger.info("Authorizer rotated from %s to %s", old, new)
        return new

    def set_protocol_fee_rate(self, rate_bps: int, caller: str, now: Optional[int] = None) -> None:
        now = self._now(now)
        with self._operation("set_protocol_fee_rate"):
            self._access.require_role(caller, Role.ADMIN)
            old_rate = self._ledger.pool.protocol_fee_rate_bps
            self._ledger.set_protocol_fee_rate(rate_bps)
            self._emit(EventKind.PROTOCOL_FEE_RATE_UPDATED, normalize_identity(caller), {
                "old_rate_bps": old_rate,
                "new_rate_bps": rate_bps,
            }, now)
        logger.info("Protocol fee rate changed from %d to %d bps", old_rate, rate_bps)

    def set_fee_receiver(self, receiver: str, caller: str, now: Optional[int] = None) -> None:
        now = self._now(now)
        with self._operation("set_fee_receiver"):
            self._access.require_role(caller, Role.ADMIN)
            new_receiver = require_identity(receiver, "fee_receiver")
            old_receiver = self._ledger.pool.protocol_fee_receiver
            self._ledger.set_fee_receiver(new_receiver)
            self._emit(EventKind.FEE_RECEIVER_UPDATED, normalize_identity(caller), {
                "old_receiver": old_receiver,
                "new_receiver": new_receiver,
            }, now)
        logger.info("Fee receiver changed from %s to %s", old_receiver, new_receiver)

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def pool_status(self) -> PoolStatus:
        return self._ledger.status()

    def lp_balance(self, account: str) -> int:
        return self._ledger.position(normalize_identity(account, field="account"))

    def is_invoice_financed(self, invoice_id: InvoiceRef) -> bool:
        return self._ledger.is_invoice_used(normalize_invoice_id(invoice_id))

    def get_financing(self, invoice_id: InvoiceRef) -> Optional[FinancingRecord]:
        return self._ledger.find_record(normalize_invoice_id(invoice_id))

    def financing_state(self, invoice_id: InvoiceRef) -> FinancingState:
        record = self.get_financing(invoice_id)
        return record.state if record is not None else FinancingState.UNFINANCED

    def quote_repayment(self, invoice_id: InvoiceRef, now: Optional[int] = None) -> RepaymentBreakdown:
        """What repaying exactly the required amount at ``now`` would produce."""
        record = self._financed_record(normalize_invoice_id(invoice_id))
        if record.repaid:
            raise AlreadyRepaid(f"Invoice already repaid: {record.invoice_id}", field="invoice_id")
        return self._breakdown(record, self._now(now))

    @property
    def authorizer(self) -> str:
        return self._access.authorizer

    def has_role(self, identity: str, role: Role) -> bool:
        return self._access.has_role(identity, role)

    @property
    def protocol_fee_rate_bps(self) -> int:
        return self._ledger.pool.protocol_fee_rate_bps

    @property
    def fee_receiver(self) -> str:
        return self._ledger.pool.protocol_fee_receiver

    @property
    def total_interest_earned(self) -> int:
        return self._ledger.pool.total_interest_earned

    @property
    def domain(self) -> DomainParams:
        return self._verifier.domain

    @property
    def event_log(self) -> EventLog:
        return self._event_log

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    @contextmanager
    def _operation(self, name: str) -> Iterator[None]:
        if self._in_progress is not None:
            raise ReentrancyBlocked(
                f"{name} rejected: {self._in_progress} is already in progress"
            )
        self._in_progress = name
        ledger_snapshot = self._ledger.snapshot()
        access_snapshot = self._access.snapshot()
        self._pending_events = []
        self._completed_transfers = []
        try:
            yield
        except Exception as exc:
            self._ledger.restore(ledger_snapshot)
            self._access.restore(access_snapshot)
            self._reverse_transfers(name)
            if isinstance(exc, TransferFailure) or not isinstance(exc, LedgerError):
                logger.warning("%s rolled back: %s", name, exc)
            else:
                logger.info("%s rejected (%s): %s", name, type(exc).__name__, exc)
            raise
        finally:
            pending = self._pending_events
            self._pending_events = []
            self._completed_transfers = []
            self._in_progress = None

        # Committed. Subscribers run outside the guard and may call back in.
        self._commit(pending)

    def _commit(self, pending: List[Tuple[EventKind, str, dict[str, Any], int]]) -> None:
        records = []
        for kind, actor_id, payload, timestamp in pending:
            self._event_counter += 1
            records.append(EventRecord.create(
                event_id=f"evt_{self._event_counter:08d}",
                event_kind=kind,
                actor_id=actor_id,
                payload=payload,
                timestamp=timestamp,
            ))
        self._event_log.extend(records)

    def _reverse_transfers(self, name: str) -> None:
        """Compensate this operation's transfers, newest first.

        A reversal that fails is logged and the rest are still attempted;
        the operation's own error is what the caller sees.
        """
        for receipt in reversed(self._completed_transfers):
            try:
                self._gateway.reverse(receipt)
            except Exception as exc:
                logger.warning(
                    "%s: could not reverse transfer of %d to %s (%s): %s",
                    name, receipt.amount, receipt.recipient, receipt.reference, exc,
                )

    def _emit(self, kind: EventKind, actor_id: str, payload: dict[str, Any], now: int) -> None:
        self._pending_events.append((kind, actor_id, payload, now))

    def _pay(self, recipient: str, amount: int, reference: str, field: Optional[str] = None) -> None:
        receipt = self._gateway.transfer(recipient, amount, reference)
        if not receipt.success:
            raise TransferFailed(
                f"Transfer of {amount} to {recipient} failed ({reference}): {receipt.reason}",
                field=field,
            )
        self._completed_transfers.append(receipt)

    def _financed_record(self, invoice_id: str) -> FinancingRecord:
        if not self._ledger.is_invoice_used(invoice_id):
            raise InvoiceNotFinanced(f"Invoice not financed: {invoice_id}", field="invoice_id")
        return self._ledger.get_record(invoice_id)

    def _breakdown(self, record: FinancingRecord, now: int) -> RepaymentBreakdown:
        late_fee = fees.late_fee(record.repayment_amount, record.due_date, now)
        total_interest = record.repayment_amount - record.payout_amount + late_fee
        protocol_fee, lp_interest = fees.split_interest(
            total_interest, self._ledger.pool.protocol_fee_rate_bps
        )
        return RepaymentBreakdown(
            invoice_id=record.invoice_id,
            principal=record.payout_amount,
            repayment_amount=record.repayment_amount,
            late_fee=late_fee,
            required_amount=record.repayment_amount + late_fee,
            total_interest=total_interest,
            protocol_fee=protocol_fee,
            lp_interest=lp_interest,
        )

    def _now(self, now: Optional[int]) -> int:
        return self._clock() if now is None else now
