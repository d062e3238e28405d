"""Transfer gateway — moves value from the pool to external accounts.

The financing state machine never moves value itself. It talks to a
TransferGateway, so the settlement backend (token contract, custodial
account, test double) can be swapped without touching ledger logic.

Contract for implementations:
- transfer() returns a receipt with a definite outcome; it does not
  leave the caller guessing.
- reverse() undoes a successful transfer. The state machine calls it
  when a later step of the same operation fails, so operations that
  make more than one transfer stay all-or-nothing.

Ordering: the ledger is updated before transfer() is invoked. Whatever
the recipient does on receipt, including calling back into the ledger,
it observes the post-transfer state and cannot spend the same funds
twice.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional, Protocol, Set, runtime_checkable

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class TransferReceipt:
    """Outcome of one transfer attempt."""
    recipient: str
    amount: int
    reference: str
    success: bool
    reason: str = ""


@runtime_checkable
class TransferGateway(Protocol):
    """Abstract contract for value movement out of the pool."""

    def transfer(self, recipient: str, amount: int, reference: str) -> TransferReceipt:
        """Send ``amount`` to ``recipient``; ``reference`` names the operation."""
        ...

    def reverse(self, receipt: TransferReceipt) -> None:
        """Undo a transfer that previously succeeded."""
        ...


ReceiveHook = Callable[[str, int], None]


class InMemoryTransferGateway:
    """Gateway that settles into an in-process balance table.

    Recipients can be configured to reject transfers outright, or given
    a receive hook that runs while the transfer is in flight. A hook may
    call back into the ledger; if it raises, the transfer fails and the
    credited amount is taken back.

    Usage:
        gateway = InMemoryTransferGateway()
        gateway.set_receive_hook(supplier, on_receive)
        gateway.reject_transfers_to(lp)
    """

    def __init__(self) -> None:
        self._balances: Dict[str, int] = {}
        self._hooks: Dict[str, ReceiveHook] = {}
        self._rejecting: Set[str] = set()
        self._receipts: List[TransferReceipt] = []

    def transfer(self, recipient: str, amount: int, reference: str) -> TransferReceipt:
        key = recipient.lower()
        if key in self._rejecting:
            return self._record(recipient, amount, reference, False, "recipient rejected transfer")

        self._balances[key] = self._balances.get(key, 0) + amount
        hook = self._hooks.get(key)
        if hook is not None:
            try:
                hook(recipient, amount)
            except Exception as exc:
                self._balances[key] -= amount
                logger.warning(
                    "Receive hook for %s failed during %s: %s", recipient, reference, exc
                )
                return self._record(recipient, amount, reference, False, f"receiver reverted: {exc}")
        return self._record(recipient, amount, reference, True)

    def reverse(self, receipt: TransferReceipt) -> None:
        if not receipt.success:
            raise ValueError(f"Cannot reverse a failed transfer: {receipt.reference}")
        key = receipt.recipient.lower()
        self._balances[key] = self._balances.get(key, 0) - receipt.amount
        self._receipts.append(
            TransferReceipt(
                recipient=receipt.recipient,
                amount=-receipt.amount,
                reference=f"reverse:{receipt.reference}",
                success=True,
            )
        )

    # ------------------------------------------------------------------
    # Configuration and inspection
    # ------------------------------------------------------------------

    def set_receive_hook(self, recipient: str, hook: Optional[ReceiveHook]) -> None:
        if hook is None:
            self._hooks.pop(recipient.lower(), None)
        else:
            self._hooks[recipient.lower()] = hook

    def reject_transfers_to(self, recipient: str, reject: bool = True) -> None:
        if reject:
            self._rejecting.add(recipient.lower())
        else:
            self._rejecting.discard(recipient.lower())

    def balance_of(self, account: str) -> int:
        return self._balances.get(account.lower(), 0)

    @property
    def receipts(self) -> List[TransferReceipt]:
        return list(self._receipts)

    def _record(
        self,
        recipient: str,
        amount: int,
        reference: str,
        success: bool,
        reason: str = "",
    ) -> TransferReceipt:
        receipt = TransferReceipt(recipient, amount, reference, success, reason)
        self._receipts.append(receipt)
        if success:
            logger.debug("Transferred %d to %s (%s)", amount, recipient, reference)
        return receipt
