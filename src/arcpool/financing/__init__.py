"""Financing subsystem — ledger store, fees, roles, transfers, state machine."""

from arcpool.financing.access import AccessControl, Role
from arcpool.financing.ledger import LedgerStore
from arcpool.financing.state_machine import FinancingStateMachine
from arcpool.financing.transfer import (
    InMemoryTransferGateway,
    TransferGateway,
    TransferReceipt,
)

__all__ = [
    "AccessControl",
    "Role",
    "LedgerStore",
    "FinancingStateMachine",
    "InMemoryTransferGateway",
    "TransferGateway",
    "TransferReceipt",
]
