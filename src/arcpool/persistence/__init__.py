"""Persistence — append-only event log and the off-chain invoice mirror."""

from arcpool.persistence.event_log import EventKind, EventLog, EventRecord
from arcpool.persistence.mirror import InvoiceMirror, InvoiceStatus

__all__ = ["EventKind", "EventLog", "EventRecord", "InvoiceMirror", "InvoiceStatus"]
