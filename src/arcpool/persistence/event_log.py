"""Append-only event log — the record of every committed ledger operation.

Each committed operation appends one or more events. Events are immutable
once written and carry enough fields to reconstruct ledger deltas without
querying the ledger, so an off-chain mirror can follow along. The log:
1. Feeds subscribers (mirrors, notifiers) as events are committed.
2. Serves as the audit trail of deposits, financings, and repayments.
3. Can be persisted as JSONL and replayed to rebuild a mirror.

Events from an operation that was rolled back are never appended.
"""

from __future__ import annotations

import enum
import hashlib
import json
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Optional

logger = logging.getLogger(__name__)


class EventKind(str, enum.Enum):
    """Classification of ledger events."""
    DEPOSIT = "deposit"
    WITHDRAWAL = "withdrawal"
    FINANCING_WITHDRAWN = "financing_withdrawn"
    REPAYMENT = "repayment"
    INTEREST_DISTRIBUTED = "interest_distributed"
    AUTHORIZER_UPDATED = "authorizer_updated"
    PROTOCOL_FEE_RATE_UPDATED = "protocol_fee_rate_updated"
    FEE_RECEIVER_UPDATED = "fee_receiver_updated"


def _canonical_hash(
    event_id: str,
    event_kind: str,
    timestamp_utc: str,
    actor_id: str,
    payload: dict[str, Any],
) -> str:
    canonical = json.dumps(
        {
            "event_id": event_id,
            "event_kind": event_kind,
            "timestamp_utc": timestamp_utc,
            "actor_id": actor_id,
            "payload": payload,
        },
        sort_keys=True,
        ensure_ascii=False,
    ).encode("utf-8")
    return f"sha256:{hashlib.sha256(canonical).hexdigest()}"


@dataclass(frozen=True)
class EventRecord:
    """A single immutable ledger event.

    event_hash is the SHA-256 of the canonical JSON of the other fields,
    computed at creation and re-verified when a log is loaded from disk.
    """
    event_id: str
    event_kind: EventKind
    timestamp_utc: str
    actor_id: str
    payload: dict[str, Any]
    event_hash: str

    @staticmethod
    def create(
        event_id: str,
        event_kind: EventKind,
        actor_id: str,
        payload: dict[str, Any],
        timestamp: Optional[int] = None,
    ) -> EventRecord:
        """Create a new event record. ``timestamp`` is unix seconds."""
        ts = (
            datetime.fromtimestamp(timestamp, tz=timezone.utc)
            if timestamp is not None
            else datetime.now(timezone.utc)
        )
        ts_str = ts.strftime("%Y-%m-%dT%H:%M:%SZ")
        return EventRecord(
            event_id=event_id,
            event_kind=event_kind,
            timestamp_utc=ts_str,
            actor_id=actor_id,
            payload=payload,
            event_hash=_canonical_hash(
                event_id, event_kind.value, ts_str, actor_id, payload
            ),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "event_id": self.event_id,
            "event_kind": self.event_kind.value,
            "timestamp_utc": self.timestamp_utc,
            "actor_id": self.actor_id,
            "payload": self.payload,
            "event_hash": self.event_hash,
        }


EventListener = Callable[[EventRecord], None]


class EventLog:
    """Append-only event log with optional file persistence.

    Events can only be appended, never modified or deleted. The log can
    be persisted to a JSONL file (one JSON object per line) and loaded
    back for recovery.
    """

    def __init__(self, storage_path: Optional[Path] = None) -> None:
        self._events: list[EventRecord] = []
        self._storage_path = storage_path
        self._event_ids: set[str] = set()
        self._listeners: list[EventListener] = []

        if storage_path and storage_path.exists():
            self._load_from_file(storage_path)

    def append(self, event: EventRecord) -> None:
        """Append an event and notify subscribers.

        Raises ValueError if event_id is a duplicate (replay protection).
        """
        self.extend([event])

    def extend(self, events: list[EventRecord]) -> None:
        """Append a batch of events, then notify subscribers of each.

        The whole batch is recorded before any subscriber runs. A failing
        subscriber is logged and does not stop delivery to the others.
        """
        seen = set(self._event_ids)
        for event in events:
            if event.event_id in seen:
                raise ValueError(f"Duplicate event ID: {event.event_id}")
            seen.add(event.event_id)

        self._events.extend(events)
        self._event_ids = seen

        if self._storage_path:
            self._append_to_file(events)

        for event in events:
            for listener in list(self._listeners):
                try:
                    listener(event)
                except Exception:
                    logger.exception(
                        "Event listener failed on %s (%s)", event.event_id, event.event_kind.value
                    )

    def subscribe(self, listener: EventListener) -> None:
        """Call ``listener`` with every event appended from now on."""
        self._listeners.append(listener)

    def unsubscribe(self, listener: EventListener) -> None:
        self._listeners.remove(listener)

    def events(self, kind: Optional[EventKind] = None) -> list[EventRecord]:
        """Return events, optionally filtered by kind."""
        if kind is None:
            return list(self._events)
        return [e for e in self._events if e.event_kind == kind]

    def events_since(
        self,
        since_utc: str,
        kind: Optional[EventKind] = None,
    ) -> list[EventRecord]:
        """Return events at or after a timestamp, optionally filtered by kind."""
        result = [e for e in self._events if e.timestamp_utc >= since_utc]
        if kind is not None:
            result = [e for e in result if e.event_kind == kind]
        return result

    @property
    def count(self) -> int:
        return len(self._events)

    @property
    def last_event(self) -> Optional[EventRecord]:
        return self._events[-1] if self._events else None

    def _append_to_file(self, events: list[EventRecord]) -> None:
        lines = "".join(
            json.dumps(e.to_dict(), sort_keys=True, ensure_ascii=False) + "\n" for e in events
        )
        with self._storage_path.open("a", encoding="utf-8") as f:
            f.write(lines)

    def _load_from_file(self, path: Path) -> None:
        """Load events from a JSONL file with integrity verification.

        Fail-closed: rejects tampered records (hash mismatch) and
        duplicate event IDs.
        """
        with path.open("r", encoding="utf-8") as f:
            for line_num, line in enumerate(f, 1):
                line = line.strip()
                if not line:
                    continue
                data = json.loads(line)

                event_id = data["event_id"]
                if event_id in self._event_ids:
                    raise ValueError(
                        f"Duplicate event ID on recovery (line {line_num}): {event_id}"
                    )

                expected_hash = _canonical_hash(
                    data["event_id"],
                    data["event_kind"],
                    data["timestamp_utc"],
                    data["actor_id"],
                    data["payload"],
                )
                if data["event_hash"] != expected_hash:
                    raise ValueError(
                        f"Integrity check failed (line {line_num}): event {event_id} "
                        f"stored hash {data['event_hash']} != computed {expected_hash}"
                    )

                event = EventRecord(
                    event_id=data["event_id"],
                    event_kind=EventKind(data["event_kind"]),
                    timestamp_utc=data["timestamp_utc"],
                    actor_id=data["actor_id"],
                    payload=data["payload"],
                    event_hash=data["event_hash"],
                )
                self._events.append(event)
                self._event_ids.add(event.event_id)
