"""ArcPool CLI — operator tooling around the financing ledger.

Usage:
    python -m arcpool.cli invoice-id INV-421834
    python -m arcpool.cli sign --invoice-number INV-421834 --supplier 0x... \\
        --payout 98000 --repayment 100000 --days-until-due 90
    python -m arcpool.cli verify authorization.json
    python -m arcpool.cli status --events data/events.jsonl

Configuration (ledger address, chain id, authorizer, signing key) is read
from the environment or a .env file; see arcpool.config.
"""

from __future__ import annotations

import argparse
import json
import logging
import sys
import time
from decimal import Decimal, InvalidOperation
from pathlib import Path
from typing import Optional

from arcpool.config import LedgerConfig, configure_logging
from arcpool.crypto.authorization import recover_signer, sign_authorization
from arcpool.crypto.identifiers import (
    invoice_id_from_number,
    normalize_identity,
    normalize_invoice_id,
    to_base_units,
)
from arcpool.errors import LedgerError
from arcpool.financing.fees import SECONDS_PER_DAY
from arcpool.models.financing import FinancingAuthorization
from arcpool.persistence.event_log import EventLog
from arcpool.persistence.mirror import InvoiceMirror

logger = logging.getLogger(__name__)

DEFAULT_DEADLINE_SECONDS = 3600


def _load_config(args: argparse.Namespace) -> LedgerConfig:
    config = LedgerConfig.from_env(args.env_file)
    configure_logging(config.log_level)
    return config


def cmd_invoice_id(args: argparse.Namespace) -> int:
    print(invoice_id_from_number(args.number))
    return 0


def cmd_sign(args: argparse.Namespace) -> int:
    """Sign financing terms with the configured authorizer key."""
    config = _load_config(args)
    if not config.signer_private_key:
        print("Failed: SERVER_WALLET_PRIVATE_KEY is not configured", file=sys.stderr)
        return 1

    now = int(time.time())
    invoice_id = (
        normalize_invoice_id(args.invoice_id)
        if args.invoice_id
        else invoice_id_from_number(args.invoice_number)
    )
    try:
        payout = to_base_units(Decimal(args.payout))
        repayment = to_base_units(Decimal(args.repayment))
    except InvalidOperation:
        print("Failed: payout and repayment must be decimal amounts", file=sys.stderr)
        return 1

    message = FinancingAuthorization(
        invoice_id=invoice_id,
        supplier=normalize_identity(args.supplier, field="supplier"),
        payout_amount=payout,
        repayment_amount=repayment,
        due_date=now + args.days_until_due * SECONDS_PER_DAY,
        nonce=args.nonce if args.nonce is not None else time.time_ns() // 1_000_000,
        deadline=now + args.deadline_seconds,
    )
    signature = sign_authorization(config.domain(), message, config.signer_private_key)
    logger.info("Signed authorization for invoice %s", invoice_id)
    print(json.dumps(
        {"authorization": message.to_dict(), "signature": signature},
        indent=2,
    ))
    return 0


def cmd_verify(args: argparse.Namespace) -> int:
    """Recover the signer of a stored authorization and check it is usable."""
    config = _load_config(args)
    data = json.loads(Path(args.file).read_text(encoding="utf-8"))
    try:
        message = FinancingAuthorization.from_dict(data["authorization"])
        signature = data["signature"]
    except KeyError as exc:
        print(f"Failed: missing field {exc} in {args.file}", file=sys.stderr)
        return 1
    expected = args.authorizer or config.authorizer

    signer = recover_signer(config.domain(), message, signature)
    now = int(time.time())
    expired = now > message.deadline
    matches = expected is not None and signer.lower() == expected.lower()

    print(json.dumps(
        {
            "invoice_id": message.invoice_id,
            "recovered_signer": signer,
            "expected_signer": expected,
            "signer_matches": matches,
            "deadline": message.deadline,
            "expired": expired,
        },
        indent=2,
    ))
    return 0 if matches and not expired else 1


def cmd_status(args: argparse.Namespace) -> int:
    """Rebuild pool status by replaying a persisted event log."""
    path: Optional[Path] = args.events
    if path is None:
        path = _load_config(args).event_log_path
    if path is None or not path.exists():
        print(f"Failed: event log not found: {path}", file=sys.stderr)
        return 1

    mirror = InvoiceMirror.replay(EventLog(storage_path=path).events())
    status = mirror.pool_status()
    print(json.dumps(
        {
            "total": status.total,
            "available": status.available,
            "utilized": status.utilized,
            "financed": status.financed,
            "total_interest_earned": mirror.total_interest_earned,
            "invoices": {i.invoice_id: i.status.value for i in mirror.invoices()},
            "events_processed": mirror.events_processed,
        },
        indent=2,
    ))
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="arcpool",
        description="ArcPool — authorized invoice financing ledger CLI",
    )
    parser.add_argument(
        "--env-file",
        type=Path,
        default=None,
        help="Path to a .env file (default: search from the working directory)",
    )
    sub = parser.add_subparsers(dest="command")

    # invoice-id
    p_id = sub.add_parser("invoice-id", help="Derive the bytes32 id of an invoice number")
    p_id.add_argument("number", help="Invoice number, e.g. INV-421834")

    # sign
    p_sign = sub.add_parser("sign", help="Sign financing terms as the authorizer")
    target = p_sign.add_mutually_exclusive_group(required=True)
    target.add_argument("--invoice-number", help="Invoice number (hashed to the id)")
    target.add_argument("--invoice-id", help="Explicit bytes32 invoice id")
    p_sign.add_argument("--supplier", required=True, help="Supplier address")
    p_sign.add_argument("--payout", required=True, help="Payout amount in tokens")
    p_sign.add_argument("--repayment", required=True, help="Repayment amount in tokens")
    p_sign.add_argument("--days-until-due", type=int, required=True, help="Days until due")
    p_sign.add_argument(
        "--deadline-seconds", type=int, default=DEFAULT_DEADLINE_SECONDS,
        help="Signature validity window (default: 3600)",
    )
    p_sign.add_argument("--nonce", type=int, help="Nonce (default: current time in ms)")

    # verify
    p_verify = sub.add_parser("verify", help="Verify a stored authorization signature")
    p_verify.add_argument("file", type=Path, help="JSON file with authorization and signature")
    p_verify.add_argument("--authorizer", help="Expected signer (default: AEGIS_SERVER_WALLET)")

    # status
    p_status = sub.add_parser("status", help="Replay an event log and show pool status")
    p_status.add_argument("--events", type=Path, help="JSONL event log (default: EVENT_LOG_PATH)")

    return parser


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    if args.command is None:
        parser.print_help()
        return 0

    commands = {
        "invoice-id": cmd_invoice_id,
        "sign": cmd_sign,
        "verify": cmd_verify,
        "status": cmd_status,
    }

    handler = commands.get(args.command)
    if handler is None:
        print(f"Unknown command: {args.command}", file=sys.stderr)
        return 1

    try:
        return handler(args)
    except (LedgerError, ValueError) as exc:
        print(f"Failed: {exc}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
