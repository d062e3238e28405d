"""Identifier and unit helpers shared by the ledger and the signing side.

Identities are EIP-55 checksum addresses. Invoice ids are 32-byte values
carried as lowercase 0x-prefixed hex so they can key dicts and appear in
JSON event payloads unchanged. Amounts are integers in base units with
18 decimals.
"""

from __future__ import annotations

from decimal import Decimal
from typing import Optional, Union

from web3 import Web3

from arcpool.errors import InvalidAmount, InvalidIdentity

ZERO_ADDRESS = "0x0000000000000000000000000000000000000000"


def invoice_id_from_number(invoice_number: str) -> str:
    """Derive the bytes32 invoice id from a human invoice number.

    keccak-256 over the UTF-8 text, the same id the pricing side signs.
    """
    if not invoice_number:
        raise InvalidIdentity("Invoice number must be non-empty", field="invoice_number")
    return "0x" + bytes(Web3.keccak(text=invoice_number)).hex()


def normalize_invoice_id(invoice_id: Union[str, bytes]) -> str:
    """Return the canonical 0x-hex form of a 32-byte invoice id."""
    if isinstance(invoice_id, (bytes, bytearray)):
        raw = bytes(invoice_id)
    else:
        text = invoice_id[2:] if invoice_id.startswith(("0x", "0X")) else invoice_id
        try:
            raw = bytes.fromhex(text)
        except ValueError as exc:
            raise InvalidIdentity(
                f"Invoice id is not hex: {invoice_id!r}", field="invoice_id"
            ) from exc
    if len(raw) != 32:
        raise InvalidIdentity(
            f"Invoice id must be 32 bytes, got {len(raw)}", field="invoice_id"
        )
    return "0x" + raw.hex()


def invoice_id_bytes(invoice_id: str) -> bytes:
    return bytes.fromhex(normalize_invoice_id(invoice_id)[2:])


def normalize_identity(identity: Optional[str], field: str = "identity") -> str:
    """Checksum an account identifier, rejecting malformed values."""
    if identity is None or not Web3.is_address(identity):
        raise InvalidIdentity(f"Not an account identifier: {identity!r}", field=field)
    return Web3.to_checksum_address(identity)


def is_null_identity(identity: Optional[str]) -> bool:
    return identity is None or identity.lower() == ZERO_ADDRESS


def to_base_units(amount: Union[Decimal, str, int]) -> int:
    """Convert a token amount (e.g. Decimal("98000.50")) to base units."""
    value = Decimal(str(amount))
    if value < 0:
        raise InvalidAmount(f"Amount must not be negative: {amount}", field="amount")
    return int(Web3.to_wei(value, "ether"))


def from_base_units(amount: int) -> Decimal:
    """Convert base units back to a Decimal token amount."""
    return Decimal(Web3.from_wei(amount, "ether"))


def require_identity(identity: Optional[str], field: str = "identity") -> str:
    """Checksum an identity that must be set (not None, not the zero address)."""
    if is_null_identity(identity):
        raise InvalidIdentity(f"{field} must not be the null identity", field=field)
    return normalize_identity(identity, field=field)
