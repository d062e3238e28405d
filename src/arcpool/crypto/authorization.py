"""Financing authorization — EIP-712 digest, signing, and signer recovery.

The authorizer signs a FinancingRequest struct:

    FinancingRequest(
        bytes32 invoiceId,
        address supplier,
        uint256 payoutAmount,
        uint256 repaymentAmount,
        uint256 dueDate,
        uint256 nonce,
        uint256 deadline,
    )

bound to an EIP712Domain of (name, version, chainId, verifyingContract).
The domain keeps a signature for one deployment from being replayed on
another network or another ledger instance.

Recovery is a pure function of (domain, message, signature). Nothing here
keeps state; the verifier only wraps the recovery with the deadline and
expected-signer checks.

The nonce is signed but not tracked. Replay protection is the ledger's
used-invoice set: a given invoice id can be financed once, whichever of
its signed messages lands first.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Dict, Union

from eth_account import Account
from eth_account.messages import encode_typed_data

from arcpool.crypto.identifiers import invoice_id_bytes, normalize_identity
from arcpool.errors import InvalidSignature, SignatureExpired
from arcpool.models.financing import FinancingAuthorization

logger = logging.getLogger(__name__)

DEFAULT_DOMAIN_NAME = "ArcPool"
DEFAULT_DOMAIN_VERSION = "1"
DEFAULT_CHAIN_ID = 421614

PRIMARY_TYPE = "FinancingRequest"

MAX_UINT256 = 2**256 - 1

TYPES: Dict[str, list] = {
    "EIP712Domain": [
        {"name": "name", "type": "string"},
        {"name": "version", "type": "string"},
        {"name": "chainId", "type": "uint256"},
        {"name": "verifyingContract", "type": "address"},
    ],
    PRIMARY_TYPE: [
        {"name": "invoiceId", "type": "bytes32"},
        {"name": "supplier", "type": "address"},
        {"name": "payoutAmount", "type": "uint256"},
        {"name": "repaymentAmount", "type": "uint256"},
        {"name": "dueDate", "type": "uint256"},
        {"name": "nonce", "type": "uint256"},
        {"name": "deadline", "type": "uint256"},
    ],
}

Signature = Union[str, bytes]


@dataclass(frozen=True)
class DomainParams:
    """Domain separator inputs for one ledger deployment."""
    verifying_contract: str
    chain_id: int = DEFAULT_CHAIN_ID
    name: str = DEFAULT_DOMAIN_NAME
    version: str = DEFAULT_DOMAIN_VERSION

    def to_typed(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "version": self.version,
            "chainId": self.chain_id,
            "verifyingContract": normalize_identity(
                self.verifying_contract, field="verifying_contract"
            ),
        }


def build_typed_data(
    domain: DomainParams,
    message: FinancingAuthorization,
) -> Dict[str, Any]:
    """Assemble the full EIP-712 structure for a financing authorization."""
    return {
        "types": TYPES,
        "primaryType": PRIMARY_TYPE,
        "domain": domain.to_typed(),
        "message": {
            "invoiceId": invoice_id_bytes(message.invoice_id),
            "supplier": normalize_identity(message.supplier, field="supplier"),
            "payoutAmount": message.payout_amount,
            "repaymentAmount": message.repayment_amount,
            "dueDate": message.due_date,
            "nonce": message.nonce,
            "deadline": message.deadline,
        },
    }


def sign_authorization(
    domain: DomainParams,
    message: FinancingAuthorization,
    private_key: str,
) -> str:
    """Sign an authorization with the authorizer's key.

    Returns the 65-byte signature as 0x-prefixed hex.
    """
    signable = encode_typed_data(full_message=build_typed_data(domain, message))
    signed = Account.sign_message(signable, private_key=private_key)
    return "0x" + bytes(signed.signature).hex()


def recover_signer(
    domain: DomainParams,
    message: FinancingAuthorization,
    signature: Signature,
) -> str:
    """Recover the checksum address that produced ``signature``.

    Raises InvalidSignature if the signature cannot be recovered at all
    (wrong length, bad recovery id, point not on the curve).
    """
    signable = encode_typed_data(full_message=build_typed_data(domain, message))
    try:
        return Account.recover_message(signable, signature=signature)
    except Exception as exc:
        raise InvalidSignature(
            f"Signature recovery failed: {exc}", field="signature"
        ) from exc


class AuthorizationVerifier:
    """Checks financing authorizations against one signing domain.

    Usage:
        verifier = AuthorizationVerifier(DomainParams(ledger_address))
        signer = verifier.verify(message, signature, authorizer, now)
    """

    def __init__(self, domain: DomainParams) -> None:
        self._domain = domain

    @property
    def domain(self) -> DomainParams:
        return self._domain

    def verify(
        self,
        message: FinancingAuthorization,
        signature: Signature,
        expected_signer: str,
        now: int,
    ) -> str:
        """Return the signer if the authorization is current and correctly signed.

        The deadline is checked first so expired messages cost no
        cryptographic work.
        """
        if now > message.deadline:
            raise SignatureExpired(
                f"Authorization expired at {message.deadline} (now {now})",
                field="deadline",
            )
        signer = recover_signer(self._domain, message, signature)
        if signer.lower() != expected_signer.lower():
            logger.warning(
                "Authorization for invoice %s signed by %s, expected %s",
                message.invoice_id, signer, expected_signer,
            )
            raise InvalidSignature(
                f"Signed by {signer}, not the current authorizer",
                field="signature",
            )
        return signer
