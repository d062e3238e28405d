"""Cryptographic primitives — typed-data authorization, identifiers, units."""

from arcpool.crypto.authorization import (
    AuthorizationVerifier,
    DomainParams,
    recover_signer,
    sign_authorization,
)
from arcpool.crypto.identifiers import (
    from_base_units,
    invoice_id_from_number,
    normalize_identity,
    normalize_invoice_id,
    to_base_units,
)

__all__ = [
    "AuthorizationVerifier",
    "DomainParams",
    "recover_signer",
    "sign_authorization",
    "from_base_units",
    "invoice_id_from_number",
    "normalize_identity",
    "normalize_invoice_id",
    "to_base_units",
]
