"""Deployment configuration loaded from the environment.

Values come from process environment variables, optionally seeded from a
.env file. Everything is validated at load so a misconfigured deployment
fails before it serves a single request.

    ARC_CHAIN_ID                network id in the signing domain (421614)
    ARC_CONTRACT_ADDRESS        ledger instance id (verifyingContract)
    AEGIS_SERVER_WALLET         authorizer address
    ADMIN_ADDRESS               admin address
    FEE_RECEIVER_ADDRESS        protocol fee receiver (defaults to admin)
    PROTOCOL_FEE_RATE_BPS       protocol fee rate in bps (1000)
    SERVER_WALLET_PRIVATE_KEY   authorizer signing key (signing side only)
    EVENT_LOG_PATH              JSONL event log location
    LOG_LEVEL                   logging level name (INFO)
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Mapping, Optional

from dotenv import load_dotenv

from arcpool.crypto.authorization import (
    DEFAULT_CHAIN_ID,
    DEFAULT_DOMAIN_NAME,
    DEFAULT_DOMAIN_VERSION,
    DomainParams,
)
from arcpool.crypto.identifiers import require_identity
from arcpool.financing.fees import DEFAULT_PROTOCOL_FEE_BPS, validate_protocol_fee_rate

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


@dataclass(frozen=True)
class LedgerConfig:
    """Validated settings for one ledger deployment."""

    ledger_address: str
    chain_id: int = DEFAULT_CHAIN_ID
    authorizer: Optional[str] = None
    admin: Optional[str] = None
    fee_receiver: Optional[str] = None
    protocol_fee_rate_bps: int = DEFAULT_PROTOCOL_FEE_BPS
    signer_private_key: Optional[str] = None
    event_log_path: Optional[Path] = None
    log_level: str = "INFO"
    domain_name: str = DEFAULT_DOMAIN_NAME
    domain_version: str = DEFAULT_DOMAIN_VERSION

    @classmethod
    def from_env(
        cls,
        env_file: Optional[Path] = None,
        environ: Optional[Mapping[str, str]] = None,
    ) -> LedgerConfig:
        """Load from ``environ`` (default: os.environ after reading .env).

        Raises ValueError when a required value is missing or malformed.
        """
        if environ is None:
            load_dotenv(env_file)
            environ = os.environ

        ledger_address = environ.get("ARC_CONTRACT_ADDRESS")
        if not ledger_address:
            raise ValueError("ARC_CONTRACT_ADDRESS must be set")

        try:
            chain_id = int(environ.get("ARC_CHAIN_ID", DEFAULT_CHAIN_ID))
            fee_rate = int(environ.get("PROTOCOL_FEE_RATE_BPS", DEFAULT_PROTOCOL_FEE_BPS))
        except ValueError as exc:
            raise ValueError(f"Invalid numeric setting: {exc}") from exc

        admin = _optional_identity(environ.get("ADMIN_ADDRESS"), "ADMIN_ADDRESS")
        fee_receiver = _optional_identity(
            environ.get("FEE_RECEIVER_ADDRESS"), "FEE_RECEIVER_ADDRESS"
        ) or admin

        log_level = environ.get("LOG_LEVEL", "INFO").upper()
        if not isinstance(logging.getLevelName(log_level), int):
            raise ValueError(f"Unknown LOG_LEVEL: {log_level}")

        event_log_path = environ.get("EVENT_LOG_PATH")

        return cls(
            ledger_address=require_identity(ledger_address, "ARC_CONTRACT_ADDRESS"),
            chain_id=chain_id,
            authorizer=_optional_identity(
                environ.get("AEGIS_SERVER_WALLET"), "AEGIS_SERVER_WALLET"
            ),
            admin=admin,
            fee_receiver=fee_receiver,
            protocol_fee_rate_bps=validate_protocol_fee_rate(fee_rate),
            signer_private_key=environ.get("SERVER_WALLET_PRIVATE_KEY") or None,
            event_log_path=Path(event_log_path) if event_log_path else None,
            log_level=log_level,
        )

    def domain(self) -> DomainParams:
        return DomainParams(
            verifying_contract=self.ledger_address,
            chain_id=self.chain_id,
            name=self.domain_name,
            version=self.domain_version,
        )


def configure_logging(level: str = "INFO") -> None:
    logging.basicConfig(level=level, format=LOG_FORMAT)


def _optional_identity(value: Optional[str], name: str) -> Optional[str]:
    if not value:
        return None
    return require_identity(value, name)
