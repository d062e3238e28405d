"""Ledger error taxonomy.

Every public ledger operation is all-or-nothing. When one is rejected it
raises one of the errors below, carrying the offending field where one
applies. Nothing is retried internally; resubmitting (for example with a
freshly signed authorization) is the caller's concern.

    LedgerError
    ├── ValidationError     malformed or out-of-range input
    ├── StateConflict       request conflicts with current ledger state
    ├── AuthorizationError  bad signature, expired signature, wrong caller
    ├── TransferFailure     external value movement did not succeed
    └── ReentrancyBlocked   protected operation re-entered mid-flight

ValidationError and StateConflict are also ValueErrors, so callers that
only care about "bad request" can catch ValueError.
"""

from __future__ import annotations

from typing import Optional


class LedgerError(Exception):
    """Base class for every error raised by the financing ledger."""

    def __init__(self, message: str, field: Optional[str] = None) -> None:
        super().__init__(message)
        self.field = field

    @property
    def kind(self) -> str:
        return type(self).__name__


# ------------------------------------------------------------------
# Validation
# ------------------------------------------------------------------


class ValidationError(LedgerError, ValueError):
    """Input is malformed or out of range. Raised before any state change."""


class InvalidAmount(ValidationError):
    pass


class InvalidTerms(ValidationError):
    pass


class InvalidDueDate(ValidationError):
    pass


class InvalidFeeRate(ValidationError):
    pass


class InvalidIdentity(ValidationError):
    pass


# ------------------------------------------------------------------
# State conflicts
# ------------------------------------------------------------------


class StateConflict(LedgerError, ValueError):
    """Request conflicts with the current ledger state."""


class InvoiceAlreadyFinanced(StateConflict):
    pass


class InvoiceNotFinanced(StateConflict):
    pass


class AlreadyRepaid(StateConflict):
    pass


class InsufficientBalance(StateConflict):
    pass


class InsufficientLiquidity(StateConflict):
    pass


class InsufficientRepayment(StateConflict):
    pass


# ------------------------------------------------------------------
# Authorization
# ------------------------------------------------------------------


class AuthorizationError(LedgerError):
    """Signature or caller is not acceptable."""


class InvalidSignature(AuthorizationError):
    pass


class SignatureExpired(AuthorizationError):
    pass


class Unauthorized(AuthorizationError):
    pass


# ------------------------------------------------------------------
# Transfers and reentrancy
# ------------------------------------------------------------------


class TransferFailure(LedgerError):
    """External value movement failed; the whole operation was rolled back."""


class TransferFailed(TransferFailure):
    pass


class ReentrancyBlocked(LedgerError):
    """A protected operation was entered while another was in progress."""
