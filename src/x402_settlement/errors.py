"""
Error taxonomy for x402 settlement.

Two families of failures exist:

Protocol failures (``GateError``):
    Deterministic outcomes of the execution rules. Replaying the same
    inputs against the same state reproduces them, so they are surfaced
    to the caller as-is and never retried.

Infrastructure failures (``InfrastructureError``):
    The ledger could not be reached, rejected the broadcast, or did not
    confirm in time. ``LedgerUnavailable`` is transient and retried with
    backoff; ``SubmissionFailed`` and ``ConfirmationTimeout`` are what is
    left after retries are exhausted.

Every failure carries an ``ErrorReason`` whose value is the snake_case
string used on the wire (``invalidReason`` / ``errorReason``).
"""

from enum import Enum
from typing import Optional


class ErrorReason(str, Enum):
    """Wire-level failure reasons."""

    INVALID_SIGNATURE = "invalid_signature"
    NOT_YET_VALID = "not_yet_valid"
    EXPIRED = "expired"
    NONCE_ALREADY_USED = "nonce_already_used"
    TOKEN_NOT_WHITELISTED = "token_not_whitelisted"
    CONTRACT_PAUSED = "contract_paused"
    UNAUTHORIZED = "unauthorized"
    TRANSFER_FAILED = "transfer_failed"
    REQUIREMENT_MISMATCH = "requirement_mismatch"  # facilitator only
    INSUFFICIENT_FUNDS = "insufficient_funds"  # facilitator only
    SUBMISSION_FAILED = "submission_failed"  # infrastructure
    CONFIRMATION_TIMEOUT = "confirmation_timeout"  # infrastructure


class X402SettlementError(Exception):
    """Base class for all settlement errors."""

    reason: ErrorReason

    def __init__(self, message: Optional[str] = None):
        super().__init__(message or self.reason.value)
        self.message = message or self.reason.value


# =============================================================================
# Protocol failures (raised by the execution gate)
# =============================================================================


class GateError(X402SettlementError):
    """A deterministic rejection by the execution gate."""


class InvalidSignature(GateError):
    reason = ErrorReason.INVALID_SIGNATURE


class NotYetValid(GateError):
    reason = ErrorReason.NOT_YET_VALID


class Expired(GateError):
    reason = ErrorReason.EXPIRED


class NonceAlreadyUsed(GateError):
    reason = ErrorReason.NONCE_ALREADY_USED


class TokenNotWhitelisted(GateError):
    reason = ErrorReason.TOKEN_NOT_WHITELISTED


class ContractPaused(GateError):
    reason = ErrorReason.CONTRACT_PAUSED


class Unauthorized(GateError):
    reason = ErrorReason.UNAUTHORIZED


class TransferFailed(GateError):
    """The token ledger refused the transfer (balance, allowance, or outage)."""

    reason = ErrorReason.TRANSFER_FAILED


# =============================================================================
# Facilitator-only verification failures
# =============================================================================


class VerificationError(X402SettlementError):
    """Rejected by the facilitator before anything reaches the ledger."""


class RequirementMismatch(VerificationError):
    """The payload does not pay what the resource server asked for."""

    reason = ErrorReason.REQUIREMENT_MISMATCH


class InsufficientFunds(VerificationError):
    reason = ErrorReason.INSUFFICIENT_FUNDS


# =============================================================================
# Infrastructure failures
# =============================================================================


class InfrastructureError(X402SettlementError):
    """The ledger itself misbehaved."""

    retryable = False


class LedgerUnavailable(InfrastructureError):
    """Transient RPC failure. Safe to retry before broadcast."""

    reason = ErrorReason.SUBMISSION_FAILED
    retryable = True


class SubmissionFailed(InfrastructureError):
    reason = ErrorReason.SUBMISSION_FAILED


class ConfirmationTimeout(InfrastructureError):
    """
    No receipt arrived in time.

    This does NOT mean the transaction failed: it may still land. Callers
    should re-query ``transaction_hash``.
    """

    reason = ErrorReason.CONFIRMATION_TIMEOUT

    def __init__(self, message: Optional[str] = None, transaction_hash: Optional[str] = None):
        super().__init__(message)
        self.transaction_hash = transaction_hash


GATE_ERRORS: dict[str, type[GateError]] = {
    cls.__name__: cls
    for cls in (
        InvalidSignature,
        NotYetValid,
        Expired,
        NonceAlreadyUsed,
        TokenNotWhitelisted,
        ContractPaused,
        Unauthorized,
        TransferFailed,
    )
}


def reason_from_revert(error_name: Optional[str]) -> ErrorReason:
    """
    Map a reverted call's custom error name to an ErrorReason.

    Args:
        error_name: Custom error name, e.g. ``"NonceAlreadyUsed"``

    Returns:
        The matching reason, ``TRANSFER_FAILED`` for anything the gate
        does not declare (the token contract reverted underneath it).
    """
    if error_name and error_name in GATE_ERRORS:
        return GATE_ERRORS[error_name].reason
    return ErrorReason.TRANSFER_FAILED
