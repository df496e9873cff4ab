"""
x402 settlement: EIP-712 transfer authorizations, an execution gate with
replay protection, and a facilitator that verifies and settles them.

Example:
    >>> from x402_settlement import InMemoryLedger, FacilitatorService
    >>>
    >>> ledger = InMemoryLedger()
    >>> gate = ledger.deploy_gate(owner)
    >>> async with FacilitatorService.for_ledger(ledger, facilitator) as service:
    ...     result = await service.settle(payload, requirements)
"""

from x402_settlement.codec import (
    AUTHORIZATION_TYPE,
    authorization_digest,
    build_typed_data,
    random_nonce,
    sign_authorization,
)
from x402_settlement.errors import (
    ConfirmationTimeout,
    ContractPaused,
    ErrorReason,
    Expired,
    GateError,
    InfrastructureError,
    InsufficientFunds,
    InvalidSignature,
    LedgerUnavailable,
    NonceAlreadyUsed,
    NotYetValid,
    RequirementMismatch,
    SubmissionFailed,
    TokenNotWhitelisted,
    TransferFailed,
    Unauthorized,
    X402SettlementError,
)
from x402_settlement.facilitator import FacilitatorService
from x402_settlement.gate import ExecutionGate, NonceRegistry
from x402_settlement.ledger import InMemoryLedger, Web3Ledger
from x402_settlement.models import (
    Authorization,
    Domain,
    ExactPayload,
    PaymentPayload,
    PaymentRequirements,
    SettleResult,
    TransferEvent,
    VerifyResult,
)
from x402_settlement.signature import recover_signer, verify_signature
from x402_settlement.submission import RetryPolicy, SubmissionQueue

__version__ = "0.1.0"

__all__ = [
    "AUTHORIZATION_TYPE",
    "Authorization",
    "ConfirmationTimeout",
    "ContractPaused",
    "Domain",
    "ErrorReason",
    "ExactPayload",
    "ExecutionGate",
    "Expired",
    "FacilitatorService",
    "GateError",
    "InMemoryLedger",
    "InfrastructureError",
    "InsufficientFunds",
    "InvalidSignature",
    "LedgerUnavailable",
    "NonceAlreadyUsed",
    "NonceRegistry",
    "NotYetValid",
    "PaymentPayload",
    "PaymentRequirements",
    "RequirementMismatch",
    "RetryPolicy",
    "SettleResult",
    "SubmissionFailed",
    "SubmissionQueue",
    "TokenNotWhitelisted",
    "TransferEvent",
    "TransferFailed",
    "Unauthorized",
    "VerifyResult",
    "Web3Ledger",
    "X402SettlementError",
    "__version__",
    "authorization_digest",
    "build_typed_data",
    "random_nonce",
    "recover_signer",
    "sign_authorization",
    "verify_signature",
]
