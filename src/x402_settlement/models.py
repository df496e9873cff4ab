"""
Data models for x402 settlement.

Wire models use camelCase aliases (``validAfter``, ``payTo``...) and also
accept snake_case field names. Integer amounts and timestamps are accepted
as JSON numbers or decimal strings and serialized back as decimal strings,
following the x402 convention.
"""

from enum import Enum
from typing import Any, Optional

from eth_utils import is_address, to_checksum_address
from pydantic import BaseModel, Field, field_serializer, field_validator, model_validator

from x402_settlement.errors import ErrorReason

UINT256_MAX = 2**256 - 1

ZERO_ADDRESS = "0x0000000000000000000000000000000000000000"


def checksum(address: str) -> str:
    """Validate and checksum an EVM address."""
    if not isinstance(address, str) or not is_address(address):
        raise ValueError(f"invalid address: {address!r}")
    return to_checksum_address(address)


def normalize_bytes32(value: Any) -> str:
    """Normalize a bytes32 value to lowercase 0x-prefixed hex."""
    if isinstance(value, (bytes, bytearray)):
        raw = bytes(value)
    elif isinstance(value, str):
        try:
            raw = bytes.fromhex(value.removeprefix("0x"))
        except ValueError:
            raise ValueError(f"invalid bytes32 hex: {value!r}") from None
    else:
        raise ValueError(f"invalid bytes32 value: {value!r}")
    if len(raw) != 32:
        raise ValueError(f"bytes32 must be 32 bytes, got {len(raw)}")
    return "0x" + raw.hex()


def caip2_network(chain_id: int) -> str:
    """CAIP-2 identifier for an EVM chain, e.g. ``eip155:8453``."""
    return f"eip155:{chain_id}"


class Domain(BaseModel):
    """EIP-712 domain of one execution gate instance."""

    name: str
    version: str
    chain_id: int = Field(..., alias="chainId", ge=0)
    verifying_contract: str = Field(..., alias="verifyingContract")

    class Config:
        populate_by_name = True
        frozen = True

    @field_validator("verifying_contract")
    @classmethod
    def _checksum_contract(cls, v: str) -> str:
        return checksum(v)


class Authorization(BaseModel):
    """
    A payer's signed transfer authorization.

    Immutable once created. ``nonce`` is 32 random bytes chosen by the payer,
    unique per authorization across all payers.
    """

    from_address: str = Field(..., alias="from")
    to: str
    value: int = Field(..., gt=0, le=UINT256_MAX)
    valid_after: int = Field(..., alias="validAfter", ge=0, le=UINT256_MAX)
    valid_before: int = Field(..., alias="validBefore", ge=0, le=UINT256_MAX)
    nonce: str

    class Config:
        populate_by_name = True
        frozen = True

    @field_validator("from_address", "to")
    @classmethod
    def _checksum_addresses(cls, v: str) -> str:
        return checksum(v)

    @field_validator("nonce", mode="before")
    @classmethod
    def _normalize_nonce(cls, v: Any) -> str:
        return normalize_bytes32(v)

    @model_validator(mode="after")
    def _check_window(self) -> "Authorization":
        if self.valid_after >= self.valid_before:
            raise ValueError("validAfter must be earlier than validBefore")
        return self

    @field_serializer("value", "valid_after", "valid_before")
    def _as_decimal_string(self, v: int) -> str:
        return str(v)

    @property
    def nonce_bytes(self) -> bytes:
        return bytes.fromhex(self.nonce[2:])


class ExactPayload(BaseModel):
    """Scheme-specific payload: the token to move, the authorization and its signature."""

    token: str
    authorization: Authorization
    signature: str

    class Config:
        populate_by_name = True
        frozen = True

    @field_validator("token")
    @classmethod
    def _checksum_token(cls, v: str) -> str:
        return checksum(v)


class PaymentPayload(BaseModel):
    """x402 payment payload as sent by the payer's client."""

    x402_version: int = Field(2, alias="x402Version")
    scheme: str = "exact"
    network: str
    payload: ExactPayload

    class Config:
        populate_by_name = True

    @property
    def payer(self) -> str:
        return self.payload.authorization.from_address


class PaymentRequirements(BaseModel):
    """What the resource server asks to be paid."""

    scheme: str = "exact"
    network: str
    asset: str
    pay_to: str = Field(..., alias="payTo")
    max_amount_required: int = Field(..., alias="maxAmountRequired", gt=0, le=UINT256_MAX)
    resource: Optional[str] = None
    description: Optional[str] = None
    max_timeout_seconds: Optional[int] = Field(None, alias="maxTimeoutSeconds", gt=0)
    extra: Optional[dict[str, Any]] = None

    class Config:
        populate_by_name = True

    @field_validator("asset", "pay_to")
    @classmethod
    def _checksum_addresses(cls, v: str) -> str:
        return checksum(v)

    @field_serializer("max_amount_required")
    def _as_decimal_string(self, v: int) -> str:
        return str(v)


class FacilitatorRequest(BaseModel):
    """Body of ``POST /verify`` and ``POST /settle``."""

    x402_version: int = Field(2, alias="x402Version")
    payment_payload: PaymentPayload = Field(..., alias="paymentPayload")
    payment_requirements: PaymentRequirements = Field(..., alias="paymentRequirements")

    class Config:
        populate_by_name = True


class TransferEvent(BaseModel):
    """Event emitted by the gate on a successful execution."""

    from_address: str = Field(..., alias="from")
    to: str
    token: str
    value: int
    nonce: str

    class Config:
        populate_by_name = True
        frozen = True

    @field_serializer("value")
    def _as_decimal_string(self, v: int) -> str:
        return str(v)


class VerifyResult(BaseModel):
    """Result of a read-only verification."""

    is_valid: bool = Field(..., alias="isValid")
    invalid_reason: Optional[ErrorReason] = Field(None, alias="invalidReason")
    payer: Optional[str] = None
    message: Optional[str] = None

    class Config:
        populate_by_name = True


class SettleResult(BaseModel):
    """Result of a settlement attempt."""

    success: bool
    transaction: Optional[str] = None
    network: Optional[str] = None
    payer: Optional[str] = None
    error_reason: Optional[ErrorReason] = Field(None, alias="errorReason")
    message: Optional[str] = None
    event: Optional[TransferEvent] = None

    class Config:
        populate_by_name = True


class TransactionState(str, Enum):
    """Ledger state of a submitted transaction."""

    PENDING = "pending"  # Broadcast, not yet mined
    SUCCESS = "success"  # Mined, execution succeeded
    FAILED = "failed"  # Mined, execution reverted
    UNKNOWN = "unknown"  # Not known to the ledger (dropped or never sent)


class TransactionStatus(BaseModel):
    """Re-query result for a transaction hash."""

    transaction: str
    status: TransactionState
    block_number: Optional[int] = Field(None, alias="blockNumber")
    error_reason: Optional[ErrorReason] = Field(None, alias="errorReason")
    event: Optional[TransferEvent] = None

    class Config:
        populate_by_name = True


class SupportedKind(BaseModel):
    """A scheme/network pair this facilitator settles."""

    x402_version: int = Field(2, alias="x402Version")
    scheme: str
    network: str

    class Config:
        populate_by_name = True


class SupportedResponse(BaseModel):
    """Body of ``GET /supported``."""

    kinds: list[SupportedKind]
    signers: list[str] = Field(default_factory=list)

    class Config:
        populate_by_name = True
