"""
Ledger client interface used by the facilitator.

A ledger client exposes the gate's read-only views, the facilitator
account's transaction sequencing, broadcast, and receipt lookup. Two
implementations ship:

- ``InMemoryLedger``: a simulated chain hosting ``ExecutionGate`` instances
- ``Web3Ledger``: a JSON-RPC client for a deployed gate contract

Network-level failures raise ``LedgerUnavailable`` (retryable). A broadcast
the node rejects raises ``SubmissionFailed``.
"""

from dataclasses import dataclass, field
from typing import Optional, Protocol

from x402_settlement.errors import ErrorReason
from x402_settlement.models import Authorization, TransferEvent


@dataclass(frozen=True)
class ExecuteTransferCall:
    """Arguments of ``executeTransfer`` on the gate."""

    token: str
    authorization: Authorization
    signature: str


@dataclass(frozen=True)
class TransactionRequest:
    """A transaction the facilitator account sends to ``gate``."""

    sender: str
    gate: str
    sequence: int
    priority_fee: int
    call: ExecuteTransferCall


@dataclass
class Receipt:
    """Mined transaction outcome."""

    transaction_hash: str
    block_number: int
    success: bool
    error_reason: Optional[ErrorReason] = None
    error_message: Optional[str] = None
    events: list[TransferEvent] = field(default_factory=list)

    @property
    def event(self) -> Optional[TransferEvent]:
        return self.events[0] if self.events else None


class LedgerClient(Protocol):
    """What the facilitator needs from a ledger."""

    @property
    def chain_id(self) -> int: ...

    @property
    def gate_address(self) -> str: ...

    async def get_block_number(self) -> int: ...

    async def get_block_timestamp(self) -> int: ...

    async def is_paused(self) -> bool: ...

    async def is_whitelisted(self, token: str) -> bool: ...

    async def is_nonce_used(self, nonce: str) -> bool: ...

    async def balance_of(self, token: str, account: str) -> int: ...

    async def get_pending_sequence(self, account: str) -> int:
        """Next sequence number for ``account``, counting pending transactions."""
        ...

    async def suggest_priority_fee(self) -> int: ...

    async def broadcast(self, request: TransactionRequest) -> str:
        """Send a transaction and return its hash."""
        ...

    async def get_receipt(self, transaction_hash: str) -> Optional[Receipt]:
        """Receipt if mined, else None."""
        ...

    async def is_pending(self, transaction_hash: str) -> bool:
        """True if the transaction is known to the ledger but not mined."""
        ...
