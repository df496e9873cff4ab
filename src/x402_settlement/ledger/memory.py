"""
In-memory ledger.

A small simulated chain for local runs and tests. It hosts ``ExecutionGate``
instances, keeps ERC-20 style balances and allowances, orders each sender's
transactions by sequence number, and mines blocks either on every broadcast
(``automine=True``) or when ``mine()`` is called.

Knobs for exercising the facilitator's failure handling:

- ``min_priority_fee``: transactions paying less are never mined (a stall)
- ``fail_next(n)``: the next ``n`` RPC calls raise ``LedgerUnavailable``
- ``evict(tx_hash)``: drop a pending transaction, as a node evicting it from its mempool
- ``tokens.set_available(token, False)``: the token contract reverts every transfer

Example:
    >>> ledger = InMemoryLedger(chain_id=31337)
    >>> gate = ledger.deploy_gate(owner=owner_address)
    >>> ledger.tokens.mint(usdc, payer, 10_000_000)
    >>> ledger.tokens.approve(usdc, payer, gate.address, 10_000_000)
    >>> gate.set_whitelist(owner_address, usdc, True)
"""

import asyncio
import itertools
import logging
import time
from collections import defaultdict
from dataclasses import dataclass
from typing import Optional

from web3 import Web3

from x402_settlement.errors import (
    ErrorReason,
    GateError,
    LedgerUnavailable,
    SubmissionFailed,
    TransferFailed,
)
from x402_settlement.gate import DEFAULT_GATE_NAME, DEFAULT_GATE_VERSION, ExecutionGate
from x402_settlement.ledger.base import Receipt, TransactionRequest
from x402_settlement.models import checksum

logger = logging.getLogger(__name__)

# Replacement transactions must raise the priority fee by at least 10%
REPLACEMENT_FEE_BUMP_PERCENT = 10

DEFAULT_PRIORITY_FEE = 1_000_000_000  # 1 gwei


def _hex(value: bytes) -> str:
    raw = value.hex()
    return raw if raw.startswith("0x") else "0x" + raw


class TokenBook:
    """Balances and allowances for any number of tokens."""

    def __init__(self) -> None:
        self._balances: dict[str, dict[str, int]] = defaultdict(lambda: defaultdict(int))
        self._allowances: dict[str, dict[tuple[str, str], int]] = defaultdict(
            lambda: defaultdict(int)
        )
        self._unavailable: set[str] = set()

    def mint(self, token: str, account: str, amount: int) -> None:
        self._balances[checksum(token)][checksum(account)] += amount

    def approve(self, token: str, owner: str, spender: str, amount: int) -> None:
        self._allowances[checksum(token)][(checksum(owner), checksum(spender))] = amount

    def balance_of(self, token: str, account: str) -> int:
        return self._balances[checksum(token)][checksum(account)]

    def allowance(self, token: str, owner: str, spender: str) -> int:
        return self._allowances[checksum(token)][(checksum(owner), checksum(spender))]

    def set_available(self, token: str, available: bool) -> None:
        if available:
            self._unavailable.discard(checksum(token))
        else:
            self._unavailable.add(checksum(token))

    def transfer_from(
        self, token: str, spender: str, from_address: str, to: str, value: int
    ) -> None:
        token, spender = checksum(token), checksum(spender)
        from_address, to = checksum(from_address), checksum(to)

        if token in self._unavailable:
            raise TransferFailed(f"token {token} unavailable")
        balances = self._balances[token]
        allowances = self._allowances[token]
        if balances[from_address] < value:
            raise TransferFailed("transfer amount exceeds balance")
        if allowances[(from_address, spender)] < value:
            raise TransferFailed("transfer amount exceeds allowance")

        allowances[(from_address, spender)] -= value
        balances[from_address] -= value
        balances[to] += value


@dataclass
class _PendingTx:
    transaction_hash: str
    request: TransactionRequest


class InMemoryLedger:
    """
    Simulated chain.

    Args:
        chain_id: Chain id used in gate domains
        automine: Mine a block right after every broadcast
        block_time: Seconds added to the timestamp per mined block
        start_timestamp: Initial block timestamp (defaults to now)
    """

    def __init__(
        self,
        chain_id: int = 31337,
        *,
        automine: bool = True,
        block_time: int = 2,
        start_timestamp: Optional[int] = None,
    ):
        self._chain_id = chain_id
        self.automine = automine
        self.block_time = block_time
        self.block_number = 0
        self.timestamp = start_timestamp if start_timestamp is not None else int(time.time())
        self.tokens = TokenBook()
        self.min_priority_fee = 0
        self.priority_fee = DEFAULT_PRIORITY_FEE

        self._gates: dict[str, ExecutionGate] = {}
        self._gate: Optional[ExecutionGate] = None
        self._sequences: dict[str, int] = defaultdict(int)
        self._pending: dict[tuple[str, int], _PendingTx] = {}
        self._receipts: dict[str, Receipt] = {}
        self._hash_counter = itertools.count()
        self._failures_left = 0
        self.broadcasts: list[TransactionRequest] = []

    # ----------------------------------------------------------------
    # Setup
    # ----------------------------------------------------------------

    def deploy_gate(
        self,
        owner: str,
        *,
        name: str = DEFAULT_GATE_NAME,
        version: str = DEFAULT_GATE_VERSION,
    ) -> ExecutionGate:
        """
        Deploy a gate at a fresh address.

        The first deployment becomes ``gate``, the one the ledger views
        (``is_paused``, ``is_nonce_used``...) read. Transactions run on
        whichever gate their request addresses.
        """
        seed = f"{checksum(owner)}:{len(self._gates)}".encode()
        address = Web3.to_checksum_address(bytes(Web3.keccak(seed))[12:])
        gate = ExecutionGate(
            address,
            owner,
            self.tokens,
            chain_id=self._chain_id,
            name=name,
            version=version,
            clock=lambda: self.timestamp,
        )
        self._gates[gate.address] = gate
        if self._gate is None:
            self._gate = gate
        logger.debug("Deployed gate %s owned by %s", gate.address, owner)
        return gate

    @property
    def gate(self) -> ExecutionGate:
        if self._gate is None:
            raise RuntimeError("no gate deployed")
        return self._gate

    def fail_next(self, count: int = 1) -> None:
        """Make the next ``count`` RPC calls raise LedgerUnavailable."""
        self._failures_left = count

    def get_gate(self, address: str) -> ExecutionGate:
        return self._gates[checksum(address)]

    def evict(self, transaction_hash: Optional[str] = None) -> int:
        """
        Drop pending transactions without mining them.

        Args:
            transaction_hash: Transaction to drop; every pending one if omitted

        Returns:
            Number of transactions dropped
        """
        keys = [
            key
            for key, tx in self._pending.items()
            if transaction_hash is None or tx.transaction_hash == transaction_hash
        ]
        for key in keys:
            del self._pending[key]
        return len(keys)

    def advance_time(self, seconds: int) -> None:
        self.timestamp += seconds

    def _maybe_fail(self) -> None:
        if self._failures_left > 0:
            self._failures_left -= 1
            raise LedgerUnavailable("simulated RPC outage")

    # ----------------------------------------------------------------
    # Mining
    # ----------------------------------------------------------------

    def mine(self) -> int:
        """
        Mine one block: for each sender, include pending transactions in
        sequence order until a gap or an underpriced transaction.

        Returns:
            Number of transactions included
        """
        self.block_number += 1
        self.timestamp += self.block_time
        included = 0

        for sender in sorted({s for s, _ in self._pending}):
            while True:
                key = (sender, self._sequences[sender])
                tx = self._pending.get(key)
                if tx is None or tx.request.priority_fee < self.min_priority_fee:
                    break
                del self._pending[key]
                self._sequences[sender] += 1
                self._receipts[tx.transaction_hash] = self._execute(tx)
                included += 1

        return included

    def _execute(self, tx: _PendingTx) -> Receipt:
        call = tx.request.call
        gate = self._gates.get(checksum(tx.request.gate))
        if gate is None:
            return Receipt(
                transaction_hash=tx.transaction_hash,
                block_number=self.block_number,
                success=False,
                error_reason=ErrorReason.TRANSFER_FAILED,
                error_message=f"no gate deployed at {tx.request.gate}",
            )
        try:
            event = gate.execute_transfer(call.token, call.authorization, call.signature)
        except GateError as e:
            logger.debug("Transaction %s reverted: %s", tx.transaction_hash, e.reason.value)
            return Receipt(
                transaction_hash=tx.transaction_hash,
                block_number=self.block_number,
                success=False,
                error_reason=e.reason,
                error_message=e.message,
            )
        return Receipt(
            transaction_hash=tx.transaction_hash,
            block_number=self.block_number,
            success=True,
            events=[event],
        )

    # ----------------------------------------------------------------
    # LedgerClient
    # ----------------------------------------------------------------

    @property
    def chain_id(self) -> int:
        return self._chain_id

    @property
    def gate_address(self) -> str:
        return self.gate.address

    async def get_block_number(self) -> int:
        self._maybe_fail()
        return self.block_number

    async def get_block_timestamp(self) -> int:
        self._maybe_fail()
        return self.timestamp

    async def is_paused(self) -> bool:
        self._maybe_fail()
        return self.gate.paused

    async def is_whitelisted(self, token: str) -> bool:
        self._maybe_fail()
        return self.gate.is_whitelisted(token)

    async def is_nonce_used(self, nonce: str) -> bool:
        self._maybe_fail()
        return self.gate.is_nonce_used(nonce)

    async def balance_of(self, token: str, account: str) -> int:
        self._maybe_fail()
        return self.tokens.balance_of(token, account)

    async def get_pending_sequence(self, account: str) -> int:
        self._maybe_fail()
        account = checksum(account)
        sequence = self._sequences[account]
        while (account, sequence) in self._pending:
            sequence += 1
        return sequence

    async def suggest_priority_fee(self) -> int:
        self._maybe_fail()
        return self.priority_fee

    async def broadcast(self, request: TransactionRequest) -> str:
        self._maybe_fail()
        sender = checksum(request.sender)
        if request.sequence < self._sequences[sender]:
            raise SubmissionFailed(f"nonce too low: {request.sequence}")

        key = (sender, request.sequence)
        existing = self._pending.get(key)
        if existing is not None:
            required = existing.request.priority_fee * (100 + REPLACEMENT_FEE_BUMP_PERCENT) // 100
            if request.priority_fee < required:
                raise SubmissionFailed("replacement transaction underpriced")

        seed = f"{sender}:{request.sequence}:{request.priority_fee}:{next(self._hash_counter)}"
        tx_hash = _hex(bytes(Web3.keccak(text=seed)))
        self._pending[key] = _PendingTx(tx_hash, request)
        self.broadcasts.append(request)

        if self.automine:
            self.mine()
        # Give other tasks a turn, as a real RPC round-trip would
        await asyncio.sleep(0)
        return tx_hash

    async def get_receipt(self, transaction_hash: str) -> Optional[Receipt]:
        self._maybe_fail()
        return self._receipts.get(transaction_hash)

    async def is_pending(self, transaction_hash: str) -> bool:
        self._maybe_fail()
        return any(tx.transaction_hash == transaction_hash for tx in self._pending.values())
