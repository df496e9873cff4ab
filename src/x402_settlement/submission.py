"""
Submission queue for the facilitator's outgoing transactions.

The facilitator sends from a single account, so its sequence numbers are a
shared resource. Every settlement goes through one ``asyncio.Queue`` with a
single consumer task per account; submissions are processed FIFO, one at a
time:

1. Reserve the next sequence (local counter reconciled with the ledger's
   pending count). Transient RPC failures are retried with backoff.
2. Broadcast ``executeTransfer`` with the suggested priority fee.
3. Poll receipts. If nothing is mined within ``stall_blocks`` blocks,
   rebroadcast with the same sequence and a higher priority fee (at most
   ``max_fee_bumps`` times). The first receipt for any of the hashes wins.
4. After ``confirmation_timeout`` seconds resolve as ``ConfirmationTimeout``
   carrying the last hash. The transaction may still land. If it is
   evicted instead, the next reservation falls back to the ledger's count
   so later submissions do not queue behind the gap.

A submission whose caller stopped waiting before it was broadcast is
skipped. One that was already broadcast is followed to the end; nothing
is retracted.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Optional, TypeVar

from x402_settlement.errors import (
    ConfirmationTimeout,
    LedgerUnavailable,
    SubmissionFailed,
    X402SettlementError,
)
from x402_settlement.ledger.base import (
    ExecuteTransferCall,
    LedgerClient,
    Receipt,
    TransactionRequest,
)
from x402_settlement.models import checksum

logger = logging.getLogger(__name__)

T = TypeVar("T")

MIN_FEE_BUMP_PERCENT = 10


@dataclass
class RetryPolicy:
    """Exponential backoff for transient ledger failures."""

    max_attempts: int = 5
    initial_backoff: float = 0.5
    max_backoff: float = 8.0
    multiplier: float = 2.0

    def backoff(self, attempt: int) -> float:
        """Delay after the ``attempt``-th failure (1-indexed)."""
        return min(self.max_backoff, self.initial_backoff * self.multiplier ** (attempt - 1))

    async def run(self, operation: Callable[[], Awaitable[T]], description: str = "ledger call") -> T:
        """
        Await ``operation()``, retrying on ``LedgerUnavailable``.

        Raises:
            SubmissionFailed: When every attempt failed
        """
        attempt = 0
        while True:
            attempt += 1
            try:
                return await operation()
            except LedgerUnavailable as e:
                if attempt >= self.max_attempts:
                    raise SubmissionFailed(
                        f"{description} failed after {attempt} attempts: {e}"
                    ) from e
                delay = self.backoff(attempt)
                logger.warning(
                    "%s failed (attempt %d/%d), retrying in %.2fs: %s",
                    description,
                    attempt,
                    self.max_attempts,
                    delay,
                    e,
                )
                await asyncio.sleep(delay)


@dataclass
class Submission:
    """One queued executeTransfer and the future its caller waits on."""

    call: ExecuteTransferCall
    future: asyncio.Future
    transaction_hashes: list[str] = field(default_factory=list)
    sequence: Optional[int] = None
    abandoned: bool = False

    @property
    def transaction_hash(self) -> Optional[str]:
        return self.transaction_hashes[-1] if self.transaction_hashes else None

    @property
    def broadcast(self) -> bool:
        return bool(self.transaction_hashes)

    def detach(self) -> None:
        """The caller stopped waiting. Outcome is still recorded, never raised."""
        self.abandoned = True
        self.future.add_done_callback(_consume_result)


def _consume_result(future: asyncio.Future) -> None:
    if not future.cancelled():
        future.exception()


class SubmissionQueue:
    """
    Single-consumer queue for one submitter account.

    Args:
        ledger: Ledger client that signs for ``sender``
        sender: Facilitator account address
        retry: Backoff policy for transient RPC failures
        stall_blocks: Blocks without inclusion before a fee bump
        fee_bump_percent: Priority fee increase per bump (>= 10)
        max_fee_bumps: Maximum rebroadcasts per submission
        poll_interval: Seconds between receipt polls
        confirmation_timeout: Seconds a submission may take before ConfirmationTimeout
        dropped_after_polls: Polls with no receipt and no pending hash before
            the transaction is declared dropped
        gate_address: Gate the calls are sent to (defaults to the ledger's gate)
    """

    def __init__(
        self,
        ledger: LedgerClient,
        sender: str,
        *,
        retry: Optional[RetryPolicy] = None,
        stall_blocks: int = 3,
        fee_bump_percent: int = 20,
        max_fee_bumps: int = 3,
        poll_interval: float = 1.0,
        confirmation_timeout: float = 120.0,
        dropped_after_polls: int = 3,
        gate_address: Optional[str] = None,
    ):
        if fee_bump_percent < MIN_FEE_BUMP_PERCENT:
            raise ValueError(f"fee_bump_percent must be at least {MIN_FEE_BUMP_PERCENT}")
        self.ledger = ledger
        self.sender = checksum(sender)
        self.gate_address = checksum(gate_address or ledger.gate_address)
        self.retry = retry or RetryPolicy()
        self.stall_blocks = stall_blocks
        self.fee_bump_percent = fee_bump_percent
        self.max_fee_bumps = max_fee_bumps
        self.poll_interval = poll_interval
        self.confirmation_timeout = confirmation_timeout
        self.dropped_after_polls = dropped_after_polls

        self._queue: Optional[asyncio.Queue[Optional[Submission]]] = None
        self._worker: Optional[asyncio.Task] = None
        self._next_sequence: Optional[int] = None
        # Hashes of timed-out submissions; they may still land or be evicted
        self._unresolved: list[str] = []

    @property
    def running(self) -> bool:
        return self._worker is not None and not self._worker.done()

    @property
    def pending(self) -> int:
        return self._queue.qsize() if self._queue is not None else 0

    async def start(self) -> None:
        if self.running:
            return
        self._queue = asyncio.Queue()
        self._worker = asyncio.create_task(self._run(), name=f"submission-queue-{self.sender}")
        logger.info("Submission queue started for %s", self.sender)

    async def stop(self) -> None:
        """Finish queued submissions, then stop the worker."""
        if not self.running:
            return
        await self._queue.put(None)
        await self._worker
        self._worker = None
        logger.info("Submission queue stopped for %s", self.sender)

    def submit(self, call: ExecuteTransferCall) -> Submission:
        """Enqueue a call; await ``submission.future`` for its Receipt."""
        if not self.running:
            raise RuntimeError("submission queue is not running")
        submission = Submission(call=call, future=asyncio.get_running_loop().create_future())
        self._queue.put_nowait(submission)
        return submission

    # ----------------------------------------------------------------
    # Worker
    # ----------------------------------------------------------------

    async def _run(self) -> None:
        while True:
            submission = await self._queue.get()
            try:
                if submission is None:
                    return
                if submission.abandoned:
                    logger.info(
                        "Skipping abandoned submission for nonce %s",
                        submission.call.authorization.nonce,
                    )
                    submission.future.cancel()
                    continue
                await self._handle(submission)
            finally:
                self._queue.task_done()

    async def _handle(self, submission: Submission) -> None:
        try:
            receipt = await self._process(submission)
        except X402SettlementError as e:
            if not submission.future.done():
                submission.future.set_exception(e)
        except Exception as e:
            logger.exception("Unexpected error processing submission")
            if not submission.future.done():
                submission.future.set_exception(SubmissionFailed(str(e)))
        else:
            if not submission.future.done():
                submission.future.set_result(receipt)

    async def _reserve_sequence(self) -> int:
        pending = await self.retry.run(
            lambda: self.ledger.get_pending_sequence(self.sender), "get_pending_sequence"
        )
        if self._next_sequence is None or pending > self._next_sequence:
            self._next_sequence = pending
        elif pending < self._next_sequence and not await self._any_unresolved_pending():
            # A timed-out transaction left the mempool without being mined
            logger.warning(
                "Ledger pending sequence %d is behind local %d, reusing it",
                pending,
                self._next_sequence,
            )
            self._next_sequence = pending
        return self._next_sequence

    async def _any_unresolved_pending(self) -> bool:
        still_pending = []
        for tx_hash in self._unresolved:
            if await self.retry.run(lambda h=tx_hash: self.ledger.is_pending(h), "is_pending"):
                still_pending.append(tx_hash)
        self._unresolved = still_pending
        return bool(still_pending)

    def _bump(self, fee: int) -> int:
        return max(fee * (100 + self.fee_bump_percent) // 100, fee + 1)

    async def _broadcast(self, submission: Submission, sequence: int, fee: int) -> str:
        request = TransactionRequest(
            sender=self.sender,
            gate=self.gate_address,
            sequence=sequence,
            priority_fee=fee,
            call=submission.call,
        )
        tx_hash = await self.retry.run(lambda: self.ledger.broadcast(request), "broadcast")
        submission.transaction_hashes.append(tx_hash)
        logger.info(
            "Broadcast %s (sequence=%d, priority_fee=%d, nonce=%s)",
            tx_hash,
            sequence,
            fee,
            submission.call.authorization.nonce,
        )
        return tx_hash

    async def _process(self, submission: Submission) -> Receipt:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.confirmation_timeout

        sequence = await self._reserve_sequence()
        fee = await self.retry.run(self.ledger.suggest_priority_fee, "suggest_priority_fee")
        await self._broadcast(submission, sequence, fee)
        submission.sequence = sequence
        self._next_sequence = sequence + 1

        broadcast_block = await self.retry.run(self.ledger.get_block_number, "get_block_number")
        bumps = 0
        missing_polls = 0

        while True:
            try:
                receipt = await self._find_receipt(submission)
                if receipt is not None:
                    logger.info(
                        "Transaction %s mined in block %d (success=%s)",
                        receipt.transaction_hash,
                        receipt.block_number,
                        receipt.success,
                    )
                    return receipt

                if await self._any_pending(submission):
                    missing_polls = 0
                else:
                    missing_polls += 1
                    if missing_polls >= self.dropped_after_polls:
                        # The sequence was never used; hand it to the next submission
                        self._next_sequence = sequence
                        raise SubmissionFailed(
                            f"transaction {submission.transaction_hash} was dropped"
                        )

                block = await self.ledger.get_block_number()
            except LedgerUnavailable as e:
                # Already broadcast: keep waiting, the deadline bounds us
                logger.warning("Receipt poll failed for %s: %s", submission.transaction_hash, e)
                block = broadcast_block

            if loop.time() >= deadline:
                logger.warning(
                    "Transaction %s not confirmed after %.1fs",
                    submission.transaction_hash,
                    self.confirmation_timeout,
                )
                self._unresolved.extend(submission.transaction_hashes)
                raise ConfirmationTimeout(
                    f"not confirmed within {self.confirmation_timeout}s",
                    transaction_hash=submission.transaction_hash,
                )

            if block - broadcast_block >= self.stall_blocks and bumps < self.max_fee_bumps:
                new_fee = self._bump(fee)
                try:
                    await self._broadcast(submission, sequence, new_fee)
                except SubmissionFailed as e:
                    # Usually the original was mined meanwhile; the next poll finds it
                    logger.warning("Fee bump for sequence %d rejected: %s", sequence, e)
                else:
                    logger.warning(
                        "Sequence %d stalled for %d blocks, priority fee %d -> %d",
                        sequence,
                        block - broadcast_block,
                        fee,
                        new_fee,
                    )
                    fee = new_fee
                    missing_polls = 0
                bumps += 1
                broadcast_block = block

            await asyncio.sleep(self.poll_interval)

    async def _find_receipt(self, submission: Submission) -> Optional[Receipt]:
        for tx_hash in reversed(submission.transaction_hashes):
            receipt = await self.ledger.get_receipt(tx_hash)
            if receipt is not None:
                return receipt
        return None

    async def _any_pending(self, submission: Submission) -> bool:
        for tx_hash in submission.transaction_hashes:
            if await self.ledger.is_pending(tx_hash):
                return True
        # Mined between the receipt lookup and now?
        return await self._find_receipt(submission) is not None
