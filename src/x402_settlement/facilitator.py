"""
Facilitator service: verify and settle x402 ``exact`` payments.

``verify`` is a read-only precheck that mirrors the gate's rules against the
ledger's current state plus the resource server's requirements. It never
reserves a nonce and may run with any concurrency.

``settle`` re-runs ``verify`` and, if the payment is valid, queues an
``executeTransfer`` through the single-consumer submission queue and waits
for the outcome. The gate re-checks everything on-ledger; a settlement that
loses a race to another submission of the same authorization comes back as
``nonce_already_used``.

Example:
    >>> ledger = InMemoryLedger()
    >>> gate = ledger.deploy_gate(owner)
    >>> async with FacilitatorService.for_ledger(ledger, facilitator_address) as service:
    ...     result = await service.verify(payload, requirements)
    ...     if result.is_valid:
    ...         settled = await service.settle(payload, requirements)
"""

import asyncio
import logging
from typing import Any, Optional

from x402_settlement import guard
from x402_settlement.codec import authorization_digest
from x402_settlement.config import FacilitatorSettings
from x402_settlement.errors import (
    ErrorReason,
    GateError,
    InfrastructureError,
    InsufficientFunds,
    NonceAlreadyUsed,
    RequirementMismatch,
    VerificationError,
)
from x402_settlement.ledger.base import ExecuteTransferCall, LedgerClient
from x402_settlement.models import (
    Domain,
    PaymentPayload,
    PaymentRequirements,
    SettleResult,
    SupportedKind,
    SupportedResponse,
    TransactionState,
    TransactionStatus,
    VerifyResult,
    caip2_network,
)
from x402_settlement.signature import verify_signature
from x402_settlement.submission import RetryPolicy, SubmissionQueue

logger = logging.getLogger(__name__)

SCHEME = "exact"


class FacilitatorService:
    """
    Verify/settle front of an execution gate.

    Args:
        ledger: Ledger hosting the gate
        queue: Submission queue of the facilitator account
        domain: EIP-712 domain of the gate
        settle_timeout: Default seconds ``settle`` waits for confirmation
        retry: Backoff policy for read calls
        check_balance: Also reject payers whose token balance is below ``value``
    """

    def __init__(
        self,
        ledger: LedgerClient,
        queue: SubmissionQueue,
        domain: Domain,
        *,
        settle_timeout: float = 120.0,
        retry: Optional[RetryPolicy] = None,
        check_balance: bool = True,
    ):
        self.ledger = ledger
        self.queue = queue
        self.domain = domain
        self.network = caip2_network(domain.chain_id)
        self.settle_timeout = settle_timeout
        self.retry = retry or queue.retry
        self.check_balance = check_balance

    @classmethod
    def for_ledger(
        cls,
        ledger: LedgerClient,
        signer_address: str,
        *,
        domain_name: Optional[str] = None,
        domain_version: Optional[str] = None,
        settings: Optional[FacilitatorSettings] = None,
        **queue_options: Any,
    ) -> "FacilitatorService":
        """
        Build a service for ``ledger`` from settings (defaults if omitted).

        ``queue_options`` override the SubmissionQueue arguments.
        """
        settings = settings or FacilitatorSettings()
        retry = settings.retry_policy()
        options: dict[str, Any] = {
            "retry": retry,
            "stall_blocks": settings.stall_blocks,
            "fee_bump_percent": settings.fee_bump_percent,
            "max_fee_bumps": settings.max_fee_bumps,
            "poll_interval": settings.poll_interval,
            "confirmation_timeout": settings.confirmation_timeout,
        }
        options.update(queue_options)
        queue = SubmissionQueue(ledger, signer_address, **options)
        domain = Domain(
            name=domain_name or settings.domain_name,
            version=domain_version or settings.domain_version,
            chain_id=ledger.chain_id,
            verifying_contract=ledger.gate_address,
        )
        return cls(
            ledger,
            queue,
            domain,
            settle_timeout=settings.confirmation_timeout,
            retry=retry,
            check_balance=settings.check_balance,
        )

    # ----------------------------------------------------------------
    # Lifecycle
    # ----------------------------------------------------------------

    async def start(self) -> None:
        await self.queue.start()

    async def aclose(self) -> None:
        await self.queue.stop()

    async def __aenter__(self) -> "FacilitatorService":
        await self.start()
        return self

    async def __aexit__(self, *args: Any) -> None:
        await self.aclose()

    # ----------------------------------------------------------------
    # Verify
    # ----------------------------------------------------------------

    def _match_requirements(
        self, payload: PaymentPayload, requirements: PaymentRequirements
    ) -> None:
        exact = payload.payload
        auth = exact.authorization
        if payload.scheme != SCHEME or requirements.scheme != SCHEME:
            raise RequirementMismatch(f"unsupported scheme {payload.scheme}/{requirements.scheme}")
        if payload.network != requirements.network or requirements.network != self.network:
            raise RequirementMismatch(
                f"network {payload.network} does not match {requirements.network} on {self.network}"
            )
        if exact.token != requirements.asset:
            raise RequirementMismatch(f"token {exact.token} is not {requirements.asset}")
        if auth.to != requirements.pay_to:
            raise RequirementMismatch(f"recipient {auth.to} is not {requirements.pay_to}")
        if auth.value != requirements.max_amount_required:
            raise RequirementMismatch(
                f"value {auth.value} does not equal {requirements.max_amount_required}"
            )

    async def _read_state(self, payload: PaymentPayload) -> tuple[bool, int, bool, bool, Optional[int]]:
        exact = payload.payload
        auth = exact.authorization

        async def read() -> Any:
            reads = [
                self.ledger.is_paused(),
                self.ledger.get_block_timestamp(),
                self.ledger.is_whitelisted(exact.token),
                self.ledger.is_nonce_used(auth.nonce),
            ]
            if self.check_balance:
                reads.append(self.ledger.balance_of(exact.token, auth.from_address))
            return await asyncio.gather(*reads)

        results = await self.retry.run(read, "verify state read")
        balance = results[4] if self.check_balance else None
        return results[0], results[1], results[2], results[3], balance

    async def _check(self, payload: PaymentPayload, requirements: PaymentRequirements) -> None:
        """Raise the first rule the payment breaks, in the gate's order."""
        self._match_requirements(payload, requirements)

        exact = payload.payload
        auth = exact.authorization
        paused, now, whitelisted, nonce_used, balance = await self._read_state(payload)

        guard.check_not_paused(paused)
        verify_signature(authorization_digest(auth, self.domain), exact.signature, auth.from_address)
        guard.check_time_window(auth, now)
        guard.check_whitelisted(exact.token, whitelisted)
        if nonce_used:
            raise NonceAlreadyUsed(f"nonce {auth.nonce} already used")
        if balance is not None and balance < auth.value:
            raise InsufficientFunds(f"balance {balance} below {auth.value}")

    async def verify(
        self, payload: PaymentPayload, requirements: PaymentRequirements
    ) -> VerifyResult:
        """
        Read-only precheck of a payment.

        Returns:
            VerifyResult with ``is_valid`` or the first failing ``invalid_reason``
        """
        payer = payload.payer
        try:
            await self._check(payload, requirements)
        except (GateError, VerificationError, InfrastructureError) as e:
            logger.info("Verification rejected payer=%s reason=%s: %s", payer, e.reason.value, e)
            return VerifyResult(
                is_valid=False,
                invalid_reason=e.reason,
                payer=payer,
                message=e.message,
            )
        return VerifyResult(is_valid=True, payer=payer)

    # ----------------------------------------------------------------
    # Settle
    # ----------------------------------------------------------------

    async def settle(
        self,
        payload: PaymentPayload,
        requirements: PaymentRequirements,
        *,
        timeout: Optional[float] = None,
    ) -> SettleResult:
        """
        Verify, submit and wait for the on-ledger outcome.

        Args:
            payload: Payment payload
            requirements: Payment requirements
            timeout: Seconds to wait for confirmation (defaults to the
                requirements' ``maxTimeoutSeconds``, then ``settle_timeout``)

        Returns:
            SettleResult; on ``confirmation_timeout`` ``transaction`` holds the
            hash to re-query with ``transaction_status``
        """
        payer = payload.payer
        verification = await self.verify(payload, requirements)
        if not verification.is_valid:
            return SettleResult(
                success=False,
                network=self.network,
                payer=payer,
                error_reason=verification.invalid_reason,
                message=verification.message,
            )

        exact = payload.payload
        submission = self.queue.submit(
            ExecuteTransferCall(
                token=exact.token,
                authorization=exact.authorization,
                signature=exact.signature,
            )
        )
        if timeout is None:
            timeout = requirements.max_timeout_seconds or self.settle_timeout

        try:
            receipt = await asyncio.wait_for(asyncio.shield(submission.future), timeout)
        except asyncio.TimeoutError:
            submission.detach()
            logger.warning(
                "Settlement for payer=%s timed out after %.1fs (transaction=%s)",
                payer,
                timeout,
                submission.transaction_hash,
            )
            return SettleResult(
                success=False,
                transaction=submission.transaction_hash,
                network=self.network,
                payer=payer,
                error_reason=ErrorReason.CONFIRMATION_TIMEOUT,
                message="not confirmed in time; re-query the transaction status",
            )
        except asyncio.CancelledError:
            # Stop waiting only; a broadcast transaction is not retracted
            submission.detach()
            raise
        except InfrastructureError as e:
            logger.warning("Settlement for payer=%s failed: %s", payer, e)
            return SettleResult(
                success=False,
                transaction=getattr(e, "transaction_hash", None) or submission.transaction_hash,
                network=self.network,
                payer=payer,
                error_reason=e.reason,
                message=e.message,
            )

        if not receipt.success:
            logger.info(
                "Settlement for payer=%s reverted: %s (transaction=%s)",
                payer,
                receipt.error_reason.value if receipt.error_reason else None,
                receipt.transaction_hash,
            )
            return SettleResult(
                success=False,
                transaction=receipt.transaction_hash,
                network=self.network,
                payer=payer,
                error_reason=receipt.error_reason or ErrorReason.TRANSFER_FAILED,
                message=receipt.error_message,
            )

        logger.info("Settled payer=%s transaction=%s", payer, receipt.transaction_hash)
        return SettleResult(
            success=True,
            transaction=receipt.transaction_hash,
            network=self.network,
            payer=payer,
            event=receipt.event,
        )

    # ----------------------------------------------------------------
    # Queries
    # ----------------------------------------------------------------

    async def transaction_status(self, transaction_hash: str) -> TransactionStatus:
        """Current ledger state of a settlement transaction."""
        receipt = await self.retry.run(
            lambda: self.ledger.get_receipt(transaction_hash), "get_receipt"
        )
        if receipt is not None:
            return TransactionStatus(
                transaction=transaction_hash,
                status=TransactionState.SUCCESS if receipt.success else TransactionState.FAILED,
                block_number=receipt.block_number,
                error_reason=receipt.error_reason,
                event=receipt.event,
            )
        pending = await self.retry.run(
            lambda: self.ledger.is_pending(transaction_hash), "is_pending"
        )
        return TransactionStatus(
            transaction=transaction_hash,
            status=TransactionState.PENDING if pending else TransactionState.UNKNOWN,
        )

    def supported(self) -> SupportedResponse:
        return SupportedResponse(
            kinds=[SupportedKind(scheme=SCHEME, network=self.network)],
            signers=[self.queue.sender],
        )
