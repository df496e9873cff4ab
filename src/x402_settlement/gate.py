"""
Execution gate: the on-ledger decision logic for transfer authorizations.

This is the Python rendition of the gate contract. It is what the
in-memory ledger executes, and it documents the rules the deployed
contract enforces:

1. Reject when paused                      -> ContractPaused
2. Recover the signer of the EIP-712 digest -> InvalidSignature
3. Check the time window and token whitelist -> NotYetValid / Expired / TokenNotWhitelisted
4. Reserve the nonce                       -> NonceAlreadyUsed
5. Move the tokens                         -> TransferFailed (nonce reservation rolled back)
6. Emit TransferExecuted

Steps 1-6 run inside one lock per gate instance, so two concurrent
executions of the same authorization cannot both pass step 4, and a failed
transfer is never observable as a consumed nonce.

Owner-only mutations (whitelist, pause, ownership) go through ``GateState``
and check the caller before touching anything.
"""

import logging
import threading
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Optional, Protocol

from x402_settlement import guard
from x402_settlement.codec import authorization_digest
from x402_settlement.errors import NonceAlreadyUsed, TransferFailed, Unauthorized
from x402_settlement.models import ZERO_ADDRESS, Authorization, Domain, TransferEvent, checksum
from x402_settlement.signature import verify_signature

logger = logging.getLogger(__name__)

DEFAULT_GATE_NAME = "x402 Settlement Gate"
DEFAULT_GATE_VERSION = "1"


class TokenLedger(Protocol):
    """Opaque token ledger the gate moves funds on."""

    def transfer_from(
        self, token: str, spender: str, from_address: str, to: str, value: int
    ) -> None:
        """Move ``value`` of ``token``; raise TransferFailed and change nothing on failure."""
        ...


@dataclass(frozen=True)
class GateEvent:
    """A log entry emitted by the gate."""

    name: str
    args: dict[str, Any]


class NonceRegistry:
    """Global set of consumed authorization nonces. Entries are never reset."""

    def __init__(self) -> None:
        self._consumed: set[str] = set()

    def is_used(self, nonce: str) -> bool:
        return nonce.lower() in self._consumed

    def reserve(self, nonce: str) -> None:
        """
        Mark ``nonce`` consumed.

        Raises:
            NonceAlreadyUsed: If it was consumed before
        """
        key = nonce.lower()
        if key in self._consumed:
            raise NonceAlreadyUsed(f"nonce {nonce} already used")
        self._consumed.add(key)

    def _rollback(self, nonce: str) -> None:
        # Only valid inside the same locked scope that reserved it
        self._consumed.discard(nonce.lower())

    def __len__(self) -> int:
        return len(self._consumed)


@dataclass
class GateState:
    """Owner-gated global state: owner, pause flag and token whitelist."""

    owner: str
    paused: bool = False
    whitelist: dict[str, bool] = field(default_factory=dict)

    def _require_owner(self, caller: str) -> None:
        if checksum(caller) != self.owner:
            raise Unauthorized(f"{caller} is not the owner")

    def is_whitelisted(self, token: str) -> bool:
        return self.whitelist.get(checksum(token), False)

    def set_whitelist(self, caller: str, token: str, enabled: bool) -> None:
        self._require_owner(caller)
        self.whitelist[checksum(token)] = enabled

    def set_paused(self, caller: str, paused: bool) -> None:
        self._require_owner(caller)
        self.paused = paused

    def transfer_ownership(self, caller: str, new_owner: str) -> str:
        self._require_owner(caller)
        new_owner = checksum(new_owner)
        if new_owner == ZERO_ADDRESS:
            raise ValueError("new owner is the zero address")
        previous, self.owner = self.owner, new_owner
        return previous


class ExecutionGate:
    """
    One gate instance: its domain, state, nonce registry and event log.

    Args:
        address: Gate address; also the domain's ``verifyingContract``
        owner: Initial owner
        token_ledger: Where transfers are effected
        chain_id: Chain the gate lives on
        name: EIP-712 domain name
        version: EIP-712 domain version
        clock: Returns the current block timestamp (defaults to wall clock)
    """

    def __init__(
        self,
        address: str,
        owner: str,
        token_ledger: TokenLedger,
        *,
        chain_id: int,
        name: str = DEFAULT_GATE_NAME,
        version: str = DEFAULT_GATE_VERSION,
        clock: Optional[Callable[[], int]] = None,
    ):
        self.address = checksum(address)
        self.domain = Domain(
            name=name,
            version=version,
            chain_id=chain_id,
            verifying_contract=self.address,
        )
        self._state = GateState(owner=checksum(owner))
        self._nonces = NonceRegistry()
        self._token_ledger = token_ledger
        self._clock = clock or (lambda: int(time.time()))
        self._lock = threading.RLock()
        self._events: list[GateEvent] = []

    # ----------------------------------------------------------------
    # Views
    # ----------------------------------------------------------------

    @property
    def owner(self) -> str:
        return self._state.owner

    @property
    def paused(self) -> bool:
        return self._state.paused

    def is_whitelisted(self, token: str) -> bool:
        return self._state.is_whitelisted(token)

    def is_nonce_used(self, nonce: str) -> bool:
        return self._nonces.is_used(nonce)

    @property
    def events(self) -> list[GateEvent]:
        with self._lock:
            return list(self._events)

    def transfer_events(self) -> list[TransferEvent]:
        return [
            TransferEvent.model_validate(e.args)
            for e in self.events
            if e.name == "TransferExecuted"
        ]

    # ----------------------------------------------------------------
    # Execution
    # ----------------------------------------------------------------

    def execute_transfer(
        self, token: str, authorization: Authorization, signature: str
    ) -> TransferEvent:
        """
        Execute a signed authorization.

        Args:
            token: Token to transfer
            authorization: The payer's authorization
            signature: Payer's signature over the authorization digest

        Returns:
            The emitted TransferExecuted event

        Raises:
            GateError: On any rule violation; state is unchanged
        """
        token = checksum(token)
        with self._lock:
            guard.check_not_paused(self._state.paused)

            digest = authorization_digest(authorization, self.domain)
            verify_signature(digest, signature, authorization.from_address)

            guard.check_time_window(authorization, self._clock())
            guard.check_whitelisted(token, self._state.is_whitelisted(token))

            self._nonces.reserve(authorization.nonce)
            try:
                self._token_ledger.transfer_from(
                    token,
                    self.address,
                    authorization.from_address,
                    authorization.to,
                    authorization.value,
                )
            except TransferFailed:
                self._nonces._rollback(authorization.nonce)
                raise
            except Exception as e:
                self._nonces._rollback(authorization.nonce)
                raise TransferFailed(str(e)) from e

            event = TransferEvent(
                from_address=authorization.from_address,
                to=authorization.to,
                token=token,
                value=authorization.value,
                nonce=authorization.nonce,
            )
            self._events.append(
                GateEvent("TransferExecuted", event.model_dump(by_alias=True))
            )

        logger.debug(
            "Executed transfer %s -> %s value=%s nonce=%s",
            event.from_address,
            event.to,
            event.value,
            event.nonce,
        )
        return event

    # ----------------------------------------------------------------
    # Owner-only
    # ----------------------------------------------------------------

    def set_whitelist(self, caller: str, token: str, enabled: bool) -> None:
        with self._lock:
            self._state.set_whitelist(caller, token, enabled)
            self._events.append(
                GateEvent("WhitelistUpdated", {"token": checksum(token), "enabled": enabled})
            )

    def pause(self, caller: str) -> None:
        with self._lock:
            was_paused = self._state.paused
            self._state.set_paused(caller, True)
            if not was_paused:
                self._events.append(GateEvent("Paused", {"account": checksum(caller)}))

    def unpause(self, caller: str) -> None:
        with self._lock:
            was_paused = self._state.paused
            self._state.set_paused(caller, False)
            if was_paused:
                self._events.append(GateEvent("Unpaused", {"account": checksum(caller)}))

    def transfer_ownership(self, caller: str, new_owner: str) -> None:
        with self._lock:
            previous = self._state.transfer_ownership(caller, new_owner)
            self._events.append(
                GateEvent(
                    "OwnershipTransferred",
                    {"previousOwner": previous, "newOwner": self._state.owner},
                )
            )
