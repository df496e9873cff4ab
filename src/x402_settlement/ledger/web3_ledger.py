"""
JSON-RPC ledger client for a deployed gate contract.

Uses ``AsyncWeb3`` to read the gate's views, send ``executeTransfer`` from
the facilitator account, and decode receipts. A reverted transaction is
replayed with ``eth_call`` at its block to recover the gate's custom error,
which becomes the settlement's ``errorReason``.

Example:
    >>> from x402_settlement.ledger.web3_ledger import Web3Ledger
    >>>
    >>> ledger = Web3Ledger(
    ...     rpc_url="https://sepolia.base.org",
    ...     private_key="0x...",
    ...     gate_address="0xGate...",
    ...     chain_id=84532,
    ... )
"""

import asyncio
import logging
from typing import Any, Optional

import aiohttp
from eth_account import Account
from web3 import AsyncHTTPProvider, AsyncWeb3, Web3
from web3.exceptions import (
    ContractCustomError,
    ContractLogicError,
    ProviderConnectionError,
    TransactionNotFound,
    Web3Exception,
    Web3RPCError,
)
from web3.logs import DISCARD

from x402_settlement.errors import (
    GATE_ERRORS,
    ErrorReason,
    LedgerUnavailable,
    SubmissionFailed,
    reason_from_revert,
)
from x402_settlement.ledger.base import Receipt, TransactionRequest
from x402_settlement.models import TransferEvent, checksum

logger = logging.getLogger(__name__)

# ============================================================
# ABIs
# ============================================================

AUTHORIZATION_COMPONENTS = [
    {"name": "from", "type": "address"},
    {"name": "to", "type": "address"},
    {"name": "value", "type": "uint256"},
    {"name": "validAfter", "type": "uint256"},
    {"name": "validBefore", "type": "uint256"},
    {"name": "nonce", "type": "bytes32"},
]


def _view(name: str, inputs: list[dict], output: str) -> dict:
    return {
        "type": "function",
        "name": name,
        "inputs": inputs,
        "outputs": [{"name": "", "type": output}],
        "stateMutability": "view",
    }


def _owner_action(name: str, inputs: list[dict]) -> dict:
    return {
        "type": "function",
        "name": name,
        "inputs": inputs,
        "outputs": [],
        "stateMutability": "nonpayable",
    }


GATE_ABI: list[dict[str, Any]] = [
    {
        "type": "function",
        "name": "executeTransfer",
        "inputs": [
            {"name": "token", "type": "address"},
            {
                "name": "authorization",
                "type": "tuple",
                "components": AUTHORIZATION_COMPONENTS,
            },
            {"name": "signature", "type": "bytes"},
        ],
        "outputs": [],
        "stateMutability": "nonpayable",
    },
    _owner_action(
        "setWhitelist",
        [{"name": "token", "type": "address"}, {"name": "enabled", "type": "bool"}],
    ),
    _owner_action("pause", []),
    _owner_action("unpause", []),
    _owner_action("transferOwnership", [{"name": "newOwner", "type": "address"}]),
    _view("paused", [], "bool"),
    _view("owner", [], "address"),
    _view("isWhitelisted", [{"name": "token", "type": "address"}], "bool"),
    _view("isNonceUsed", [{"name": "nonce", "type": "bytes32"}], "bool"),
    {
        "type": "event",
        "name": "TransferExecuted",
        "anonymous": False,
        "inputs": [
            {"name": "from", "type": "address", "indexed": True},
            {"name": "to", "type": "address", "indexed": True},
            {"name": "token", "type": "address", "indexed": True},
            {"name": "value", "type": "uint256", "indexed": False},
            {"name": "nonce", "type": "bytes32", "indexed": False},
        ],
    },
] + [{"type": "error", "name": name, "inputs": []} for name in GATE_ERRORS]

ERC20_BALANCE_ABI = [_view("balanceOf", [{"name": "account", "type": "address"}], "uint256")]

# 4-byte selector -> custom error name
ERROR_SELECTORS: dict[str, str] = {
    "0x" + bytes(Web3.keccak(text=f"{name}()"))[:4].hex(): name for name in GATE_ERRORS
}


def _hex(value: Any) -> str:
    if isinstance(value, str):
        return value if value.startswith("0x") else "0x" + value
    raw = bytes(value).hex()
    return raw if raw.startswith("0x") else "0x" + raw


def _revert_data(error: ContractCustomError) -> str:
    data = getattr(error, "data", None)
    if not isinstance(data, str):
        data = error.args[0] if error.args else ""
    return str(data)


class Web3Ledger:
    """
    Ledger client backed by a JSON-RPC node.

    Args:
        rpc_url: JSON-RPC endpoint
        private_key: Facilitator account key (pays gas)
        gate_address: Deployed gate contract
        chain_id: Chain id of the node
        gas_limit: Gas limit for executeTransfer
    """

    def __init__(
        self,
        rpc_url: str,
        private_key: str,
        gate_address: str,
        chain_id: int,
        *,
        gas_limit: int = 200000,
        request_timeout: float = 30.0,
    ):
        # Retries belong to the submission queue's RetryPolicy, not the provider
        provider = AsyncHTTPProvider(
            rpc_url,
            request_kwargs={"timeout": aiohttp.ClientTimeout(total=request_timeout)},
            exception_retry_configuration=None,
        )
        self.w3 = AsyncWeb3(provider)
        self.account = Account.from_key(private_key)
        self._gate_address = checksum(gate_address)
        self._chain_id = chain_id
        self.gas_limit = gas_limit
        self.gate = self.w3.eth.contract(address=self._gate_address, abi=GATE_ABI)

    @property
    def chain_id(self) -> int:
        return self._chain_id

    @property
    def gate_address(self) -> str:
        return self._gate_address

    async def _rpc(self, awaitable: Any, *, node_errors_transient: bool = True) -> Any:
        """
        Await an RPC call, translating node failures into LedgerUnavailable.

        Connection errors, timeouts, HTTP error statuses and JSON-RPC error
        responses all become ``LedgerUnavailable``. Contract reverts and
        ``TransactionNotFound`` pass through unchanged.

        Args:
            awaitable: The pending web3 call
            node_errors_transient: Treat JSON-RPC error responses as outages.
                Off for ``eth_sendRawTransaction``, where the node's error is
                a rejection of that transaction.
        """
        try:
            return await awaitable
        except (ContractLogicError, TransactionNotFound):
            raise
        except (
            OSError,
            asyncio.TimeoutError,
            aiohttp.ClientError,
            ProviderConnectionError,
        ) as e:
            raise LedgerUnavailable(f"RPC unavailable: {e}") from e
        except Web3RPCError as e:
            if not node_errors_transient:
                raise
            raise LedgerUnavailable(f"RPC error: {e}") from e

    # ----------------------------------------------------------------
    # Reads
    # ----------------------------------------------------------------

    async def get_block_number(self) -> int:
        return await self._rpc(self.w3.eth.block_number)

    async def get_block_timestamp(self) -> int:
        block = await self._rpc(self.w3.eth.get_block("latest"))
        return int(block["timestamp"])

    async def is_paused(self) -> bool:
        return await self._rpc(self.gate.functions.paused().call())

    async def is_whitelisted(self, token: str) -> bool:
        return await self._rpc(self.gate.functions.isWhitelisted(checksum(token)).call())

    async def is_nonce_used(self, nonce: str) -> bool:
        nonce_bytes = bytes.fromhex(nonce.removeprefix("0x"))
        return await self._rpc(self.gate.functions.isNonceUsed(nonce_bytes).call())

    async def balance_of(self, token: str, account: str) -> int:
        erc20 = self.w3.eth.contract(address=checksum(token), abi=ERC20_BALANCE_ABI)
        return await self._rpc(erc20.functions.balanceOf(checksum(account)).call())

    async def get_pending_sequence(self, account: str) -> int:
        return await self._rpc(self.w3.eth.get_transaction_count(checksum(account), "pending"))

    async def suggest_priority_fee(self) -> int:
        return await self._rpc(self.w3.eth.max_priority_fee)

    # ----------------------------------------------------------------
    # Writes
    # ----------------------------------------------------------------

    async def broadcast(self, request: TransactionRequest) -> str:
        if checksum(request.sender) != self.account.address:
            raise SubmissionFailed(f"cannot sign for {request.sender}")
        if checksum(request.gate) != self._gate_address:
            raise SubmissionFailed(f"not bound to gate {request.gate}")

        auth = request.call.authorization
        auth_tuple = (
            auth.from_address,
            auth.to,
            auth.value,
            auth.valid_after,
            auth.valid_before,
            auth.nonce_bytes,
        )
        signature = bytes.fromhex(request.call.signature.removeprefix("0x"))
        func_call = self.gate.functions.executeTransfer(
            checksum(request.call.token), auth_tuple, signature
        )

        block = await self._rpc(self.w3.eth.get_block("latest"))
        base_fee = int(block.get("baseFeePerGas", 0))
        try:
            tx = await self._rpc(
                func_call.build_transaction(
                    {
                        "from": self.account.address,
                        "nonce": request.sequence,
                        "gas": self.gas_limit,
                        "maxFeePerGas": base_fee * 2 + request.priority_fee,
                        "maxPriorityFeePerGas": request.priority_fee,
                        "chainId": self._chain_id,
                    }
                )
            )
            signed = self.account.sign_transaction(tx)
            tx_hash = await self._rpc(
                self.w3.eth.send_raw_transaction(signed.raw_transaction),
                node_errors_transient=False,
            )
        except Web3Exception as e:
            raise SubmissionFailed(f"broadcast rejected: {e}") from e
        return _hex(tx_hash)

    # ----------------------------------------------------------------
    # Receipts
    # ----------------------------------------------------------------

    async def get_receipt(self, transaction_hash: str) -> Optional[Receipt]:
        try:
            receipt = await self._rpc(self.w3.eth.get_transaction_receipt(transaction_hash))
        except TransactionNotFound:
            return None

        block_number = int(receipt["blockNumber"])
        if receipt["status"] == 1:
            logs = self.gate.events.TransferExecuted().process_receipt(receipt, errors=DISCARD)
            events = [
                TransferEvent(
                    from_address=log["args"]["from"],
                    to=log["args"]["to"],
                    token=log["args"]["token"],
                    value=log["args"]["value"],
                    nonce=_hex(log["args"]["nonce"]),
                )
                for log in logs
            ]
            return Receipt(
                transaction_hash=transaction_hash,
                block_number=block_number,
                success=True,
                events=events,
            )

        reason, message = await self._revert_reason(transaction_hash, block_number)
        return Receipt(
            transaction_hash=transaction_hash,
            block_number=block_number,
            success=False,
            error_reason=reason,
            error_message=message,
        )

    async def _revert_reason(
        self, transaction_hash: str, block_number: int
    ) -> tuple[ErrorReason, Optional[str]]:
        """
        Replay a reverted transaction to learn which rule rejected it.

        The replay runs against the state at the end of ``block_number``, so
        transactions mined after it in the same block are already applied.
        Usually that reproduces the original revert. When it does not (a
        later transaction unpaused the gate, say), the reason is the one the
        replay hits, or ``transfer_failed`` if the replay succeeds. Replaying
        at the previous block instead would miss reverts caused by earlier
        transactions in the same block, such as a nonce consumed just before.
        """
        tx = await self._rpc(self.w3.eth.get_transaction(transaction_hash))
        try:
            await self._rpc(
                self.w3.eth.call(
                    {"from": tx["from"], "to": tx["to"], "data": tx["input"], "gas": tx["gas"]},
                    block_identifier=block_number,
                )
            )
        except ContractCustomError as e:
            data = _revert_data(e)
            name = ERROR_SELECTORS.get(data[:10].lower())
            return reason_from_revert(name), name or data
        except ContractLogicError as e:
            return ErrorReason.TRANSFER_FAILED, str(e)
        logger.warning("Transaction %s reverted but replay succeeded", transaction_hash)
        return ErrorReason.TRANSFER_FAILED, "reverted"

    async def is_pending(self, transaction_hash: str) -> bool:
        try:
            tx = await self._rpc(self.w3.eth.get_transaction(transaction_hash))
        except TransactionNotFound:
            return False
        return tx.get("blockNumber") is None
