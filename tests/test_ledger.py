"""In-memory chain behaviour and the JSON-RPC client against a local node."""

import asyncio
import dataclasses

import aiohttp
import pytest
from aiohttp import test_utils, web
from web3 import Web3
from web3.exceptions import (
    ContractCustomError,
    ContractLogicError,
    ProviderConnectionError,
    TransactionNotFound,
    Web3RPCError,
)

from x402_settlement.errors import ErrorReason, LedgerUnavailable, SubmissionFailed, reason_from_revert
from x402_settlement.ledger import (
    GATE_ABI,
    ExecuteTransferCall,
    TransactionRequest,
    Web3Ledger,
)
from x402_settlement.ledger.web3_ledger import ERROR_SELECTORS

from conftest import ATTACKER, CHAIN_ID, FACILITATOR, OWNER, PAYEE, PAYER, PAYER_BALANCE, TOKEN

GATE_ADDRESS = "0x5FbDB2315678afecb367f032d93F642f64180aa3"
FACILITATOR_KEY = "0x" + "33" * 32


@pytest.fixture
def request_for(gate, make_authorization, sign):
    def _make(sequence, priority_fee=1_000, target=None):
        target = target or gate
        auth = make_authorization()
        return TransactionRequest(
            sender=FACILITATOR.address,
            gate=target.address,
            sequence=sequence,
            priority_fee=priority_fee,
            call=ExecuteTransferCall(
                token=TOKEN, authorization=auth, signature=sign(auth, domain=target.domain)
            ),
        )

    return _make


async def test_automine_produces_receipt(ledger, gate, request_for):
    tx_hash = await ledger.broadcast(request_for(0))

    receipt = await ledger.get_receipt(tx_hash)
    assert receipt.success
    assert receipt.block_number == 1
    assert receipt.event.token == TOKEN
    assert not await ledger.is_pending(tx_hash)
    assert await ledger.get_pending_sequence(FACILITATOR.address) == 1


async def test_sequence_gap_waits(ledger, gate, request_for):
    ledger.automine = False
    later = await ledger.broadcast(request_for(1))
    ledger.mine()
    assert await ledger.get_receipt(later) is None
    assert await ledger.is_pending(later)

    first = await ledger.broadcast(request_for(0))
    assert ledger.mine() == 2
    assert (await ledger.get_receipt(first)).success
    assert (await ledger.get_receipt(later)).success


async def test_used_sequence_rejected(ledger, gate, request_for):
    await ledger.broadcast(request_for(0))
    with pytest.raises(SubmissionFailed, match="nonce too low"):
        await ledger.broadcast(request_for(0))


async def test_replacement_must_pay_more(ledger, gate, request_for):
    ledger.automine = False
    original = request_for(0, priority_fee=100)
    await ledger.broadcast(original)

    with pytest.raises(SubmissionFailed, match="underpriced"):
        await ledger.broadcast(dataclasses.replace(original, priority_fee=109))
    replacement = await ledger.broadcast(dataclasses.replace(original, priority_fee=110))

    ledger.mine()
    assert (await ledger.get_receipt(replacement)).success


async def test_underpriced_transaction_is_not_mined(ledger, gate, request_for):
    ledger.min_priority_fee = 500
    tx_hash = await ledger.broadcast(request_for(0, priority_fee=499))
    assert await ledger.get_receipt(tx_hash) is None
    assert await ledger.is_pending(tx_hash)


async def test_block_timestamp_advances_with_blocks(ledger, gate):
    before = await ledger.get_block_timestamp()
    ledger.mine()
    assert await ledger.get_block_timestamp() == before + ledger.block_time
    assert await ledger.get_block_number() == 1


async def test_fail_next(ledger, gate):
    ledger.fail_next(2)
    for _ in range(2):
        with pytest.raises(LedgerUnavailable):
            await ledger.is_paused()
    assert await ledger.is_paused() is False


@pytest.fixture
def second_gate(ledger, gate):
    other = ledger.deploy_gate(OWNER.address)
    other.set_whitelist(OWNER.address, TOKEN, True)
    ledger.tokens.approve(TOKEN, PAYER.address, other.address, PAYER_BALANCE)
    return other


async def test_transactions_run_on_the_gate_they_address(ledger, gate, second_gate, request_for):
    first = request_for(0)
    second = request_for(1, target=second_gate)

    first_receipt = await ledger.get_receipt(await ledger.broadcast(first))
    second_receipt = await ledger.get_receipt(await ledger.broadcast(second))

    assert first_receipt.success and second_receipt.success
    assert gate.is_nonce_used(first.call.authorization.nonce)
    assert not second_gate.is_nonce_used(first.call.authorization.nonce)
    assert second_gate.is_nonce_used(second.call.authorization.nonce)
    assert not gate.is_nonce_used(second.call.authorization.nonce)
    # Views keep reading the first deployment
    assert ledger.gate is gate
    assert ledger.gate_address == gate.address
    assert ledger.get_gate(second_gate.address) is second_gate


async def test_transaction_to_unknown_gate_reverts(ledger, gate, request_for):
    request = dataclasses.replace(request_for(0), gate=PAYEE)

    receipt = await ledger.get_receipt(await ledger.broadcast(request))

    assert not receipt.success
    assert receipt.error_reason == ErrorReason.TRANSFER_FAILED
    assert not gate.is_nonce_used(request.call.authorization.nonce)
    assert await ledger.get_pending_sequence(FACILITATOR.address) == 1


async def test_evict_drops_pending_transaction(ledger, gate, request_for):
    ledger.automine = False
    first = await ledger.broadcast(request_for(0))
    second = await ledger.broadcast(request_for(1))

    assert ledger.evict(first) == 1
    assert not await ledger.is_pending(first)
    assert await ledger.is_pending(second)
    assert await ledger.get_pending_sequence(FACILITATOR.address) == 0
    assert ledger.mine() == 0

    assert ledger.evict() == 1
    assert ledger.evict(second) == 0


def test_gate_property_requires_deployment(ledger):
    with pytest.raises(RuntimeError):
        ledger.gate


# ------------------------------------------------------------
# Web3Ledger
# ------------------------------------------------------------


def test_error_selectors_match_custom_errors():
    selector = "0x" + bytes(Web3.keccak(text="NonceAlreadyUsed()"))[:4].hex()
    assert ERROR_SELECTORS[selector] == "NonceAlreadyUsed"
    assert reason_from_revert(ERROR_SELECTORS[selector]) == ErrorReason.NONCE_ALREADY_USED
    assert reason_from_revert("ERC20InsufficientAllowance") == ErrorReason.TRANSFER_FAILED
    assert reason_from_revert(None) == ErrorReason.TRANSFER_FAILED


def test_gate_abi_declares_execute_transfer():
    execute = next(e for e in GATE_ABI if e.get("name") == "executeTransfer")
    assert [i["type"] for i in execute["inputs"]] == ["address", "tuple", "bytes"]
    errors = {e["name"] for e in GATE_ABI if e["type"] == "error"}
    assert {"InvalidSignature", "ContractPaused", "TokenNotWhitelisted"} <= errors


async def test_web3_ledger_refuses_foreign_sender(request_for):
    ledger = Web3Ledger("http://127.0.0.1:8545", FACILITATOR_KEY, GATE_ADDRESS, CHAIN_ID)
    foreign = dataclasses.replace(request_for(0), sender=ATTACKER.address)

    with pytest.raises(SubmissionFailed, match="cannot sign"):
        await ledger.broadcast(foreign)
    assert ledger.account.address == FACILITATOR.address


async def test_web3_ledger_refuses_other_gate(request_for):
    ledger = Web3Ledger("http://127.0.0.1:8545", FACILITATOR_KEY, GATE_ADDRESS, CHAIN_ID)
    request = request_for(0)
    assert request.gate != GATE_ADDRESS

    with pytest.raises(SubmissionFailed, match="not bound to gate"):
        await ledger.broadcast(request)


# ------------------------------------------------------------
# Web3Ledger error mapping
# ------------------------------------------------------------


@pytest.fixture
def web3_ledger():
    return Web3Ledger("http://127.0.0.1:8545", FACILITATOR_KEY, GATE_ADDRESS, CHAIN_ID)


async def _fail_with(error):
    raise error


@pytest.mark.parametrize(
    "error",
    [
        aiohttp.ClientConnectionError("connection reset by peer"),
        aiohttp.ServerDisconnectedError(),
        ConnectionRefusedError("connection refused"),
        asyncio.TimeoutError(),
        ProviderConnectionError("no connection to node"),
        Web3RPCError("{'code': -32000, 'message': 'header not found'}"),
    ],
    ids=["client", "disconnect", "refused", "timeout", "provider", "rpc"],
)
async def test_node_failures_become_ledger_unavailable(web3_ledger, error):
    with pytest.raises(LedgerUnavailable) as excinfo:
        await web3_ledger._rpc(_fail_with(error))
    assert excinfo.value.__cause__ is error


@pytest.mark.parametrize(
    "error",
    [
        ContractLogicError("execution reverted"),
        ContractCustomError("0x12345678", data="0x12345678"),
        TransactionNotFound("transaction not found"),
    ],
    ids=["revert", "custom-error", "not-found"],
)
async def test_contract_errors_are_not_outages(web3_ledger, error):
    with pytest.raises(type(error)):
        await web3_ledger._rpc(_fail_with(error))


async def test_rejected_broadcast_is_not_an_outage(web3_ledger):
    rejection = Web3RPCError("{'code': -32000, 'message': 'nonce too low'}")
    with pytest.raises(Web3RPCError):
        await web3_ledger._rpc(_fail_with(rejection), node_errors_transient=False)


class StubNode:
    """Minimal JSON-RPC endpoint answering from a method -> reply table."""

    def __init__(self):
        self.status = 200
        self.replies = {"eth_chainId": {"result": hex(CHAIN_ID)}}
        self.methods = []
        self.url = None

    async def handle(self, request):
        body = await request.json()
        self.methods.append(body["method"])
        if self.status != 200:
            return web.Response(status=self.status, text="upstream unavailable")
        reply = self.replies.get(
            body["method"], {"error": {"code": -32601, "message": "method not found"}}
        )
        return web.json_response({"jsonrpc": "2.0", "id": body["id"], **reply})


@pytest.fixture
async def node():
    stub = StubNode()
    app = web.Application()
    app.router.add_post("/", stub.handle)
    server = test_utils.TestServer(app)
    await server.start_server()
    stub.url = str(server.make_url("/"))
    yield stub
    await server.close()


@pytest.fixture
async def node_ledger(node):
    ledger = Web3Ledger(node.url, FACILITATOR_KEY, GATE_ADDRESS, CHAIN_ID)
    yield ledger
    await ledger.w3.provider.disconnect()


async def test_node_answers_block_number(node, node_ledger):
    node.replies["eth_blockNumber"] = {"result": "0x2a"}
    assert await node_ledger.get_block_number() == 42


async def test_http_error_status_is_ledger_unavailable(node, node_ledger):
    node.status = 503
    with pytest.raises(LedgerUnavailable):
        await node_ledger.is_paused()


async def test_json_rpc_error_is_ledger_unavailable(node, node_ledger):
    node.replies["eth_blockNumber"] = {"error": {"code": -32000, "message": "header not found"}}
    with pytest.raises(LedgerUnavailable):
        await node_ledger.get_block_number()
    assert node.methods == ["eth_blockNumber"]


async def test_unreachable_node_is_ledger_unavailable(unused_tcp_port):
    ledger = Web3Ledger(
        f"http://127.0.0.1:{unused_tcp_port}/", FACILITATOR_KEY, GATE_ADDRESS, CHAIN_ID
    )
    try:
        with pytest.raises(LedgerUnavailable):
            await ledger.get_block_number()
    finally:
        await ledger.w3.provider.disconnect()


async def test_contract_revert_from_node_passes_through(node, node_ledger):
    paused = next(s for s, name in ERROR_SELECTORS.items() if name == "ContractPaused")
    node.replies["eth_call"] = {
        "error": {"code": 3, "message": "execution reverted", "data": paused}
    }
    with pytest.raises(ContractCustomError):
        await node_ledger.is_paused()


# ------------------------------------------------------------
# Web3Ledger revert decoding
# ------------------------------------------------------------


async def test_revert_is_replayed_in_its_block(web3_ledger, monkeypatch):
    paused = next(s for s, name in ERROR_SELECTORS.items() if name == "ContractPaused")
    replayed_at = []

    async def get_transaction_receipt(tx_hash):
        return {"blockNumber": 7, "status": 0}

    async def get_transaction(tx_hash):
        return {"from": FACILITATOR.address, "to": GATE_ADDRESS, "input": "0x", "gas": 200000}

    async def call(transaction, block_identifier=None):
        replayed_at.append(block_identifier)
        raise ContractCustomError(paused, data=paused)

    monkeypatch.setattr(web3_ledger.w3.eth, "get_transaction_receipt", get_transaction_receipt)
    monkeypatch.setattr(web3_ledger.w3.eth, "get_transaction", get_transaction)
    monkeypatch.setattr(web3_ledger.w3.eth, "call", call)

    receipt = await web3_ledger.get_receipt("0x" + "ab" * 32)

    assert not receipt.success
    assert receipt.block_number == 7
    assert receipt.error_reason == ErrorReason.CONTRACT_PAUSED
    assert receipt.error_message == "ContractPaused"
    assert replayed_at == [7]


async def test_revert_that_replays_cleanly_is_transfer_failed(web3_ledger, monkeypatch):
    async def get_transaction_receipt(tx_hash):
        return {"blockNumber": 7, "status": 0}

    async def get_transaction(tx_hash):
        return {"from": FACILITATOR.address, "to": GATE_ADDRESS, "input": "0x", "gas": 200000}

    async def call(transaction, block_identifier=None):
        return b""

    monkeypatch.setattr(web3_ledger.w3.eth, "get_transaction_receipt", get_transaction_receipt)
    monkeypatch.setattr(web3_ledger.w3.eth, "get_transaction", get_transaction)
    monkeypatch.setattr(web3_ledger.w3.eth, "call", call)

    receipt = await web3_ledger.get_receipt("0x" + "ab" * 32)

    assert receipt.error_reason == ErrorReason.TRANSFER_FAILED
