"""Shared fixtures: fixed accounts, an in-memory ledger with a deployed gate, and payment factories."""

import asyncio

import pytest
from eth_account import Account

from x402_settlement.codec import random_nonce, sign_authorization
from x402_settlement.config import FacilitatorSettings
from x402_settlement.facilitator import FacilitatorService
from x402_settlement.ledger import InMemoryLedger
from x402_settlement.models import (
    Authorization,
    ExactPayload,
    PaymentPayload,
    PaymentRequirements,
    caip2_network,
)
from x402_settlement.submission import RetryPolicy

CHAIN_ID = 31337
START_TIMESTAMP = 1_700_000_000

PAYER = Account.from_key("0x" + "11" * 32)
OWNER = Account.from_key("0x" + "22" * 32)
FACILITATOR = Account.from_key("0x" + "33" * 32)
ATTACKER = Account.from_key("0x" + "44" * 32)
PAYEE = Account.from_key("0x" + "55" * 32).address

TOKEN = "0x833589fCD6eDb6E08f4c7C32D4f71b54bdA02913"
OTHER_TOKEN = "0x036CbD53842c5426634e7929541eC2318f3dCF7e"

PAYER_BALANCE = 100 * 10**18
AMOUNT = 1_000_000

FAST_RETRY = RetryPolicy(max_attempts=3, initial_backoff=0.001, max_backoff=0.01)


async def mine_forever(ledger: InMemoryLedger, interval: float = 0.01) -> None:
    """Background miner for ledgers with automine disabled."""
    while True:
        ledger.mine()
        await asyncio.sleep(interval)


@pytest.fixture
def ledger():
    return InMemoryLedger(chain_id=CHAIN_ID, start_timestamp=START_TIMESTAMP)


@pytest.fixture
def gate(ledger):
    """Gate owned by OWNER, TOKEN whitelisted, PAYER funded and approved."""
    gate = ledger.deploy_gate(OWNER.address)
    gate.set_whitelist(OWNER.address, TOKEN, True)
    ledger.tokens.mint(TOKEN, PAYER.address, PAYER_BALANCE)
    ledger.tokens.approve(TOKEN, PAYER.address, gate.address, PAYER_BALANCE)
    return gate


@pytest.fixture
def make_authorization(ledger):
    def _make(**overrides):
        fields = {
            "from_address": PAYER.address,
            "to": PAYEE,
            "value": AMOUNT,
            "valid_after": ledger.timestamp - 60,
            "valid_before": ledger.timestamp + 3600,
            "nonce": random_nonce(),
        }
        fields.update(overrides)
        return Authorization(**fields)

    return _make


@pytest.fixture
def sign(gate):
    def _sign(authorization, key=PAYER.key, domain=None):
        return sign_authorization(authorization, domain or gate.domain, key)

    return _sign


@pytest.fixture
def make_payment(make_authorization, sign):
    """Build a (PaymentPayload, PaymentRequirements) pair that pays AMOUNT of TOKEN to PAYEE."""

    def _make(authorization=None, signature=None, token=TOKEN, **requirement_overrides):
        authorization = authorization or make_authorization()
        signature = signature or sign(authorization)
        payload = PaymentPayload(
            network=caip2_network(CHAIN_ID),
            payload=ExactPayload(token=token, authorization=authorization, signature=signature),
        )
        requirement_fields = {
            "network": caip2_network(CHAIN_ID),
            "asset": TOKEN,
            "pay_to": PAYEE,
            "max_amount_required": AMOUNT,
        }
        requirement_fields.update(requirement_overrides)
        return payload, PaymentRequirements(**requirement_fields)

    return _make


@pytest.fixture
def settings():
    return FacilitatorSettings(
        ledger="memory",
        chain_id=CHAIN_ID,
        poll_interval=0.01,
        confirmation_timeout=2.0,
        stall_blocks=1,
        retry_attempts=3,
        retry_initial_backoff=0.001,
        retry_max_backoff=0.01,
    )


@pytest.fixture
async def service(ledger, gate, settings):
    service = FacilitatorService.for_ledger(ledger, FACILITATOR.address, settings=settings)
    await service.start()
    yield service
    await service.aclose()
