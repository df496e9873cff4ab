"""
HTTP surface of the facilitator.

Endpoints:
    POST /verify                     payload + requirements -> VerifyResult
    POST /settle                     payload + requirements -> SettleResult
    GET  /supported                  scheme/network kinds and signer
    GET  /transactions/{tx_hash}     re-query a settlement transaction
    GET  /health                     liveness only

Protocol failures are 200 responses with ``isValid: false`` /
``success: false``; malformed bodies are 422 (FastAPI validation).

Run with:
    uvicorn x402_settlement.server:create_app --factory --port 4022
"""

import logging
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Optional

from eth_account import Account
from fastapi import FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse

from x402_settlement.config import FacilitatorSettings, get_settings
from x402_settlement.errors import InfrastructureError
from x402_settlement.facilitator import FacilitatorService
from x402_settlement.ledger import InMemoryLedger, Web3Ledger
from x402_settlement.logging_config import configure_logging
from x402_settlement.models import FacilitatorRequest

logger = logging.getLogger(__name__)


def build_service(settings: FacilitatorSettings) -> FacilitatorService:
    """
    Build the facilitator from settings.

    ``ledger="memory"`` starts a local simulated chain with a fresh gate owned
    by the facilitator account, which is handy for trying the API.
    """
    if settings.ledger == "memory":
        account = Account.from_key(settings.private_key) if settings.private_key else Account.create()
        ledger = InMemoryLedger(chain_id=settings.chain_id)
        ledger.deploy_gate(
            account.address, name=settings.domain_name, version=settings.domain_version
        )
        logger.info("In-memory ledger with gate %s", ledger.gate_address)
        return FacilitatorService.for_ledger(ledger, account.address, settings=settings)

    if not settings.private_key or not settings.gate_address:
        raise ValueError("X402_PRIVATE_KEY and X402_GATE_ADDRESS are required for the web3 ledger")
    web3_ledger = Web3Ledger(
        settings.rpc_url,
        settings.private_key,
        settings.gate_address,
        settings.chain_id,
        gas_limit=settings.gas_limit,
    )
    return FacilitatorService.for_ledger(
        web3_ledger, web3_ledger.account.address, settings=settings
    )


def create_app(service: Optional[FacilitatorService] = None) -> FastAPI:
    """
    Create the FastAPI app.

    Args:
        service: Facilitator to expose; built from environment settings if omitted
    """
    if service is None:
        settings = get_settings()
        configure_logging(settings.log_level)
        service = build_service(settings)

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        await service.start()
        try:
            yield
        finally:
            await service.aclose()

    app = FastAPI(
        title="x402 Facilitator",
        description="Verifies and settles x402 transfer authorizations on-chain",
        version="0.1.0",
        lifespan=lifespan,
    )
    app.state.facilitator = service

    @app.exception_handler(InfrastructureError)
    async def infrastructure_error(request: Request, exc: InfrastructureError) -> JSONResponse:
        logger.warning("Ledger unavailable on %s: %s", request.url.path, exc)
        return JSONResponse(
            status_code=503,
            content={"error": exc.reason.value, "message": exc.message},
        )

    @app.post("/verify")
    async def verify(body: FacilitatorRequest) -> dict[str, Any]:
        """Verify a payment against requirements without touching the ledger state."""
        result = await service.verify(body.payment_payload, body.payment_requirements)
        return result.model_dump(by_alias=True, mode="json")

    @app.post("/settle")
    async def settle(body: FacilitatorRequest) -> dict[str, Any]:
        """Settle a payment on-chain and report the outcome."""
        result = await service.settle(body.payment_payload, body.payment_requirements)
        return result.model_dump(by_alias=True, mode="json")

    @app.get("/supported")
    async def supported() -> dict[str, Any]:
        return service.supported().model_dump(by_alias=True, mode="json")

    @app.get("/transactions/{tx_hash}")
    async def transaction_status(tx_hash: str) -> dict[str, Any]:
        """Re-query a settlement transaction, e.g. after confirmation_timeout."""
        if not tx_hash.startswith("0x") or len(tx_hash) != 66:
            raise HTTPException(status_code=400, detail="invalid transaction hash")
        status = await service.transaction_status(tx_hash.lower())
        return status.model_dump(by_alias=True, mode="json")

    @app.get("/health")
    async def health() -> dict[str, str]:
        """Health check endpoint."""
        return {"status": "ok"}

    return app
