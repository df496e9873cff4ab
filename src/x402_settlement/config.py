"""
Facilitator configuration.

All environment variables are namespaced with ``X402_`` and validated at
startup. A ``.env`` file in the working directory is read as well.

Environment variables:
    X402_LEDGER: ``web3`` (default) or ``memory`` for a local simulated chain
    X402_RPC_URL: JSON-RPC endpoint
    X402_PRIVATE_KEY: Facilitator account key (pays gas)
    X402_GATE_ADDRESS: Deployed gate contract
    X402_CHAIN_ID: Chain id of the gate
    X402_DOMAIN_NAME / X402_DOMAIN_VERSION: EIP-712 domain of the gate
"""

from functools import lru_cache
from typing import Literal, Optional

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings

from x402_settlement.gate import DEFAULT_GATE_NAME, DEFAULT_GATE_VERSION
from x402_settlement.models import Domain, checksum
from x402_settlement.submission import MIN_FEE_BUMP_PERCENT, RetryPolicy


class FacilitatorSettings(BaseSettings):
    """Validated facilitator settings with env-var + .env support."""

    ledger: Literal["web3", "memory"] = Field(
        default="web3",
        description="Ledger backend: a JSON-RPC node or the in-memory simulator.",
    )
    rpc_url: str = Field(default="http://localhost:8545", description="JSON-RPC endpoint.")
    private_key: Optional[str] = Field(default=None, description="Facilitator account key.")
    gate_address: Optional[str] = Field(default=None, description="Gate contract address.")
    chain_id: int = Field(default=31337, ge=0, description="Chain id of the gate.")
    domain_name: str = Field(default=DEFAULT_GATE_NAME, description="EIP-712 domain name.")
    domain_version: str = Field(default=DEFAULT_GATE_VERSION, description="EIP-712 domain version.")

    confirmation_timeout: float = Field(
        default=120.0,
        gt=0,
        description="Seconds settle waits for a receipt before reporting confirmation_timeout.",
    )
    poll_interval: float = Field(default=1.0, gt=0, description="Seconds between receipt polls.")
    stall_blocks: int = Field(default=3, ge=1, description="Blocks without inclusion before a fee bump.")
    fee_bump_percent: int = Field(default=20, ge=MIN_FEE_BUMP_PERCENT, le=500)
    max_fee_bumps: int = Field(default=3, ge=0)
    gas_limit: int = Field(default=200000, gt=21000)

    retry_attempts: int = Field(default=5, ge=1, description="Attempts per RPC call before giving up.")
    retry_initial_backoff: float = Field(default=0.5, gt=0)
    retry_max_backoff: float = Field(default=8.0, gt=0)

    check_balance: bool = Field(default=True, description="Reject payers whose balance is too low.")

    host: str = Field(default="0.0.0.0")
    port: int = Field(default=4022, ge=1, le=65535)
    log_level: str = Field(default="INFO", description="Python logging level.")

    model_config = {
        "env_prefix": "X402_",
        "env_file": ".env",
        "env_file_encoding": "utf-8",
        "extra": "ignore",
    }

    @field_validator("gate_address")
    @classmethod
    def _checksum_gate(cls, v: Optional[str]) -> Optional[str]:
        return checksum(v) if v else v

    @field_validator("log_level")
    @classmethod
    def _upper_level(cls, v: str) -> str:
        return v.upper()

    def domain(self, gate_address: Optional[str] = None) -> Domain:
        """EIP-712 domain of the configured gate."""
        verifying_contract = gate_address or self.gate_address
        if not verifying_contract:
            raise ValueError("X402_GATE_ADDRESS is not set")
        return Domain(
            name=self.domain_name,
            version=self.domain_version,
            chain_id=self.chain_id,
            verifying_contract=verifying_contract,
        )

    def retry_policy(self) -> RetryPolicy:
        return RetryPolicy(
            max_attempts=self.retry_attempts,
            initial_backoff=self.retry_initial_backoff,
            max_backoff=self.retry_max_backoff,
        )


@lru_cache(maxsize=1)
def get_settings() -> FacilitatorSettings:
    """Process-wide settings, read once."""
    return FacilitatorSettings()
