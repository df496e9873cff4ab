"""
HTTP client for an x402 facilitator.

Resource servers use this to check and settle payments they received.

Example:
    >>> from x402_settlement.client import FacilitatorClient
    >>>
    >>> async with FacilitatorClient("http://localhost:4022") as client:
    ...     verification = await client.verify(payload, requirements)
    ...     if verification.is_valid:
    ...         settlement = await client.settle(payload, requirements)
    ...         if settlement.error_reason == ErrorReason.CONFIRMATION_TIMEOUT:
    ...             status = await client.transaction_status(settlement.transaction)
"""

from typing import Any, Optional

import httpx

from x402_settlement.models import (
    PaymentPayload,
    PaymentRequirements,
    SettleResult,
    SupportedResponse,
    TransactionStatus,
    VerifyResult,
)


class FacilitatorClient:
    """
    Client for the facilitator's HTTP API.

    Args:
        base_url: Base URL of the facilitator
        api_key: Optional bearer token
        timeout: Request timeout in seconds; settle may block until confirmation
        transport: Custom httpx transport (e.g. ``httpx.ASGITransport`` in tests)
    """

    def __init__(
        self,
        base_url: str = "http://localhost:4022",
        api_key: Optional[str] = None,
        timeout: float = 150.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.timeout = timeout
        self._client = httpx.AsyncClient(
            base_url=self.base_url, timeout=timeout, transport=transport
        )

    async def __aenter__(self) -> "FacilitatorClient":
        return self

    async def __aexit__(self, *args: Any) -> None:
        await self._client.aclose()

    async def aclose(self) -> None:
        await self._client.aclose()

    def _get_headers(self) -> dict[str, str]:
        """Get request headers."""
        headers = {
            "Content-Type": "application/json",
            "Accept": "application/json",
        }
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        return headers

    @staticmethod
    def _body(payload: PaymentPayload, requirements: PaymentRequirements) -> dict[str, Any]:
        return {
            "x402Version": payload.x402_version,
            "paymentPayload": payload.model_dump(by_alias=True, mode="json"),
            "paymentRequirements": requirements.model_dump(
                by_alias=True, mode="json", exclude_none=True
            ),
        }

    async def verify(
        self, payload: PaymentPayload, requirements: PaymentRequirements
    ) -> VerifyResult:
        """
        Verify a payment without settling it.

        Raises:
            httpx.HTTPStatusError: If the request fails
        """
        response = await self._client.post(
            "/verify", json=self._body(payload, requirements), headers=self._get_headers()
        )
        response.raise_for_status()
        return VerifyResult.model_validate(response.json())

    async def settle(
        self, payload: PaymentPayload, requirements: PaymentRequirements
    ) -> SettleResult:
        """
        Settle a payment on-chain.

        Raises:
            httpx.HTTPStatusError: If the request fails
        """
        response = await self._client.post(
            "/settle", json=self._body(payload, requirements), headers=self._get_headers()
        )
        response.raise_for_status()
        return SettleResult.model_validate(response.json())

    async def transaction_status(self, transaction_hash: str) -> TransactionStatus:
        """
        Re-query a settlement transaction.

        Raises:
            httpx.HTTPStatusError: If the request fails
        """
        response = await self._client.get(
            f"/transactions/{transaction_hash}", headers=self._get_headers()
        )
        response.raise_for_status()
        return TransactionStatus.model_validate(response.json())

    async def supported(self) -> SupportedResponse:
        response = await self._client.get("/supported", headers=self._get_headers())
        response.raise_for_status()
        return SupportedResponse.model_validate(response.json())

    async def health_check(self) -> bool:
        """
        Check facilitator health.

        Returns:
            True if healthy
        """
        try:
            response = await self._client.get("/health")
            return response.is_success
        except httpx.HTTPError:
            return False
