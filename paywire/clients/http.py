"""HTTP client for the gateway's execute endpoint."""

from __future__ import annotations

import logging
from typing import Any, Dict, Optional

import httpx

from ..contracts import ExecuteResult
from .base import BaseExecuteClient

logger = logging.getLogger(__name__)

EXECUTE_PATH = "/v1/payments/execute"


class HttpExecuteClient(BaseExecuteClient):
    """Execute attempts by POSTing to the payments execute endpoint."""

    def __init__(
        self,
        base_url: str = "http://localhost:3000",
        timeout: float = 30.0,
        api_key: Optional[str] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.api_key = api_key
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None

    async def connect(self) -> None:
        headers = {"x-internal-api-key": self.api_key} if self.api_key else None
        self._client = httpx.AsyncClient(
            base_url=self.base_url,
            timeout=self.timeout,
            headers=headers,
            transport=self._transport,
        )

    async def disconnect(self) -> None:
        if self._client:
            await self._client.aclose()
            self._client = None

    async def execute(
        self,
        service_id: str,
        request_id: str,
        payment_proof: str,
        payload: Dict[str, Any],
    ) -> ExecuteResult:
        if not self._client:
            await self.connect()

        body = {
            "serviceId": service_id,
            "requestId": request_id,
            "paymentTxHash": payment_proof,
            "payload": payload,
        }
        try:
            response = await self._client.post(EXECUTE_PATH, json=body)
        except httpx.TimeoutException as e:
            logger.warning(f"Execute call timed out for request_id={request_id}: {e}")
            return ExecuteResult(
                ok=False,
                status_code=504,
                response={
                    "error": {
                        "code": "DOWNSTREAM_TIMEOUT",
                        "message": f"Execute call timed out after {self.timeout}s",
                    }
                },
            )
        except httpx.HTTPError as e:
            logger.warning(f"Execute call failed for request_id={request_id}: {e}")
            return ExecuteResult(
                ok=False,
                status_code=503,
                response={"message": f"Orchestrator execute call failed: {e}"},
            )

        try:
            parsed = response.json()
        except ValueError:
            parsed = {}
        return ExecuteResult(
            ok=response.is_success,
            status_code=response.status_code,
            response=parsed,
        )
