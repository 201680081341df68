"""In-process execute client."""

from __future__ import annotations

import logging
from typing import Any, Awaitable, Callable, Dict

from pydantic import BaseModel, Field

from ..contracts import ExecuteResult
from .base import BaseExecuteClient

logger = logging.getLogger(__name__)


class ExecuteRequest(BaseModel):
    service_id: str
    request_id: str
    payment_proof: str
    payload: Dict[str, Any] = Field(default_factory=dict)


ExecuteHandler = Callable[[ExecuteRequest], Awaitable[ExecuteResult]]


class InProcessExecuteClient(BaseExecuteClient):
    """Call an execute handler living in the same process.

    Exceptions raised by the handler are reported as a retryable
    ``DOWNSTREAM_ERROR`` attempt.
    """

    def __init__(self, handler: ExecuteHandler) -> None:
        self._handler = handler

    async def execute(
        self,
        service_id: str,
        request_id: str,
        payment_proof: str,
        payload: Dict[str, Any],
    ) -> ExecuteResult:
        request = ExecuteRequest(
            service_id=service_id,
            request_id=request_id,
            payment_proof=payment_proof,
            payload=payload,
        )
        try:
            return await self._handler(request)
        except Exception as e:
            logger.warning(f"Execute handler raised for request_id={request_id}: {e!r}")
            return ExecuteResult(
                ok=False,
                status_code=502,
                response={"error": {"code": "DOWNSTREAM_ERROR", "message": str(e)}},
            )
