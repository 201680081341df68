"""Base interface for the execute capability."""

from __future__ import annotations

import abc
from typing import Any, Dict

from ..contracts import ExecuteResult


class BaseExecuteClient(metaclass=abc.ABCMeta):
    """Executes one candidate attempt: payment, policy checks and the downstream call."""

    async def connect(self) -> None:
        """Open underlying resources (no-op by default)."""
        pass

    async def disconnect(self) -> None:
        """Release underlying resources (no-op by default)."""
        pass

    @abc.abstractmethod
    async def execute(
        self,
        service_id: str,
        request_id: str,
        payment_proof: str,
        payload: Dict[str, Any],
    ) -> ExecuteResult:
        """Run one attempt against ``service_id``.

        Implementations report downstream failures through the returned
        result rather than raising.
        """
        raise NotImplementedError

    async def __aenter__(self) -> "BaseExecuteClient":
        await self.connect()
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.disconnect()
