"""Execute client factory and initialization."""

from __future__ import annotations

from typing import Optional

from ..config import PaywireConfig, load_config
from .base import BaseExecuteClient
from .http import HttpExecuteClient
from .inprocess import ExecuteHandler, ExecuteRequest, InProcessExecuteClient


def get_client(
    base_url: Optional[str] = None, config: Optional[PaywireConfig] = None
) -> BaseExecuteClient:
    """Factory function to get the configured execute client."""

    config = config or load_config()
    return HttpExecuteClient(
        base_url=base_url or config.execute.base_url,
        timeout=config.execute.timeout_seconds,
        api_key=config.execute.api_key,
    )


__all__ = [
    "BaseExecuteClient",
    "ExecuteHandler",
    "ExecuteRequest",
    "HttpExecuteClient",
    "InProcessExecuteClient",
    "get_client",
]
