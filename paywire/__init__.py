"""Paywire: durable multi-step orchestration of paid service calls."""

from .clients import get_client
from .contracts import Candidate, RunSubmission, StepSpec
from .dispatch import RunDispatcher
from .execute import StepExecutor
from .persistence import get_repository
from .utils.retry import RetryPolicy
from .worker import OrchestratorWorker

__version__ = "0.1.0"
__all__ = [
    "Candidate",
    "StepSpec",
    "RunSubmission",
    "RetryPolicy",
    "RunDispatcher",
    "StepExecutor",
    "OrchestratorWorker",
    "get_client",
    "get_repository",
]
