"""Retry decisions and backoff arithmetic for candidate attempts."""

from __future__ import annotations

import asyncio
from typing import Annotated, Any, List, Optional, Protocol

from pydantic import BaseModel, ConfigDict, Field, conint, constr
from pydantic.alias_generators import to_camel

DEFAULT_RETRYABLE_STATUS_CODES = [408, 425, 429, 500, 502, 503, 504]
DEFAULT_RETRYABLE_ERROR_CODES = ["DOWNSTREAM_ERROR", "PAYMENT_NOT_FOUND"]


class AttemptLike(Protocol):
    ok: bool
    status_code: int
    response: Any


class RetryPolicy(BaseModel):
    """Resolved retry policy applied to every candidate of a step."""

    max_retries: int = Field(default=1, ge=0)
    backoff_ms: int = Field(default=250, ge=0)
    backoff_multiplier: float = Field(default=2, ge=1)
    max_backoff_ms: int = Field(default=2_000, ge=0)
    retryable_status_codes: List[int] = Field(
        default_factory=lambda: list(DEFAULT_RETRYABLE_STATUS_CODES)
    )
    retryable_error_codes: List[str] = Field(
        default_factory=lambda: list(DEFAULT_RETRYABLE_ERROR_CODES)
    )


class RetryPolicyOverride(BaseModel):
    """Per-step override; unset fields fall back to the defaults."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    max_retries: Optional[int] = Field(default=None, ge=0, le=5)
    backoff_ms: Optional[int] = Field(default=None, ge=0, le=10_000)
    backoff_multiplier: Optional[float] = Field(default=None, ge=1, le=10)
    max_backoff_ms: Optional[int] = Field(default=None, ge=0, le=60_000)
    retryable_status_codes: Optional[
        Annotated[List[conint(ge=100, le=599)], Field(max_length=20)]
    ] = None
    retryable_error_codes: Optional[
        Annotated[List[constr(min_length=1, max_length=128)], Field(max_length=20)]
    ] = None


def build_retry_policy(override: Optional[RetryPolicyOverride] = None) -> RetryPolicy:
    """Merge ``override`` onto the default policy."""
    if override is None:
        return RetryPolicy()
    return RetryPolicy(**override.model_dump(exclude_none=True))


def get_error_code(response: Any) -> Optional[str]:
    """Extract ``response["error"]["code"]`` when it is a string."""
    if not isinstance(response, dict):
        return None
    error = response.get("error")
    if not isinstance(error, dict):
        return None
    code = error.get("code")
    return code if isinstance(code, str) else None


def should_retry(attempt: AttemptLike, retries_so_far: int, policy: RetryPolicy) -> bool:
    """Decide whether a failed attempt is retried on the same candidate."""
    if attempt.ok:
        return False
    if retries_so_far >= policy.max_retries:
        return False
    if attempt.status_code in policy.retryable_status_codes:
        return True
    error_code = get_error_code(attempt.response)
    return error_code is not None and error_code in policy.retryable_error_codes


def compute_backoff(policy: RetryPolicy, retry_attempt_number: int) -> int:
    """Capped exponential backoff in milliseconds, without jitter.

    ``retry_attempt_number`` is 1 for the first retry.
    """
    exponent = max(0, retry_attempt_number - 1)
    delay = round(policy.backoff_ms * policy.backoff_multiplier**exponent)
    return min(policy.max_backoff_ms, max(0, delay))


async def sleep_ms(delay_ms: int) -> None:
    """Sleep for ``delay_ms`` milliseconds."""
    if delay_ms <= 0:
        return
    await asyncio.sleep(delay_ms / 1000)
