"""Exceptions raised at the submission and cancellation boundary."""

from __future__ import annotations

from typing import Any, Optional


class PaywireError(Exception):
    """Base class for paywire errors."""


class SubmissionInvalid(PaywireError, ValueError):
    """A run submission failed validation and was not enqueued."""

    def __init__(self, message: str, details: Optional[list[dict[str, Any]]] = None):
        super().__init__(message)
        self.details = details or []


class RunConflict(PaywireError):
    """The run already exists, or is already terminal when cancelled."""

    def __init__(self, run_id: str, status: Optional[str] = None, message: str = ""):
        super().__init__(message or f"Run {run_id} already exists")
        self.run_id = run_id
        self.status = status


class RunNotFound(PaywireError):
    """No run with the given id."""

    def __init__(self, run_id: str):
        super().__init__(f"Run {run_id} not found")
        self.run_id = run_id
