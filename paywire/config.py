from __future__ import annotations

import os
from typing import Optional

import yaml
from pydantic import BaseModel, Field


class WorkerConfig(BaseModel):
    """Polling and lease settings for orchestrator workers."""

    poll_interval_ms: int = Field(default=500, ge=100)
    lease_timeout_ms: int = Field(default=300_000, gt=0)
    max_claim_attempts: int = Field(default=3, ge=1)
    release_delay_ms: int = Field(default=5_000, ge=0)


class ExecuteConfig(BaseModel):
    """Where and how candidate attempts are executed."""

    base_url: str = "http://localhost:3000"
    timeout_seconds: float = Field(default=30.0, gt=0)
    api_key: Optional[str] = None


class PaywireConfig(BaseModel):
    """Top-level configuration model."""

    worker: WorkerConfig = Field(default_factory=WorkerConfig)
    execute: ExecuteConfig = Field(default_factory=ExecuteConfig)
    database_url: Optional[str] = None


def load_config(path: Optional[str] = None) -> PaywireConfig:
    """Load configuration from YAML file.

    Args:
        path: Optional path to config file. Falls back to PAYWIRE_CONFIG env
            variable or 'config.yaml' in the current directory.
    """

    config_path = path or os.getenv("PAYWIRE_CONFIG", "config.yaml")
    if os.path.exists(config_path):
        with open(config_path) as f:
            data = yaml.safe_load(f) or {}
        config = PaywireConfig(**data)
    else:
        config = PaywireConfig()

    env_db_url = os.getenv("PAYWIRE_DATABASE_URL") or os.getenv("DATABASE_URL")
    if env_db_url:
        config.database_url = env_db_url
    env_execute_url = os.getenv("PAYWIRE_EXECUTE_URL")
    if env_execute_url:
        config.execute.base_url = env_execute_url
    env_api_key = os.getenv("PAYWIRE_EXECUTE_API_KEY")
    if env_api_key:
        config.execute.api_key = env_api_key
    return config
