"""Environment-driven engine settings.

Every setting has a ``DATAHUB_*`` environment variable named after the
field (``batch_size`` -> ``DATAHUB_BATCH_SIZE``).  Variables are read
from the process environment after loading ``.env`` (python-dotenv never
overrides variables that are already set) and validated by pydantic.
"""

from __future__ import annotations

import os
from pathlib import Path
from typing import Any, Mapping

from dotenv import load_dotenv
from pydantic import BaseModel, Field, model_validator

from datahub.pipeline.resilience import (
    DEFAULT_FAILURE_THRESHOLD,
    DEFAULT_RESET_TIMEOUT,
    RetryPolicy,
)

ENV_PREFIX = "DATAHUB_"


class EngineSettings(BaseModel):
    """Process-wide engine configuration.

    Instances are immutable; use ``model_copy(update=...)`` to derive
    one with overrides.

    Raises:
        pydantic.ValidationError: If a setting is out of range or cannot
            be parsed.
    """

    model_config = {"frozen": True, "extra": "forbid"}

    checkpoint_dir: Path | None = Field(
        default=None,
        description="Directory for file checkpoints; in-memory when unset",
    )
    sweep_interval: float = Field(
        default=30.0,
        gt=0,
        description="Seconds between TIMEOUT-gate sweeps",
    )
    circuit_failure_threshold: int = Field(default=DEFAULT_FAILURE_THRESHOLD, ge=1)
    circuit_reset_timeout: float = Field(default=DEFAULT_RESET_TIMEOUT, gt=0)
    batch_size: int = Field(
        default=100,
        ge=1,
        description="Chunk size for delivery steps without their own",
    )
    retries: int = Field(default=3, ge=0)
    retry_delay: float = Field(default=1.0, ge=0)
    retry_max_delay: float = Field(default=30.0, ge=0)
    http_timeout: float = Field(default=30.0, gt=0)
    smtp_host: str | None = None
    smtp_port: int = Field(default=25, ge=1, le=65535)
    smtp_from: str = "datahub@localhost"
    server_host: str = "127.0.0.1"
    server_port: int = Field(
        default=8080,
        ge=0,
        le=65535,
        description="HTTP server port; 0 picks a free one",
    )
    allow_private_urls: bool = Field(
        default=False,
        description="Disable SSRF address checks for webhooks and notifications",
    )

    @model_validator(mode="after")
    def validate_retry_delays(self) -> EngineSettings:
        """Ensure the retry settings form a valid :class:`RetryPolicy`."""
        self.retry_policy()
        return self

    def retry_policy(self) -> RetryPolicy:
        return RetryPolicy(
            retries=self.retries,
            initial_delay=self.retry_delay,
            max_delay=self.retry_max_delay,
        )

    @classmethod
    def from_env(
        cls,
        env: Mapping[str, str] | None = None,
        dotenv_path: str | Path | None = ".env",
    ) -> EngineSettings:
        """Build settings from ``DATAHUB_*`` variables.

        Empty variables count as unset.

        Args:
            env: Variables to read instead of ``os.environ``; ``.env`` is
                not loaded when given.
            dotenv_path: File loaded into the environment first, or
                ``None`` to skip.

        Raises:
            pydantic.ValidationError: If a variable cannot be parsed or
                is out of range.
        """
        if env is None:
            if dotenv_path is not None:
                load_dotenv(dotenv_path)
            env = os.environ

        values: dict[str, Any] = {}
        for name in cls.model_fields:
            raw = env.get(ENV_PREFIX + name.upper())
            if raw not in (None, ""):
                values[name] = raw
        return cls(**values)
