"""
Loader configuration resolved once at construction.
"""

from __future__ import annotations

import os
import typing as t

import structlog
from pydantic import BaseModel, ConfigDict, Field, NonNegativeInt, PositiveInt, model_validator

log = structlog.get_logger(__name__)

MAX_CONCURRENCY_ENV_VAR = "KVLOADER_MAX_CONCURRENCY"
TIMEOUT_ENV_VAR = "KVLOADER_TIMEOUT_MS"
DEFAULT_TIMEOUT_MS = 30_000


def default_max_concurrency() -> int:
    """
    Compute the host-derived concurrency default.

    Returns
    -------
    int
        Twice the number of available CPUs.
    """
    return (os.cpu_count() or 1) * 2


class LoaderOptions(BaseModel):
    """
    Concurrency and timeout settings for a loader.

    Unset fields fall back to ``KVLOADER_MAX_CONCURRENCY`` and
    ``KVLOADER_TIMEOUT_MS``, then to the built-in defaults.
    """

    model_config = ConfigDict(frozen=True)

    max_concurrency: PositiveInt = Field(
        default_factory=default_max_concurrency,
        description="maximum number of batches loaded at the same time",
    )
    timeout: NonNegativeInt = Field(
        default=DEFAULT_TIMEOUT_MS,
        description="wall-clock budget for a whole run, in milliseconds",
    )
    name: str | None = Field(default=None, description="optional, loader name used in logs")

    @model_validator(mode="before")
    @classmethod
    def apply_environment(cls, data: t.Any) -> t.Any:
        if not isinstance(data, dict):
            return data
        data = {key: value for key, value in data.items() if value is not None}
        env_concurrency = os.getenv(MAX_CONCURRENCY_ENV_VAR)
        if "max_concurrency" not in data and env_concurrency:
            data["max_concurrency"] = env_concurrency
            log.debug(
                event="Loader option read from environment",
                option="max_concurrency",
                env_var=MAX_CONCURRENCY_ENV_VAR,
            )
        env_timeout = os.getenv(TIMEOUT_ENV_VAR)
        if "timeout" not in data and env_timeout:
            data["timeout"] = env_timeout
            log.debug(
                event="Loader option read from environment",
                option="timeout",
                env_var=TIMEOUT_ENV_VAR,
            )
        return data

    @property
    def timeout_seconds(self) -> float:
        return self.timeout / 1000
