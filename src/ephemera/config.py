"""Process-level settings.

Values can be overridden through environment variables with the
``EPHEMERA_`` prefix, e.g. ``EPHEMERA_WAIT_TIMEOUT=120``.
"""

from functools import lru_cache

from pydantic import Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict
from typing_extensions import Self


class EphemeraSettings(BaseSettings):
    model_config = SettingsConfigDict(env_prefix="EPHEMERA_", frozen=True, extra="ignore")

    wait_timeout: float = Field(default=60.0, gt=0)
    """Default timeout in seconds for a single wait strategy."""

    wait_interval: float = Field(default=0.1, gt=0)
    """Delay before the second attempt of a wait strategy."""

    wait_max_interval: float = Field(default=2.0, gt=0)
    """Upper bound for the delay between two attempts."""

    wait_backoff_factor: float = Field(default=1.5, ge=1.0)
    """Multiplier applied to the delay after every failed attempt."""

    stop_timeout: int = Field(default=10, ge=0)
    """Seconds the runtime waits for a graceful stop before killing the container."""

    docker_endpoint: str | None = None
    """Docker daemon URL. Falls back to ``DOCKER_HOST`` and then the local socket."""

    @model_validator(mode="after")
    def validate_intervals(self) -> Self:
        if self.wait_max_interval < self.wait_interval:
            msg = "wait_max_interval must not be smaller than wait_interval"
            raise ValueError(msg)
        return self


@lru_cache(maxsize=1)
def get_settings() -> EphemeraSettings:
    return EphemeraSettings()
