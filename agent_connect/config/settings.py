"""Pydantic Settings for agent-connect.

All environment variables use the ALUVIA_ prefix.
Example: ALUVIA_MAX_RETRIES=3, ALUVIA_RETRY_ON="ECONNRESET,/net::ERR_.*/"
"""

from __future__ import annotations

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings

DEFAULT_RETRY_ON = "ECONNRESET,ETIMEDOUT,net::ERR,Timeout"


class ConnectSettings(BaseSettings):
    """Environment-level defaults for the retry orchestrators."""

    # Broker
    api_key: str | None = None
    api_url: str = "https://api.aluvia.io"
    broker_timeout_seconds: float = Field(default=10.0, gt=0)

    # Retry policy
    max_retries: int = Field(default=2, ge=0)
    backoff_ms: int = Field(default=300, ge=0)
    retry_on: str = DEFAULT_RETRY_ON  # comma separated; /.../ marks a regex

    # Navigation
    navigation_timeout_ms: int = Field(default=15000, ge=1)
    wait_until: str = "domcontentloaded"

    # Optional YAML retry profile layered over the environment
    profile_path: str | None = None

    log_level: str = "INFO"

    model_config = {"env_prefix": "ALUVIA_"}

    @field_validator("retry_on", mode="before")
    @classmethod
    def _join_pattern_list(cls, value: object) -> object:
        if isinstance(value, (list, tuple)):
            return ",".join(str(item) for item in value)
        return value

    def retry_on_values(self) -> list[str]:
        """Split ``retry_on`` into trimmed, non-empty entries."""
        return [item.strip() for item in self.retry_on.split(",") if item.strip()]
