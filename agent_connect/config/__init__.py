"""Configuration: settings, retry profiles and layered resolution."""

from agent_connect.config.resolve import RetryConfig
from agent_connect.config.retry_profile import RetryProfile, load_retry_profile
from agent_connect.config.settings import ConnectSettings

__all__ = [
    "ConnectSettings",
    "RetryConfig",
    "RetryProfile",
    "load_retry_profile",
]
