"""Layered configuration resolution for the retry orchestrators.

Resolution order, later layers win:

1. program defaults (``ConnectSettings`` field defaults)
2. environment (``ALUVIA_*`` variables)
3. retry profile YAML (``ALUVIA_PROFILE_PATH``)
4. call-site keyword overrides

Resolution happens once, when an orchestrator is constructed.
"""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional, Union

from agent_connect.config.retry_profile import load_retry_profile
from agent_connect.config.settings import ConnectSettings
from agent_connect.errors import MissingCredentialsError, MissingForwardingProxyError
from agent_connect.integration.broker_client import BrokerClient
from agent_connect.proxy.acquisition import ProxyAcquirer, ProxyObserver
from agent_connect.proxy.forwarder import ForwardingProxy
from agent_connect.proxy.types import ProxyProvider
from agent_connect.resilience.classifier import RetryClassifier, compile_retryable

RetryObserver = Callable[[int, int, Optional[BaseException]], Union[Awaitable[None], None]]


@dataclass
class RetryConfig:
    """Everything a retry sequence needs, fully resolved."""

    forwarding_proxy: ForwardingProxy
    acquirer: ProxyAcquirer
    classifier: RetryClassifier
    max_retries: int
    backoff_ms: int
    navigation_timeout_ms: int
    wait_until: str
    on_retry: Optional[RetryObserver] = None

    def navigation_options(self, options: dict[str, Any] | None = None) -> dict[str, Any]:
        """Caller options with the default timeout and wait condition filled in."""
        merged = dict(options or {})
        if merged.get("timeout") is None:
            merged["timeout"] = self.navigation_timeout_ms
        if merged.get("wait_until") is None:
            merged["wait_until"] = self.wait_until
        return merged

    @classmethod
    def resolve(
        cls,
        *,
        forwarding_proxy: ForwardingProxy | None,
        settings: ConnectSettings | None = None,
        max_retries: int | None = None,
        backoff_ms: int | None = None,
        retry_on: Iterable[Any] | None = None,
        navigation_timeout_ms: int | None = None,
        wait_until: str | None = None,
        proxy_provider: ProxyProvider | None = None,
        on_retry: Optional[RetryObserver] = None,
        on_proxy_loaded: Optional[ProxyObserver] = None,
    ) -> "RetryConfig":
        """Merge all configuration layers.

        Raises
        ------
        MissingForwardingProxyError
            If *forwarding_proxy* is ``None``.
        MissingCredentialsError
            If there is neither a *proxy_provider* nor a broker access token.
        ValueError
            If a call-site override is out of range.
        """
        if forwarding_proxy is None:
            raise MissingForwardingProxyError()

        settings = settings if settings is not None else ConnectSettings()
        profile = load_retry_profile(settings.profile_path)

        resolved_max_retries = _pick(max_retries, profile.max_retries, settings.max_retries)
        resolved_backoff_ms = _pick(backoff_ms, profile.backoff_ms, settings.backoff_ms)
        resolved_timeout = _pick(
            navigation_timeout_ms, profile.navigation_timeout_ms, settings.navigation_timeout_ms
        )
        if resolved_max_retries < 0:
            raise ValueError(f"max_retries must be >= 0, got {resolved_max_retries}")
        if resolved_backoff_ms < 0:
            raise ValueError(f"backoff_ms must be >= 0, got {resolved_backoff_ms}")
        if resolved_timeout < 1:
            raise ValueError(f"navigation_timeout_ms must be >= 1, got {resolved_timeout}")

        patterns = _pick(
            list(retry_on) if retry_on is not None else None,
            profile.retry_on,
            settings.retry_on_values(),
        )

        if proxy_provider is not None:
            source: ProxyProvider = proxy_provider
        elif settings.api_key:
            source = BrokerClient(
                settings.api_key,
                api_url=settings.api_url,
                timeout_seconds=settings.broker_timeout_seconds,
            )
        else:
            raise MissingCredentialsError()

        return cls(
            forwarding_proxy=forwarding_proxy,
            acquirer=ProxyAcquirer(source, on_proxy_loaded=on_proxy_loaded),
            classifier=compile_retryable(patterns),
            max_retries=resolved_max_retries,
            backoff_ms=resolved_backoff_ms,
            navigation_timeout_ms=resolved_timeout,
            wait_until=_pick(wait_until, profile.wait_until, settings.wait_until),
            on_retry=on_retry,
        )


def _pick(*values: Any) -> Any:
    """First value that is not ``None``."""
    for value in values:
        if value is not None:
            return value
    return None
