"""Explicit retry orchestrator: ``await navigator.goto(url)``.

The first navigation runs with whatever upstream the forwarding proxy
currently holds. Retryable failures start a :class:`RetrySequence` that
rotates the upstream before every further attempt; the page object is never
replaced.
"""

from __future__ import annotations

import asyncio
import logging
import weakref
from dataclasses import dataclass
from typing import Any

from agent_connect.config.resolve import RetryConfig
from agent_connect.config.settings import ConnectSettings
from agent_connect.proxy.forwarder import ForwardingProxy
from agent_connect.services.retry_sequence import RetrySequence

logger = logging.getLogger(__name__)

# Contexts that already close the forwarding proxy on shutdown.
_hooked_contexts: "weakref.WeakSet[Any]" = weakref.WeakSet()

# Pending close tasks; the event loop only keeps weak references to tasks.
_close_tasks: "set[asyncio.Task[None]]" = set()


@dataclass
class NavigationResult:
    """Outcome of a successful ``goto``; ``page`` is the page passed to ``connect``."""

    response: Any
    page: Any


def register_close_hook(context: Any, proxy: ForwardingProxy) -> bool:
    """Close *proxy* when *context* closes. Returns ``False`` if already hooked."""
    if context is None or context in _hooked_contexts:
        return False
    _hooked_contexts.add(context)
    context.on("close", lambda *_: _schedule_close(proxy))
    return True


def _schedule_close(proxy: ForwardingProxy) -> None:
    task = asyncio.ensure_future(_close_proxy(proxy))
    _close_tasks.add(task)
    task.add_done_callback(_close_tasks.discard)


async def _close_proxy(proxy: ForwardingProxy) -> None:
    try:
        await proxy.close()
    except Exception:
        logger.warning("Failed to close forwarding proxy", exc_info=True)


class RetryingNavigator:
    """Navigates one page, retrying retryable failures through fresh proxies."""

    def __init__(self, page: Any, config: RetryConfig) -> None:
        self._page = page
        self._config = config

    @property
    def page(self) -> Any:
        return self._page

    @property
    def config(self) -> RetryConfig:
        return self._config

    async def goto(self, url: str, **options: Any) -> NavigationResult:
        """Navigate to *url*.

        Raises the original navigation error when it is not retryable or
        once ``max_retries`` retries have failed, and
        ``ProxyAcquisitionError`` when no fresh proxy can be obtained.
        """
        page = self._page
        register_close_hook(getattr(page, "context", None), self._config.forwarding_proxy)
        goto_options = self._config.navigation_options(options)

        async def navigate() -> Any:
            return await page.goto(url, **goto_options)

        try:
            response = await navigate()
        except Exception as exc:
            if not self._config.classifier(exc):
                raise
            logger.info(
                "Navigation to %s failed, retrying through a fresh proxy: %s",
                url,
                exc,
                extra={"target_url": url, "error_reason": str(exc)},
            )
            sequence = RetrySequence(self._config, should_abort=self._page_closed)
            response = await sequence.run(navigate, exc, target_url=url)

        return NavigationResult(response=response, page=page)

    def _page_closed(self) -> bool:
        is_closed = getattr(self._page, "is_closed", None)
        return bool(is_closed()) if callable(is_closed) else False


def connect(
    page: Any,
    *,
    forwarding_proxy: ForwardingProxy | None,
    settings: ConnectSettings | None = None,
    **overrides: Any,
) -> RetryingNavigator:
    """Wrap *page* in a :class:`RetryingNavigator`.

    *overrides* accepts ``max_retries``, ``backoff_ms``, ``retry_on``,
    ``navigation_timeout_ms``, ``wait_until``, ``proxy_provider``,
    ``on_retry`` and ``on_proxy_loaded``.
    """
    config = RetryConfig.resolve(
        forwarding_proxy=forwarding_proxy, settings=settings, **overrides
    )
    return RetryingNavigator(page, config)
