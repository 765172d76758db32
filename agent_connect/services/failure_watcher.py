"""Event-driven retry orchestrator for a whole ``BrowserContext``.

Every page of the context (existing and future) is subscribed to
``requestfailed``. A retryable failure of a document or frame request starts
one background :class:`RetrySequence` for that page that reloads it through
a fresh upstream proxy. Later failures on the same page are ignored while
that sequence runs.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any

from agent_connect.config.resolve import RetryConfig
from agent_connect.config.settings import ConnectSettings
from agent_connect.proxy.forwarder import ForwardingProxy
from agent_connect.resilience.classifier import FailureInfo
from agent_connect.services.retry_sequence import RetrySequence

logger = logging.getLogger(__name__)

NAVIGATION_RESOURCE_TYPES = frozenset({"document", "frame", "main_frame"})


class FailureWatcher:
    """Watches one context and reloads pages whose navigation failed.

    The tracked pages and the in-flight set belong to the watcher; callers
    only read them through :meth:`tracked_pages` and :meth:`is_retrying`.
    """

    def __init__(self, context: Any, config: RetryConfig) -> None:
        self._context = context
        self._config = config
        self._tracked: list[Any] = []
        self._in_flight: set[int] = set()
        self._tasks: set[asyncio.Task[None]] = set()
        self._attached = False
        self._context_closed = False
        self._proxy_closed = False

    @property
    def config(self) -> RetryConfig:
        return self._config

    def attach(self) -> "FailureWatcher":
        """Subscribe to the context. Safe to call more than once."""
        if self._attached:
            return self
        self._attached = True
        for page in list(getattr(self._context, "pages", None) or []):
            self._track(page)
        self._context.on("page", self._track)
        self._context.on("close", self._on_context_close)
        return self

    def tracked_pages(self) -> list[Any]:
        """Snapshot of every page seen so far, in the order they were seen."""
        return list(self._tracked)

    def is_retrying(self, page: Any) -> bool:
        return id(page) in self._in_flight

    async def wait_idle(self) -> None:
        """Wait until no retry sequence is running."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    # ------------------------------------------------------------------
    # Event handlers
    # ------------------------------------------------------------------

    def _track(self, page: Any) -> None:
        if any(tracked is page for tracked in self._tracked):
            return
        self._tracked.append(page)
        page.on("requestfailed", lambda request: self._on_request_failed(page, request))
        logger.debug("Tracking page %d (%d total)", id(page), len(self._tracked))

    def _on_request_failed(self, page: Any, request: Any) -> None:
        if self._context_closed:
            return
        if getattr(request, "resource_type", None) not in NAVIGATION_RESOURCE_TYPES:
            return
        if not self._config.classifier(request):
            logger.debug("Ignoring non-retryable failure for %s", getattr(request, "url", None))
            return

        key = id(page)
        if key in self._in_flight:
            return
        self._in_flight.add(key)

        task = asyncio.ensure_future(self._retry_page(page, request))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    def _on_context_close(self, *_: Any) -> None:
        self._context_closed = True
        if self._proxy_closed:
            return
        self._proxy_closed = True
        task = asyncio.ensure_future(self._close_proxy())
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    # ------------------------------------------------------------------
    # Retry
    # ------------------------------------------------------------------

    async def _retry_page(self, page: Any, request: Any) -> None:
        url = getattr(request, "url", None) or getattr(page, "url", None)
        options = self._config.navigation_options()
        reload = getattr(page, "reload", None)

        async def navigate() -> Any:
            if callable(reload):
                return await reload(**options)
            if not url:
                logger.warning("No URL to re-navigate page %d to", id(page))
                return None
            return await page.goto(url, **options)

        info = FailureInfo.from_failure(request)
        first_error = _FailedRequest(info.message if info else "", url)
        sequence = RetrySequence(self._config, should_abort=lambda: self._abandoned(page))
        try:
            await sequence.run(navigate, first_error, target_url=url)
            logger.info("Page recovered after %d retries: %s", sequence.attempts, url)
        except Exception as exc:
            if self._abandoned(page):
                logger.debug("Retry for %s abandoned: page or context closed", url)
            else:
                logger.warning(
                    "Retry sequence for %s failed: %s",
                    url,
                    exc,
                    extra={"target_url": url, "error_reason": str(exc)},
                )
        finally:
            self._in_flight.discard(id(page))

    def _abandoned(self, page: Any) -> bool:
        if self._context_closed:
            return True
        is_closed = getattr(page, "is_closed", None)
        return bool(is_closed()) if callable(is_closed) else False

    async def _close_proxy(self) -> None:
        try:
            await self._config.forwarding_proxy.close()
        except Exception:
            logger.warning("Failed to close forwarding proxy", exc_info=True)


class _FailedRequest(Exception):
    """The failed request, as the first error of a retry sequence."""

    def __init__(self, failure: str, url: str | None) -> None:
        super().__init__(failure or f"Request to {url} failed")
        self.url = url


def watch(
    context: Any,
    *,
    forwarding_proxy: ForwardingProxy | None,
    settings: ConnectSettings | None = None,
    **overrides: Any,
) -> FailureWatcher:
    """Attach a :class:`FailureWatcher` to *context* and return it.

    Accepts the same *overrides* as :func:`agent_connect.services.navigator.connect`.
    """
    config = RetryConfig.resolve(
        forwarding_proxy=forwarding_proxy, settings=settings, **overrides
    )
    return FailureWatcher(context, config).attach()
