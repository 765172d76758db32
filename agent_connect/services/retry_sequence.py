"""Retry sequence shared by the explicit and event-driven orchestrators.

Each retry runs: acquire credential → apply it to the forwarding proxy →
backoff → ``on_retry`` → re-navigate. The loop ends on the first success,
on a non-retryable failure (re-raised as is), on a failed credential fetch
(``ProxyAcquisitionError``), or once ``max_retries`` retries have failed
(the last failure is re-raised as is).
"""

from __future__ import annotations

import logging
from typing import Awaitable, Callable, Optional, TypeVar

from agent_connect.config.resolve import RetryConfig
from agent_connect.proxy.acquisition import maybe_await
from agent_connect.resilience.backoff import sleep_backoff

logger = logging.getLogger(__name__)

T = TypeVar("T")


class RetrySequence:
    """Drives the retries for one failed navigation.

    Args:
        config: Resolved orchestrator configuration.
        should_abort: Checked before credential acquisition and before each
            navigation; when it returns ``True`` the sequence stops and the
            last failure is re-raised.
    """

    def __init__(
        self,
        config: RetryConfig,
        *,
        should_abort: Optional[Callable[[], bool]] = None,
    ) -> None:
        self._config = config
        self._should_abort = should_abort
        self.attempts = 0

    async def run(
        self,
        navigate: Callable[[], Awaitable[T]],
        first_error: BaseException,
        *,
        target_url: str | None = None,
    ) -> T:
        """Retry *navigate* after *first_error*; return its first successful result."""
        config = self._config
        last_error = first_error

        for attempt in range(1, config.max_retries + 1):
            if self._aborted():
                logger.debug("Retry sequence abandoned before attempt %d", attempt)
                break

            credential = await config.acquirer.acquire()
            config.forwarding_proxy.set_upstream(credential)

            await sleep_backoff(config.backoff_ms, attempt - 1)
            await self._notify_retry(attempt, last_error)

            if self._aborted():
                logger.debug("Retry sequence abandoned before attempt %d", attempt)
                break

            self.attempts = attempt
            logger.info(
                "Retrying navigation (attempt %d/%d) via %s",
                attempt,
                config.max_retries,
                credential.redacted(),
                extra={
                    "attempt": attempt,
                    "max_retries": config.max_retries,
                    "target_url": target_url,
                    "upstream": credential.redacted(),
                    "error_reason": str(last_error),
                },
            )

            try:
                return await navigate()
            except Exception as exc:
                last_error = exc
                if not config.classifier(exc):
                    logger.warning(
                        "Non-retryable navigation failure on attempt %d: %s",
                        attempt,
                        exc,
                        extra={"attempt": attempt, "target_url": target_url},
                    )
                    raise

        raise last_error

    def _aborted(self) -> bool:
        return self._should_abort is not None and self._should_abort()

    async def _notify_retry(self, attempt: int, last_error: BaseException) -> None:
        on_retry = self._config.on_retry
        if on_retry is None:
            return
        try:
            await maybe_await(on_retry(attempt, self._config.max_retries, last_error))
        except Exception:
            logger.warning("on_retry observer failed on attempt %d", attempt, exc_info=True)
