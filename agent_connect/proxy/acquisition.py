"""Proxy credential acquisition for retry attempts.

Picks the credential source (custom provider first, built-in broker client
otherwise), normalizes what it returns, and notifies the
``on_proxy_loaded`` observer before the credential is applied.
"""

from __future__ import annotations

import inspect
import logging
from typing import Any, Awaitable, Callable, Optional, Union

from agent_connect.errors import AgentConnectError, ProxyAcquisitionError
from agent_connect.proxy.types import ProxyCredential, ProxyProvider

logger = logging.getLogger(__name__)

ProxyObserver = Callable[[ProxyCredential], Union[Awaitable[None], None]]


async def maybe_await(value: Any) -> Any:
    """Await *value* if it is awaitable, otherwise return it unchanged."""
    if inspect.isawaitable(value):
        return await value
    return value


class ProxyAcquirer:
    """Obtains one fresh credential per call.

    Parameters
    ----------
    source:
        A custom provider or a :class:`~agent_connect.integration.broker_client.BrokerClient`;
        anything with a ``get()`` method.
    on_proxy_loaded:
        Optional observer called with each credential. Its failures are
        logged and ignored.
    """

    def __init__(
        self,
        source: ProxyProvider,
        on_proxy_loaded: Optional[ProxyObserver] = None,
    ) -> None:
        self._source = source
        self._on_proxy_loaded = on_proxy_loaded
        self.acquired_count = 0

    async def acquire(self) -> ProxyCredential:
        """Fetch a credential.

        Raises ``ProxyAcquisitionError`` (or a subclass raised by the source)
        when the source fails or returns nothing usable.
        """
        try:
            raw = await maybe_await(self._source.get())
        except AgentConnectError:
            raise
        except Exception as exc:
            logger.warning("Proxy provider failed: %s", exc)
            raise ProxyAcquisitionError() from exc

        credential = ProxyCredential.coerce(raw)
        if credential is None:
            logger.warning("Proxy provider returned no usable proxy: %r", type(raw).__name__)
            raise ProxyAcquisitionError()

        self.acquired_count += 1
        await self._notify(credential)
        return credential

    async def _notify(self, credential: ProxyCredential) -> None:
        if self._on_proxy_loaded is None:
            return
        try:
            await maybe_await(self._on_proxy_loaded(credential))
        except Exception:
            logger.warning(
                "on_proxy_loaded observer failed for %s",
                credential.redacted(),
                exc_info=True,
            )
