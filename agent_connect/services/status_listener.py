"""Navigation status events for a ``BrowserContext``.

Independent of the retry orchestrators: it only reports. Each page of the
context produces an ``error`` status for a ``requestfailed`` whose failure
text matches one of the ``error_on`` patterns and a ``success`` status on
``load``. There is one listener per context; later ``listen`` calls return
the existing one.
"""

from __future__ import annotations

import logging
import weakref
from collections.abc import Iterable
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Optional

from agent_connect.config.settings import DEFAULT_RETRY_ON
from agent_connect.resilience.classifier import RetryClassifier

logger = logging.getLogger(__name__)

_listeners: "weakref.WeakKeyDictionary[Any, StatusListener]" = weakref.WeakKeyDictionary()


class NavigationState(str, Enum):
    SUCCESS = "success"
    ERROR = "error"


@dataclass(frozen=True)
class NavigationStatus:
    state: NavigationState
    page: Any = None
    request: Optional[Any] = None


StatusHandler = Callable[[NavigationStatus], Any]


class StatusListener:
    """Fans page events of one context out to registered handlers."""

    def __init__(self, context: Any, error_on: Iterable[Any]) -> None:
        self._context = context
        self._matcher = RetryClassifier(error_on)
        self._handlers: list[StatusHandler] = []
        self._pages: list[Any] = []

    def attach(self) -> "StatusListener":
        for page in list(getattr(self._context, "pages", None) or []):
            self._attach_page(page)
        self._context.on("page", self._attach_page)
        return self

    def on(self, handler: StatusHandler) -> StatusHandler:
        """Register *handler*; returns it so it can be used as a decorator."""
        self._handlers.append(handler)
        return handler

    def off(self, handler: StatusHandler) -> None:
        if handler in self._handlers:
            self._handlers.remove(handler)

    def _attach_page(self, page: Any) -> None:
        if any(seen is page for seen in self._pages):
            return
        self._pages.append(page)
        page.on("requestfailed", lambda request: self._on_request_failed(page, request))
        page.on("load", lambda *_: self._emit(NavigationStatus(NavigationState.SUCCESS, page=page)))

    def _on_request_failed(self, page: Any, request: Any) -> None:
        if self._matcher(request):
            self._emit(NavigationStatus(NavigationState.ERROR, page=page, request=request))

    def _emit(self, status: NavigationStatus) -> None:
        for handler in list(self._handlers):
            try:
                handler(status)
            except Exception:
                logger.warning("Status handler %r failed", handler, exc_info=True)


def listen(context: Any, error_on: Iterable[Any] | None = None) -> StatusListener:
    """Return the status listener for *context*, creating it on first use.

    *error_on* only applies when the listener is created.
    """
    listener = _listeners.get(context)
    if listener is not None:
        return listener
    patterns = list(error_on) if error_on is not None else DEFAULT_RETRY_ON.split(",")
    listener = StatusListener(context, patterns).attach()
    _listeners[context] = listener
    return listener
