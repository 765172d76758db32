"""Shared fixtures, Playwright fakes and hypothesis strategies."""

from __future__ import annotations

import os
from collections import defaultdict
from typing import Any, Callable

import pytest
from hypothesis import strategies as st

from agent_connect.proxy.types import ProxyCredential


# ---------------------------------------------------------------------------
# Keep the host environment out of ConnectSettings
# ---------------------------------------------------------------------------

@pytest.fixture(autouse=True)
def _clear_aluvia_env(monkeypatch: pytest.MonkeyPatch) -> None:
    """Drop any ALUVIA_* variables so tests see program defaults."""
    for key in list(os.environ):
        if key.startswith("ALUVIA_"):
            monkeypatch.delenv(key, raising=False)


# ---------------------------------------------------------------------------
# Playwright fakes
# ---------------------------------------------------------------------------

class _Emitter:
    def __init__(self) -> None:
        self._events: dict[str, list[Callable[..., Any]]] = defaultdict(list)

    def on(self, event: str, handler: Callable[..., Any]) -> None:
        self._events[event].append(handler)

    def emit(self, event: str, *args: Any) -> None:
        for handler in list(self._events[event]):
            handler(*args)

    def listener_count(self, event: str) -> int:
        return len(self._events[event])


class FakeResponse:
    def __init__(self, url: str, status: int = 200) -> None:
        self.url = url
        self.status = status


class FakeRequest:
    """Mirrors the parts of ``playwright.async_api.Request`` the library reads."""

    def __init__(self, url: str, failure: str | None, resource_type: str = "document") -> None:
        self.url = url
        self.failure = failure
        self.resource_type = resource_type


class FakePage(_Emitter):
    """Page whose ``goto``/``reload`` results are scripted.

    *outcomes* is consumed one entry per navigation; an exception entry is
    raised, anything else is returned. Once exhausted, navigations succeed.
    """

    def __init__(self, context: "FakeContext | None" = None, outcomes: list[Any] | None = None) -> None:
        super().__init__()
        self.context = context
        self.url = "about:blank"
        self.goto_calls: list[tuple[str, dict[str, Any]]] = []
        self.reload_calls: list[dict[str, Any]] = []
        self._outcomes = list(outcomes or [])
        self._closed = False

    def script(self, *outcomes: Any) -> None:
        self._outcomes.extend(outcomes)

    @property
    def navigation_count(self) -> int:
        return len(self.goto_calls) + len(self.reload_calls)

    async def goto(self, url: str, **options: Any) -> Any:
        self.goto_calls.append((url, options))
        self.url = url
        return self._next()

    async def reload(self, **options: Any) -> Any:
        self.reload_calls.append(options)
        return self._next()

    def _next(self) -> Any:
        outcome = self._outcomes.pop(0) if self._outcomes else FakeResponse(self.url)
        if isinstance(outcome, BaseException):
            raise outcome
        return outcome

    def is_closed(self) -> bool:
        return self._closed

    async def close(self) -> None:
        self._closed = True
        self.emit("close", self)

    def fail_request(
        self,
        error_text: str,
        url: str | None = None,
        resource_type: str = "document",
    ) -> FakeRequest:
        request = FakeRequest(url or self.url, error_text, resource_type)
        self.emit("requestfailed", request)
        return request


class NoReloadPage(FakePage):
    """A page without ``reload``; re-navigation must fall back to ``goto``."""

    reload = None  # type: ignore[assignment]


class FakeContext(_Emitter):
    def __init__(self) -> None:
        super().__init__()
        self._pages: list[FakePage] = []

    @property
    def pages(self) -> list[FakePage]:
        return list(self._pages)

    def add_page(self, page: FakePage | None = None) -> FakePage:
        page = page or FakePage()
        page.context = self
        self._pages.append(page)
        self.emit("page", page)
        return page

    async def new_page(self) -> FakePage:
        return self.add_page()

    async def close(self) -> None:
        self.emit("close", self)


class RecordingProxy:
    """Stands in for ForwardingProxy; records every upstream change."""

    def __init__(self) -> None:
        self.url = "http://127.0.0.1:0"
        self.upstreams: list[ProxyCredential | None] = []
        self.close_calls = 0
        self.is_closed = False

    def set_upstream(self, credential: ProxyCredential | None) -> None:
        self.upstreams.append(credential)

    def current_upstream(self) -> ProxyCredential | None:
        return self.upstreams[-1] if self.upstreams else None

    async def close(self) -> None:
        self.close_calls += 1
        self.is_closed = True


class SequenceProvider:
    """Provider returning a credential with a distinct username per call."""

    def __init__(self, server: str = "http://upstream.test:8080") -> None:
        self.server = server
        self.calls = 0

    async def get(self) -> ProxyCredential:
        self.calls += 1
        return ProxyCredential(server=self.server, username=f"user-{self.calls}", password="pw")


class CodedError(Exception):
    """Navigation error with Playwright-style ``code``/``name`` fields."""

    def __init__(self, message: str, code: str | None = None, name: str | None = None) -> None:
        super().__init__(message)
        self.code = code
        if name is not None:
            self.name = name


@pytest.fixture
def context() -> FakeContext:
    return FakeContext()


@pytest.fixture
def recording_proxy() -> RecordingProxy:
    return RecordingProxy()


@pytest.fixture
def provider() -> SequenceProvider:
    return SequenceProvider()


# ---------------------------------------------------------------------------
# Hypothesis strategies (reusable across property tests)
# ---------------------------------------------------------------------------

_word = st.text(alphabet=st.characters(whitelist_categories=("Lu", "Ll", "Nd")), min_size=1, max_size=12)

# Substring patterns and failure texts
retry_patterns = st.lists(_word, min_size=0, max_size=5)
failure_texts = st.text(min_size=0, max_size=60)

# Backoff inputs
base_delays = st.integers(min_value=1, max_value=10_000)
attempt_indexes = st.integers(min_value=0, max_value=10)

# Retry budgets
retry_budgets = st.integers(min_value=0, max_value=6)

# Secrets that must never reach a log line
secrets = st.from_regex(r"[A-Za-z0-9]{8,24}", fullmatch=True)
