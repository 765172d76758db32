"""Error hierarchy for agent-connect.

All library-specific errors extend AgentConnectError and carry a stable
``code`` so callers can branch on the failure kind without string matching.

Navigation failures themselves are never wrapped: a fatal failure, or the
last failure once the retry budget is spent, is re-raised as the original
exception object.
"""

from __future__ import annotations

from enum import Enum


class ErrorCode(str, Enum):
    """Stable identifiers for AgentConnectError subclasses."""

    NO_API_KEY = "ALUVIA_NO_API_KEY"
    NO_PROXIES = "ALUVIA_NO_PROXIES"
    PROXY_FETCH_FAILED = "ALUVIA_PROXY_FETCH_FAILED"
    BALANCE_FETCH_FAILED = "ALUVIA_BALANCE_FETCH_FAILED"
    NO_FORWARDING_PROXY = "ALUVIA_NO_FORWARDING_PROXY"
    BIND_FAILED = "ALUVIA_BIND_FAILED"


# ---------------------------------------------------------------------------
# Error hierarchy
# ---------------------------------------------------------------------------


class AgentConnectError(Exception):
    """Base error for all agent-connect errors."""

    code: ErrorCode | None = None
    message: str = "agent-connect error"

    def __init__(self, message: str | None = None, **kwargs: object) -> None:
        self.message = message or self.__class__.message
        self.details = kwargs
        super().__init__(self.message)


class MissingCredentialsError(AgentConnectError):
    """No broker access token and no custom proxy provider configured."""

    code = ErrorCode.NO_API_KEY
    message = "Missing ALUVIA_API_KEY environment variable."


class ProxyAcquisitionError(AgentConnectError):
    """The credential source failed or returned nothing usable."""

    code = ErrorCode.PROXY_FETCH_FAILED
    message = (
        "Failed to obtain a proxy for retry attempts. "
        "Check your balance and proxy pool at https://dashboard.aluvia.io/."
    )


class ProxyUnavailableError(ProxyAcquisitionError):
    """The broker answered but had no proxy to hand out."""

    code = ErrorCode.NO_PROXIES


class BalanceFetchError(AgentConnectError):
    """The broker account status request failed."""

    code = ErrorCode.BALANCE_FETCH_FAILED
    message = "Failed to fetch account status"


class MissingForwardingProxyError(AgentConnectError):
    """An orchestrator was created without a forwarding proxy."""

    code = ErrorCode.NO_FORWARDING_PROXY
    message = "No forwarding proxy supplied"


class ProxyBindError(AgentConnectError):
    """The local forwarding proxy could not bind its listening socket."""

    code = ErrorCode.BIND_FAILED
    message = "Failed to bind the forwarding proxy"
