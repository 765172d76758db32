"""Proxy broker client for fetching upstream proxy credentials.

Fetches proxy credentials from the broker API with Bearer token
authentication. Every credential handed out gets a fresh session suffix on
its username (``<user>-session-<id>``) so consecutive retries egress through
different upstream sessions.

No retries happen here: the navigation retry loop already retries, and a
failed fetch must abort that loop.

SECURITY: Never logs the access token or proxy passwords.
"""

from __future__ import annotations

import logging
import uuid
from typing import Any

import httpx

from agent_connect.errors import (
    AgentConnectError,
    BalanceFetchError,
    MissingCredentialsError,
    ProxyAcquisitionError,
    ProxyUnavailableError,
)
from agent_connect.proxy.types import ProxyCredential

logger = logging.getLogger(__name__)

CREDENTIALS_PATH = "/proxy-credentials"
ACCOUNT_STATUS_PATH = "/account/status"


def generate_session_id() -> str:
    """Short random identifier for sticky-session avoidance."""
    return uuid.uuid4().hex[:8]


class BrokerClient:
    """HTTP client for the proxy broker API.

    Parameters
    ----------
    api_key:
        Bearer token for the broker. Required.
    api_url:
        Base URL of the broker API (e.g. "https://api.aluvia.io").
    timeout_seconds:
        Per-request timeout.
    """

    def __init__(
        self,
        api_key: str | None,
        api_url: str = "https://api.aluvia.io",
        timeout_seconds: float = 10.0,
    ) -> None:
        if not api_key:
            raise MissingCredentialsError()
        self._api_key = api_key
        self._api_url = api_url.rstrip("/")
        self._timeout_seconds = timeout_seconds

    async def get(self) -> ProxyCredential:
        """Fetch the first available proxy with a fresh session suffix.

        Raises
        ------
        ProxyUnavailableError
            If the broker has no proxy to hand out.
        ProxyAcquisitionError
            If the broker cannot be reached or answers with an error.
        """
        data = await self._get_json(CREDENTIALS_PATH, ProxyAcquisitionError)
        entry = _first_entry(data)
        if entry is None:
            logger.warning("Broker returned no proxies")
            raise ProxyUnavailableError()

        host = entry.get("host")
        port = entry.get("http_port") or entry.get("httpPort") or entry.get("port")
        if not host or not port:
            logger.warning("Broker returned a proxy without host/port")
            raise ProxyUnavailableError()

        username = entry.get("username")
        if username:
            username = f"{username}-session-{generate_session_id()}"

        credential = ProxyCredential(
            server=f"http://{host}:{port}",
            username=username,
            password=entry.get("password"),
        )
        logger.debug("Broker issued proxy %s", credential.redacted())
        return credential

    async def get_balance(self) -> float:
        """Return the account balance in GB.

        Raises ``BalanceFetchError`` on transport errors, non-2xx answers or a
        payload without ``data.balance_gb``.
        """
        data = await self._get_json(ACCOUNT_STATUS_PATH, BalanceFetchError)
        try:
            return float(data["data"]["balance_gb"])
        except (KeyError, TypeError, ValueError) as exc:
            raise BalanceFetchError("Account status response has no balance") from exc

    async def _get_json(self, path: str, error_cls: type[AgentConnectError]) -> Any:
        url = f"{self._api_url}{path}"
        try:
            async with httpx.AsyncClient() as client:
                response = await client.get(
                    url,
                    headers={"Authorization": f"Bearer {self._api_key}"},
                    timeout=self._timeout_seconds,
                )
        except httpx.HTTPError as exc:
            logger.warning("Broker unreachable at %s: %s", url, exc)
            raise error_cls(f"Broker unreachable: {exc}") from exc

        if response.is_error:
            logger.warning("Broker returned status %d for %s", response.status_code, path)
            raise error_cls(
                f"Broker request failed: {response.status_code} {response.reason_phrase}",
                status_code=response.status_code,
            )

        try:
            return response.json()
        except ValueError as exc:
            raise error_cls("Broker returned invalid JSON") from exc


def _first_entry(data: Any) -> dict | None:
    """Pick the first proxy object from a bare or enveloped payload."""
    if isinstance(data, dict) and "data" in data:
        data = data["data"]
    if isinstance(data, list):
        data = data[0] if data else None
    if isinstance(data, dict) and data:
        return data
    return None
