"""agent-connect: proxy-rotating navigation retries for Playwright agents."""

from agent_connect.config.settings import ConnectSettings
from agent_connect.errors import (
    AgentConnectError,
    BalanceFetchError,
    ErrorCode,
    MissingCredentialsError,
    MissingForwardingProxyError,
    ProxyAcquisitionError,
    ProxyBindError,
    ProxyUnavailableError,
)
from agent_connect.integration.broker_client import BrokerClient
from agent_connect.logging_config import configure_logging
from agent_connect.proxy.forwarder import ForwardingProxy, start_forwarding_proxy
from agent_connect.proxy.types import ProxyCredential
from agent_connect.services.failure_watcher import FailureWatcher, watch
from agent_connect.services.navigator import NavigationResult, RetryingNavigator, connect
from agent_connect.services.status_listener import NavigationStatus, StatusListener, listen

__all__ = [
    "AgentConnectError",
    "BalanceFetchError",
    "BrokerClient",
    "ConnectSettings",
    "ErrorCode",
    "FailureWatcher",
    "ForwardingProxy",
    "MissingCredentialsError",
    "MissingForwardingProxyError",
    "NavigationResult",
    "NavigationStatus",
    "ProxyAcquisitionError",
    "ProxyBindError",
    "ProxyCredential",
    "ProxyUnavailableError",
    "RetryingNavigator",
    "StatusListener",
    "configure_logging",
    "connect",
    "listen",
    "start_forwarding_proxy",
    "watch",
]
