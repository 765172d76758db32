"""Proxy package: switchable forwarding proxy and credential acquisition."""

from agent_connect.proxy.acquisition import ProxyAcquirer
from agent_connect.proxy.forwarder import ForwardingProxy, start_forwarding_proxy
from agent_connect.proxy.types import ProxyCredential

__all__ = ["ForwardingProxy", "ProxyAcquirer", "ProxyCredential", "start_forwarding_proxy"]
