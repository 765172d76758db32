"""Retry orchestrators and the navigation status listener."""

from agent_connect.services.failure_watcher import FailureWatcher, watch
from agent_connect.services.navigator import NavigationResult, RetryingNavigator, connect
from agent_connect.services.status_listener import NavigationStatus, StatusListener, listen

__all__ = [
    "FailureWatcher",
    "NavigationResult",
    "NavigationStatus",
    "RetryingNavigator",
    "StatusListener",
    "connect",
    "listen",
    "watch",
]
