"""Failure classification and backoff for navigation retries."""

from agent_connect.resilience.backoff import backoff_delay_ms, sleep_backoff
from agent_connect.resilience.classifier import RetryClassifier, compile_retryable

__all__ = [
    "RetryClassifier",
    "backoff_delay_ms",
    "compile_retryable",
    "sleep_backoff",
]
