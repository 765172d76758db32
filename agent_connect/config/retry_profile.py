"""Retry profile model and YAML loader.

A retry profile is an optional YAML file that overrides the environment
defaults for one deployment, e.g.::

    max_retries: 4
    backoff_ms: 500
    retry_on:
      - ECONNRESET
      - /net::ERR_(CONNECTION|TUNNEL)_.*/
"""

from __future__ import annotations

import logging
from pathlib import Path

import yaml
from pydantic import BaseModel, Field, ValidationError

logger = logging.getLogger(__name__)


class RetryProfile(BaseModel):
    """Overrides read from a profile file. ``None`` means "not set"."""

    max_retries: int | None = Field(default=None, ge=0)
    backoff_ms: int | None = Field(default=None, ge=0)
    retry_on: list[str] | None = None
    navigation_timeout_ms: int | None = Field(default=None, ge=1)
    wait_until: str | None = None


_EMPTY_PROFILE = RetryProfile()


def load_retry_profile(yaml_path: str | None) -> RetryProfile:
    """Parse a retry profile YAML file.

    Args:
        yaml_path: Path to the YAML file, or ``None``.

    Returns:
        The parsed profile. A missing, unreadable or invalid file yields an
        empty profile (every field ``None``).
    """
    if not yaml_path:
        return _EMPTY_PROFILE

    path = Path(yaml_path)
    if not path.exists():
        logger.warning("Retry profile not found at %s, using environment defaults", yaml_path)
        return _EMPTY_PROFILE

    try:
        raw = yaml.safe_load(path.read_text(encoding="utf-8"))
    except yaml.YAMLError as exc:
        logger.error("Failed to parse retry profile YAML at %s: %s", yaml_path, exc)
        return _EMPTY_PROFILE

    if raw is None:
        return _EMPTY_PROFILE
    if not isinstance(raw, dict):
        logger.warning("Retry profile at %s is not a mapping, ignoring it", yaml_path)
        return _EMPTY_PROFILE

    if isinstance(raw.get("retry_on"), str):
        raw["retry_on"] = [item.strip() for item in raw["retry_on"].split(",") if item.strip()]

    try:
        return RetryProfile.model_validate(raw)
    except ValidationError as exc:
        logger.error("Invalid retry profile at %s: %s", yaml_path, exc)
        return _EMPTY_PROFILE
