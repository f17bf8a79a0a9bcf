"""Configuration for coach-chat.

Config discovery (first match wins):
  1. ``--config`` flag
  2. ``./coach_chat.yaml``
  3. ``~/.config/coach-chat/config.yaml``
  4. Built-in defaults
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml

_logger = logging.getLogger(__name__)

API_KEY_ENV = "COACH_CHAT_API_KEY"


# ---------------------------------------------------------------------------
# Config data structures
# ---------------------------------------------------------------------------

@dataclass
class ProfileSpec:
    """Model endpoint profile (any OpenAI-compatible API)."""

    provider: str = "openrouter"
    url: str = "https://openrouter.ai/api/v1"
    api_key: str = ""
    model: str = "deepseek/deepseek-r1"
    include_reasoning: bool = True
    extra_params: dict[str, Any] = field(default_factory=dict)
    headers: dict[str, str] = field(default_factory=dict)


@dataclass
class RetrySpec:
    """Backoff settings for failed sends.

    delay(n) = min(base_delay * multiplier ** (n - 1), max_delay) plus up to
    ``jitter`` times that value of random noise.
    """

    max_attempts: int = 3
    base_delay: float = 1.0
    multiplier: float = 2.0
    max_delay: float = 30.0
    jitter: float = 0.25


@dataclass
class CoachConfig:
    """Top-level config."""

    profile: ProfileSpec = field(default_factory=ProfileSpec)
    retry: RetrySpec = field(default_factory=RetrySpec)

    # Turn loop
    max_turns: int = 5
    idle_timeout: float = 60.0
    request_timeout: float = 120.0
    notify_interval: float = 0.05

    # Storage
    db_path: str = "~/.coach_chat/conversation.db"

    # Prompt
    system_prompt: str = "You are a helpful strength coach."
    system_prompt_path: str | None = None

    # Connectivity probing
    connectivity_url: str | None = None
    connectivity_interval: float = 5.0

    def resolve_system_prompt(self) -> str:
        """Return the prompt file's text when configured, else ``system_prompt``."""
        if self.system_prompt_path:
            path = Path(self.system_prompt_path).expanduser()
            try:
                return path.read_text(encoding="utf-8")
            except OSError as e:
                _logger.warning("Cannot read system prompt %s: %s", path, e)
        return self.system_prompt


# ---------------------------------------------------------------------------
# Loading
# ---------------------------------------------------------------------------

_SEARCH_PATHS = [
    Path("./coach_chat.yaml"),
    Path.home() / ".config" / "coach-chat" / "config.yaml",
]


def _parse_profile(raw: dict[str, Any] | None) -> ProfileSpec:
    raw = raw or {}
    spec = ProfileSpec(
        provider=raw.get("provider", "openrouter"),
        url=raw.get("url", "https://openrouter.ai/api/v1"),
        api_key=raw.get("api_key", "") or "",
        model=raw.get("model", "deepseek/deepseek-r1"),
        include_reasoning=raw.get("include_reasoning", True),
        extra_params=raw.get("extra_params", {}) or {},
        headers=raw.get("headers", {}) or {},
    )
    if not spec.api_key:
        spec.api_key = os.environ.get(API_KEY_ENV, "")
    return spec


def _parse_retry(raw: dict[str, Any] | None) -> RetrySpec:
    if not raw:
        return RetrySpec()
    values = {
        k: v for k, v in raw.items()
        if v is not None and k in RetrySpec.__dataclass_fields__
    }
    return RetrySpec(**values)


def load_config(path: str | Path | None = None) -> CoachConfig:
    """Load configuration from YAML.

    Parameters
    ----------
    path:
        Explicit config path.  If *None*, search default locations.

    Returns
    -------
    CoachConfig
    """
    config_path: Path | None = None

    if path is not None:
        config_path = Path(path)
        if not config_path.exists():
            _logger.warning("Config file not found: %s, using defaults", path)
            return CoachConfig(profile=_parse_profile(None))
    else:
        for candidate in _SEARCH_PATHS:
            if candidate.exists():
                config_path = candidate
                break

    if config_path is None:
        _logger.info("No config file found, using defaults")
        return CoachConfig(profile=_parse_profile(None))

    _logger.info("Loading config from %s", config_path)
    with open(config_path) as f:
        raw = yaml.safe_load(f) or {}

    defaults = CoachConfig()
    return CoachConfig(
        profile=_parse_profile(raw.get("profile")),
        retry=_parse_retry(raw.get("retry")),
        max_turns=raw.get("max_turns", defaults.max_turns),
        idle_timeout=raw.get("idle_timeout", defaults.idle_timeout),
        request_timeout=raw.get("request_timeout", defaults.request_timeout),
        notify_interval=raw.get("notify_interval", defaults.notify_interval),
        db_path=raw.get("db_path", defaults.db_path),
        system_prompt=raw.get("system_prompt", defaults.system_prompt),
        system_prompt_path=raw.get("system_prompt_path"),
        connectivity_url=raw.get("connectivity_url"),
        connectivity_interval=raw.get(
            "connectivity_interval", defaults.connectivity_interval,
        ),
    )
