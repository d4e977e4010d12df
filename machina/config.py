"""Shared Machina configuration utilities.

Centralises reading of ~/.machina/configuration.json so that the engine,
the LLM agent client and embedding applications share one implementation.
"""

import json
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from machina.runtime.limits import ExecutionLimits

DEFAULT_MODEL = "anthropic/claude-sonnet-4-20250514"
DEFAULT_MAX_TOKENS = 1024

# ---------------------------------------------------------------------------
# Low-level config file access
# ---------------------------------------------------------------------------

MACHINA_CONFIG_FILE = Path.home() / ".machina" / "configuration.json"


def get_machina_config() -> dict[str, Any]:
    """Load machina configuration from ~/.machina/configuration.json."""
    if not MACHINA_CONFIG_FILE.exists():
        return {}
    try:
        with open(MACHINA_CONFIG_FILE, encoding="utf-8-sig") as f:
            return json.load(f)
    except (json.JSONDecodeError, OSError):
        return {}


# ---------------------------------------------------------------------------
# Derived helpers
# ---------------------------------------------------------------------------


def get_preferred_model() -> str:
    """Return the preferred LLM model string (e.g. 'anthropic/claude-sonnet-4-20250514')."""
    llm = get_machina_config().get("llm", {})
    if llm.get("provider") and llm.get("model"):
        return f"{llm['provider']}/{llm['model']}"
    return DEFAULT_MODEL


def get_max_tokens() -> int:
    """Return the configured max_tokens, falling back to DEFAULT_MAX_TOKENS."""
    return get_machina_config().get("llm", {}).get("max_tokens", DEFAULT_MAX_TOKENS)


def get_api_key() -> str | None:
    """Return the API key from the environment variable named in configuration."""
    llm = get_machina_config().get("llm", {})
    api_key_env_var = llm.get("api_key_env_var")
    if api_key_env_var:
        return os.environ.get(api_key_env_var)
    return None


def get_execution_limits() -> ExecutionLimits:
    """Return limits from the ``execution`` section, defaults for anything missing."""
    return ExecutionLimits.from_dict(get_machina_config().get("execution", {}))


# ---------------------------------------------------------------------------
# RuntimeConfig
# ---------------------------------------------------------------------------


@dataclass
class RuntimeConfig:
    """Engine and agent configuration loaded from ~/.machina/configuration.json."""

    model: str = field(default_factory=get_preferred_model)
    temperature: float = 0.0
    max_tokens: int = field(default_factory=get_max_tokens)
    api_key: str | None = field(default_factory=get_api_key)
    api_base: str | None = None
    limits: ExecutionLimits = field(default_factory=get_execution_limits)
    log_level: str = "INFO"
    log_format: str = "auto"
