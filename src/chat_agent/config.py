"""Configuration loading utilities for the chat agent.

This module handles layered configuration:
1. Explicit path argument (highest precedence)
2. Environment variable CHAT_AGENT_CONFIG
3. Fallback to "config/default.yaml"

Values missing from the file fall back to :data:`DEFAULTS`. Environment
variables with prefix ``CHAT_AGENT__`` override individual keys
(e.g., CHAT_AGENT__MODEL__TEMPERATURE=0.2).
"""

from __future__ import annotations

import copy
import logging
import os
from pathlib import Path
from typing import Any, Dict

import yaml

logger = logging.getLogger(__name__)

ENV_PREFIX = "CHAT_AGENT__"

DEFAULTS: Dict[str, Any] = {
    "model": {
        "base_url": "https://api.openai.com/v1",
        "model": "gpt-4o-mini",
        "api_key_env": "OPENAI_API_KEY",
        "preamble": "Be precise and concise.",
        "temperature": 0.5,
        "timeout": 60.0,
    },
    "storage": {"root_dir": "data", "use_global_context": True},
    "agent": {"isolate_sink_errors": False, "log_events": False},
    "server": {"cors_origins": ["*"]},
    "logging": {"level": "INFO"},
}


def _merge(base: Dict[str, Any], override: Dict[str, Any]) -> Dict[str, Any]:
    out = copy.deepcopy(base)
    for key, value in override.items():
        if isinstance(value, dict) and isinstance(out.get(key), dict):
            out[key] = _merge(out[key], value)
        else:
            out[key] = value
    return out


def _apply_env_overrides(cfg: Dict[str, Any]) -> Dict[str, Any]:
    """Apply environment variable overrides with prefix CHAT_AGENT__."""
    for key, value in os.environ.items():
        if not key.startswith(ENV_PREFIX):
            continue
        # e.g., CHAT_AGENT__STORAGE__ROOT_DIR -> cfg["storage"]["root_dir"]
        parts = key[len(ENV_PREFIX):].lower().split("__")
        sub = cfg
        for p in parts[:-1]:
            if p not in sub or not isinstance(sub[p], dict):
                sub[p] = {}
            sub = sub[p]
        leaf = parts[-1]
        # Attempt to parse simple types (bool, int, float)
        if value.lower() in {"true", "false"}:
            sub[leaf] = value.lower() == "true"
        else:
            try:
                if "." in value:
                    sub[leaf] = float(value)
                else:
                    sub[leaf] = int(value)
            except ValueError:
                sub[leaf] = value
    return cfg


def load_config(path: str | None = None) -> Dict[str, Any]:
    """Load YAML configuration for the chat agent.

    Parameters
    ----------
    path : str | None
        Optional path to a configuration file. If not provided, the
        environment variable ``CHAT_AGENT_CONFIG`` is consulted. As a
        last resort ``config/default.yaml`` is used.

    Returns
    -------
    Dict[str, Any]
        Defaults merged with the file, with environment overrides applied.

    Raises
    ------
    RuntimeError
        If the file exists but is not a valid YAML mapping.
    """
    if path is None:
        path = os.environ.get("CHAT_AGENT_CONFIG", "config/default.yaml")

    path_obj = Path(path)
    if not path_obj.exists():
        logger.warning("Config file not found at %s. Using defaults.", path_obj)
        return _apply_env_overrides(copy.deepcopy(DEFAULTS))

    with path_obj.open("r", encoding="utf-8") as f:
        try:
            cfg = yaml.safe_load(f) or {}
        except yaml.YAMLError as e:
            raise RuntimeError(f"Failed to parse config file {path_obj}: {e}") from e

    if not isinstance(cfg, dict):
        raise RuntimeError(f"Invalid config format in {path_obj}, expected dict.")

    return _apply_env_overrides(_merge(DEFAULTS, cfg))


def configure_logging(cfg: Dict[str, Any], *, verbose: bool = False) -> None:
    """Set up root logging from the ``logging`` section."""
    level = "DEBUG" if verbose else str(cfg.get("logging", {}).get("level", "INFO")).upper()
    logging.basicConfig(
        level=getattr(logging, level, logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
