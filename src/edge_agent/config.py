"""Configuration loading utilities for the agent server and client.

This module handles layered configuration:
1. Explicit path argument (highest precedence)
2. Environment variable EDGE_AGENT_CONFIG
3. Fallback to "config/default.yaml"

Loaded values are merged over :data:`DEFAULTS`, so a YAML file only needs
the keys it changes. It also supports overrides from environment variables
with prefix ``EDGE_AGENT__`` (e.g., EDGE_AGENT__AGENT__MAX_TOKENS=128).
"""

from __future__ import annotations

import copy
import logging
import os
from pathlib import Path
from typing import Any, Dict

import yaml

logger = logging.getLogger(__name__)

DEFAULTS: Dict[str, Any] = {
    "server": {"cors_origins": ["*"]},
    "agent": {
        "system_prompt": "You are a helpful assistant.",
        "max_tokens": 256,
        "reminder_delay_seconds": 60,
    },
    "memory": {
        "data_dir": "data",
        "embed_model": "BAAI/bge-small-en-v1.5",
        "top_k": 3,
    },
    "model": {"model_dir": "models", "model_path": "model.gguf", "n_ctx": 4096, "use_mmap": True},
    "client": {
        "url": "ws://127.0.0.1:8000/agents/default/ws",
        "user_id": "guest",
        "identity_delay_ms": 3500,
        "ready_timeout_ms": 4000,
        "watchdog_ms": 12000,
        "reconnect_delay_seconds": 5,
    },
    "logging": {"level": "INFO"},
}


def _deep_merge(base: Dict[str, Any], extra: Dict[str, Any]) -> Dict[str, Any]:
    out = copy.deepcopy(base)
    for key, value in extra.items():
        if isinstance(value, dict) and isinstance(out.get(key), dict):
            out[key] = _deep_merge(out[key], value)
        else:
            out[key] = value
    return out


def _apply_env_overrides(cfg: Dict[str, Any]) -> Dict[str, Any]:
    """Apply environment variable overrides with prefix EDGE_AGENT__."""
    prefix = "EDGE_AGENT__"
    for key, value in os.environ.items():
        if not key.startswith(prefix):
            continue
        # e.g., EDGE_AGENT__MEMORY__TOP_K -> cfg["memory"]["top_k"]
        parts = key[len(prefix):].lower().split("__")
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
    """Load YAML configuration.

    Parameters
    ----------
    path : str | None
        Optional path to a configuration file. If not provided, the
        environment variable ``EDGE_AGENT_CONFIG`` is consulted. As a
        last resort ``config/default.yaml`` is used.

    Returns
    -------
    Dict[str, Any]
        Defaults, merged with the file, with environment overrides applied.
    """
    if path is None:
        path = os.environ.get("EDGE_AGENT_CONFIG", "config/default.yaml")

    path_obj = Path(path)
    if not path_obj.exists():
        logger.warning("Config file not found at %s. Using defaults.", path_obj)
        return _apply_env_overrides(copy.deepcopy(DEFAULTS))

    with path_obj.open("r", encoding="utf-8") as f:
        try:
            loaded = yaml.safe_load(f) or {}
        except yaml.YAMLError as e:
            raise RuntimeError(f"Failed to parse config file {path_obj}: {e}")

    if not isinstance(loaded, dict):
        raise RuntimeError(f"Invalid config format in {path_obj}, expected dict.")

    return _apply_env_overrides(_deep_merge(DEFAULTS, loaded))
