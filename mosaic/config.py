"""
Runtime configuration.

Settings live in config/config.yaml and are deep-merged over DEFAULTS, so a
partial file (or no file at all) still yields a complete config dict.
Secrets are never read from YAML: API keys come from the environment
(populated from .env by load_dotenv() in the CLI entry points).
"""
from __future__ import annotations

import copy
import os
from pathlib import Path
from typing import Any

import yaml

from mosaic.errors import ConfigurationError

DEFAULT_CONFIG_PATH = Path("config/config.yaml")

DEFAULTS: dict[str, Any] = {
    "database": {"url": "sqlite:///data/mosaic.db"},
    "openai": {
        "embedding_model": "text-embedding-3-small",
        "embedding_dimensions": 1536,
        "chat_model": "gpt-4o-mini",
        "transcription_model": "whisper-1",
    },
    "anthropic": {"model": "claude-haiku-4-5-20251001"},
    "extraction": {"provider": "openai"},
    "chunking": {
        "max_chunk_size": 1000,
        "overlap": 200,
        "threshold": 20000,
        "max_chunks": 50,
    },
    "processing": {"embedding_delay_seconds": 0.2, "max_workers": 4},
    "resolution": {"similarity_threshold": 0.85},
    "graph": {"similarity_threshold": 0.7, "temporal_window_hours": 24},
    "projection": {"method": "force", "iterations": 50, "learning_rate": 0.1, "seed": None},
    "search": {"similarity_threshold": 0.7, "top_k": 10},
    "logging": {
        "level": "INFO",
        "file": "logs/mosaic.log",
        "failures_file": "logs/failures.log",
        "rotation": "10 MB",
        "retention": "7 days",
    },
}

# env var -> (section, key)
_ENV_OVERRIDES = {
    "MOSAIC_DATABASE_URL": ("database", "url"),
    "MOSAIC_LOG_LEVEL": ("logging", "level"),
}


def _deep_merge(base: dict, override: dict) -> dict:
    merged = copy.deepcopy(base)
    for key, value in override.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = _deep_merge(merged[key], value)
        else:
            merged[key] = value
    return merged


def load_config(path: str | Path | None = None) -> dict:
    """Load YAML config, merge over defaults, apply environment overrides."""
    cfg_path = Path(path) if path else DEFAULT_CONFIG_PATH
    file_cfg: dict = {}
    if cfg_path.exists():
        with open(cfg_path, "r", encoding="utf-8") as f:
            file_cfg = yaml.safe_load(f) or {}
        if not isinstance(file_cfg, dict):
            raise ConfigurationError(f"Config file {cfg_path} must contain a mapping")
    elif path:
        raise ConfigurationError(f"Config file not found: {cfg_path}")

    cfg = _deep_merge(DEFAULTS, file_cfg)
    for env_name, (section, key) in _ENV_OVERRIDES.items():
        value = os.getenv(env_name)
        if value:
            cfg[section][key] = value
    return cfg


def require_api_key(name: str) -> str:
    """Return the credential or fail fast before any external call is attempted."""
    value = os.getenv(name, "").strip()
    if not value:
        raise ConfigurationError(
            f"The {name} environment variable is missing or empty"
        )
    return value
