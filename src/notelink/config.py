"""Configuration management for notelink."""

import copy
import os
from pathlib import Path
from typing import Any

import yaml


DEFAULT_CONFIG = {
    "vault_path": "~/notes",
    "cache_path": "~/.notelink/cache",
    "scan_path": "/",
    "excluded_folders": [".obsidian", ".trash"],
    "excluded_patterns": ["*.excalidraw", "*.canvas"],
    "embedding_model": "intfloat/e5-large-v2",
    "embedding": {"max_chars": 8000},
    "claude_model": "claude-sonnet-4-20250514",
    "llm": {"max_retries": 3},
    "linking": {"similarity_threshold": 0.7, "min_ai_score": 7, "max_links_per_document": 7},
    "scoring": {"batch_size": 10, "max_chars": 1500},
    "tagging": {"enabled": True, "batch_size": 5, "max_chars": 1500, "min_tags": 3, "max_tags": 5},
    "index": {"flush_debounce": 30.0},
    "failures": {"retention_days": 30},
    "log_level": "WARNING",
}


def _find_config_file() -> Path | None:
    """Look for config.yaml in standard locations."""
    candidates = [
        Path.cwd() / "config" / "config.yaml",
        Path.cwd() / "config.yaml",
        Path.home() / ".notelink" / "config.yaml",
    ]
    for p in candidates:
        if p.exists():
            return p
    return None


def load_config(config_path: str | Path | None = None) -> dict[str, Any]:
    """Load configuration, merging defaults with file and env vars."""
    cfg = copy.deepcopy(DEFAULT_CONFIG)

    path = Path(config_path) if config_path else _find_config_file()
    if path and path.exists():
        with open(path) as f:
            file_cfg = yaml.safe_load(f) or {}
        _deep_merge(cfg, file_cfg)

    # Env overrides
    if api_key := os.environ.get("ANTHROPIC_API_KEY"):
        cfg["claude_api_key"] = api_key
    if vault := os.environ.get("NOTELINK_VAULT"):
        cfg["vault_path"] = vault
    if level := os.environ.get("NOTELINK_LOG_LEVEL"):
        cfg["log_level"] = level

    # Expand paths
    for key in ("vault_path", "cache_path"):
        cfg[key] = str(Path(cfg[key]).expanduser().resolve())

    return cfg


def _deep_merge(base: dict, override: dict) -> None:
    """Merge override into base in-place."""
    for k, v in override.items():
        if k in base and isinstance(base[k], dict) and isinstance(v, dict):
            _deep_merge(base[k], v)
        else:
            base[k] = v
