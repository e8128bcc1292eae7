from __future__ import annotations

import copy
from pathlib import Path
from typing import Any, Dict

import yaml


DEFAULT_CONFIG_NAME = "config.yaml"

DEFAULTS: Dict[str, Dict[str, Any]] = {
    "app": {"data_dir": None, "db_path": None, "log_dir": None},
    "service": {"host": "127.0.0.1", "port": 8765},
    "llm": {
        "base_url": "https://api.openai.com/v1",
        "model": "gpt-4o-mini",
        "vision_model": "gpt-4o",
        "timeout_sec": 30,
        "temperature": 0.0,
        "max_output_tokens": 1500,
    },
    "ares": {"enabled": True, "timeout": 10, "cache_ttl_seconds": 7 * 24 * 3600},
    "matching": {"tolerance": "0.01", "min_confidence": 70},
    "maildrop": {"enabled": True, "dir": None},
}


def load_yaml(path: Path) -> Dict[str, Any]:
    if not path.exists():
        return {}
    data = yaml.safe_load(path.read_text(encoding="utf-8"))
    return data or {}


def load_config(path: Path) -> Dict[str, Any]:
    """Načte YAML a doplní chybějící sekce/klíče výchozími hodnotami."""
    cfg = load_yaml(path)
    for section, defaults in DEFAULTS.items():
        current = cfg.setdefault(section, {})
        if not isinstance(current, dict):
            current = cfg[section] = {}
        for key, value in defaults.items():
            current.setdefault(key, copy.deepcopy(value))
    return cfg


def deep_get(d: Dict[str, Any], keys: list[str], default: Any = None) -> Any:
    cur: Any = d
    for k in keys:
        if not isinstance(cur, dict) or k not in cur:
            return default
        cur = cur[k]
    return default if cur is None else cur
