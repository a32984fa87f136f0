"""
Config loader for byomchat.
Reads config.yaml once at startup. All other modules import from here.
Missing file or missing keys fall back to DEFAULTS, and a couple of
deployment env vars (PORT, BYOM_API) win over whatever the file says.
"""

import copy
import os
import re
import yaml
from pathlib import Path
from dotenv import load_dotenv

load_dotenv()

_CONFIG_PATH = Path(__file__).parent.parent / "config.yaml"

DEFAULT_API_TARGET = "https://byom-api.onrender.com"

DEFAULTS: dict = {
    "server": {
        "host": "0.0.0.0",
        "port": 3000,
        "cors_origins": ["http://localhost:5173", "https://byom-chat.onrender.com"],
    },
    "proxy": {
        "target": DEFAULT_API_TARGET,
        "timeout": 60,
    },
    "store": {
        "kind": "memory",
        "max_messages": 1000,
    },
    "gateway": {
        "enforce_participant_limit": False,
    },
    "static": {
        "dist_dirs": ["./dist", "./apps/byom-chat/dist"],
    },
    "logging": {
        "level": "INFO",
        "file": "",
    },
    "wiretap": {
        "enabled": False,
        "path": "./data/wire.jsonl",
    },
}

_config: dict | None = None


def _resolve_env_vars(value: str) -> str:
    """Replace ${ENV_VAR} patterns with actual environment variable values."""
    def replacer(match):
        var_name = match.group(1)
        return os.environ.get(var_name, "")
    return re.sub(r"\$\{(\w+)\}", replacer, value)


def _walk_and_resolve(obj):
    """Recursively resolve env vars in all string values."""
    if isinstance(obj, dict):
        return {k: _walk_and_resolve(v) for k, v in obj.items()}
    elif isinstance(obj, list):
        return [_walk_and_resolve(v) for v in obj]
    elif isinstance(obj, str):
        return _resolve_env_vars(obj)
    return obj


def _merge(base: dict, override: dict) -> dict:
    """Deep-merge override onto a copy of base."""
    merged = copy.deepcopy(base)
    for key, value in override.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = _merge(merged[key], value)
        else:
            merged[key] = value
    return merged


def _apply_env_overrides(cfg: dict) -> dict:
    port = os.environ.get("PORT")
    if port:
        cfg["server"]["port"] = int(port)
    target = os.environ.get("BYOM_API")
    if target:
        cfg["proxy"]["target"] = target
    return cfg


def load_config(path: Path | None = None) -> dict:
    """Load and cache config from YAML file, layered over DEFAULTS."""
    global _config
    if _config is not None:
        return _config

    config_path = path or _CONFIG_PATH
    raw: dict = {}
    if config_path.exists():
        with open(config_path) as f:
            raw = yaml.safe_load(f) or {}

    _config = _apply_env_overrides(_merge(DEFAULTS, _walk_and_resolve(raw)))
    return _config


def get_config() -> dict:
    """Return cached config, loading if necessary."""
    if _config is None:
        return load_config()
    return _config


def reset_config():
    """Drop the cached config so the next get_config() reloads it."""
    global _config
    _config = None
