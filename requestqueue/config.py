import os
from typing import Dict, Mapping, Optional

DEFAULT_CONFIG = {
    "max_concurrent": "3",
    "retries": "3",
    "timeout_seconds": "20",
}

ALLOWED_CONFIG_KEYS = set(DEFAULT_CONFIG.keys())

ENV_PREFIX = "REQUESTQUEUE_"

# key -> smallest accepted value
_MINIMUMS = {
    "max_concurrent": 1,
    "retries": 0,
    "timeout_seconds": 1,
}


def get_config(environ: Optional[Mapping[str, str]] = None) -> Dict[str, str]:
    """Defaults overlaid with REQUESTQUEUE_<KEY> environment variables."""
    env = os.environ if environ is None else environ
    cfg = dict(DEFAULT_CONFIG)
    for key in ALLOWED_CONFIG_KEYS:
        value = env.get(ENV_PREFIX + key.upper())
        if value is not None and value.strip():
            cfg[key] = value.strip()
    return cfg


def parse_config(cfg: Mapping[str, str]) -> Dict[str, int]:
    unknown = set(cfg) - ALLOWED_CONFIG_KEYS
    if unknown:
        raise ValueError(f"Allowed keys: {', '.join(sorted(ALLOWED_CONFIG_KEYS))}")

    out = {}
    for key in sorted(ALLOWED_CONFIG_KEYS):
        raw = cfg.get(key, DEFAULT_CONFIG[key])
        try:
            value = int(raw)
        except (TypeError, ValueError):
            raise ValueError(f"{key} must be an integer (got {raw!r}).")
        if value < _MINIMUMS[key]:
            raise ValueError(f"{key} must be >= {_MINIMUMS[key]} (got {value}).")
        out[key] = value
    return out
