"""
JSON configuration for the desk.

``load_config`` reads ``config/candledesk_config.json`` (or any path) and
lays it over ``DEFAULT_CONFIG``, so a config file only needs the keys it
changes.  Components read their own section with
``config.get("section", {})``.
"""

from __future__ import annotations

import copy
import json
from pathlib import Path

DEFAULT_CONFIG: dict = {
    "log_level": "INFO",
    "provider": {
        "name": "binance",
        "base_url": "https://api.binance.com",
        "exchange_id": "binance",
        "page_size": 1000,
    },
    "series": [
        {"name": "BTCUSDT_1h", "active": True},
    ],
    "sync": {
        "page_size": 1000,
        "throttle_seconds": 0.1,
        "stale_fraction": 0.1,
        "min_stale_seconds": 300,
        "fallback_history_candles": 1000,
        "tick_seconds": 5,
        "missing_data_every": 60,
        "heartbeat_seconds": 600,
        "use_websocket": False,
    },
    "retry": {},
    "execution": {
        "paper_trading": True,
        "initial_balance": 10000.0,
        "default_quantity": 0.001,
    },
    "data_paths": {
        "data_path": "data/candles",
        "ledger_path": "data/paper_trading.json",
        "strategies_path": "data/strategies.json",
        "log_path": "logs",
    },
}


def _deep_merge(base: dict, override: dict) -> dict:
    merged = copy.deepcopy(base)
    for key, value in override.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = _deep_merge(merged[key], value)
        else:
            merged[key] = copy.deepcopy(value)
    return merged


def load_config(config_path: str | Path) -> dict:
    """Load a JSON config file merged over ``DEFAULT_CONFIG``.

    Raises ``FileNotFoundError`` for a missing file and
    ``json.JSONDecodeError`` for invalid JSON.
    """
    with open(config_path, "r") as f:
        return _deep_merge(DEFAULT_CONFIG, json.load(f))


def default_config() -> dict:
    return copy.deepcopy(DEFAULT_CONFIG)
