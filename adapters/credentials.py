from __future__ import annotations

import os
from typing import Any


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() == "true"


def _env_float(name: str, default: float) -> float:
    raw = (os.getenv(name) or "").strip()
    try:
        return float(raw) if raw else default
    except ValueError:
        return default


def get_exchange_credentials() -> dict[str, Any]:
    """Binance futures credentials and connection knobs, read from the environment."""
    return {
        "service": "binance",
        "api_key": os.getenv("BINANCE_API_KEY", ""),
        "api_secret": os.getenv("BINANCE_API_SECRET", ""),
        "sandbox": _env_bool("BINANCE_TESTNET", True),
        "margin_mode": os.getenv("BINANCE_MARGIN_MODE", "cross"),
        "leverage": int(os.getenv("BINANCE_LEVERAGE", "3") or "3"),
        "timeout_seconds": max(1.0, _env_float("EXCHANGE_TIMEOUT_SECONDS", 10.0)),
    }


def get_default_adapter_signature() -> str:
    """Changes whenever the adapter must be rebuilt (key rotation, testnet switch...)."""
    cfg = get_exchange_credentials()
    key_tail = str(cfg.get("api_key", ""))[-6:]
    sandbox = "1" if cfg.get("sandbox") else "0"
    return (
        f"{cfg['service']}|{sandbox}|{cfg['margin_mode']}|{cfg['leverage']}"
        f"|{cfg['timeout_seconds']}|{key_tail}"
    )
