from __future__ import annotations

import logging
import os
import threading
from copy import deepcopy
from pathlib import Path
from typing import Any

import yaml

from dropswarm.domain.models import BotConfig

logger = logging.getLogger(__name__)

_cache_lock = threading.Lock()
_cached: dict[str, Any] | None = None
_cached_path: str | None = None

PUMP_PROGRAM_ID = "6EF8rrecthR5Dkzon8Nwu78hRvfCKubJ14M5uBEwF6P"
METADATA_PROGRAM_ID = "metaqbxxUerdq28cj1RbAWkYQm3ybzjb6a8bt518x1s"


def _project_root() -> Path:
    # dropswarm/utils/config_loader.py -> dropswarm/utils -> dropswarm -> project root
    return Path(__file__).resolve().parents[2]


def default_config_path() -> Path:
    return _project_root() / "config" / "config.yaml"


def _apply_env_overrides(cfg: dict[str, Any]) -> None:
    """Override selected YAML settings with environment variables."""
    ledger = cfg.setdefault("ledger", {})
    if os.getenv("DROPSWARM_RPC_URL"):
        ledger["rpc_url"] = os.environ["DROPSWARM_RPC_URL"]
    if os.getenv("DROPSWARM_RPC_URL_SECONDARY"):
        ledger["rpc_url_secondary"] = os.environ["DROPSWARM_RPC_URL_SECONDARY"]

    trading = cfg.setdefault("trading", {})
    if os.getenv("DROPSWARM_TRADING_MODE"):
        trading["mode"] = os.environ["DROPSWARM_TRADING_MODE"]
    if os.getenv("DROPSWARM_TRADE_API_URL"):
        trading["api_url"] = os.environ["DROPSWARM_TRADE_API_URL"]

    bot = cfg.setdefault("bot", {})
    if os.getenv("DROPSWARM_AGENT_COUNT"):
        bot["agent_count"] = int(os.environ["DROPSWARM_AGENT_COUNT"])
    if os.getenv("DROPSWARM_TOKEN_NAME"):
        bot["token_name"] = os.environ["DROPSWARM_TOKEN_NAME"]
    if os.getenv("DROPSWARM_TOKEN_TICKER"):
        bot["token_ticker"] = os.environ["DROPSWARM_TOKEN_TICKER"]


def validate_config(cfg: dict[str, Any]) -> None:
    """Fail fast if the configuration is missing required sections."""
    required_top = ["bot", "ledger"]
    missing = [k for k in required_top if k not in cfg]
    if missing:
        raise ValueError(f"Missing required config sections: {', '.join(missing)}")

    ledger = cfg.get("ledger") or {}
    if not str(ledger.get("rpc_url") or "").strip():
        raise ValueError("Missing ledger.rpc_url in config")

    mode = str((cfg.get("trading") or {}).get("mode", "paper"))
    if mode not in ("paper", "http"):
        raise ValueError(f"trading.mode must be 'paper' or 'http'; got {mode!r}")

    # Surfaces range errors in the bot section at load time.
    bot_config_from_dict(cfg["bot"])


def bot_config_from_dict(bot: dict[str, Any]) -> BotConfig:
    """Build the immutable agent configuration from the `bot` section."""
    required = ["agent_count", "buy_interval", "spend_limit", "mcap_threshold", "token_name", "token_ticker", "start_buy"]
    missing = [k for k in required if k not in bot]
    if missing:
        raise ValueError(f"Missing bot settings: {', '.join(missing)}")

    config = BotConfig(
        agent_count=int(bot["agent_count"]),
        buy_interval=float(bot["buy_interval"]),
        spend_limit=float(bot["spend_limit"]),
        mcap_threshold=float(bot["mcap_threshold"]),
        token_name=str(bot["token_name"]),
        token_ticker=str(bot["token_ticker"]),
        start_buy=float(bot["start_buy"]),
        slippage=float(bot.get("slippage", 0.3)),
        min_buy_threshold=float(bot.get("min_buy_threshold", 0.00001)),
        min_balance_reserve=float(bot.get("min_balance_reserve", 0.001)),
        sleep_std=float(bot.get("sleep_std", 5.0)),
    )

    for name in ("agent_count", "buy_interval", "spend_limit", "mcap_threshold", "start_buy"):
        if getattr(config, name) <= 0:
            raise ValueError(f"bot.{name} must be greater than 0")
    if not config.token_name or not config.token_ticker:
        raise ValueError("bot.token_name and bot.token_ticker must not be empty")
    if not 0 <= config.slippage <= 1:
        raise ValueError("bot.slippage must be between 0 and 1")
    return config


def load_config(config_path: str | Path | None = None, *, force_reload: bool = False) -> dict[str, Any]:
    """
    Load the YAML config once and reuse it across the process.

    - Reads `config/config.yaml` by default.
    - Applies environment overrides for a small set of operational settings.
    - Returns a deep copy so callers can safely mutate local copies.
    """
    global _cached, _cached_path

    path = Path(config_path) if config_path else default_config_path()
    path_str = str(path.resolve())

    with _cache_lock:
        if not force_reload and _cached is not None and _cached_path == path_str:
            return deepcopy(_cached)

        if not path.exists():
            raise FileNotFoundError(f"Config file not found: {path}")

        with path.open("r", encoding="utf-8") as f:
            cfg = yaml.safe_load(f) or {}

        if not isinstance(cfg, dict):
            raise ValueError(f"Config must be a YAML mapping (dict); got {type(cfg).__name__}")

        _apply_env_overrides(cfg)
        ledger = cfg.setdefault("ledger", {})
        ledger.setdefault("program_id", PUMP_PROGRAM_ID)
        ledger.setdefault("metadata_program_id", METADATA_PROGRAM_ID)
        validate_config(cfg)

        _cached = cfg
        _cached_path = path_str
        logger.info("Loaded config from %s", path_str)
        return deepcopy(cfg)
