from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Union


@dataclass(frozen=True)
class BotConfig:
    agent_count: int
    buy_interval: float
    spend_limit: float
    mcap_threshold: float
    token_name: str
    token_ticker: str
    start_buy: float
    slippage: float = 0.3
    min_buy_threshold: float = 0.00001
    min_balance_reserve: float = 0.001
    sleep_std: float = 5.0

    def to_dict(self) -> dict[str, Any]:
        return {
            "agent_count": int(self.agent_count),
            "buy_interval": float(self.buy_interval),
            "spend_limit": float(self.spend_limit),
            "mcap_threshold": float(self.mcap_threshold),
            "token_name": self.token_name,
            "token_ticker": self.token_ticker,
            "start_buy": float(self.start_buy),
            "slippage": float(self.slippage),
            "min_buy_threshold": float(self.min_buy_threshold),
            "min_balance_reserve": float(self.min_balance_reserve),
            "sleep_std": float(self.sleep_std),
        }


@dataclass(frozen=True)
class Credential:
    secret_key: bytes = field(repr=False)
    pubkey: str
    api_key: str | None = field(default=None, repr=False)
    source: str | None = None


@dataclass(frozen=True)
class AssetMetadata:
    mint: str
    symbol: str
    market_cap: float = 0.0
    pool: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "mint": self.mint,
            "symbol": self.symbol,
            "market_cap": float(self.market_cap),
            "pool": self.pool,
        }


class AgentState(str, Enum):
    AWAITING_SIGNAL = "AwaitingSignal"
    ACTIVE = "Active"
    SELL_TRIGGERED = "SellTriggered"
    DONE = "Done"


@dataclass
class AgentContext:
    """Mutable per-agent state. Only the owning agent touches it."""

    agent_id: int
    credential: Credential
    spend_limit: float
    spent: float = 0.0
    current_buy_size: float = 0.0
    second_buy: bool = False
    exit_requested: bool = False
    sell_triggered: bool = False
    collect_requested: bool = False
    stop_requested: bool = False
    state: AgentState = AgentState.AWAITING_SIGNAL

    @property
    def tag(self) -> str:
        return f"[Agent {self.agent_id}]"


# ----- Orchestrator -> agent commands -----


@dataclass(frozen=True)
class Buy:
    pass


@dataclass(frozen=True)
class Sell:
    pass


@dataclass(frozen=True)
class Collect:
    pass


@dataclass(frozen=True)
class Stop:
    pass


@dataclass(frozen=True)
class MintUpdate:
    metadata: AssetMetadata


Command = Union[Buy, Sell, Collect, Stop, MintUpdate]
COMMAND_TYPES = (Buy, Sell, Collect, Stop, MintUpdate)


# ----- Ledger views (produced by the chain adapter) -----


@dataclass(frozen=True)
class LogEntry:
    signature: str
    logs: tuple[str, ...]
    err: Any = None


@dataclass(frozen=True)
class InnerInstruction:
    program_id: str
    data: bytes
    accounts: tuple[str, ...] = ()


@dataclass(frozen=True)
class ParsedTransaction:
    signature: str
    signers: tuple[str, ...]
    inner_instructions: tuple[InnerInstruction, ...] = ()
    post_token_mints: tuple[str, ...] = ()
