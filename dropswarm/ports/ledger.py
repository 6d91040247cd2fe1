from __future__ import annotations

from typing import Any, Awaitable, Callable, Protocol

from dropswarm.domain.models import AssetMetadata, Credential, LogEntry, ParsedTransaction

LogCallback = Callable[[LogEntry], Awaitable[None]]


class TradeExecutorPort(Protocol):
    async def buy(self, amount: float, credential: Credential, asset: AssetMetadata, slippage: float) -> str: ...

    async def sell(self, amount: float, credential: Credential, asset: AssetMetadata, slippage: float) -> str: ...

    async def get_balance(self, credential: Credential) -> float: ...

    async def get_token_balance(self, credential: Credential, asset: AssetMetadata) -> float | None: ...

    async def get_balance_change(self, signature: str, credential: Credential) -> float: ...


class LedgerPort(Protocol):
    async def subscribe(self, program: str, callback: LogCallback) -> Any: ...

    async def unsubscribe(self, handle: Any) -> None: ...

    async def get_parsed_transaction(self, signature: str) -> ParsedTransaction | None: ...
