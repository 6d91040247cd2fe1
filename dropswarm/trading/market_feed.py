from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Callable

import httpx

from dropswarm.domain.models import AssetMetadata

logger = logging.getLogger(__name__)

Publisher = Callable[[AssetMetadata], Awaitable[None]]


def metadata_from_coin_info(current: AssetMetadata, info: dict[str, Any]) -> AssetMetadata:
    """Build a fresh snapshot from a coin-info payload, keeping the mint fixed."""
    market_cap = info.get("usd_market_cap")
    return AssetMetadata(
        mint=current.mint,
        symbol=str(info.get("symbol") or current.symbol),
        market_cap=float(market_cap) if market_cap is not None else current.market_cap,
        pool=info.get("raydium_pool") or None,
    )


class MarketFeed:
    """Polls a coin-info endpoint and publishes a new AssetMetadata snapshot on every refresh."""

    def __init__(
        self,
        coin_info_url: str,
        publish: Publisher,
        *,
        refresh_interval_seconds: float = 10.0,
        timeout_seconds: float = 10.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.coin_info_url = coin_info_url
        self.publish = publish
        self.refresh_interval_seconds = float(refresh_interval_seconds)
        self._client = httpx.AsyncClient(timeout=timeout_seconds, transport=transport)
        self._task: asyncio.Task[None] | None = None

    async def fetch(self, current: AssetMetadata) -> AssetMetadata | None:
        url = self.coin_info_url.format(mint=current.mint)
        try:
            response = await self._client.get(url)
            response.raise_for_status()
            info = response.json()
        except (httpx.HTTPError, ValueError) as e:
            logger.warning(f"Failed to refresh market data for {current.mint}: {e}")
            return None
        if not isinstance(info, dict):
            return None
        return metadata_from_coin_info(current, info)

    async def refresh(self, current: AssetMetadata) -> AssetMetadata:
        fresh = await self.fetch(current)
        if fresh is None:
            return current
        await self.publish(fresh)
        return fresh

    def start(self, metadata: AssetMetadata) -> None:
        if self._task is None or self._task.done():
            self._task = asyncio.create_task(self._run(metadata), name="market-feed")

    async def _run(self, metadata: AssetMetadata) -> None:
        current = metadata
        while True:
            current = await self.refresh(current)
            logger.debug("Market cap of %s: %.2f", current.symbol, current.market_cap)
            await asyncio.sleep(self.refresh_interval_seconds)

    async def stop(self) -> None:
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        await self._client.aclose()
