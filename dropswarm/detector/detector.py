from __future__ import annotations

import asyncio
import logging
from enum import Enum
from typing import Any, Awaitable, Callable

from dropswarm.detector.metadata_decode import decode_create_metadata
from dropswarm.domain.models import AssetMetadata, LogEntry, ParsedTransaction
from dropswarm.errors import DecodeSkip, SubscriptionFailed
from dropswarm.ports.ledger import LedgerPort

logger = logging.getLogger(__name__)

MINT_LOG_MARKER = "Program log: Instruction: MintTo"

# Position of the mint in CreateMetadataAccountV3's account list.
MINT_ACCOUNT_INDEX = 1

ResolvedCallback = Callable[[AssetMetadata], Awaitable[None]]


class DetectorState(str, Enum):
    UNSUBSCRIBED = "Unsubscribed"
    SUBSCRIBED = "Subscribed"
    RESOLVED = "Resolved"


class AssetDetector:
    """
    Watches the creation-event program's logs for a token with the target name and ticker.

    A match resolves only when the candidate mint also signed the transaction. On resolution the
    detector unsubscribes, fulfils `wait_resolved()` and calls `on_resolved`.
    """

    def __init__(
        self,
        ledger: LedgerPort,
        program_id: str,
        metadata_program_id: str,
        *,
        on_resolved: ResolvedCallback | None = None,
    ) -> None:
        self.ledger = ledger
        self.program_id = program_id
        self.metadata_program_id = metadata_program_id
        self.on_resolved = on_resolved

        self.state = DetectorState.UNSUBSCRIBED
        self.target_name: str | None = None
        self.target_ticker: str | None = None
        self.metadata: AssetMetadata | None = None

        self._handle: Any = None
        self._resolved: asyncio.Future[AssetMetadata] | None = None

    async def subscribe(self, target_name: str, target_ticker: str) -> Any:
        self.target_name = target_name
        self.target_ticker = target_ticker
        self._resolved = asyncio.get_running_loop().create_future()

        logger.info("Waiting for the new token drop (name=%r, ticker=%r)...", target_name, target_ticker)
        try:
            handle = await self.ledger.subscribe(self.program_id, self.handle_log)
        except Exception as e:
            raise SubscriptionFailed(f"Failed to subscribe to logs: {type(e).__name__}: {e}") from e
        if handle is None:
            raise SubscriptionFailed("Failed to subscribe to logs: no subscription handle returned")

        self._handle = handle
        self.state = DetectorState.SUBSCRIBED
        return handle

    async def unsubscribe(self) -> None:
        handle = self._handle
        if handle is None:
            return
        self._handle = None
        try:
            await self.ledger.unsubscribe(handle)
            logger.info("Unsubscribed from logs")
        except Exception as e:
            logger.error(f"Failed to unsubscribe from logs: {e}")
        if self.state is DetectorState.SUBSCRIBED:
            self.state = DetectorState.UNSUBSCRIBED

    async def wait_resolved(self) -> AssetMetadata:
        if self._resolved is None:
            raise RuntimeError("subscribe() must be called before wait_resolved()")
        return await asyncio.shield(self._resolved)

    async def handle_log(self, entry: LogEntry) -> None:
        if self.state is not DetectorState.SUBSCRIBED:
            return
        if entry.err is not None:
            return
        if MINT_LOG_MARKER not in entry.logs:
            return

        try:
            tx = await self.ledger.get_parsed_transaction(entry.signature)
        except Exception as e:
            logger.error(f"Failed fetching the parsed transaction {entry.signature}: {e}")
            return
        if tx is None:
            return

        metadata = self.match_transaction(tx)
        if metadata is None:
            return
        await self._resolve(metadata)

    def match_transaction(self, tx: ParsedTransaction) -> AssetMetadata | None:
        """Return the target's metadata if `tx` creates it and the mint signed, else None."""
        candidate: AssetMetadata | None = None
        for ix in tx.inner_instructions:
            if ix.program_id != self.metadata_program_id:
                continue
            try:
                decoded = decode_create_metadata(ix.data)
            except DecodeSkip:
                continue
            if decoded.bytes_consumed <= 0:
                continue
            if decoded.name != self.target_name or self.target_ticker not in decoded.symbol:
                continue

            if tx.post_token_mints:
                mint = tx.post_token_mints[0]
            elif len(ix.accounts) > MINT_ACCOUNT_INDEX:
                mint = ix.accounts[MINT_ACCOUNT_INDEX]
            else:
                continue
            candidate = AssetMetadata(mint=mint, symbol=decoded.symbol)

        if candidate is None or candidate.mint not in tx.signers:
            return None
        return candidate

    async def _resolve(self, metadata: AssetMetadata) -> None:
        # Entries are handled concurrently; only the first confirmed match counts.
        if self.state is not DetectorState.SUBSCRIBED:
            return
        self.state = DetectorState.RESOLVED
        self.metadata = metadata
        logger.info("Token detected: %s (%s)", metadata.mint, metadata.symbol)

        await self.unsubscribe()
        if self._resolved is not None and not self._resolved.done():
            self._resolved.set_result(metadata)
        if self.on_resolved is not None:
            try:
                await self.on_resolved(metadata)
            except Exception as e:
                logger.error(f"Resolved-token handler failed for {metadata.mint}: {type(e).__name__}: {e}")
