from __future__ import annotations

import asyncio
import logging
from collections import OrderedDict
from dataclasses import dataclass, field
from typing import Any

import base58
import httpx

from dropswarm.domain.models import InnerInstruction, LogEntry, ParsedTransaction
from dropswarm.errors import TransientExecutionError
from dropswarm.ports.ledger import LogCallback

logger = logging.getLogger(__name__)

LAMPORTS_PER_SOL = 1_000_000_000
_TX_CACHE_SIZE = 256
_SIGNATURE_PAGE_SIZE = 100
_MAX_SIGNATURE_PAGES = 20
_FETCH_CONCURRENCY = 8


@dataclass
class LogSubscription:
    """Handle for a polling log subscription."""

    sub_id: int
    program: str
    callback: LogCallback
    task: asyncio.Task[None] | None = field(default=None, repr=False)
    last_signature: str | None = None


class LedgerRpc:
    """
    JSON-RPC client for a Solana-compatible ledger.

    Implements the log-stream port with a polling subscription over `getSignaturesForAddress`
    and exposes the balance queries the trade executors need. Use as an async context manager.
    """

    def __init__(
        self,
        url: str,
        *,
        commitment: str = "confirmed",
        timeout_seconds: float = 15.0,
        max_retries: int = 3,
        poll_interval_seconds: float = 1.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.url = url
        self.commitment = commitment
        self.timeout_seconds = float(timeout_seconds)
        self.max_retries = int(max_retries)
        self.poll_interval_seconds = float(poll_interval_seconds)
        self._transport = transport

        self._client: httpx.AsyncClient | None = None
        self._request_id = 0
        self._next_sub_id = 1
        self._subscriptions: dict[int, LogSubscription] = {}
        self._callback_tasks: set[asyncio.Task[None]] = set()
        self._tx_cache: OrderedDict[str, dict[str, Any]] = OrderedDict()
        self._fetch_slots = asyncio.Semaphore(_FETCH_CONCURRENCY)

    async def __aenter__(self) -> LedgerRpc:
        self._client = httpx.AsyncClient(timeout=self.timeout_seconds, transport=self._transport)
        return self

    async def __aexit__(self, exc_type: type | None, exc_val: Exception | None, exc_tb: Any) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        for sub_id in list(self._subscriptions):
            await self.unsubscribe(self._subscriptions[sub_id])
        if self._client:
            await self._client.aclose()
            self._client = None

    @property
    def client(self) -> httpx.AsyncClient:
        if self._client is None:
            raise RuntimeError("LedgerRpc must be used as async context manager")
        return self._client

    # ----- Transport -----

    async def call(self, method: str, params: list[Any] | None = None) -> Any:
        self._request_id += 1
        payload = {"jsonrpc": "2.0", "id": self._request_id, "method": method, "params": params or []}

        retry_count = 0
        while True:
            try:
                response = await self.client.post(self.url, json=payload)
            except httpx.HTTPError as e:
                if retry_count >= self.max_retries:
                    raise TransientExecutionError(f"{method} failed: {type(e).__name__}: {e}") from e
                wait_time = 2 ** retry_count
                logger.warning(f"{method} transport error, retrying in {wait_time}s: {e}")
                await asyncio.sleep(wait_time)
                retry_count += 1
                continue

            if response.status_code == 429 or response.status_code >= 500:
                if retry_count >= self.max_retries:
                    raise TransientExecutionError(f"{method} failed with HTTP {response.status_code}")
                wait_time = 2 ** retry_count
                logger.warning(f"{method} got HTTP {response.status_code}, retrying in {wait_time}s...")
                await asyncio.sleep(wait_time)
                retry_count += 1
                continue

            if response.status_code != 200:
                raise TransientExecutionError(f"{method} failed with HTTP {response.status_code}")

            body = response.json()
            if body.get("error"):
                err = body["error"]
                raise TransientExecutionError(f"{method} RPC error {err.get('code')}: {err.get('message')}")
            return body.get("result")

    # ----- Transactions -----

    async def _get_transaction(self, signature: str) -> dict[str, Any] | None:
        if signature in self._tx_cache:
            self._tx_cache.move_to_end(signature)
            return self._tx_cache[signature]

        tx = await self.call(
            "getTransaction",
            [signature, {"encoding": "jsonParsed", "maxSupportedTransactionVersion": 0, "commitment": self.commitment}],
        )
        if tx is None:
            return None
        self._tx_cache[signature] = tx
        while len(self._tx_cache) > _TX_CACHE_SIZE:
            self._tx_cache.popitem(last=False)
        return tx

    async def get_parsed_transaction(self, signature: str) -> ParsedTransaction | None:
        tx = await self._get_transaction(signature)
        return parse_transaction(signature, tx)

    # ----- Log subscription -----

    async def subscribe(self, program: str, callback: LogCallback) -> LogSubscription:
        sub = LogSubscription(sub_id=self._next_sub_id, program=program, callback=callback)
        self._next_sub_id += 1

        # Start from the newest signature so history is not replayed.
        latest = await self.call("getSignaturesForAddress", [program, {"limit": 1, "commitment": self.commitment}])
        if latest:
            sub.last_signature = latest[0]["signature"]

        sub.task = asyncio.create_task(self._poll_logs(sub), name=f"logs-{program[:8]}-{sub.sub_id}")
        self._subscriptions[sub.sub_id] = sub
        logger.info("Subscribed to logs of %s (subscription %d)", program, sub.sub_id)
        return sub

    async def unsubscribe(self, handle: LogSubscription) -> None:
        sub = self._subscriptions.pop(handle.sub_id, None)
        if sub is None:
            return
        task = sub.task
        if task is not None and task is not asyncio.current_task() and not task.done():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass

    async def _poll_logs(self, sub: LogSubscription) -> None:
        while sub.sub_id in self._subscriptions:
            try:
                await self._poll_once(sub)
            except Exception as e:
                logger.warning(f"Log poll for {sub.program} failed: {type(e).__name__}: {e}")
            await asyncio.sleep(self.poll_interval_seconds)

    async def _new_signatures(self, sub: LogSubscription) -> list[dict[str, Any]]:
        """Every signature newer than `sub.last_signature`, newest first, paging back with `before`."""
        rows: list[dict[str, Any]] = []
        before: str | None = None
        for _ in range(_MAX_SIGNATURE_PAGES):
            opts: dict[str, Any] = {"limit": _SIGNATURE_PAGE_SIZE, "commitment": self.commitment}
            if sub.last_signature:
                opts["until"] = sub.last_signature
            if before:
                opts["before"] = before
            page = await self.call("getSignaturesForAddress", [sub.program, opts]) or []
            rows.extend(page)
            # Without a baseline there is nothing to page back to.
            if len(page) < _SIGNATURE_PAGE_SIZE or not sub.last_signature:
                return rows
            before = page[-1]["signature"]
        logger.warning(f"More than {len(rows)} new signatures for {sub.program}; older ones were skipped")
        return rows

    async def _entry_for(self, row: dict[str, Any]) -> LogEntry | None:
        signature = row["signature"]
        if row.get("err") is not None:
            return LogEntry(signature=signature, logs=(), err=row["err"])
        try:
            async with self._fetch_slots:
                tx = await self._get_transaction(signature)
        except TransientExecutionError as e:
            logger.warning(f"Could not fetch logs for {signature}: {e}")
            return None
        meta = (tx or {}).get("meta") or {}
        return LogEntry(signature=signature, logs=tuple(meta.get("logMessages") or ()), err=meta.get("err"))

    async def _poll_once(self, sub: LogSubscription) -> None:
        rows = await self._new_signatures(sub)
        if not rows:
            return
        sub.last_signature = rows[0]["signature"]

        # Newest first on the wire; deliver oldest first.
        entries = await asyncio.gather(*(self._entry_for(row) for row in reversed(rows)))
        for entry in entries:
            if sub.sub_id not in self._subscriptions:
                return
            if entry is None:
                continue
            task = asyncio.create_task(sub.callback(entry))
            self._callback_tasks.add(task)
            task.add_done_callback(self._callback_done)

    def _callback_done(self, task: asyncio.Task[None]) -> None:
        self._callback_tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error(f"Log callback failed: {type(exc).__name__}: {exc}")

    # ----- Balances -----

    async def get_balance(self, pubkey: str) -> float:
        result = await self.call("getBalance", [pubkey, {"commitment": self.commitment}])
        return int((result or {}).get("value", 0)) / LAMPORTS_PER_SOL

    async def get_token_balance(self, owner: str, mint: str) -> float | None:
        result = await self.call(
            "getTokenAccountsByOwner",
            [owner, {"mint": mint}, {"encoding": "jsonParsed", "commitment": self.commitment}],
        )
        accounts = (result or {}).get("value") or []
        if not accounts:
            return None
        total = 0.0
        for acc in accounts:
            info = acc.get("account", {}).get("data", {}).get("parsed", {}).get("info", {})
            ui_amount = info.get("tokenAmount", {}).get("uiAmount")
            if ui_amount is not None:
                total += float(ui_amount)
        return total

    async def get_balance_change(self, signature: str, pubkey: str) -> float:
        """SOL that left `pubkey` in the transaction (positive for a buy)."""
        tx = await self._get_transaction(signature)
        if not tx or not tx.get("meta"):
            raise TransientExecutionError(f"Transaction {signature} not found")
        keys = [k["pubkey"] if isinstance(k, dict) else k for k in tx["transaction"]["message"]["accountKeys"]]
        if pubkey not in keys:
            raise TransientExecutionError(f"{pubkey} is not part of transaction {signature}")
        idx = keys.index(pubkey)
        meta = tx["meta"]
        return (int(meta["preBalances"][idx]) - int(meta["postBalances"][idx])) / LAMPORTS_PER_SOL


def parse_transaction(signature: str, tx: dict[str, Any] | None) -> ParsedTransaction | None:
    """Reduce a jsonParsed `getTransaction` result to the fields the detector reads."""
    if not tx:
        return None
    meta = tx.get("meta")
    message = (tx.get("transaction") or {}).get("message")
    if not meta or not message:
        return None

    signers = tuple(k["pubkey"] for k in message.get("accountKeys") or () if isinstance(k, dict) and k.get("signer"))

    inner: list[InnerInstruction] = []
    for group in meta.get("innerInstructions") or ():
        for ix in group.get("instructions") or ():
            # Fully parsed instructions carry no raw data.
            if "data" not in ix:
                continue
            try:
                data = base58.b58decode(ix["data"])
            except ValueError:
                continue
            inner.append(InnerInstruction(program_id=str(ix.get("programId")), data=data, accounts=tuple(ix.get("accounts") or ())))

    post_mints = tuple(b["mint"] for b in meta.get("postTokenBalances") or () if b.get("mint"))
    return ParsedTransaction(signature=signature, signers=signers, inner_instructions=tuple(inner), post_token_mints=post_mints)
