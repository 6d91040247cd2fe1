from __future__ import annotations

import asyncio
import logging
from typing import Callable

import numpy as np

from dropswarm.domain.models import (
    AgentContext,
    AgentState,
    AssetMetadata,
    BotConfig,
    Buy,
    Collect,
    COMMAND_TYPES,
    Command,
    Credential,
    MintUpdate,
    Sell,
    Stop,
)
from dropswarm.ports.ledger import TradeExecutorPort
from dropswarm.trader.pacing import CancellableSleep

logger = logging.getLogger(__name__)

# (agent_id, status text); text may hold several newline-separated lines.
StatusReporter = Callable[[int, str], None]
# (agent_id, mint, action, amount, signature, status)
TradeRecorder = Callable[[int, str, str, float, str | None, str], None]


class TradingAgent:
    """
    One account's buy/sell control loop.

    The loop starts on `Buy`, buys on a randomized schedule once it has asset metadata, and exits
    on the market-cap threshold or an orchestrator command. Commands arrive on `inbox` and are
    applied in order by a listener task; the control loop owns spend and buy-size state.
    """

    def __init__(
        self,
        agent_id: int,
        credential: Credential,
        config: BotConfig,
        executor: TradeExecutorPort,
        report: StatusReporter,
        *,
        rng: np.random.Generator | None = None,
        record_trade: TradeRecorder | None = None,
    ) -> None:
        self.config = config
        self.executor = executor
        self.report = report
        self.record_trade = record_trade
        self.rng = rng if rng is not None else np.random.default_rng()
        self.ctx = AgentContext(agent_id=agent_id, credential=credential, spend_limit=config.spend_limit)
        self.inbox: asyncio.Queue[Command] = asyncio.Queue()
        self.metadata: AssetMetadata | None = None

        self._started = asyncio.Event()
        self._sleeper: CancellableSleep | None = None
        self._buffer: list[str] = []

    @property
    def agent_id(self) -> int:
        return self.ctx.agent_id

    @property
    def state(self) -> AgentState:
        return self.ctx.state

    def send(self, command: Command) -> None:
        if not isinstance(command, COMMAND_TYPES):
            raise TypeError(f"Unknown command: {command!r}")
        self.inbox.put_nowait(command)

    # ----- Lifecycle -----

    async def run(self) -> None:
        tag = self.ctx.tag
        await self._prepare_spend_limit()
        self.report(self.agent_id, f"{tag} Started with public key: {self.ctx.credential.pubkey}")

        listener = asyncio.create_task(self._listen(), name=f"agent-{self.agent_id}-inbox")
        try:
            await self._started.wait()
            if not self.ctx.exit_requested:
                await self._control_loop()
            elif self.ctx.sell_triggered:
                self.ctx.state = AgentState.SELL_TRIGGERED
                await self._sell()
        finally:
            self.ctx.state = AgentState.DONE
            listener.cancel()
            try:
                await listener
            except asyncio.CancelledError:
                pass

        self._note(f"{tag} Finished")
        self._flush()

    async def _prepare_spend_limit(self) -> None:
        """Cap the spend limit at the account balance, keeping a small reserve for fees."""
        limit = self.config.spend_limit
        try:
            balance = await self.executor.get_balance(self.ctx.credential)
            limit = min(limit, balance)
        except Exception as e:
            self.report(self.agent_id, f"{self.ctx.tag} Could not read balance, using configured spend limit: {e}")
        self.ctx.spend_limit = max(0.0, limit - self.config.min_balance_reserve)

    # ----- Commands -----

    async def _listen(self) -> None:
        while True:
            command = await self.inbox.get()
            self.handle_command(command)

    def handle_command(self, command: Command) -> None:
        ctx = self.ctx
        match command:
            case MintUpdate(metadata=metadata):
                self.metadata = metadata
                if ctx.state is AgentState.AWAITING_SIGNAL and self._started.is_set() and not ctx.exit_requested:
                    ctx.state = AgentState.ACTIVE
            case _ if ctx.state is AgentState.DONE:
                return
            case Buy():
                if not self._started.is_set():
                    ctx.current_buy_size = self.config.start_buy
                    self._started.set()
            case Sell():
                if not ctx.sell_triggered and not ctx.stop_requested:
                    self.report(self.agent_id, f"{ctx.tag} Received sell command")
                    ctx.exit_requested = True
                    ctx.sell_triggered = True
                    self._started.set()
            case Collect():
                # Cuts the sleep short even when a sell is already pending.
                if not ctx.collect_requested and not ctx.stop_requested:
                    self.report(self.agent_id, f"{ctx.tag} Received collect command")
                    ctx.collect_requested = True
                    self._request_exit()
            case Stop():
                if not ctx.stop_requested:
                    self.report(self.agent_id, f"{ctx.tag} Stopped by the orchestrator")
                    ctx.stop_requested = True
                    ctx.sell_triggered = False
                    self._request_exit()
            case _:
                raise TypeError(f"Unknown command: {command!r}")

    def _request_exit(self) -> None:
        self.ctx.exit_requested = True
        self._started.set()
        if self._sleeper is not None:
            self._sleeper.cancel()

    # ----- Control loop -----

    async def _control_loop(self) -> None:
        ctx = self.ctx
        cfg = self.config
        tag = ctx.tag

        while not ctx.exit_requested:
            metadata = self.metadata
            if metadata is None:
                self._note(f"{tag} Mint metadata not available")
            else:
                ctx.state = AgentState.ACTIVE
                if metadata.market_cap >= cfg.mcap_threshold:
                    self._note(f"{tag} Market cap threshold reached, starting to sell...")
                    ctx.sell_triggered = True
                    break
                if ctx.spent < ctx.spend_limit and ctx.current_buy_size > cfg.min_buy_threshold:
                    await self._buy(metadata)
                else:
                    self._note(f"{tag} Spend limit reached, waiting for the next actions...")

            sleep_for = max(0.0, float(self.rng.normal(cfg.buy_interval, cfg.sleep_std)))
            self._note(f"{tag} Sleeping for {sleep_for:.2f} seconds")
            self._flush()
            if not ctx.exit_requested:
                self._sleeper = CancellableSleep(sleep_for)
                try:
                    await self._sleeper.wait()
                finally:
                    self._sleeper = None

        if ctx.sell_triggered:
            ctx.state = AgentState.SELL_TRIGGERED
            await self._sell()

    async def _buy(self, metadata: AssetMetadata) -> None:
        ctx = self.ctx
        tag = ctx.tag
        self._note(f"{tag} Buying the token...")

        std = ctx.current_buy_size * 0.1
        amount = max(self.config.min_buy_threshold, float(self.rng.normal(ctx.current_buy_size, std)))
        try:
            signature = await self.executor.buy(amount, ctx.credential, metadata, self.config.slippage)
        except Exception as e:
            self._note(f"{tag} Error buying the token: {e}. Will sleep and retry...")
            self._record(metadata, "BUY", amount, None, "FAILED")
            return

        spent = amount
        try:
            spent = await self.executor.get_balance_change(signature, ctx.credential)
        except Exception as e:
            self._note(f"{tag} Error getting balance change: {e}")

        ctx.spent += spent
        if ctx.second_buy:
            ctx.current_buy_size /= 2
        ctx.second_buy = not ctx.second_buy
        self._note(f"{tag} Bought {amount:.5f} SOL of the token '{metadata.symbol}'. Signature: {signature}")
        self._record(metadata, "BUY", spent, signature, "OK")

    async def _sell(self) -> None:
        ctx = self.ctx
        tag = ctx.tag
        metadata = self.metadata
        self._note(f"{tag} Started selling the token")
        if metadata is None:
            self._note(f"{tag} No tokens to sell")
            return

        try:
            balance = await self.executor.get_token_balance(ctx.credential, metadata)
        except Exception as e:
            self._note(f"{tag} Error reading token balance: {e}. No tokens to sell")
            return
        if not balance:
            self._note(f"{tag} No tokens to sell")
            return

        try:
            signature = await self.executor.sell(balance, ctx.credential, metadata, self.config.slippage)
        except Exception as e:
            self._note(f"{tag} Error selling the token: {e}, you will have to sell manually...")
            self._record(metadata, "SELL", balance, None, "FAILED")
            return
        self._note(f"{tag} Sold {balance:.2f} tokens. Signature: {signature}")
        self._record(metadata, "SELL", balance, signature, "OK")

    # ----- Reporting -----

    def _note(self, line: str) -> None:
        self._buffer.append(line)

    def _flush(self) -> None:
        if self._buffer:
            self.report(self.agent_id, "\n".join(self._buffer))
            self._buffer = []

    def _record(self, metadata: AssetMetadata, action: str, amount: float, signature: str | None, status: str) -> None:
        if self.record_trade is not None:
            self.record_trade(self.agent_id, metadata.mint, action, amount, signature, status)
