from __future__ import annotations

import argparse
import asyncio
import logging
import signal
from contextlib import AsyncExitStack
from pathlib import Path
from typing import Any

from dropswarm.chain.rpc import LedgerRpc
from dropswarm.detector.detector import AssetDetector
from dropswarm.domain.models import AssetMetadata, Buy, Collect, Sell, Stop
from dropswarm.errors import AgentAbnormalExit, FatalSetupError
from dropswarm.ports.ledger import TradeExecutorPort
from dropswarm.trader.orchestrator import ExecutorFactory, Orchestrator
from dropswarm.trading.executor import HttpTradeExecutor, PaperTradeExecutor
from dropswarm.trading.market_feed import MarketFeed
from dropswarm.utils.config_loader import bot_config_from_dict, load_config
from dropswarm.utils.database import close_write_conn, init_db, log_event, record_trade
from dropswarm.utils.keys import load_keys

logger = logging.getLogger(__name__)


def _keys_dir(cfg: dict[str, Any]) -> Path:
    directory = Path(str((cfg.get("keys") or {}).get("directory", "keys")))
    if directory.is_absolute():
        return directory
    return Path(__file__).resolve().parents[2] / directory


def _executor_factory(cfg: dict[str, Any], ledgers: dict[str, LedgerRpc], stack: AsyncExitStack) -> ExecutorFactory:
    trading = cfg.get("trading") or {}
    mode = str(trading.get("mode", "paper"))
    primary = str(cfg["ledger"]["rpc_url"])

    def build(endpoint: str | None) -> TradeExecutorPort:
        if mode == "paper":
            return PaperTradeExecutor(starting_balance=float(trading.get("paper_balance", 2.0)))
        executor = HttpTradeExecutor(
            str(trading["api_url"]),
            ledgers[endpoint or primary],
            priority_fee=float(trading.get("priority_fee", 0.0005)),
            pool=str(trading.get("pool", "pump")),
        )
        stack.push_async_callback(executor.aclose)
        return executor

    return build


def _install_signal_handlers(orchestrator: Orchestrator) -> None:
    """Ctrl+C collects (exit, selling only if a sell was pending); a second Ctrl+C stops; SIGUSR1 sells."""
    loop = asyncio.get_running_loop()
    interrupts = 0

    def on_interrupt() -> None:
        nonlocal interrupts
        interrupts += 1
        if interrupts == 1:
            logger.info("Interrupt received, collecting agents (press Ctrl+C again to stop)...")
            orchestrator.broadcast(Collect())
        else:
            logger.info("Second interrupt received, stopping agents...")
            orchestrator.broadcast(Stop())

    def on_sell() -> None:
        logger.info("Sell requested, agents will sell after their current cycle...")
        orchestrator.broadcast(Sell())

    try:
        loop.add_signal_handler(signal.SIGINT, on_interrupt)
        loop.add_signal_handler(signal.SIGUSR1, on_sell)
    except (NotImplementedError, AttributeError):
        # Platforms without loop signal support fall back to KeyboardInterrupt.
        logger.debug("Loop signal handlers unavailable on this platform")


async def run_bot(cfg: dict[str, Any], *, seed: int | None = None) -> int:
    """Wire detector, agents and feeds together and run until every agent is done. Returns an exit code."""
    bot_config = bot_config_from_dict(cfg["bot"])
    ledger_cfg = cfg["ledger"]
    primary = str(ledger_cfg["rpc_url"])
    secondary = str(ledger_cfg.get("rpc_url_secondary") or "")
    endpoints = [primary] + ([secondary] if secondary and secondary != primary else [])

    init_db()
    log_event("INFO", f"Starting with config: {bot_config.to_dict()}", symbol="Orchestrator", step="Start")
    credentials = load_keys(_keys_dir(cfg))

    async with AsyncExitStack() as stack:
        ledgers: dict[str, LedgerRpc] = {}
        for url in endpoints:
            ledgers[url] = await stack.enter_async_context(
                LedgerRpc(
                    url,
                    commitment=str(ledger_cfg.get("commitment", "confirmed")),
                    timeout_seconds=float(ledger_cfg.get("timeout_seconds", 15)),
                    max_retries=int(ledger_cfg.get("max_retries", 3)),
                    poll_interval_seconds=float(ledger_cfg.get("poll_interval_seconds", 1.0)),
                )
            )

        orchestrator = Orchestrator(
            bot_config,
            _executor_factory(cfg, ledgers, stack),
            endpoints,
            seed=seed,
            event_sink=log_event,
            trade_recorder=record_trade,
        )

        market_cfg = cfg.get("market") or {}
        feed: MarketFeed | None = None
        if market_cfg.get("coin_info_url"):
            feed = MarketFeed(
                str(market_cfg["coin_info_url"]),
                orchestrator.publish_metadata,
                refresh_interval_seconds=float(market_cfg.get("refresh_interval_seconds", 10)),
            )
            stack.push_async_callback(feed.stop)

        async def on_resolved(metadata: AssetMetadata) -> None:
            # Agents get the token before the event-store write.
            await orchestrator.publish_metadata(metadata)
            if feed is not None:
                feed.start(metadata)
            log_event("INFO", f"Token detected: {metadata.mint}", symbol="Detector", step="Resolved")

        detector = AssetDetector(
            ledgers[primary],
            str(ledger_cfg["program_id"]),
            str(ledger_cfg["metadata_program_id"]),
            on_resolved=on_resolved,
        )
        stack.push_async_callback(detector.unsubscribe)

        try:
            await detector.subscribe(bot_config.token_name, bot_config.token_ticker)
            handles = orchestrator.spawn_pool(credentials)
        except FatalSetupError as e:
            logger.error(f"[ERROR] {e}")
            log_event("ERROR", str(e), symbol="Orchestrator", step="Setup")
            close_write_conn()
            return 1

        _install_signal_handlers(orchestrator)
        orchestrator.broadcast(Buy())

        try:
            await orchestrator.await_completion(handles)
            code = 0
        except AgentAbnormalExit as e:
            logger.error(f"[ERROR] One of the agents encountered an error: {e}")
            log_event("ERROR", str(e), symbol="Orchestrator", step="Completion")
            code = 1

    close_write_conn()
    return code


def main(argv: list[str] | None = None) -> None:
    parser = argparse.ArgumentParser(prog="dropswarm", description="Coordinated multi-account token drop buyer.")
    subparsers = parser.add_subparsers(dest="command")
    start = subparsers.add_parser("start", aliases=["s"], help="Start the bot")
    start.add_argument("--config", default=None, help="Path to config.yaml (default: config/config.yaml).")
    start.add_argument("--seed", type=int, default=None, help="Seed for the agents' random pacing and buy sizes.")
    args = parser.parse_args(argv)

    if args.command is None:
        parser.print_help()
        return

    # Configure logging (idempotent; safe if configured elsewhere).
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )

    cfg = load_config(args.config)
    logger.info("Starting the bot...")
    try:
        code = asyncio.run(run_bot(cfg, seed=args.seed))
    except KeyboardInterrupt:
        logger.info("Stopping dropswarm...")
        code = 1
    raise SystemExit(code)


if __name__ == "__main__":
    main()
