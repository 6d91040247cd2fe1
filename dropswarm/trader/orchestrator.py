from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Callable, Sequence

import numpy as np

from dropswarm.domain.models import AssetMetadata, BotConfig, Command, Credential, MintUpdate
from dropswarm.errors import AgentAbnormalExit, NoCredentials
from dropswarm.ports.ledger import TradeExecutorPort
from dropswarm.trader.agent import TradeRecorder, TradingAgent

logger = logging.getLogger(__name__)

ExecutorFactory = Callable[[str | None], TradeExecutorPort]
# (level, message, symbol, step)
EventSink = Callable[[str, str, str | None, str | None], None]


@dataclass(frozen=True)
class AgentExit:
    agent_id: int
    error: BaseException | None = None

    @property
    def ok(self) -> bool:
        return self.error is None


@dataclass
class AgentHandle:
    agent_id: int
    agent: TradingAgent
    endpoint: str | None
    task: asyncio.Task[AgentExit] | None = field(default=None, repr=False)

    @property
    def live(self) -> bool:
        return self.task is not None and not self.task.done()


class Orchestrator:
    """
    Owns the agent pool: spawns one agent per credential, fans commands out to their inboxes and
    collects their exits. Agents never share mutable state; each one gets its own executor view
    of an endpoint bucket and its own random stream.
    """

    def __init__(
        self,
        config: BotConfig,
        executor_factory: ExecutorFactory,
        endpoints: Sequence[str] = (),
        *,
        seed: int | None = None,
        event_sink: EventSink | None = None,
        trade_recorder: TradeRecorder | None = None,
    ) -> None:
        self.config = config
        self.executor_factory = executor_factory
        self.endpoints = [e for e in endpoints if e]
        self.seed = seed
        self.event_sink = event_sink
        self.trade_recorder = trade_recorder

        self.handles: list[AgentHandle] = []
        self.metadata: AssetMetadata | None = None
        self._executors: dict[str | None, TradeExecutorPort] = {}
        self._exits: list[AgentExit] = []

    # ----- Pool -----

    def endpoint_for(self, agent_id: int) -> str | None:
        """Even ids use the primary endpoint, odd ids the secondary one when configured."""
        if not self.endpoints:
            return None
        if agent_id % 2 == 0 or len(self.endpoints) == 1:
            return self.endpoints[0]
        return self.endpoints[1]

    def _executor_for(self, endpoint: str | None) -> TradeExecutorPort:
        if endpoint not in self._executors:
            self._executors[endpoint] = self.executor_factory(endpoint)
        return self._executors[endpoint]

    def spawn_pool(self, credentials: Sequence[Credential]) -> list[AgentHandle]:
        if not credentials:
            raise NoCredentials("No keys available.")

        count = min(self.config.agent_count, len(credentials))
        if count < self.config.agent_count:
            logger.warning("Only %d credential(s) available; starting %d of %d agents", len(credentials), count, self.config.agent_count)

        seeds = np.random.SeedSequence(self.seed).spawn(count)
        logger.info("Starting %d agent(s)...", count)
        for i in range(count):
            agent_id = i + 1
            endpoint = self.endpoint_for(agent_id)
            agent = TradingAgent(
                agent_id,
                credentials[i],
                self.config,
                self._executor_for(endpoint),
                self._report,
                rng=np.random.default_rng(seeds[i]),
                record_trade=self.trade_recorder,
            )
            handle = AgentHandle(agent_id=agent_id, agent=agent, endpoint=endpoint)
            handle.task = asyncio.create_task(self._supervise(handle), name=f"agent-{agent_id}")
            self.handles.append(handle)
        return list(self.handles)

    async def _supervise(self, handle: AgentHandle) -> AgentExit:
        try:
            await handle.agent.run()
            exit_ = AgentExit(handle.agent_id)
        except Exception as e:
            logger.exception("[Agent %d] encountered error", handle.agent_id)
            self._emit("ERROR", f"[Agent {handle.agent_id}] encountered error: {type(e).__name__}: {e}", handle.agent_id)
            exit_ = AgentExit(handle.agent_id, e)
        self._exits.append(exit_)
        return exit_

    # ----- Commands -----

    def broadcast(self, command: Command) -> None:
        for handle in self.handles:
            if handle.live:
                handle.agent.send(command)

    def send(self, agent_id: int, command: Command) -> None:
        for handle in self.handles:
            if handle.agent_id == agent_id:
                if handle.live:
                    handle.agent.send(command)
                return
        raise KeyError(f"No agent with id {agent_id}")

    async def publish_metadata(self, metadata: AssetMetadata) -> None:
        """Replace the current asset snapshot and push it to every agent."""
        self.metadata = metadata
        self.broadcast(MintUpdate(metadata))

    # ----- Completion -----

    async def await_completion(self, handles: Sequence[AgentHandle] | None = None) -> None:
        """
        Wait for every agent to finish.

        Raises AgentAbnormalExit for the first agent (in exit order) whose loop raised. Sibling
        agents are never cancelled; they all run to their own completion first.
        """
        targets = list(handles) if handles is not None else list(self.handles)
        tasks = [h.task for h in targets if h.task is not None]
        if tasks:
            await asyncio.gather(*tasks)

        ids = {h.agent_id for h in targets}
        failures = [e for e in self._exits if e.agent_id in ids and not e.ok]
        if failures:
            first = failures[0]
            if len(failures) > 1:
                logger.error("%d agents exited abnormally; reporting the first", len(failures))
            raise AgentAbnormalExit(first.agent_id, first.error)

        logger.info("All agents have finished executing")
        self._emit("INFO", "All agents have finished executing", None)

    # ----- Status -----

    def _report(self, agent_id: int, text: str) -> None:
        for line in text.splitlines():
            if not line:
                continue
            level = "ERROR" if "Error" in line else "INFO"
            logger.log(logging.ERROR if level == "ERROR" else logging.INFO, line)
            self._emit(level, line, agent_id)

    def _emit(self, level: str, message: str, agent_id: int | None) -> None:
        if self.event_sink is None:
            return
        symbol = f"Agent {agent_id}" if agent_id is not None else "Orchestrator"
        try:
            self.event_sink(level, message, symbol, "Status")
        except Exception as e:
            logger.warning(f"Failed to persist status line: {e}")
