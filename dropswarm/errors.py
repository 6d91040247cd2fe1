from __future__ import annotations


class FatalSetupError(Exception):
    """Setup failed before any agent could start; the run must abort."""


class NoCredentials(FatalSetupError):
    """No account credentials were available to bind agents to."""


class SubscriptionFailed(FatalSetupError):
    """The log-stream subscription could not be established."""


class TransientExecutionError(Exception):
    """A buy, sell or ledger call failed. Buys are retried on the next cycle; sells never are."""


class DecodeSkip(Exception):
    """Instruction data was malformed or irrelevant and should be skipped silently."""


class AgentAbnormalExit(Exception):
    """An agent's control loop raised instead of finishing normally."""

    def __init__(self, agent_id: int, cause: BaseException) -> None:
        super().__init__(f"[Agent {agent_id}] exited abnormally: {type(cause).__name__}: {cause}")
        self.agent_id = agent_id
        self.cause = cause
