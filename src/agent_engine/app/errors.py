"""Error taxonomy for the agent engine.

Each class maps to one handling policy:
- ValidationError: malformed/missing input, surfaced immediately, never retried.
- ProviderTransientError: timeout/rate-limit/5xx, retried through the provider chain.
- ProviderTerminalError: policy block or invalid content; advances the chain if
  providers remain, otherwise surfaced verbatim.
- PlanningParseError: recovered locally by defaulting to single-step.
- StepExecutionError: recorded per step in multi-step turns; never aborts the plan.
- PersistenceError: logged and degraded; never blocks delivering a result.
"""

from __future__ import annotations


class AgentEngineError(Exception):
    """Base class for engine errors."""


class ValidationError(AgentEngineError):
    pass


class ProviderError(AgentEngineError):
    def __init__(self, message: str, *, provider: str | None = None) -> None:
        super().__init__(message)
        self.provider = provider


class ProviderTransientError(ProviderError):
    pass


class ProviderTerminalError(ProviderError):
    pass


class PlanningParseError(AgentEngineError):
    pass


class StepExecutionError(AgentEngineError):
    def __init__(self, message: str, *, step_number: int, tool: str | None = None) -> None:
        super().__init__(message)
        self.step_number = step_number
        self.tool = tool


class PersistenceError(AgentEngineError):
    pass
