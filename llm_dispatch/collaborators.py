"""Contracts for the external collaborators the engine depends on."""

import logging
from typing import Any, Protocol, runtime_checkable

from llm_dispatch.models import (
    ChatRequest,
    FailureTrace,
    ProviderResponse,
    RoutingDecision,
    UsageLog,
    UserBudgetState,
)

logger = logging.getLogger(__name__)


@runtime_checkable
class ProviderExecutor(Protocol):
    """Runs a request on one provider.

    Implementations should raise ``ProviderError`` with an explicit kind
    where they can; other exceptions are classified heuristically.
    Timeouts are the executor's concern, not the controller's.
    """

    async def execute(self, provider_id: str, request: ChatRequest) -> ProviderResponse: ...


@runtime_checkable
class BudgetStateSource(Protocol):
    """Read-only usage snapshot supplier (billing subsystem)."""

    async def get_user_budget_state(self, user_id: str) -> UserBudgetState: ...


class ObservabilitySink(Protocol):
    """Fire-and-forget reporting. Methods may be plain or ``async``.

    The controller never waits on a sink and logs, then ignores, any
    exception a sink raises.
    """

    def report_failure_trace(self, trace: FailureTrace) -> Any: ...

    def report_routing_decision(self, decision: RoutingDecision) -> Any: ...

    def report_usage(self, log: UsageLog) -> Any: ...


class LoggingSink:
    """Sink that writes every report to the module logger."""

    def report_failure_trace(self, trace: FailureTrace) -> None:
        logger.warning(
            f"failure_trace: request={trace.request_id}, attempt={trace.attempt}, "
            f"class={trace.classification.value}, provider={trace.original_provider}, "
            f"action={trace.action}, recovered={trace.recovered}, "
            f"final={trace.final_provider}"
        )

    def report_routing_decision(self, decision: RoutingDecision) -> None:
        logger.info(
            f"routing_decision: request={decision.request_id}, "
            f"provider={decision.provider_id}, chain={decision.fallback_chain}, "
            f"confidence={decision.confidence:.2f}, reason={decision.reason}"
        )

    def report_usage(self, log: UsageLog) -> None:
        logger.info(
            f"usage: request={log.request_id}, user={log.user_id}, "
            f"provider={log.provider_id}, tokens={log.tokens_actual}, "
            f"cost={log.cost:.6f}, latency_ms={log.latency_ms:.1f}"
        )


class RecordingSink:
    """Sink that keeps every report in memory (tests, simulations)."""

    def __init__(self) -> None:
        self.traces: list[FailureTrace] = []
        self.decisions: list[RoutingDecision] = []
        self.usage: list[UsageLog] = []

    def report_failure_trace(self, trace: FailureTrace) -> None:
        self.traces.append(trace)

    def report_routing_decision(self, decision: RoutingDecision) -> None:
        self.decisions.append(decision)

    def report_usage(self, log: UsageLog) -> None:
        self.usage.append(log)
