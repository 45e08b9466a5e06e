"""Shared fixtures for dispatch controller tests."""

import pytest

from llm_dispatch.collaborators import RecordingSink
from llm_dispatch.dispatch.controller import DispatchController
from llm_dispatch.models import ChatRequest, PlanTier, Region, UserBudgetState
from llm_dispatch.resilience.circuit_breaker import CircuitBreakerRegistry
from llm_dispatch.routing.registry import ProviderRegistry
from llm_dispatch.simulation import ScriptedExecutor, StaticBudgetSource

# SIMPLE, no specialization, not high-stakes: ranks mistral-large-3 first on STARTER
SIMPLE_QUESTION = "What is the capital of France?"


@pytest.fixture
def registry() -> ProviderRegistry:
    return ProviderRegistry()


@pytest.fixture
def executor() -> ScriptedExecutor:
    return ScriptedExecutor()


@pytest.fixture
def budget_source() -> StaticBudgetSource:
    return StaticBudgetSource(default_plan=PlanTier.STARTER)


@pytest.fixture
def sink() -> RecordingSink:
    return RecordingSink()


@pytest.fixture
def controller(
    registry: ProviderRegistry,
    executor: ScriptedExecutor,
    budget_source: StaticBudgetSource,
    sink: RecordingSink,
) -> DispatchController:
    """Controller on in-memory collaborators with a recording sink."""
    return DispatchController(
        registry,
        executor,
        budget_source=budget_source,
        circuits=CircuitBreakerRegistry(failure_threshold=5, cooldown_seconds=60),
        sinks=[sink],
    )


@pytest.fixture
def make_request():
    """Return a factory for chat requests from user-1."""

    def _request(
        text: str = SIMPLE_QUESTION,
        session_id: str = "session-1",
        region: Region = Region.IN,
        **extra,
    ) -> ChatRequest:
        return ChatRequest(
            user_id="user-1", session_id=session_id, text=text, region=region, **extra
        )

    return _request


@pytest.fixture
def use_plan(budget_source: StaticBudgetSource):
    """Return a helper that puts user-1 on a plan at a monthly usage ratio."""

    def _use(plan: PlanTier, monthly_ratio: float = 0.0) -> UserBudgetState:
        state = budget_source.default_state("user-1", plan)
        state = state.model_copy(
            update={"monthly_used": round(state.monthly_limit * monthly_ratio)}
        )
        budget_source.set(state)
        return state

    return _use
