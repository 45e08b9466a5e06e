"""In-process collaborators for local runs and tests."""

import asyncio
import logging
from collections import defaultdict, deque
from typing import Optional, Union

from llm_dispatch.errors import OrchestrationError, ProviderError
from llm_dispatch.models import (
    ChatRequest,
    FailureClass,
    PlanTier,
    ProviderResponse,
    UserBudgetState,
)
from llm_dispatch.resilience.quota_ledger import PLAN_MONTHLY_TOKENS

logger = logging.getLogger(__name__)

ScriptStep = Union[FailureClass, BaseException, ProviderResponse]


def failure_for(provider_id: str, failure: FailureClass) -> Union[BaseException, ProviderResponse]:
    """What a provider call looks like when it fails in the given way.

    Refusals come back as an empty, filtered response rather than an error.
    """
    if failure == FailureClass.MODEL_REFUSAL:
        return ProviderResponse(text="", finish_reason="content_filter")
    if failure == FailureClass.BUDGET_ENFORCEMENT:
        return ProviderError(
            "429 Too Many Requests: rate limit reached",
            kind=FailureClass.BUDGET_ENFORCEMENT,
            status_code=429,
            provider_id=provider_id,
        )
    if failure == FailureClass.ORCHESTRATION_FAILURE:
        return OrchestrationError(f"pipeline step failed before calling {provider_id}")
    return ProviderError(
        "503 Service Unavailable",
        kind=FailureClass.PROVIDER_FAILURE,
        status_code=503,
        provider_id=provider_id,
    )


class ScriptedExecutor:
    """Provider executor that answers locally and fails on demand.

    Each provider has a queue of scripted steps consumed one per call,
    plus an optional sticky failure applied when the queue is empty.
    Without a script every call succeeds with an echo reply.

    Args:
        latency_seconds: Simulated call latency.
        tokens_per_word: Token count reported per word of the reply.
    """

    def __init__(self, latency_seconds: float = 0.0, tokens_per_word: int = 2) -> None:
        self._latency = latency_seconds
        self._tokens_per_word = tokens_per_word
        self._scripts: dict[str, deque[ScriptStep]] = defaultdict(deque)
        self._sticky: dict[str, FailureClass] = {}
        self.calls: list[str] = []

    def script(self, provider_id: str, *steps: ScriptStep) -> None:
        """Queue outcomes for the next calls to a provider."""
        self._scripts[provider_id].extend(steps)

    def fail(self, provider_id: str, failure: FailureClass, times: int = 1) -> None:
        """Make the next ``times`` calls to a provider fail with ``failure``."""
        self._scripts[provider_id].extend([failure] * times)

    def fail_always(self, provider_id: str, failure: FailureClass) -> None:
        """Fail every call to a provider until ``clear`` is called."""
        self._sticky[provider_id] = failure

    def clear(self, provider_id: Optional[str] = None) -> None:
        """Remove scripts for one provider, or all of them."""
        if provider_id is None:
            self._scripts.clear()
            self._sticky.clear()
        else:
            self._scripts.pop(provider_id, None)
            self._sticky.pop(provider_id, None)

    def pending(self) -> dict[str, list[str]]:
        """Scripted and sticky failures still waiting, per provider (for display)."""
        view: dict[str, list[str]] = {}
        for provider_id, steps in self._scripts.items():
            if steps:
                view[provider_id] = [
                    step.value if isinstance(step, FailureClass) else type(step).__name__
                    for step in steps
                ]
        for provider_id, failure in self._sticky.items():
            view.setdefault(provider_id, []).append(f"{failure.value} (always)")
        return view

    async def execute(self, provider_id: str, request: ChatRequest) -> ProviderResponse:
        self.calls.append(provider_id)
        if self._latency:
            await asyncio.sleep(self._latency)

        queue = self._scripts.get(provider_id)
        step: Optional[ScriptStep] = queue.popleft() if queue else self._sticky.get(provider_id)

        if isinstance(step, FailureClass):
            step = failure_for(provider_id, step)
        if isinstance(step, BaseException):
            raise step
        if isinstance(step, ProviderResponse):
            return step

        text = f"[{provider_id}] {request.text}"
        return ProviderResponse(
            text=text,
            tokens_used=len(text.split()) * self._tokens_per_word,
            finish_reason="stop",
        )


class StaticBudgetSource:
    """Budget snapshots held in memory, with per-plan defaults for unknown users.

    Args:
        default_plan: Plan given to users without an explicit snapshot.
    """

    def __init__(self, default_plan: PlanTier = PlanTier.STARTER) -> None:
        self._default_plan = default_plan
        self._states: dict[str, UserBudgetState] = {}

    def set(self, state: UserBudgetState) -> None:
        self._states[state.user_id] = state

    def default_state(self, user_id: str, plan: Optional[PlanTier] = None) -> UserBudgetState:
        """Zero-usage snapshot with the plan's monthly tokens and a 1/30 daily share."""
        plan = plan or self._default_plan
        monthly = PLAN_MONTHLY_TOKENS[plan]
        return UserBudgetState(
            user_id=user_id,
            plan=plan,
            monthly_limit=monthly,
            daily_limit=max(monthly // 30, 1),
        )

    async def get_user_budget_state(self, user_id: str) -> UserBudgetState:
        state = self._states.get(user_id)
        if state is None:
            state = self.default_state(user_id)
            self._states[user_id] = state
        return state
