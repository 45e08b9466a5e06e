"""Shared fixtures for outcome gate tests."""

import pytest

from llm_dispatch.gate.outcome_gate import OutcomeGate
from llm_dispatch.models import PlanTier, UserBudgetState
from llm_dispatch.policy.overrides import PolicyOverrideLayer
from llm_dispatch.routing.registry import ProviderRegistry


@pytest.fixture
def policy() -> PolicyOverrideLayer:
    return PolicyOverrideLayer(ProviderRegistry())


@pytest.fixture
def gate(policy: PolicyOverrideLayer) -> OutcomeGate:
    return OutcomeGate(policy)


@pytest.fixture
def budget():
    """Return a factory for budget snapshots.

    Defaults to a STARTER user with 10% of both windows used.
    """

    def _budget(
        monthly_used: int = 100,
        monthly_limit: int = 1000,
        daily_used: int = 10,
        daily_limit: int = 100,
        plan: PlanTier = PlanTier.STARTER,
    ) -> UserBudgetState:
        return UserBudgetState(
            user_id="user-1",
            plan=plan,
            monthly_used=monthly_used,
            monthly_limit=monthly_limit,
            daily_used=daily_used,
            daily_limit=daily_limit,
        )

    return _budget
