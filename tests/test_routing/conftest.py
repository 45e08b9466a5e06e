"""Shared fixtures for routing tests."""

import pytest

from llm_dispatch.models import PlanTier, UserBudgetState
from llm_dispatch.routing.ranking import RankingEngine
from llm_dispatch.routing.registry import ProviderRegistry


@pytest.fixture
def registry() -> ProviderRegistry:
    """Return the default provider registry.

    Returns:
        A ProviderRegistry built from the default tables.
    """
    return ProviderRegistry()


@pytest.fixture
def engine(registry: ProviderRegistry) -> RankingEngine:
    """Return a ranking engine over the default registry."""
    return RankingEngine(registry)


@pytest.fixture
def filler():
    """Return a helper that builds N neutral words.

    The words match no code, technical, analytical or domain pattern.
    """

    def _words(count: int) -> str:
        return " ".join(["lorem"] * count)

    return _words


@pytest.fixture
def starter_budget():
    """Return a factory for STARTER budget snapshots at a monthly usage ratio."""

    def _budget(ratio: float, plan: PlanTier = PlanTier.STARTER) -> UserBudgetState:
        return UserBudgetState(
            user_id="user-1",
            plan=plan,
            monthly_used=round(1_000_000 * ratio),
            monthly_limit=1_000_000,
            daily_used=0,
            daily_limit=100_000,
        )

    return _budget
