"""Unit tests for budget pressure levels and the session cache."""

import pytest

from llm_dispatch.models import PlanTier, PressureLevel, UserBudgetState
from llm_dispatch.routing.pressure import (
    LEVEL_PRESSURE_FLOOR,
    SessionPressureCache,
    calculate_pressure_level,
    continuous_pressure,
    ranking_pressure,
    usage_ratio,
)


class TestPressureLevel:
    """Tests for calculate_pressure_level thresholds."""

    @pytest.mark.unit
    def test_entry_plan_at_96_percent_is_critical(self) -> None:
        """96% monthly usage on STARTER (critical at 95%) -> CRITICAL."""
        level = calculate_pressure_level(
            monthly_used=1_680_000,
            monthly_limit=1_750_000,
            daily_used=0,
            daily_limit=58_333,
            plan=PlanTier.STARTER,
        )
        assert level == PressureLevel.CRITICAL

    @pytest.mark.unit
    def test_zero_usage_is_none(self) -> None:
        level = calculate_pressure_level(0, 1000, 0, 100, PlanTier.STARTER)
        assert level == PressureLevel.NONE

    @pytest.mark.unit
    def test_non_positive_limit_counts_as_exhausted(self) -> None:
        """A zero limit means ratio 1.0, not unlimited."""
        level = calculate_pressure_level(0, 0, 0, 100, PlanTier.PLUS)
        assert level == PressureLevel.CRITICAL

    @pytest.mark.unit
    def test_daily_window_can_dominate(self) -> None:
        """Daily ratio 0.9 on STARTER (high at 0.85) -> HIGH."""
        level = calculate_pressure_level(0, 1000, 90, 100, PlanTier.STARTER)
        assert level == PressureLevel.HIGH

    @pytest.mark.unit
    def test_premium_plan_reacts_later(self) -> None:
        """The same 0.72 ratio is MEDIUM on STARTER but NONE on APEX."""
        assert calculate_pressure_level(720, 1000, 0, 100, PlanTier.STARTER) == PressureLevel.MEDIUM
        assert calculate_pressure_level(720, 1000, 0, 100, PlanTier.APEX) == PressureLevel.NONE

    @pytest.mark.unit
    def test_pro_boundaries(self) -> None:
        """PRO thresholds are .65/.80/.90/.96."""
        assert calculate_pressure_level(650, 1000, 0, 100, PlanTier.PRO) == PressureLevel.LOW
        assert calculate_pressure_level(850, 1000, 0, 100, PlanTier.PRO) == PressureLevel.MEDIUM
        assert calculate_pressure_level(900, 1000, 0, 100, PlanTier.PRO) == PressureLevel.HIGH
        assert calculate_pressure_level(960, 1000, 0, 100, PlanTier.PRO) == PressureLevel.CRITICAL

    @pytest.mark.unit
    def test_sovereign_never_pressured_before_exhaustion(self) -> None:
        assert calculate_pressure_level(990, 1000, 0, 100, PlanTier.SOVEREIGN) == PressureLevel.NONE

    @pytest.mark.unit
    def test_cached_level_returned_unchanged(self) -> None:
        """A cached level wins over whatever the usage says."""
        level = calculate_pressure_level(
            0, 1000, 0, 100, PlanTier.STARTER, cached_level=PressureLevel.HIGH
        )
        assert level == PressureLevel.HIGH


class TestContinuousPressure:
    """Tests for the continuous pressure used by the ranking engine."""

    @pytest.mark.unit
    def test_usage_ratio(self) -> None:
        assert usage_ratio(50, 100) == pytest.approx(0.5)
        assert usage_ratio(5, 0) == 1.0
        assert usage_ratio(5, -1) == 1.0

    @pytest.mark.unit
    def test_ramp_midpoint(self, starter_budget) -> None:
        """Ratio .725 sits halfway along the .5 -> .95 ramp."""
        assert continuous_pressure(starter_budget(0.725)) == pytest.approx(0.5)

    @pytest.mark.unit
    def test_ramp_ends(self, starter_budget) -> None:
        assert continuous_pressure(starter_budget(0.3)) == 0.0
        assert continuous_pressure(starter_budget(0.97)) == 1.0

    @pytest.mark.unit
    def test_daily_window_drives_pressure(self) -> None:
        budget = UserBudgetState(
            user_id="u",
            plan=PlanTier.PLUS,
            monthly_used=100,
            monthly_limit=1000,
            daily_used=95,
            daily_limit=100,
        )
        assert continuous_pressure(budget) == 1.0

    @pytest.mark.unit
    def test_ranking_pressure_floored_by_level(self, starter_budget) -> None:
        """Zero usage with a cached HIGH level still ranks at the HIGH floor."""
        pressure = ranking_pressure(starter_budget(0.0), PressureLevel.HIGH)
        assert pressure == pytest.approx(LEVEL_PRESSURE_FLOOR[PressureLevel.HIGH])

    @pytest.mark.unit
    def test_ranking_pressure_bounded(self, starter_budget) -> None:
        assert ranking_pressure(starter_budget(2.0), PressureLevel.CRITICAL) == 1.0


class TestSessionPressureCache:
    """Tests for per-session level caching."""

    @pytest.mark.unit
    def test_level_established_once(self, starter_budget) -> None:
        """Later snapshots do not change an established level."""
        cache = SessionPressureCache()
        first = cache.establish("s-1", starter_budget(0.96))
        second = cache.establish("s-1", starter_budget(0.0))

        assert first == PressureLevel.CRITICAL
        assert second == PressureLevel.CRITICAL
        assert cache.get("s-1") == PressureLevel.CRITICAL

    @pytest.mark.unit
    def test_sessions_are_independent(self, starter_budget) -> None:
        cache = SessionPressureCache()
        cache.establish("s-1", starter_budget(0.96))
        assert cache.establish("s-2", starter_budget(0.1)) == PressureLevel.NONE
        assert len(cache) == 2

    @pytest.mark.unit
    def test_reset_allows_recompute(self, starter_budget) -> None:
        """Only an explicit reset clears a session's level."""
        cache = SessionPressureCache()
        cache.establish("s-1", starter_budget(0.96))

        assert cache.reset("s-1") is True
        assert cache.reset("s-1") is False
        assert cache.establish("s-1", starter_budget(0.0)) == PressureLevel.NONE

    @pytest.mark.unit
    def test_reset_all(self, starter_budget) -> None:
        cache = SessionPressureCache()
        cache.establish("a", starter_budget(0.1))
        cache.establish("b", starter_budget(0.1))

        assert cache.reset_all() == 2
        assert cache.get("a") is None

    @pytest.mark.unit
    def test_least_recent_session_evicted(self, starter_budget) -> None:
        """Past the bound, the session touched longest ago is dropped."""
        cache = SessionPressureCache(max_sessions=2)
        cache.establish("a", starter_budget(0.96))
        cache.establish("b", starter_budget(0.1))
        cache.establish("a", starter_budget(0.0))
        cache.establish("c", starter_budget(0.1))

        assert len(cache) == 2
        assert cache.get("b") is None
        assert cache.get("a") == PressureLevel.CRITICAL

    @pytest.mark.unit
    def test_bound_must_be_positive(self) -> None:
        with pytest.raises(ValueError):
            SessionPressureCache(max_sessions=0)
