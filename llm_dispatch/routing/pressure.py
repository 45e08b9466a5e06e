"""Budget pressure: usage ratios to levels, with per-session caching."""

import logging
import threading
from collections import OrderedDict
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field

from llm_dispatch.models import PlanTier, PressureLevel, UserBudgetState

logger = logging.getLogger(__name__)


class PressureThresholds(BaseModel):
    """Ascending usage-ratio thresholds for one plan."""

    model_config = ConfigDict(frozen=True)

    low: float = Field(ge=0.0, le=1.0)
    medium: float = Field(ge=0.0, le=1.0)
    high: float = Field(ge=0.0, le=1.0)
    critical: float = Field(ge=0.0, le=1.0)


# Cheaper plans react earlier to protect margin; SOVEREIGN never reacts short of exhaustion
PRESSURE_THRESHOLDS: dict[PlanTier, PressureThresholds] = {
    PlanTier.STARTER: PressureThresholds(low=0.50, medium=0.70, high=0.85, critical=0.95),
    PlanTier.LITE: PressureThresholds(low=0.55, medium=0.72, high=0.86, critical=0.95),
    PlanTier.PLUS: PressureThresholds(low=0.60, medium=0.75, high=0.88, critical=0.95),
    PlanTier.PRO: PressureThresholds(low=0.65, medium=0.80, high=0.90, critical=0.96),
    PlanTier.APEX: PressureThresholds(low=0.75, medium=0.85, high=0.92, critical=0.97),
    PlanTier.SOVEREIGN: PressureThresholds(low=1.0, medium=1.0, high=1.0, critical=1.0),
}

# Minimum ranking pressure implied by a session's cached level
LEVEL_PRESSURE_FLOOR: dict[PressureLevel, float] = {
    PressureLevel.NONE: 0.0,
    PressureLevel.LOW: 0.35,
    PressureLevel.MEDIUM: 0.65,
    PressureLevel.HIGH: 0.8,
    PressureLevel.CRITICAL: 0.95,
}

# Continuous pressure ramps linearly between these ratios
PRESSURE_RAMP_START: float = 0.5
PRESSURE_RAMP_END: float = 0.95


def usage_ratio(used: int, limit: int) -> float:
    """Fraction of a window consumed. A non-positive limit counts as exhausted."""
    if limit <= 0:
        return 1.0
    return max(used, 0) / limit


def calculate_pressure_level(
    monthly_used: int,
    monthly_limit: int,
    daily_used: int,
    daily_limit: int,
    plan: PlanTier,
    cached_level: Optional[PressureLevel] = None,
) -> PressureLevel:
    """Discretize usage into a pressure level.

    A cached level, when given, is returned unchanged; computation only
    happens to establish a session's level the first time.

    Args:
        monthly_used: Tokens used this month.
        monthly_limit: Monthly token ceiling.
        daily_used: Tokens used today.
        daily_limit: Daily token ceiling.
        plan: Plan whose thresholds apply.
        cached_level: Level already established for the session.

    Returns:
        PressureLevel for the higher of the two windows.
    """
    if cached_level is not None:
        return cached_level

    ratio = max(usage_ratio(monthly_used, monthly_limit), usage_ratio(daily_used, daily_limit))
    thresholds = PRESSURE_THRESHOLDS[plan]

    if ratio >= thresholds.critical:
        return PressureLevel.CRITICAL
    if ratio >= thresholds.high:
        return PressureLevel.HIGH
    if ratio >= thresholds.medium:
        return PressureLevel.MEDIUM
    if ratio >= thresholds.low:
        return PressureLevel.LOW
    return PressureLevel.NONE


def continuous_pressure(budget: UserBudgetState) -> float:
    """Budget pressure in [0, 1] for the ranking cost trade-off.

    Per window, ratios at or below 0.5 give 0, at or above 0.95 give 1,
    linear in between. The larger window wins.
    """

    def _window(used: int, limit: int) -> float:
        if limit <= 0:
            return 1.0
        ratio = used / limit
        if ratio <= PRESSURE_RAMP_START:
            return 0.0
        if ratio >= PRESSURE_RAMP_END:
            return 1.0
        return (ratio - PRESSURE_RAMP_START) / (PRESSURE_RAMP_END - PRESSURE_RAMP_START)

    return max(
        _window(budget.monthly_used, budget.monthly_limit),
        _window(budget.daily_used, budget.daily_limit),
    )


def ranking_pressure(budget: UserBudgetState, level: PressureLevel) -> float:
    """Continuous pressure, floored by what the session level implies."""
    return min(1.0, max(continuous_pressure(budget), LEVEL_PRESSURE_FLOOR[level]))


class SessionPressureCache:
    """Per-session pressure levels, computed once and then held.

    A session's level is only cleared by an explicit ``reset`` (new
    conversation), never by elapsed time. Callers that never reset
    sessions are protected by ``max_sessions``: past it, the least
    recently used session is evicted and recomputes on its next request.

    Args:
        max_sessions: Upper bound on cached sessions.
    """

    def __init__(self, max_sessions: int = 10_000) -> None:
        if max_sessions < 1:
            raise ValueError("max_sessions must be at least 1")
        self._max_sessions = max_sessions
        self._levels: OrderedDict[str, PressureLevel] = OrderedDict()
        self._lock = threading.Lock()

    def get(self, session_id: str) -> Optional[PressureLevel]:
        """Cached level for a session, if established."""
        return self._levels.get(session_id)

    def establish(self, session_id: str, budget: UserBudgetState) -> PressureLevel:
        """Return the session's level, computing and caching it on first use.

        Args:
            session_id: Conversation session id.
            budget: Current budget snapshot for the session's user.

        Returns:
            The cached level if present, otherwise the newly computed one.
        """
        with self._lock:
            cached = self._levels.get(session_id)
            if cached is not None:
                self._levels.move_to_end(session_id)
                return cached

        level = calculate_pressure_level(
            budget.monthly_used,
            budget.monthly_limit,
            budget.daily_used,
            budget.daily_limit,
            budget.plan,
        )
        evicted: list[str] = []
        with self._lock:
            # Another task may have established it first
            level = self._levels.setdefault(session_id, level)
            while len(self._levels) > self._max_sessions:
                oldest, _ = self._levels.popitem(last=False)
                evicted.append(oldest)

        logger.info(
            f"pressure_level_established: session={session_id}, "
            f"plan={budget.plan.value}, level={level.value}"
        )
        if evicted:
            logger.warning(
                f"pressure_cache_evicted: sessions={len(evicted)}, max={self._max_sessions}"
            )
        return level

    def reset(self, session_id: str) -> bool:
        """Forget a session's level. Returns whether one was cached."""
        with self._lock:
            removed = self._levels.pop(session_id, None)
        if removed is not None:
            logger.info(f"pressure_level_reset: session={session_id}, was={removed.value}")
        return removed is not None

    def reset_all(self) -> int:
        """Forget every session. Returns how many were cached."""
        with self._lock:
            count = len(self._levels)
            self._levels.clear()
        logger.info(f"pressure_cache_cleared: sessions={count}")
        return count

    def __len__(self) -> int:
        return len(self._levels)
