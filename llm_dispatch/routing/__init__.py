"""Provider catalog, request classification, budget pressure and ranking."""

from llm_dispatch.routing.complexity import (
    TOKEN_ESTIMATES,
    classify_complexity,
    detect_high_stakes,
    detect_specialization,
    estimate_tokens,
)
from llm_dispatch.routing.pressure import (
    PRESSURE_THRESHOLDS,
    SessionPressureCache,
    calculate_pressure_level,
    continuous_pressure,
    ranking_pressure,
)
from llm_dispatch.routing.ranking import Ranking, RankedProvider, RankingEngine, build_reason
from llm_dispatch.routing.registry import (
    CHEAP_COST_CEILING,
    ProviderDescriptor,
    ProviderRegistry,
    SpecializationProfile,
)

__all__ = [
    # Registry
    "ProviderRegistry",
    "ProviderDescriptor",
    "SpecializationProfile",
    "CHEAP_COST_CEILING",
    # Classification
    "classify_complexity",
    "detect_high_stakes",
    "detect_specialization",
    "estimate_tokens",
    "TOKEN_ESTIMATES",
    # Pressure
    "calculate_pressure_level",
    "continuous_pressure",
    "ranking_pressure",
    "SessionPressureCache",
    "PRESSURE_THRESHOLDS",
    # Ranking
    "RankingEngine",
    "Ranking",
    "RankedProvider",
    "build_reason",
]
