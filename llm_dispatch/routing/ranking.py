"""Score and order candidate providers under budget pressure."""

import logging
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field

from llm_dispatch.models import ComplexityTier, PlanTier, Specialization
from llm_dispatch.routing.registry import (
    CHEAP_COST_CEILING,
    EXPENSIVE_COST_CEILING,
    MAX_REFERENCE_COST,
    MEDIUM_COST_CEILING,
    ProviderDescriptor,
    ProviderRegistry,
)

logger = logging.getLogger(__name__)

QUALITY_WEIGHTS: dict[ComplexityTier, float] = {
    ComplexityTier.CASUAL: 0.25,
    ComplexityTier.SIMPLE: 0.35,
    ComplexityTier.MEDIUM: 0.55,
    ComplexityTier.COMPLEX: 0.75,
    ComplexityTier.EXPERT: 0.95,
}

HIGH_STAKES_QUALITY_BOOST: float = 0.15
RELIABILITY_WEIGHT: float = 0.1
SPECIALIZATION_WEIGHT: float = 0.15
CASUAL_LATENCY_WEIGHT: float = 0.2
DEFAULT_LATENCY_WEIGHT: float = 0.08

# APEX keeps its full catalog until pressure reaches this point
APEX_FILTER_PRESSURE: float = 0.9

SINGLE_CANDIDATE_CONFIDENCE_CAP: float = 0.6


class RankedProvider(BaseModel):
    """A provider with the score it was ranked by."""

    model_config = ConfigDict(frozen=True)

    provider_id: str
    score: float


class Ranking(BaseModel):
    """Ordered candidates, best first, with a confidence in the order.

    Args:
        ranked: Candidates sorted by descending score.
        confidence: Confidence in the top choice (0.0-1.0).
        budget_filtered: Whether the budget pre-filter removed anyone.
    """

    ranked: list[RankedProvider]
    confidence: float = Field(ge=0.0, le=1.0)
    budget_filtered: bool = False

    @property
    def provider_ids(self) -> list[str]:
        """Provider ids in rank order."""
        return [entry.provider_id for entry in self.ranked]


class RankingEngine:
    """Continuous quality/cost trade-off over a plan's allowed providers.

    Args:
        registry: Provider catalog, used for the ultimate-default fallback.
    """

    def __init__(self, registry: ProviderRegistry) -> None:
        self._registry = registry

    def filter_by_budget(
        self,
        providers: list[ProviderDescriptor],
        pressure: float,
        is_high_stakes: bool = False,
        plan: Optional[PlanTier] = None,
    ) -> list[ProviderDescriptor]:
        """Drop providers above the cost ceiling implied by pressure.

        High-stakes requests and SOVEREIGN bypass filtering; APEX bypasses
        it below 0.9 pressure. A filter that would leave nothing is skipped.

        Args:
            providers: Candidates to filter.
            pressure: Effective budget pressure (0.0-1.0).
            is_high_stakes: Whether the request is high-stakes.
            plan: Requesting plan, if known.

        Returns:
            The filtered candidates, never empty when the input is not.
        """
        if is_high_stakes or plan == PlanTier.SOVEREIGN:
            return list(providers)
        if plan == PlanTier.APEX and pressure < APEX_FILTER_PRESSURE:
            return list(providers)

        if pressure > 0.9:
            kept = [p for p in providers if p.cost_per_unit <= CHEAP_COST_CEILING]
        elif pressure > 0.75:
            kept = [p for p in providers if p.cost_per_unit <= MEDIUM_COST_CEILING]
        elif pressure > 0.6:
            kept = [p for p in providers if p.cost_per_unit < EXPENSIVE_COST_CEILING]
        else:
            return list(providers)

        if not kept:
            logger.warning(
                f"budget_filter_skipped: pressure={pressure:.2f}, "
                f"candidates={[p.id for p in providers]}"
            )
            return list(providers)
        return kept

    def score(
        self,
        provider: ProviderDescriptor,
        complexity: ComplexityTier,
        pressure: float,
        is_high_stakes: bool = False,
        specialization: Optional[Specialization] = None,
    ) -> float:
        """Weighted score of one provider for one request.

        Quality weight grows with complexity and shrinks with pressure;
        cost weight grows with pressure.

        Args:
            provider: Provider to score.
            complexity: Complexity tier of the request.
            pressure: Effective budget pressure (0.0-1.0).
            is_high_stakes: Adds a quality boost when True.
            specialization: Domain of the request, if any.

        Returns:
            The score; higher is better.
        """
        quality = min(1.0, provider.quality + (HIGH_STAKES_QUALITY_BOOST if is_high_stakes else 0.0))
        cost_inverse = max(0.0, min(1.0, 1.0 - provider.cost_per_unit / MAX_REFERENCE_COST))

        quality_weight = QUALITY_WEIGHTS[complexity] * (0.85 - pressure * 0.35)
        cost_weight = 0.25 + pressure * 0.45
        latency_weight = (
            CASUAL_LATENCY_WEIGHT if complexity == ComplexityTier.CASUAL else DEFAULT_LATENCY_WEIGHT
        )

        bonus = 0.0
        if specialization is not None:
            bonus = provider.specialization.strength(specialization) * SPECIALIZATION_WEIGHT

        return (
            quality_weight * quality
            + cost_weight * cost_inverse
            + latency_weight * provider.latency
            + RELIABILITY_WEIGHT * provider.reliability
            + bonus
        )

    def rank(
        self,
        providers: list[ProviderDescriptor],
        complexity: ComplexityTier,
        pressure: float,
        is_high_stakes: bool = False,
        specialization: Optional[Specialization] = None,
        plan: Optional[PlanTier] = None,
    ) -> Ranking:
        """Filter, score and sort candidates.

        Args:
            providers: Providers the plan may use.
            complexity: Complexity tier of the request.
            pressure: Effective budget pressure (0.0-1.0).
            is_high_stakes: Whether the request is high-stakes.
            specialization: Domain of the request, if any.
            plan: Requesting plan, for the filter bypass rules.

        Returns:
            Ranking in descending score order. An empty input resolves to
            the registry's ultimate default.
        """
        if not providers:
            logger.error(
                f"ranking_no_candidates: falling_back_to={self._registry.ultimate_default}"
            )
            return Ranking(
                ranked=[RankedProvider(provider_id=self._registry.ultimate_default, score=0.0)],
                confidence=0.0,
            )

        candidates = self.filter_by_budget(providers, pressure, is_high_stakes, plan)
        scored = [
            RankedProvider(
                provider_id=p.id,
                score=self.score(p, complexity, pressure, is_high_stakes, specialization),
            )
            for p in candidates
        ]
        # sorted() is stable, so equal scores keep catalog order
        scored = sorted(scored, key=lambda entry: entry.score, reverse=True)

        confidence = self.confidence(scored, complexity, is_high_stakes, specialization)
        return Ranking(
            ranked=scored,
            confidence=confidence,
            budget_filtered=len(candidates) < len(providers),
        )

    def confidence(
        self,
        ranked: list[RankedProvider],
        complexity: ComplexityTier,
        is_high_stakes: bool = False,
        specialization: Optional[Specialization] = None,
    ) -> float:
        """Confidence in the top choice of a ranking.

        Args:
            ranked: Candidates, best first.
            complexity: Complexity tier of the request.
            is_high_stakes: Whether the request is high-stakes.
            specialization: Domain of the request, if any.

        Returns:
            Confidence in [0.0, 1.0]; at most 0.6 for a single candidate.
        """
        if not ranked:
            return 0.0

        top = self._registry.get(ranked[0].provider_id)
        value = 0.7

        if len(ranked) >= 3:
            value += 0.1
        if complexity in (ComplexityTier.CASUAL, ComplexityTier.EXPERT):
            value += 0.08
        if is_high_stakes and top is not None and top.quality >= 0.85:
            value += 0.1
        if specialization is not None and top is not None:
            if top.specialization.strength(specialization) >= 0.8:
                value += 0.07
        if len(ranked) >= 2 and ranked[0].score - ranked[1].score > 0.05:
            value += 0.05

        value = min(1.0, value)
        if len(ranked) == 1:
            value = min(value, SINGLE_CANDIDATE_CONFIDENCE_CAP)
        return round(value, 4)


def build_reason(
    complexity: ComplexityTier,
    pressure: float,
    is_high_stakes: bool = False,
    specialization: Optional[Specialization] = None,
    notes: Optional[list[str]] = None,
) -> str:
    """Human-readable summary of why a provider was chosen.

    Example: ``complexity=MEDIUM, budget=72%, high-stakes, spec=code, policy:force_cheap``
    """
    parts = [f"complexity={complexity.value}"]
    if pressure > 0.3:
        parts.append(f"budget={pressure * 100:.0f}%")
    if is_high_stakes:
        parts.append("high-stakes")
    if specialization is not None:
        parts.append(f"spec={specialization.value}")
    for note in notes or []:
        parts.append(note)
    return ", ".join(parts)
