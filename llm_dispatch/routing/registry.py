"""Static catalog of backend providers and the plan/region access tables."""

import logging
from typing import Iterable, Optional

from pydantic import BaseModel, ConfigDict, Field

from llm_dispatch.errors import ConfigurationError
from llm_dispatch.models import PlanTier, Region, Specialization

logger = logging.getLogger(__name__)

# Cost ceilings in cost units per 1M tokens
CHEAP_COST_CEILING: float = 300.0
MEDIUM_COST_CEILING: float = 500.0
EXPENSIVE_COST_CEILING: float = 900.0
MAX_REFERENCE_COST: float = 1300.0

ULTIMATE_DEFAULT_PROVIDER: str = "gemini-2.0-flash"


class SpecializationProfile(BaseModel):
    """Per-domain strength of a provider, each in [0.0, 1.0]."""

    model_config = ConfigDict(frozen=True)

    code: float = Field(default=0.5, ge=0.0, le=1.0)
    business: float = Field(default=0.5, ge=0.0, le=1.0)
    writing: float = Field(default=0.5, ge=0.0, le=1.0)
    reasoning: float = Field(default=0.5, ge=0.0, le=1.0)

    def strength(self, kind: Specialization) -> float:
        """Return the strength for one specialization."""
        return getattr(self, kind.value)


class ProviderDescriptor(BaseModel):
    """Immutable metadata for one backend provider.

    Args:
        id: Provider identifier used across every table.
        display_name: Human-readable name.
        family: Vendor family; refusal recovery never leaves it.
        cost_per_unit: Cost units per 1M tokens.
        quality: Output quality score (0.0-1.0).
        latency: Speed score, 1.0 = fastest.
        reliability: Availability score, 1.0 = most reliable.
        specialization: Per-domain strengths.
        cheaper_sibling: Cheaper provider of the same family, if any.
    """

    model_config = ConfigDict(frozen=True)

    id: str
    display_name: str
    family: str
    cost_per_unit: float = Field(ge=0.0)
    quality: float = Field(ge=0.0, le=1.0)
    latency: float = Field(ge=0.0, le=1.0)
    reliability: float = Field(ge=0.0, le=1.0)
    specialization: SpecializationProfile = Field(default_factory=SpecializationProfile)
    cheaper_sibling: Optional[str] = None


DEFAULT_PROVIDERS: list[ProviderDescriptor] = [
    ProviderDescriptor(
        id="gemini-2.0-flash",
        display_name="Gemini 2.0 Flash",
        family="gemini",
        cost_per_unit=27.2,
        quality=0.60,
        latency=1.0,
        reliability=0.95,
        specialization=SpecializationProfile(code=0.5, business=0.5, writing=0.5, reasoning=0.5),
    ),
    ProviderDescriptor(
        id="gemini-2.5-flash",
        display_name="Gemini 2.5 Flash",
        family="gemini",
        cost_per_unit=40.8,
        quality=0.65,
        latency=0.95,
        reliability=0.95,
        specialization=SpecializationProfile(
            code=0.55, business=0.55, writing=0.55, reasoning=0.55
        ),
        cheaper_sibling="gemini-2.0-flash",
    ),
    ProviderDescriptor(
        id="mistral-large-3",
        display_name="Mistral Large 3",
        family="mistral",
        cost_per_unit=104.6,
        quality=0.78,
        latency=0.80,
        reliability=0.92,
        specialization=SpecializationProfile(
            code=0.75, business=0.75, writing=0.80, reasoning=0.82
        ),
    ),
    ProviderDescriptor(
        id="claude-haiku-4-5",
        display_name="Claude Haiku 4.5",
        family="claude",
        cost_per_unit=334.8,
        quality=0.82,
        latency=0.85,
        reliability=0.94,
        specialization=SpecializationProfile(
            code=0.80, business=0.82, writing=0.85, reasoning=0.85
        ),
    ),
    ProviderDescriptor(
        id="claude-sonnet-4-5",
        display_name="Claude Sonnet 4.5",
        family="claude",
        cost_per_unit=1004.0,
        quality=0.96,
        latency=0.50,
        reliability=0.97,
        specialization=SpecializationProfile(
            code=0.92, business=0.95, writing=1.0, reasoning=1.0
        ),
        cheaper_sibling="claude-haiku-4-5",
    ),
    ProviderDescriptor(
        id="gpt-5.1",
        display_name="GPT-5.1",
        family="openai",
        cost_per_unit=653.7,
        quality=0.92,
        latency=0.50,
        reliability=0.95,
        specialization=SpecializationProfile(
            code=0.95, business=0.88, writing=0.88, reasoning=0.92
        ),
    ),
]

_ALL_PROVIDER_IDS: list[str] = [p.id for p in DEFAULT_PROVIDERS]

# Plan -> allowed provider ids, per region. Order is informational only.
PLAN_PROVIDERS: dict[Region, dict[PlanTier, list[str]]] = {
    Region.IN: {
        PlanTier.STARTER: ["mistral-large-3", "gemini-2.0-flash"],
        PlanTier.LITE: ["mistral-large-3", "gemini-2.0-flash"],
        PlanTier.PLUS: ["mistral-large-3", "gemini-2.0-flash", "gemini-2.5-flash"],
        PlanTier.PRO: [
            "mistral-large-3",
            "claude-haiku-4-5",
            "gemini-2.0-flash",
            "gemini-2.5-flash",
        ],
        PlanTier.APEX: [
            "mistral-large-3",
            "claude-haiku-4-5",
            "gemini-2.0-flash",
            "gemini-2.5-flash",
        ],
        PlanTier.SOVEREIGN: list(_ALL_PROVIDER_IDS),
    },
    Region.INTL: {
        PlanTier.STARTER: ["mistral-large-3", "gemini-2.0-flash"],
        PlanTier.LITE: ["mistral-large-3", "gemini-2.0-flash"],
        PlanTier.PLUS: [
            "mistral-large-3",
            "claude-haiku-4-5",
            "gemini-2.0-flash",
            "gemini-2.5-flash",
        ],
        PlanTier.PRO: ["mistral-large-3", "gpt-5.1", "gemini-2.0-flash", "gemini-2.5-flash"],
        PlanTier.APEX: [
            "mistral-large-3",
            "claude-haiku-4-5",
            "claude-sonnet-4-5",
            "gemini-2.0-flash",
            "gemini-2.5-flash",
        ],
        PlanTier.SOVEREIGN: list(_ALL_PROVIDER_IDS),
    },
}

# Fixed provider used when routing itself breaks (OrchestrationFailure)
SAFE_DEFAULTS: dict[PlanTier, str] = {
    PlanTier.STARTER: "gemini-2.0-flash",
    PlanTier.LITE: "gemini-2.0-flash",
    PlanTier.PLUS: "gemini-2.5-flash",
    PlanTier.PRO: "gemini-2.5-flash",
    PlanTier.APEX: "gemini-2.5-flash",
    PlanTier.SOVEREIGN: "mistral-large-3",
}


class ProviderRegistry:
    """Queryable, validated catalog of providers.

    Validation runs at construction so that broken tables fail loudly at
    startup instead of surfacing as request-time errors.

    Args:
        providers: Provider descriptors. Defaults to DEFAULT_PROVIDERS.
        plan_providers: Region -> plan -> allowed provider ids.
        safe_defaults: Plan -> provider used on orchestration failure.
        ultimate_default: Provider used when nothing else is available.

    Raises:
        ConfigurationError: If any table is inconsistent.
    """

    def __init__(
        self,
        providers: Optional[list[ProviderDescriptor]] = None,
        plan_providers: Optional[dict[Region, dict[PlanTier, list[str]]]] = None,
        safe_defaults: Optional[dict[PlanTier, str]] = None,
        ultimate_default: str = ULTIMATE_DEFAULT_PROVIDER,
    ) -> None:
        source = providers if providers is not None else DEFAULT_PROVIDERS
        self._providers: dict[str, ProviderDescriptor] = {p.id: p for p in source}
        self._plan_providers = plan_providers if plan_providers is not None else PLAN_PROVIDERS
        self._safe_defaults = safe_defaults if safe_defaults is not None else SAFE_DEFAULTS
        self._ultimate_default = ultimate_default
        self.validate()

    def validate(self) -> None:
        """Check every table against the catalog.

        Raises:
            ConfigurationError: On an empty catalog or plan mapping, an
                unknown id, a missing safe default, or a bad sibling link.
        """
        if not self._providers:
            raise ConfigurationError("Provider registry is empty")

        if self._ultimate_default not in self._providers:
            raise ConfigurationError(
                f"Ultimate default '{self._ultimate_default}' is not a registered provider"
            )

        for provider in self._providers.values():
            sibling_id = provider.cheaper_sibling
            if sibling_id is None:
                continue
            sibling = self._providers.get(sibling_id)
            if sibling is None:
                raise ConfigurationError(
                    f"Provider '{provider.id}' names unknown sibling '{sibling_id}'"
                )
            if sibling.family != provider.family:
                raise ConfigurationError(
                    f"Sibling '{sibling_id}' of '{provider.id}' is in family "
                    f"'{sibling.family}', expected '{provider.family}'"
                )
            if sibling.cost_per_unit >= provider.cost_per_unit:
                raise ConfigurationError(
                    f"Sibling '{sibling_id}' is not cheaper than '{provider.id}'"
                )

        for region in Region:
            table = self._plan_providers.get(region, {})
            for plan in PlanTier:
                ids = table.get(plan)
                if not ids:
                    raise ConfigurationError(
                        f"No providers configured for plan={plan.value}, region={region.value}"
                    )
                unknown = [pid for pid in ids if pid not in self._providers]
                if unknown:
                    raise ConfigurationError(
                        f"Unknown providers for plan={plan.value}, "
                        f"region={region.value}: {unknown}"
                    )
                default = self._safe_defaults.get(plan)
                if default is None or default not in ids:
                    raise ConfigurationError(
                        f"Safe default for plan={plan.value} must be one of its "
                        f"providers in region={region.value}, got '{default}'"
                    )

        logger.info(
            f"provider_registry_validated: providers={len(self._providers)}, "
            f"plans={len(PlanTier)}, regions={len(Region)}"
        )

    def get(self, provider_id: str) -> Optional[ProviderDescriptor]:
        """Look up a provider by id."""
        return self._providers.get(provider_id)

    def require(self, provider_id: str) -> ProviderDescriptor:
        """Look up a provider by id, raising KeyError when unknown."""
        try:
            return self._providers[provider_id]
        except KeyError:
            raise KeyError(f"Unknown provider '{provider_id}'") from None

    def all(self) -> list[ProviderDescriptor]:
        """Every registered provider."""
        return list(self._providers.values())

    def allowed_ids(self, plan: PlanTier, region: Region) -> list[str]:
        """Provider ids the plan may use in the region."""
        return list(self._plan_providers[region][plan])

    def allowed_for(self, plan: PlanTier, region: Region) -> list[ProviderDescriptor]:
        """Provider descriptors the plan may use in the region."""
        return [self._providers[pid] for pid in self._plan_providers[region][plan]]

    def cheaper_sibling(self, provider_id: str) -> Optional[ProviderDescriptor]:
        """Designated cheaper provider of the same family, if one exists."""
        provider = self._providers.get(provider_id)
        if provider is None or provider.cheaper_sibling is None:
            return None
        return self._providers[provider.cheaper_sibling]

    def same_family(self, first_id: str, second_id: str) -> bool:
        """Whether two providers belong to the same vendor family."""
        first = self._providers.get(first_id)
        second = self._providers.get(second_id)
        return first is not None and second is not None and first.family == second.family

    def safe_default(self, plan: PlanTier) -> str:
        """Fixed provider for a plan when routing cannot run."""
        return self._safe_defaults.get(plan, self._ultimate_default)

    def cheapest(self, provider_ids: Iterable[str]) -> Optional[ProviderDescriptor]:
        """Cheapest provider among the given ids (ties keep input order)."""
        known = [self._providers[pid] for pid in provider_ids if pid in self._providers]
        if not known:
            return None
        return min(known, key=lambda p: p.cost_per_unit)

    @property
    def ultimate_default(self) -> str:
        """Provider id of last resort."""
        return self._ultimate_default
