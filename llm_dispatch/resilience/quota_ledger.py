"""Per-user, per-provider monthly token allocations."""

import logging
from datetime import datetime, timezone
from enum import Enum
from typing import Callable, Optional

from pydantic import BaseModel, ConfigDict, Field, computed_field

from llm_dispatch.errors import ConfigurationError
from llm_dispatch.models import PlanTier, Region, utc_now
from llm_dispatch.resilience.quota_store import InMemoryQuotaStore, QuotaStore
from llm_dispatch.routing.registry import ProviderRegistry

logger = logging.getLogger(__name__)

DEFAULT_MIN_TOKENS: int = 1000

PLAN_MONTHLY_TOKENS: dict[PlanTier, int] = {
    PlanTier.STARTER: 1_750_000,
    PlanTier.LITE: 2_000_000,
    PlanTier.PLUS: 750_000,
    PlanTier.PRO: 1_650_000,
    PlanTier.APEX: 3_050_000,
    PlanTier.SOVEREIGN: 999_999_999,
}


class AllocationTier(str, Enum):
    """Cost band of an allocation; the last-resort provider comes from BUDGET."""

    BUDGET = "budget"
    MID = "mid"
    PREMIUM = "premium"


class QuotaAllocation(BaseModel):
    """Share of a plan's monthly tokens reserved for one provider.

    Args:
        provider_id: Provider the share belongs to.
        percentage: Share of the plan's monthly tokens (0-100).
        priority: Scan order for downgrades, lower first.
        tier: Cost band.
    """

    model_config = ConfigDict(frozen=True)

    provider_id: str
    percentage: float = Field(gt=0.0, le=100.0)
    priority: int = Field(ge=1)
    tier: AllocationTier


def _alloc(provider_id: str, percentage: float, priority: int, tier: AllocationTier) -> QuotaAllocation:
    return QuotaAllocation(
        provider_id=provider_id, percentage=percentage, priority=priority, tier=tier
    )


_B, _M, _P = AllocationTier.BUDGET, AllocationTier.MID, AllocationTier.PREMIUM

_ENTRY_ALLOCATIONS: dict[PlanTier, list[QuotaAllocation]] = {
    PlanTier.STARTER: [
        _alloc("gemini-2.0-flash", 80, 1, _B),
        _alloc("mistral-large-3", 20, 2, _M),
    ],
    PlanTier.LITE: [
        _alloc("gemini-2.0-flash", 70, 1, _B),
        _alloc("mistral-large-3", 30, 2, _M),
    ],
}

_SOVEREIGN_ALLOCATIONS: list[QuotaAllocation] = [
    _alloc("mistral-large-3", 25, 1, _M),
    _alloc("gemini-2.5-flash", 15, 2, _B),
    _alloc("claude-sonnet-4-5", 20, 3, _P),
    _alloc("gpt-5.1", 15, 4, _P),
    _alloc("claude-haiku-4-5", 15, 5, _P),
    _alloc("gemini-2.0-flash", 10, 6, _B),
]

QUOTA_ALLOCATIONS: dict[Region, dict[PlanTier, list[QuotaAllocation]]] = {
    Region.IN: {
        **_ENTRY_ALLOCATIONS,
        PlanTier.PLUS: [
            _alloc("mistral-large-3", 55, 1, _M),
            _alloc("gemini-2.5-flash", 30, 2, _B),
            _alloc("gemini-2.0-flash", 15, 3, _B),
        ],
        PlanTier.PRO: [
            _alloc("mistral-large-3", 50, 1, _M),
            _alloc("gemini-2.5-flash", 25, 2, _B),
            _alloc("claude-haiku-4-5", 15, 3, _P),
            _alloc("gemini-2.0-flash", 10, 4, _B),
        ],
        PlanTier.APEX: [
            _alloc("mistral-large-3", 45, 1, _M),
            _alloc("gemini-2.5-flash", 25, 2, _B),
            _alloc("claude-haiku-4-5", 20, 3, _P),
            _alloc("gemini-2.0-flash", 10, 4, _B),
        ],
        PlanTier.SOVEREIGN: _SOVEREIGN_ALLOCATIONS,
    },
    Region.INTL: {
        **_ENTRY_ALLOCATIONS,
        PlanTier.PLUS: [
            _alloc("mistral-large-3", 50, 1, _M),
            _alloc("gemini-2.5-flash", 25, 2, _B),
            _alloc("claude-haiku-4-5", 15, 3, _P),
            _alloc("gemini-2.0-flash", 10, 4, _B),
        ],
        PlanTier.PRO: [
            _alloc("mistral-large-3", 50, 1, _M),
            _alloc("gemini-2.5-flash", 25, 2, _B),
            _alloc("gpt-5.1", 15, 3, _P),
            _alloc("gemini-2.0-flash", 10, 4, _B),
        ],
        PlanTier.APEX: [
            _alloc("mistral-large-3", 40, 1, _M),
            _alloc("gemini-2.5-flash", 20, 2, _B),
            _alloc("claude-haiku-4-5", 15, 3, _P),
            _alloc("claude-sonnet-4-5", 15, 4, _P),
            _alloc("gemini-2.0-flash", 10, 5, _B),
        ],
        PlanTier.SOVEREIGN: _SOVEREIGN_ALLOCATIONS,
    },
}


def billing_period(moment: datetime) -> str:
    """Calendar-month period key (``YYYY-MM``) in UTC."""
    return moment.astimezone(timezone.utc).strftime("%Y-%m")


def period_end(moment: datetime) -> datetime:
    """First instant of the month after ``moment`` (UTC)."""
    moment = moment.astimezone(timezone.utc)
    if moment.month == 12:
        return datetime(moment.year + 1, 1, 1, tzinfo=timezone.utc)
    return datetime(moment.year, moment.month + 1, 1, tzinfo=timezone.utc)


class QuotaRecord(BaseModel):
    """Usage of one provider by one user in one billing period."""

    user_id: str
    provider_id: str
    period: str
    used: int = Field(default=0, ge=0)
    allocated: int = Field(ge=0)

    @computed_field  # type: ignore[prop-decorator]
    @property
    def remaining(self) -> int:
        return max(self.allocated - self.used, 0)

    @computed_field  # type: ignore[prop-decorator]
    @property
    def percentage_used(self) -> float:
        if self.allocated <= 0:
            return 100.0
        return round(min(self.used / self.allocated * 100.0, 100.0), 2)


class BestAvailable(BaseModel):
    """Outcome of a quota-aware provider choice.

    Args:
        provider_id: Provider to use.
        was_downgraded: A provider other than the preferred one was chosen.
        all_exhausted: Nothing had quota; provider_id is the last resort.
        reason: Short machine-readable explanation.
        remaining: Tokens left on the chosen provider.
    """

    provider_id: str
    was_downgraded: bool = False
    all_exhausted: bool = False
    reason: str
    remaining: int = 0


class QuotaLedger:
    """Tracks token usage against per-provider allocations.

    Counters live in a pluggable store keyed by
    ``quota:<user>:<provider>:<YYYY-MM>``, so a new month starts every
    record at zero without any reset job.

    Args:
        registry: Provider catalog; allocations are validated against it.
        store: Counter backend. Defaults to an in-memory store.
        allocations: Region -> plan -> allocations.
        monthly_tokens: Plan -> monthly token budget.
        min_tokens: Default headroom required for ``has_quota``.
        clock: Current-time source, injectable for tests.

    Raises:
        ConfigurationError: If an allowed plan/provider pair has no
            allocation, or an allocation names a provider the plan
            cannot use.
    """

    def __init__(
        self,
        registry: ProviderRegistry,
        store: Optional[QuotaStore] = None,
        allocations: Optional[dict[Region, dict[PlanTier, list[QuotaAllocation]]]] = None,
        monthly_tokens: Optional[dict[PlanTier, int]] = None,
        min_tokens: int = DEFAULT_MIN_TOKENS,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._registry = registry
        self._store: QuotaStore = store if store is not None else InMemoryQuotaStore()
        self._allocations = allocations if allocations is not None else QUOTA_ALLOCATIONS
        self._monthly_tokens = monthly_tokens if monthly_tokens is not None else PLAN_MONTHLY_TOKENS
        self._min_tokens = min_tokens
        self._clock = clock
        self._active_period: Optional[str] = None
        self.validate()

    def validate(self) -> None:
        """Check the allocation tables against the registry.

        Raises:
            ConfigurationError: On any missing or unexpected entry.
        """
        for region in Region:
            for plan in PlanTier:
                if plan not in self._monthly_tokens:
                    raise ConfigurationError(f"No monthly token budget for plan={plan.value}")
                allowed = set(self._registry.allowed_ids(plan, region))
                entries = self._allocations.get(region, {}).get(plan, [])
                allocated = {entry.provider_id for entry in entries}

                missing = allowed - allocated
                if missing:
                    raise ConfigurationError(
                        f"Missing quota allocation for plan={plan.value}, "
                        f"region={region.value}: {sorted(missing)}"
                    )
                extra = allocated - allowed
                if extra:
                    raise ConfigurationError(
                        f"Quota allocation for providers not allowed on plan={plan.value}, "
                        f"region={region.value}: {sorted(extra)}"
                    )
                if not any(entry.tier == AllocationTier.BUDGET for entry in entries):
                    raise ConfigurationError(
                        f"No budget-tier allocation for plan={plan.value}, region={region.value}"
                    )

    def allocations_for(self, plan: PlanTier, region: Region) -> list[QuotaAllocation]:
        """Allocations for a plan in priority order."""
        return sorted(self._allocations[region][plan], key=lambda a: a.priority)

    def allocated_tokens(self, plan: PlanTier, region: Region, provider_id: str) -> int:
        """Tokens allocated to a provider for a plan each month.

        Raises:
            ConfigurationError: If the plan/provider pair has no allocation.
        """
        for entry in self._allocations.get(region, {}).get(plan, []):
            if entry.provider_id == provider_id:
                return int(self._monthly_tokens[plan] * entry.percentage / 100)
        raise ConfigurationError(
            f"No quota allocation for plan={plan.value}, region={region.value}, "
            f"provider={provider_id}"
        )

    async def _period(self) -> tuple[str, datetime]:
        now = self._clock()
        period = billing_period(now)
        if period != self._active_period:
            if self._active_period is not None:
                await self._store.prune(period)
                logger.info(f"quota_period_rollover: from={self._active_period}, to={period}")
            self._active_period = period
        return period, period_end(now)

    @staticmethod
    def _key(user_id: str, provider_id: str, period: str) -> str:
        return f"quota:{user_id}:{provider_id}:{period}"

    async def get_record(
        self, user_id: str, plan: PlanTier, region: Region, provider_id: str
    ) -> QuotaRecord:
        """Current-period record, zero-used if the user has not touched the provider yet."""
        period, _ = await self._period()
        used = await self._store.get(self._key(user_id, provider_id, period))
        return QuotaRecord(
            user_id=user_id,
            provider_id=provider_id,
            period=period,
            used=used,
            allocated=self.allocated_tokens(plan, region, provider_id),
        )

    async def has_quota(
        self,
        user_id: str,
        plan: PlanTier,
        region: Region,
        provider_id: str,
        tokens_needed: Optional[int] = None,
    ) -> bool:
        """Whether the provider has at least ``tokens_needed`` tokens left."""
        needed = self._min_tokens if tokens_needed is None else tokens_needed
        record = await self.get_record(user_id, plan, region, provider_id)
        return record.remaining >= needed

    async def record_usage(self, user_id: str, provider_id: str, tokens: int) -> int:
        """Atomically add consumed tokens to the current period's counter.

        Args:
            user_id: User who consumed the tokens.
            provider_id: Provider that served the request.
            tokens: Tokens consumed.

        Returns:
            The new period total for the user/provider pair.
        """
        period, expires_at = await self._period()
        total = await self._store.increment(
            self._key(user_id, provider_id, period), max(tokens, 0), expires_at
        )
        logger.info(
            f"quota_usage_recorded: user={user_id}, provider={provider_id}, "
            f"tokens={tokens}, period_total={total}"
        )
        return total

    async def get_best_available(
        self,
        user_id: str,
        plan: PlanTier,
        region: Region,
        preferred: str,
        candidates: Optional[list[str]] = None,
        tokens_needed: Optional[int] = None,
    ) -> BestAvailable:
        """Pick the preferred provider if it has quota, else downgrade.

        Args:
            user_id: Requesting user.
            plan: User's plan.
            region: User's region.
            preferred: Provider the ranking chose.
            candidates: Restrict downgrades to these ids (e.g. the viable
                part of the fallback chain). None allows every allocation.
            tokens_needed: Required headroom; defaults to ``min_tokens``.

        Returns:
            BestAvailable. Never raises for a valid plan/provider table.
        """
        needed = self._min_tokens if tokens_needed is None else tokens_needed

        preferred_record = await self.get_record(user_id, plan, region, preferred)
        if preferred_record.remaining >= needed:
            return BestAvailable(
                provider_id=preferred,
                reason="preferred_available",
                remaining=preferred_record.remaining,
            )

        allowed = set(candidates) if candidates is not None else None
        ordered = self.allocations_for(plan, region)
        for entry in ordered:
            if entry.provider_id == preferred:
                continue
            if allowed is not None and entry.provider_id not in allowed:
                continue
            record = await self.get_record(user_id, plan, region, entry.provider_id)
            if record.remaining >= needed:
                logger.warning(
                    f"quota_downgrade: user={user_id}, from={preferred}, "
                    f"to={entry.provider_id}, remaining={record.remaining}"
                )
                return BestAvailable(
                    provider_id=entry.provider_id,
                    was_downgraded=True,
                    reason=f"quota_exhausted:{preferred}",
                    remaining=record.remaining,
                )

        budget_entries = [entry for entry in ordered if entry.tier == AllocationTier.BUDGET]
        in_scope = [e for e in budget_entries if allowed is None or e.provider_id in allowed]
        last_resort = (in_scope or budget_entries)[0].provider_id
        logger.warning(
            f"quota_all_exhausted: user={user_id}, plan={plan.value}, "
            f"preferred={preferred}, last_resort={last_resort}"
        )
        return BestAvailable(
            provider_id=last_resort,
            was_downgraded=last_resort != preferred,
            all_exhausted=True,
            reason="all_models_exhausted",
        )

    async def usage_summary(
        self, user_id: str, plan: PlanTier, region: Region
    ) -> list[QuotaRecord]:
        """Records for every provider the plan allocates, in priority order."""
        return [
            await self.get_record(user_id, plan, region, entry.provider_id)
            for entry in self.allocations_for(plan, region)
        ]

    @property
    def min_tokens(self) -> int:
        return self._min_tokens
