"""Process-wide operator overrides: kill switches, forced-cheap mode, pressure clamps."""

import logging
import threading
from datetime import datetime
from typing import Any, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field

from llm_dispatch.models import PlanTier, utc_now
from llm_dispatch.routing.registry import CHEAP_COST_CEILING, ProviderRegistry
from llm_dispatch.settings import PolicyDefaults, Settings

logger = logging.getLogger(__name__)

DEFAULT_HISTORY_SIZE: int = 100

ChangeAction = Literal["set", "bulk_update", "reset", "reload"]


class PolicyFlags(BaseModel):
    """Immutable snapshot of every override. Replaced wholesale on change."""

    model_config = ConfigDict(frozen=True)

    disabled_providers: frozenset[str] = frozenset()
    disabled_families: frozenset[str] = frozenset()
    force_cheap_plans: frozenset[PlanTier] = frozenset()
    emergency_mode: bool = False
    maintenance_mode: bool = False
    global_pressure_override: Optional[float] = None
    max_pressure_cap: float = Field(default=1.0, ge=0.0, le=1.0)
    version: int = 0
    updated_at: datetime = Field(default_factory=utc_now)

    @classmethod
    def from_defaults(cls, defaults: PolicyDefaults) -> "PolicyFlags":
        return cls(**defaults.model_dump())


SETTABLE_FIELDS: frozenset[str] = frozenset(PolicyDefaults.model_fields)


class ChangeRecord(BaseModel):
    """One audited change to a single policy field."""

    model_config = ConfigDict(frozen=True)

    action: ChangeAction
    field: str
    old_value: Any
    new_value: Any
    changed_by: str
    reason: Optional[str] = None
    version: int
    changed_at: datetime = Field(default_factory=utc_now)


class PolicyStatus(BaseModel):
    """Operator-facing summary of the current policy."""

    flags: PolicyFlags
    active_kills: list[str]
    recent_changes: list[ChangeRecord]


def _display(value: Any) -> Any:
    """Stable, printable form of a flag value for the audit log."""
    if isinstance(value, (set, frozenset)):
        return sorted(v.value if isinstance(v, PlanTier) else v for v in value)
    return value


class PolicyOverrideLayer:
    """Snapshot-based policy flags with serialized, audited writes.

    Readers take the current ``PolicyFlags`` reference without locking.
    Writers build a complete replacement snapshot under a lock and swap
    the reference, so a reader sees either the old policy or the new one,
    never a mix.

    Args:
        registry: Provider catalog, used for family and cost lookups.
        defaults: Boot-time flag values, also the target of ``reset``.
        history_size: Number of change records retained.
    """

    def __init__(
        self,
        registry: ProviderRegistry,
        defaults: Optional[PolicyDefaults] = None,
        history_size: int = DEFAULT_HISTORY_SIZE,
    ) -> None:
        self._registry = registry
        self._defaults = defaults if defaults is not None else PolicyDefaults()
        self._history_size = history_size
        self._history: list[ChangeRecord] = []
        self._write_lock = threading.Lock()
        self._validate_values(self._defaults.model_dump())
        self._flags: PolicyFlags = PolicyFlags.from_defaults(self._defaults)

    @classmethod
    def from_settings(cls, registry: ProviderRegistry, settings: Settings) -> "PolicyOverrideLayer":
        return cls(registry, defaults=settings.policy, history_size=settings.policy_history_size)

    @property
    def flags(self) -> PolicyFlags:
        """Current snapshot."""
        return self._flags

    # Reads

    def is_provider_allowed(self, provider_id: str) -> bool:
        """Whether no kill switch excludes the provider.

        Emergency mode additionally excludes anything above the cheap
        cost ceiling. Unknown providers are never allowed.
        """
        flags = self._flags
        provider = self._registry.get(provider_id)
        if provider is None:
            return False
        if provider_id in flags.disabled_providers:
            return False
        if provider.family in flags.disabled_families:
            return False
        if flags.emergency_mode and provider.cost_per_unit > CHEAP_COST_CEILING:
            return False
        return True

    def should_force_cheapest(self, plan: PlanTier) -> bool:
        """Whether the plan is pinned to its cheapest allowed provider."""
        flags = self._flags
        return flags.emergency_mode or plan in flags.force_cheap_plans

    def effective_pressure(self, raw: float) -> float:
        """Apply the global override or the cap to a computed pressure.

        The override, when set, replaces the computed value. Otherwise the
        computed value is capped. Either way the result is in [0, 1].
        """
        flags = self._flags
        if flags.global_pressure_override is not None:
            return min(1.0, max(0.0, flags.global_pressure_override))
        clamped = min(1.0, max(0.0, raw))
        return min(clamped, flags.max_pressure_cap)

    def is_maintenance_mode_on(self) -> bool:
        return self._flags.maintenance_mode

    # Writes

    def set(
        self,
        field: str,
        value: Any,
        changed_by: str = "system",
        reason: Optional[str] = None,
    ) -> Optional[ChangeRecord]:
        """Change one flag.

        Args:
            field: Name of a PolicyDefaults field.
            value: New value; coerced and validated like settings input.
            changed_by: Operator identity for the audit log.
            reason: Optional free-text justification.

        Returns:
            The recorded change, or None when the value was already set.

        Raises:
            ValueError: On an unknown field or an invalid value.
        """
        records = self._apply({field: value}, "set", changed_by, reason)
        return records[0] if records else None

    def bulk_update(
        self,
        changes: dict[str, Any],
        changed_by: str = "system",
        reason: Optional[str] = None,
    ) -> list[ChangeRecord]:
        """Change several flags in one snapshot swap."""
        return self._apply(changes, "bulk_update", changed_by, reason)

    def reset(self, changed_by: str = "system") -> list[ChangeRecord]:
        """Restore the boot-time defaults."""
        records = self._apply(self._defaults.model_dump(), "reset", changed_by, None)
        logger.warning(f"policy_reset: changed_by={changed_by}, changes={len(records)}")
        return records

    def reload_from_settings(self, settings: Settings) -> list[ChangeRecord]:
        """Adopt the policy section of freshly loaded settings as the new defaults."""
        self._defaults = settings.policy
        return self._apply(settings.policy.model_dump(), "reload", "settings_reload", None)

    def _apply(
        self,
        changes: dict[str, Any],
        action: ChangeAction,
        changed_by: str,
        reason: Optional[str],
    ) -> list[ChangeRecord]:
        unknown = set(changes) - SETTABLE_FIELDS
        if unknown:
            raise ValueError(f"Unknown policy fields: {sorted(unknown)}")

        with self._write_lock:
            current = self._flags
            merged = current.model_dump(exclude={"version", "updated_at"})
            merged.update(changes)
            candidate = PolicyFlags.model_validate(merged)
            self._validate_values(candidate.model_dump())

            changed = [
                name for name in changes if getattr(candidate, name) != getattr(current, name)
            ]
            if not changed:
                return []

            version = current.version + 1
            self._flags = candidate.model_copy(update={"version": version, "updated_at": utc_now()})

            records = [
                ChangeRecord(
                    action=action,
                    field=name,
                    old_value=_display(getattr(current, name)),
                    new_value=_display(getattr(candidate, name)),
                    changed_by=changed_by,
                    reason=reason,
                    version=version,
                )
                for name in changed
            ]
            self._history.extend(records)
            if len(self._history) > self._history_size:
                del self._history[: len(self._history) - self._history_size]

        for record in records:
            logger.warning(
                f"policy_changed: field={record.field}, old={record.old_value}, "
                f"new={record.new_value}, by={changed_by}, version={version}"
            )
        return records

    def _validate_values(self, values: dict[str, Any]) -> None:
        known_ids = {p.id for p in self._registry.all()}
        known_families = {p.family for p in self._registry.all()}
        bad_ids = set(values.get("disabled_providers") or ()) - known_ids
        if bad_ids:
            raise ValueError(f"Unknown providers in disabled_providers: {sorted(bad_ids)}")
        bad_families = set(values.get("disabled_families") or ()) - known_families
        if bad_families:
            raise ValueError(f"Unknown families in disabled_families: {sorted(bad_families)}")

    # Audit

    def history(self, limit: Optional[int] = None) -> list[ChangeRecord]:
        """Retained changes, oldest first; the most recent ``limit`` if given."""
        records = list(self._history)
        if limit is not None:
            records = records[-limit:] if limit > 0 else []
        return records

    def status(self) -> PolicyStatus:
        flags = self._flags
        active = [f"provider:{pid}" for pid in sorted(flags.disabled_providers)]
        active += [f"family:{family}" for family in sorted(flags.disabled_families)]
        active += [f"force_cheap:{plan.value}" for plan in sorted(flags.force_cheap_plans)]
        if flags.emergency_mode:
            active.append("EMERGENCY_MODE")
        if flags.maintenance_mode:
            active.append("MAINTENANCE_MODE")
        return PolicyStatus(flags=flags, active_kills=active, recent_changes=self.history(5))
