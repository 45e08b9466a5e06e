"""Unit tests for the policy override layer."""

import threading

import pytest

from llm_dispatch.models import PlanTier
from llm_dispatch.policy.overrides import PolicyOverrideLayer
from llm_dispatch.settings import PolicyDefaults, Settings


class TestKillSwitches:
    """Tests for provider, family and emergency kill switches."""

    @pytest.mark.unit
    def test_everything_allowed_by_default(self, policy: PolicyOverrideLayer, registry) -> None:
        assert all(policy.is_provider_allowed(p.id) for p in registry.all())

    @pytest.mark.unit
    def test_unknown_provider_never_allowed(self, policy: PolicyOverrideLayer) -> None:
        assert policy.is_provider_allowed("llama-4") is False

    @pytest.mark.unit
    def test_disable_provider(self, policy: PolicyOverrideLayer) -> None:
        policy.set("disabled_providers", ["gpt-5.1"], changed_by="ops")
        assert policy.is_provider_allowed("gpt-5.1") is False
        assert policy.is_provider_allowed("claude-sonnet-4-5") is True

    @pytest.mark.unit
    def test_disable_family(self, policy: PolicyOverrideLayer) -> None:
        policy.set("disabled_families", ["claude"], changed_by="ops")
        assert policy.is_provider_allowed("claude-haiku-4-5") is False
        assert policy.is_provider_allowed("claude-sonnet-4-5") is False
        assert policy.is_provider_allowed("mistral-large-3") is True

    @pytest.mark.unit
    def test_emergency_mode_keeps_cheap_providers(self, policy: PolicyOverrideLayer) -> None:
        """Emergency mode excludes anything above the cheap ceiling and forces cheapest."""
        policy.set("emergency_mode", True, changed_by="ops")

        assert policy.is_provider_allowed("gemini-2.0-flash") is True
        assert policy.is_provider_allowed("mistral-large-3") is True
        assert policy.is_provider_allowed("claude-haiku-4-5") is False
        assert policy.should_force_cheapest(PlanTier.SOVEREIGN) is True

    @pytest.mark.unit
    def test_force_cheap_per_plan(self, policy: PolicyOverrideLayer) -> None:
        policy.set("force_cheap_plans", ["LITE"], changed_by="ops")
        assert policy.should_force_cheapest(PlanTier.LITE) is True
        assert policy.should_force_cheapest(PlanTier.PRO) is False

    @pytest.mark.unit
    def test_maintenance_mode(self, policy: PolicyOverrideLayer) -> None:
        assert policy.is_maintenance_mode_on() is False
        policy.set("maintenance_mode", True)
        assert policy.is_maintenance_mode_on() is True


class TestEffectivePressure:
    """Tests for pressure override and cap."""

    @pytest.mark.unit
    def test_raw_value_clamped(self, policy: PolicyOverrideLayer) -> None:
        assert policy.effective_pressure(1.7) == 1.0
        assert policy.effective_pressure(-0.2) == 0.0
        assert policy.effective_pressure(0.4) == pytest.approx(0.4)

    @pytest.mark.unit
    def test_override_replaces_computed(self, policy: PolicyOverrideLayer) -> None:
        policy.set("global_pressure_override", 0.95)
        assert policy.effective_pressure(0.1) == pytest.approx(0.95)

    @pytest.mark.unit
    def test_override_clamped(self, policy: PolicyOverrideLayer) -> None:
        policy.set("global_pressure_override", 3.0)
        assert policy.effective_pressure(0.1) == 1.0

    @pytest.mark.unit
    def test_cap_limits_computed(self, policy: PolicyOverrideLayer) -> None:
        policy.set("max_pressure_cap", 0.5)
        assert policy.effective_pressure(0.8) == pytest.approx(0.5)
        assert policy.effective_pressure(0.3) == pytest.approx(0.3)


class TestAuditedWrites:
    """Tests for change records, history and validation."""

    @pytest.mark.unit
    def test_set_records_change(self, policy: PolicyOverrideLayer) -> None:
        record = policy.set("emergency_mode", True, changed_by="alice", reason="provider outage")

        assert record is not None
        assert record.action == "set"
        assert record.old_value is False
        assert record.new_value is True
        assert record.changed_by == "alice"
        assert record.reason == "provider outage"
        assert record.version == policy.flags.version == 1

    @pytest.mark.unit
    def test_noop_set_not_recorded(self, policy: PolicyOverrideLayer) -> None:
        """Setting a flag to its current value changes nothing."""
        assert policy.set("emergency_mode", False) is None
        assert policy.history() == []
        assert policy.flags.version == 0

    @pytest.mark.unit
    def test_set_values_displayed_sorted(self, policy: PolicyOverrideLayer) -> None:
        record = policy.set("disabled_providers", ["gpt-5.1", "claude-haiku-4-5"])
        assert record is not None
        assert record.old_value == []
        assert record.new_value == ["claude-haiku-4-5", "gpt-5.1"]

    @pytest.mark.unit
    def test_history_bounded(self, registry) -> None:
        policy = PolicyOverrideLayer(registry, history_size=3)
        for value in (0.1, 0.2, 0.3, 0.4, 0.5):
            policy.set("max_pressure_cap", value)

        history = policy.history()
        assert len(history) == 3
        assert [r.new_value for r in history] == [0.3, 0.4, 0.5]
        assert [r.new_value for r in policy.history(1)] == [0.5]

    @pytest.mark.unit
    def test_bulk_update_single_version(self, policy: PolicyOverrideLayer) -> None:
        records = policy.bulk_update(
            {"emergency_mode": True, "maintenance_mode": True}, changed_by="ops"
        )
        assert len(records) == 2
        assert {r.version for r in records} == {1}
        assert all(r.action == "bulk_update" for r in records)

    @pytest.mark.unit
    def test_reset_restores_defaults(self, registry) -> None:
        defaults = PolicyDefaults(disabled_providers=["gpt-5.1"])
        policy = PolicyOverrideLayer(registry, defaults=defaults)
        policy.set("disabled_providers", [])
        policy.set("emergency_mode", True)

        records = policy.reset(changed_by="ops")

        assert {r.field for r in records} == {"disabled_providers", "emergency_mode"}
        assert policy.flags.disabled_providers == frozenset({"gpt-5.1"})
        assert policy.flags.emergency_mode is False

    @pytest.mark.unit
    def test_reload_from_settings(self, policy: PolicyOverrideLayer) -> None:
        settings = Settings(_env_file=None, policy=PolicyDefaults(maintenance_mode=True))
        records = policy.reload_from_settings(settings)

        assert [r.action for r in records] == ["reload"]
        assert policy.is_maintenance_mode_on() is True

    @pytest.mark.unit
    def test_unknown_field_rejected(self, policy: PolicyOverrideLayer) -> None:
        with pytest.raises(ValueError, match="Unknown policy fields"):
            policy.set("turbo_mode", True)

    @pytest.mark.unit
    def test_unknown_provider_rejected(self, policy: PolicyOverrideLayer) -> None:
        with pytest.raises(ValueError, match="Unknown providers"):
            policy.set("disabled_providers", ["llama-4"])
        assert policy.flags.disabled_providers == frozenset()

    @pytest.mark.unit
    def test_invalid_value_rejected(self, policy: PolicyOverrideLayer) -> None:
        with pytest.raises(ValueError):
            policy.set("max_pressure_cap", 2.0)

    @pytest.mark.unit
    def test_status_lists_active_kills(self, policy: PolicyOverrideLayer) -> None:
        policy.bulk_update(
            {
                "disabled_providers": ["gpt-5.1"],
                "disabled_families": ["claude"],
                "force_cheap_plans": ["STARTER"],
                "emergency_mode": True,
            }
        )
        status = policy.status()
        assert status.active_kills == [
            "provider:gpt-5.1",
            "family:claude",
            "force_cheap:STARTER",
            "EMERGENCY_MODE",
        ]
        assert len(status.recent_changes) == 4


class TestSnapshotConsistency:
    """Tests for concurrent writers."""

    @pytest.mark.unit
    def test_parallel_writers_serialize(self, policy: PolicyOverrideLayer) -> None:
        """Every write gets its own version; none are lost."""
        values = [round(0.01 * i, 2) for i in range(1, 41)]

        def write(value: float) -> None:
            policy.set("max_pressure_cap", value)

        threads = [threading.Thread(target=write, args=(v,)) for v in values]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        versions = [r.version for r in policy.history()]
        assert sorted(versions) == list(range(1, len(versions) + 1))
        assert policy.flags.version == len(versions)
