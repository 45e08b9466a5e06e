"""Shared fixtures for policy override tests."""

import pytest

from llm_dispatch.policy.overrides import PolicyOverrideLayer
from llm_dispatch.routing.registry import ProviderRegistry


@pytest.fixture
def registry() -> ProviderRegistry:
    return ProviderRegistry()


@pytest.fixture
def policy(registry: ProviderRegistry) -> PolicyOverrideLayer:
    """Policy layer with default (all-off) flags."""
    return PolicyOverrideLayer(registry)
