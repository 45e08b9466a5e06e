"""Operator-controlled policy overrides."""

from llm_dispatch.policy.overrides import (
    ChangeRecord,
    PolicyFlags,
    PolicyOverrideLayer,
    PolicyStatus,
)

__all__ = ["PolicyOverrideLayer", "PolicyFlags", "ChangeRecord", "PolicyStatus"]
