"""Dispatch/recovery controller and its canned messages."""

from llm_dispatch.dispatch.controller import MAX_ATTEMPTS, DispatchController

__all__ = ["DispatchController", "MAX_ATTEMPTS"]
