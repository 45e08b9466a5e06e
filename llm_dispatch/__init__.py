"""Budget-aware provider routing and bounded-retry dispatch for chat inference."""

__version__ = "0.1.0"
