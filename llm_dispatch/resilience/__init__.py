"""Provider health, failure classification and per-user quota tracking."""

from llm_dispatch.resilience.circuit_breaker import (
    CircuitBreakerRegistry,
    CircuitState,
    CircuitStatus,
)
from llm_dispatch.resilience.failure_classifier import classify_error, classify_response
from llm_dispatch.resilience.quota_ledger import (
    BestAvailable,
    QuotaAllocation,
    QuotaLedger,
    QuotaRecord,
)
from llm_dispatch.resilience.quota_store import InMemoryQuotaStore, QuotaStore, RedisQuotaStore
from llm_dispatch.resilience.redis_client import RedisConnection

__all__ = [
    # Circuit breakers
    "CircuitBreakerRegistry",
    "CircuitState",
    "CircuitStatus",
    # Classification
    "classify_error",
    "classify_response",
    # Quota
    "QuotaLedger",
    "QuotaAllocation",
    "QuotaRecord",
    "BestAvailable",
    "QuotaStore",
    "InMemoryQuotaStore",
    "RedisQuotaStore",
    "RedisConnection",
]
