"""Map provider-call errors and suspicious responses onto the four failure classes."""

import asyncio
import logging
from typing import Optional

import httpx

from llm_dispatch.errors import OrchestrationError, ProviderError
from llm_dispatch.models import FailureClass, ProviderResponse

logger = logging.getLogger(__name__)

BUDGET_STATUS_CODES: frozenset[int] = frozenset({402, 429})
TRANSIENT_STATUS_CODES: frozenset[int] = frozenset({408, 500, 502, 503, 504})

BUDGET_MARKERS: tuple[str, ...] = (
    "rate limit",
    "rate_limit",
    "too many requests",
    "quota exceeded",
    "insufficient_quota",
    "budget exceeded",
)

REFUSAL_MARKERS: tuple[str, ...] = (
    "safety",
    "content filter",
    "content_filter",
    "blocked",
    "refused",
    "refusal",
)

REFUSAL_FINISH_REASONS: frozenset[str] = frozenset(
    {"content_filter", "safety", "blocked", "refusal", "recitation"}
)


def classify_status(status_code: int) -> Optional[FailureClass]:
    """Failure class implied by an upstream HTTP status, if it implies one."""
    if status_code in BUDGET_STATUS_CODES:
        return FailureClass.BUDGET_ENFORCEMENT
    if status_code in TRANSIENT_STATUS_CODES or status_code >= 500:
        return FailureClass.PROVIDER_FAILURE
    return None


def classify_error(error: BaseException) -> FailureClass:
    """Classify an exception raised while executing on a provider.

    Structured errors (``ProviderError``, ``OrchestrationError``) are
    trusted as-is. Third-party errors fall back to type checks, status
    codes, then message text. Anything unrecognized is a provider failure.

    Args:
        error: The exception to classify.

    Returns:
        Exactly one FailureClass.
    """
    if isinstance(error, ProviderError):
        return error.kind
    if isinstance(error, OrchestrationError):
        return FailureClass.ORCHESTRATION_FAILURE

    if isinstance(error, httpx.HTTPStatusError):
        by_status = classify_status(error.response.status_code)
        if by_status is not None:
            return by_status
    elif isinstance(error, (httpx.TimeoutException, httpx.TransportError)):
        return FailureClass.PROVIDER_FAILURE
    elif isinstance(error, (asyncio.TimeoutError, TimeoutError, ConnectionError, OSError)):
        return FailureClass.PROVIDER_FAILURE

    status = getattr(error, "status_code", None) or getattr(error, "status", None)
    if isinstance(status, int):
        by_status = classify_status(status)
        if by_status is not None:
            return by_status

    message = str(error).lower()
    if any(marker in message for marker in BUDGET_MARKERS):
        return FailureClass.BUDGET_ENFORCEMENT
    if any(marker in message for marker in REFUSAL_MARKERS):
        return FailureClass.MODEL_REFUSAL

    logger.debug(
        f"failure_classified_default: type={type(error).__name__}, "
        f"class={FailureClass.PROVIDER_FAILURE.value}"
    )
    return FailureClass.PROVIDER_FAILURE


def classify_response(response: ProviderResponse) -> Optional[FailureClass]:
    """Detect a refusal disguised as a successful call.

    Returns:
        MODEL_REFUSAL for empty or safety-filtered output, else None.
    """
    if (response.finish_reason or "").lower() in REFUSAL_FINISH_REASONS:
        return FailureClass.MODEL_REFUSAL
    if not response.text.strip():
        return FailureClass.MODEL_REFUSAL
    return None
