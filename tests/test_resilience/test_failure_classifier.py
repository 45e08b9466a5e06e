"""Unit tests for mapping errors and responses onto failure classes."""

import asyncio

import httpx
import pytest

from llm_dispatch.errors import OrchestrationError, ProviderError
from llm_dispatch.models import FailureClass, ProviderResponse
from llm_dispatch.resilience.failure_classifier import (
    classify_error,
    classify_response,
    classify_status,
)


def _status_error(code: int) -> httpx.HTTPStatusError:
    request = httpx.Request("POST", "https://provider.test/v1/chat")
    response = httpx.Response(code, request=request)
    return httpx.HTTPStatusError(f"HTTP {code}", request=request, response=response)


class TestClassifyError:
    """Tests for classify_error."""

    @pytest.mark.unit
    def test_structured_error_trusted(self) -> None:
        error = ProviderError("nope", kind=FailureClass.MODEL_REFUSAL)
        assert classify_error(error) == FailureClass.MODEL_REFUSAL

    @pytest.mark.unit
    def test_orchestration_error(self) -> None:
        assert classify_error(OrchestrationError("x")) == FailureClass.ORCHESTRATION_FAILURE

    @pytest.mark.unit
    @pytest.mark.parametrize(
        ("code", "expected"),
        [
            (503, FailureClass.PROVIDER_FAILURE),
            (500, FailureClass.PROVIDER_FAILURE),
            (429, FailureClass.BUDGET_ENFORCEMENT),
            (402, FailureClass.BUDGET_ENFORCEMENT),
        ],
    )
    def test_http_status(self, code: int, expected: FailureClass) -> None:
        assert classify_error(_status_error(code)) == expected

    @pytest.mark.unit
    def test_timeouts_and_transport(self) -> None:
        assert classify_error(httpx.ReadTimeout("slow")) == FailureClass.PROVIDER_FAILURE
        assert classify_error(asyncio.TimeoutError()) == FailureClass.PROVIDER_FAILURE
        assert classify_error(ConnectionResetError()) == FailureClass.PROVIDER_FAILURE

    @pytest.mark.unit
    def test_message_markers(self) -> None:
        assert classify_error(RuntimeError("Rate limit reached")) == (
            FailureClass.BUDGET_ENFORCEMENT
        )
        assert classify_error(RuntimeError("blocked by safety system")) == (
            FailureClass.MODEL_REFUSAL
        )

    @pytest.mark.unit
    def test_status_attribute(self) -> None:
        error = RuntimeError("upstream said no")
        error.status_code = 429  # type: ignore[attr-defined]
        assert classify_error(error) == FailureClass.BUDGET_ENFORCEMENT

    @pytest.mark.unit
    def test_unknown_defaults_to_provider_failure(self) -> None:
        assert classify_error(ValueError("weird")) == FailureClass.PROVIDER_FAILURE

    @pytest.mark.unit
    def test_classify_status_neutral_codes(self) -> None:
        assert classify_status(404) is None
        assert classify_status(599) == FailureClass.PROVIDER_FAILURE


class TestClassifyResponse:
    """Tests for refusals disguised as successful calls."""

    @pytest.mark.unit
    def test_filtered_finish_reason(self) -> None:
        response = ProviderResponse(text="partial", finish_reason="content_filter")
        assert classify_response(response) == FailureClass.MODEL_REFUSAL

    @pytest.mark.unit
    def test_empty_text(self) -> None:
        assert classify_response(ProviderResponse(text="   ")) == FailureClass.MODEL_REFUSAL

    @pytest.mark.unit
    def test_normal_response(self) -> None:
        assert classify_response(ProviderResponse(text="hi!", finish_reason="stop")) is None
