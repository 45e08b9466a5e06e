"""Pydantic models and enums shared across the dispatch engine."""

from datetime import datetime, timezone
from enum import Enum
from typing import Literal, Optional
from uuid import uuid4

from pydantic import BaseModel, Field, computed_field

Language = Literal["en", "hi", "hinglish"]


def utc_now() -> datetime:
    """Timezone-aware current time in UTC."""
    return datetime.now(timezone.utc)


class PlanTier(str, Enum):
    """Subscription tier, cheapest first."""

    STARTER = "STARTER"
    LITE = "LITE"
    PLUS = "PLUS"
    PRO = "PRO"
    APEX = "APEX"
    SOVEREIGN = "SOVEREIGN"


class Region(str, Enum):
    """Billing region; selects the plan-to-provider table."""

    IN = "IN"
    INTL = "INTL"


class ComplexityTier(str, Enum):
    """How demanding a request is, least to most."""

    CASUAL = "CASUAL"
    SIMPLE = "SIMPLE"
    MEDIUM = "MEDIUM"
    COMPLEX = "COMPLEX"
    EXPERT = "EXPERT"


class PressureLevel(str, Enum):
    """Discretized closeness to the budget ceiling."""

    NONE = "NONE"
    LOW = "LOW"
    MEDIUM = "MEDIUM"
    HIGH = "HIGH"
    CRITICAL = "CRITICAL"


class Specialization(str, Enum):
    """Domain a request leans toward."""

    CODE = "code"
    BUSINESS = "business"
    WRITING = "writing"
    REASONING = "reasoning"


class OutcomeDecision(str, Enum):
    """Pre-dispatch verdict of the outcome gate."""

    ANSWER = "ANSWER"
    ASK_BACK = "ASK_BACK"
    PAUSE = "PAUSE"
    DECLINE = "DECLINE"


class FailureClass(str, Enum):
    """The four dispatch-failure classes. No others are permitted."""

    PROVIDER_FAILURE = "provider_failure"
    MODEL_REFUSAL = "model_refusal"
    BUDGET_ENFORCEMENT = "budget_enforcement"
    ORCHESTRATION_FAILURE = "orchestration_failure"


class DispatchStatus(str, Enum):
    """How a dispatched request ended."""

    SUCCESS = "success"
    RECOVERED = "recovered"
    SHORT_CIRCUIT = "short_circuit"
    BUDGET_ENFORCED = "budget_enforced"
    ALL_ATTEMPTS_EXHAUSTED = "all_attempts_exhausted"


class UserBudgetState(BaseModel):
    """Read-only usage snapshot supplied by the billing subsystem.

    Args:
        user_id: Unique user identifier.
        plan: Subscription tier.
        monthly_used: Tokens consumed this billing month.
        monthly_limit: Monthly token ceiling.
        daily_used: Tokens consumed today.
        daily_limit: Daily token ceiling.
    """

    user_id: str
    plan: PlanTier
    monthly_used: int = Field(default=0, ge=0)
    monthly_limit: int = 0
    daily_used: int = Field(default=0, ge=0)
    daily_limit: int = 0


class ChatRequest(BaseModel):
    """One incoming chat message to be routed.

    Args:
        request_id: End-to-end tracing id.
        user_id: Requesting user.
        session_id: Conversation session; scopes the pressure cache.
        text: Raw message text.
        region: Billing region of the user.
        language: Language for canned messages.
        is_high_stakes: Caller override; detected from text when None.
        specialization_hint: Caller override; detected from text when None.
        session_message_count: Messages already exchanged in this session.
    """

    request_id: str = Field(default_factory=lambda: uuid4().hex)
    user_id: str
    session_id: str
    text: str
    region: Region = Region.IN
    language: Language = "en"
    is_high_stakes: Optional[bool] = None
    specialization_hint: Optional[Specialization] = None
    session_message_count: int = Field(default=0, ge=0)


class ProviderResponse(BaseModel):
    """What a provider-execution collaborator returns on success.

    Args:
        text: Generated output.
        tokens_used: Tokens billed for the call.
        finish_reason: Provider finish reason, if reported.
    """

    text: str
    tokens_used: int = Field(default=0, ge=0)
    finish_reason: Optional[str] = None


class OutcomeResult(BaseModel):
    """Verdict of the outcome gate.

    Args:
        decision: ANSWER, ASK_BACK, PAUSE or DECLINE.
        reason: Machine-readable reason code.
        user_message: Canned message for PAUSE/DECLINE.
        clarification_prompt: Prompt for ASK_BACK.
        effective_pressure: Budget pressure after policy overrides.
        needs_special_care: Self-harm-adjacent language was detected.
        checks_passed: Names of checks that passed, in order.
        checks_failed: Names of checks that failed.
    """

    decision: OutcomeDecision
    reason: str
    user_message: Optional[str] = None
    clarification_prompt: Optional[str] = None
    effective_pressure: float = Field(default=0.0, ge=0.0, le=1.0)
    needs_special_care: bool = False
    checks_passed: list[str] = Field(default_factory=list)
    checks_failed: list[str] = Field(default_factory=list)
    timestamp: datetime = Field(default_factory=utc_now)

    @property
    def proceeds(self) -> bool:
        """Whether the request should reach a provider."""
        return self.decision == OutcomeDecision.ANSWER


class RoutingDecision(BaseModel):
    """Output of the routing pipeline for a single request.

    Args:
        request_id: Request this decision belongs to.
        provider_id: Chosen provider.
        fallback_chain: Ordered alternates, chosen provider excluded.
        complexity: Complexity tier of the request.
        pressure_level: Session pressure level.
        effective_pressure: Pressure used for ranking, after overrides.
        confidence: Confidence in the choice (0.0-1.0).
        reason: Human-readable summary of the decision.
    """

    request_id: str
    provider_id: str
    fallback_chain: list[str] = Field(default_factory=list)
    complexity: ComplexityTier
    pressure_level: PressureLevel
    effective_pressure: float = Field(ge=0.0, le=1.0)
    confidence: float = Field(ge=0.0, le=1.0)
    reason: str
    is_high_stakes: bool = False
    specialization: Optional[Specialization] = None
    estimated_tokens: int = Field(default=0, ge=0)
    estimated_cost: float = Field(default=0.0, ge=0.0)
    policy_adjusted: bool = False
    quota_downgraded: bool = False
    created_at: datetime = Field(default_factory=utc_now)

    @computed_field  # type: ignore[prop-decorator]
    @property
    def candidates(self) -> list[str]:
        """Chosen provider followed by the fallback chain."""
        return [self.provider_id, *self.fallback_chain]


class FailureTrace(BaseModel):
    """Record of one failed dispatch attempt and how it was handled.

    Args:
        request_id: Request the failure belongs to.
        attempt: 1 for the primary call, 2 for the recovery call.
        classification: Failure class of the error.
        original_provider: Provider that failed; None when the failure
            happened before any provider was chosen.
        final_provider: Provider the request ended on, if any.
        recovered: Whether the request ultimately got a real answer.
        action: What the controller did about it.
        error: Error text (internal only).
    """

    request_id: str
    user_id: str
    attempt: int = Field(ge=1, le=2)
    classification: FailureClass
    original_provider: Optional[str] = None
    final_provider: Optional[str] = None
    recovered: bool = False
    action: str
    error: str = ""
    timestamp: datetime = Field(default_factory=utc_now)


class UsageLog(BaseModel):
    """Token and cost accounting for one successful provider call."""

    request_id: str
    user_id: str
    provider_id: str
    plan: PlanTier
    tokens_estimated: int = Field(default=0, ge=0)
    tokens_actual: int = Field(default=0, ge=0)
    cost: float = Field(default=0.0, ge=0.0)
    latency_ms: float = Field(default=0.0, ge=0.0)
    timestamp: datetime = Field(default_factory=utc_now)


class DispatchResult(BaseModel):
    """Structured result handed back to the caller for every request.

    Args:
        request_id: Request this result answers.
        status: How the request ended.
        text: Provider output or a canned message.
        recovered: True unless the request ended on budget enforcement or
            with no candidate left.
        attempts_used: Provider calls made (0-2).
        attempted_providers: Providers called, in order, no duplicates.
        final_provider: Provider whose output is returned, if any.
        action: Recovery action taken, when a failure occurred.
    """

    request_id: str
    status: DispatchStatus
    text: str
    recovered: bool
    attempts_used: int = Field(default=0, ge=0, le=2)
    attempted_providers: list[str] = Field(default_factory=list)
    final_provider: Optional[str] = None
    action: Optional[str] = None
    tokens_used: int = Field(default=0, ge=0)
    outcome: Optional[OutcomeResult] = None
    decision: Optional[RoutingDecision] = None
    traces: list[FailureTrace] = Field(default_factory=list)
