"""Request dispatch with bounded, class-specific failure recovery."""

import asyncio
import inspect
import logging
import time
from dataclasses import dataclass
from typing import Any, Optional

from llm_dispatch.collaborators import (
    BudgetStateSource,
    LoggingSink,
    ObservabilitySink,
    ProviderExecutor,
)
from llm_dispatch.dispatch import messages
from llm_dispatch.errors import OrchestrationError
from llm_dispatch.gate.outcome_gate import OutcomeGate
from llm_dispatch.models import (
    ChatRequest,
    DispatchResult,
    DispatchStatus,
    FailureClass,
    FailureTrace,
    OutcomeResult,
    ProviderResponse,
    RoutingDecision,
    UsageLog,
    UserBudgetState,
)
from llm_dispatch.policy.overrides import PolicyOverrideLayer
from llm_dispatch.resilience.circuit_breaker import CircuitBreakerRegistry
from llm_dispatch.resilience.failure_classifier import classify_error, classify_response
from llm_dispatch.resilience.quota_ledger import QuotaLedger
from llm_dispatch.resilience.quota_store import QuotaStore
from llm_dispatch.routing.complexity import (
    classify_complexity,
    detect_high_stakes,
    detect_specialization,
    estimate_tokens,
)
from llm_dispatch.routing.pressure import SessionPressureCache, ranking_pressure
from llm_dispatch.routing.ranking import RankingEngine, build_reason
from llm_dispatch.routing.registry import ProviderRegistry
from llm_dispatch.settings import Settings

logger = logging.getLogger(__name__)

MAX_ATTEMPTS: int = 2


@dataclass
class _Failure:
    """A failed step, finalized into a FailureTrace once the request ends."""

    attempt: int
    classification: FailureClass
    provider_id: Optional[str]
    action: str
    error: str = ""


@dataclass
class _AttemptOutcome:
    response: Optional[ProviderResponse]
    failure: Optional[FailureClass]
    error: str
    latency_ms: float


class DispatchController:
    """Routes a request, calls providers and recovers from failures.

    Every call to ``dispatch`` returns a ``DispatchResult``; failures are
    classified and handled here and never escape to the caller (task
    cancellation excepted). At most two provider calls are made per
    request, never twice on the same provider.

    Args:
        registry: Provider catalog.
        executor: Provider-execution collaborator.
        budget_source: Supplies budget snapshots when the caller does not.
        policy: Policy override layer.
        quota: Per-provider quota ledger.
        circuits: Circuit breaker registry.
        sinks: Observability sinks. Defaults to a single LoggingSink.
        pressure_cache: Session pressure cache. Defaults to an unshared one.
    """

    def __init__(
        self,
        registry: ProviderRegistry,
        executor: ProviderExecutor,
        budget_source: Optional[BudgetStateSource] = None,
        policy: Optional[PolicyOverrideLayer] = None,
        quota: Optional[QuotaLedger] = None,
        circuits: Optional[CircuitBreakerRegistry] = None,
        sinks: Optional[list[ObservabilitySink]] = None,
        pressure_cache: Optional[SessionPressureCache] = None,
    ) -> None:
        self.registry = registry
        self.executor = executor
        self.budget_source = budget_source
        self.policy = policy if policy is not None else PolicyOverrideLayer(registry)
        self.quota = quota if quota is not None else QuotaLedger(registry)
        self.circuits = circuits if circuits is not None else CircuitBreakerRegistry()
        self.gate = OutcomeGate(self.policy)
        self.ranking = RankingEngine(registry)
        self.pressure_cache = (
            pressure_cache if pressure_cache is not None else SessionPressureCache()
        )
        self._sinks: list[ObservabilitySink] = sinks if sinks is not None else [LoggingSink()]
        self._pending: set[asyncio.Future[Any]] = set()

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        executor: ProviderExecutor,
        budget_source: Optional[BudgetStateSource] = None,
        store: Optional[QuotaStore] = None,
        sinks: Optional[list[ObservabilitySink]] = None,
        registry: Optional[ProviderRegistry] = None,
    ) -> "DispatchController":
        """Wire every component from settings.

        Raises:
            ConfigurationError: If the static tables are inconsistent.
        """
        registry = registry if registry is not None else ProviderRegistry()
        return cls(
            registry=registry,
            executor=executor,
            budget_source=budget_source,
            policy=PolicyOverrideLayer.from_settings(registry, settings),
            quota=QuotaLedger(registry, store=store, min_tokens=settings.quota_min_tokens),
            circuits=CircuitBreakerRegistry(
                failure_threshold=settings.circuit_failure_threshold,
                cooldown_seconds=settings.circuit_cooldown_seconds,
            ),
            sinks=sinks,
            pressure_cache=SessionPressureCache(settings.pressure_cache_max_sessions),
        )

    # Public API

    async def dispatch(
        self,
        request: ChatRequest,
        budget: Optional[UserBudgetState] = None,
    ) -> DispatchResult:
        """Handle one request end to end.

        Args:
            request: Incoming chat request.
            budget: Budget snapshot; fetched from ``budget_source`` if None.

        Returns:
            DispatchResult with the provider answer or a canned message.
        """
        failures: list[_Failure] = []

        if budget is None:
            try:
                budget = await self._fetch_budget(request.user_id)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error(f"budget_state_unavailable: user={request.user_id}, error={e}")
                failures.append(
                    _Failure(
                        attempt=1,
                        classification=FailureClass.ORCHESTRATION_FAILURE,
                        provider_id=None,
                        action="budget_state_unavailable",
                        error=str(e),
                    )
                )
                return self._ultimate_fallback(request, [], failures, None, None)

        outcome = self.gate.evaluate(
            request.text, budget, request.session_message_count, request.language
        )
        if not outcome.proceeds:
            return DispatchResult(
                request_id=request.request_id,
                status=DispatchStatus.SHORT_CIRCUIT,
                text=outcome.user_message or outcome.clarification_prompt or "",
                recovered=True,
                outcome=outcome,
            )

        try:
            decision = self.route(request, budget)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            return await self._dispatch_safe_default(request, budget, outcome, e)

        first, downgraded = await self._select(
            decision.candidates, [], request, budget, decision.estimated_tokens
        )
        if downgraded:
            decision = decision.model_copy(update={"quota_downgraded": True})
        self._emit("report_routing_decision", decision)

        if first is None:
            failures.append(
                _Failure(
                    attempt=1,
                    classification=FailureClass.PROVIDER_FAILURE,
                    provider_id=decision.provider_id,
                    action="no_candidate_available",
                )
            )
            return self._ultimate_fallback(request, [], failures, outcome, decision)

        return await self._run(request, budget, first, decision, outcome, failures, MAX_ATTEMPTS)

    def route(self, request: ChatRequest, budget: UserBudgetState) -> RoutingDecision:
        """Classify, rank and apply policy to produce a routing decision.

        Circuit and quota state are not consulted here; they are applied
        when a candidate is picked for execution.

        Raises:
            OrchestrationError: If any routing step fails.
        """
        try:
            complexity = classify_complexity(request.text)
            is_high_stakes = (
                request.is_high_stakes
                if request.is_high_stakes is not None
                else detect_high_stakes(request.text)
            )
            specialization = request.specialization_hint or detect_specialization(request.text)

            level = self.pressure_cache.establish(request.session_id, budget)
            pressure = self.policy.effective_pressure(ranking_pressure(budget, level))

            allowed = self.registry.allowed_for(budget.plan, request.region)
            ranking = self.ranking.rank(
                allowed, complexity, pressure, is_high_stakes, specialization, budget.plan
            )
            ordered = ranking.provider_ids
        except Exception as e:
            raise OrchestrationError(f"Routing failed: {e}") from e

        notes: list[str] = []
        permitted = [pid for pid in ordered if self.policy.is_provider_allowed(pid)]
        if permitted and permitted[0] != ordered[0]:
            notes.append(f"policy:vetoed={ordered[0]}")
        if not permitted:
            notes.append("policy:no_allowed_candidate")
            permitted = ordered

        if self.policy.should_force_cheapest(budget.plan) and not is_high_stakes:
            cheapest = self.registry.cheapest(permitted)
            if cheapest is not None and cheapest.id != permitted[0]:
                permitted = [cheapest.id, *[pid for pid in permitted if pid != cheapest.id]]
                notes.append("policy:force_cheap")

        chosen = self.registry.require(permitted[0])
        tokens = estimate_tokens(complexity)
        decision = RoutingDecision(
            request_id=request.request_id,
            provider_id=chosen.id,
            fallback_chain=permitted[1:],
            complexity=complexity,
            pressure_level=level,
            effective_pressure=pressure,
            confidence=ranking.confidence,
            reason=build_reason(complexity, pressure, is_high_stakes, specialization, notes),
            is_high_stakes=is_high_stakes,
            specialization=specialization,
            estimated_tokens=tokens,
            estimated_cost=tokens / 1_000_000 * chosen.cost_per_unit,
            policy_adjusted=bool(notes),
        )
        logger.info(
            f"route_selected: request={request.request_id}, provider={chosen.id}, "
            f"chain={decision.fallback_chain}, level={level.value}, pressure={pressure:.2f}"
        )
        return decision

    def reset_session(self, session_id: str) -> bool:
        """Drop a session's cached pressure level (new conversation)."""
        return self.pressure_cache.reset(session_id)

    async def drain(self) -> None:
        """Wait for outstanding async sink reports."""
        if self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)

    # Attempt loop

    async def _run(
        self,
        request: ChatRequest,
        budget: UserBudgetState,
        first: str,
        decision: Optional[RoutingDecision],
        outcome: OutcomeResult,
        failures: list[_Failure],
        max_attempts: int,
    ) -> DispatchResult:
        attempted: list[str] = []
        candidate: Optional[str] = first

        while candidate is not None:
            attempted.append(candidate)
            attempt = len(attempted)
            try:
                result = await self._attempt(candidate, request)
            except asyncio.CancelledError:
                # Failures from completed attempts are still reported
                if failures:
                    self._report_failures(request, failures, final_provider=None, recovered=False)
                raise

            if result.failure is None and result.response is not None:
                await asyncio.shield(
                    self._account_usage(request, budget, candidate, result, decision)
                )
                status = DispatchStatus.SUCCESS if not failures else DispatchStatus.RECOVERED
                return self._finish(
                    DispatchResult(
                        request_id=request.request_id,
                        status=status,
                        text=result.response.text,
                        recovered=True,
                        attempts_used=attempt,
                        attempted_providers=attempted,
                        final_provider=candidate,
                        action=failures[-1].action if failures else None,
                        tokens_used=result.response.tokens_used,
                        outcome=outcome,
                        decision=decision,
                    ),
                    request,
                    failures,
                )

            failure = result.failure or FailureClass.PROVIDER_FAILURE
            if failure == FailureClass.PROVIDER_FAILURE:
                self.circuits.record_failure(candidate)

            if failure == FailureClass.BUDGET_ENFORCEMENT:
                failures.append(
                    _Failure(attempt, failure, candidate, "budget_enforced:no_retry", result.error)
                )
                return self._finish(
                    DispatchResult(
                        request_id=request.request_id,
                        status=DispatchStatus.BUDGET_ENFORCED,
                        text=messages.budget_enforcement(budget.plan, request.language),
                        recovered=False,
                        attempts_used=attempt,
                        attempted_providers=attempted,
                        action="budget_enforced:no_retry",
                        outcome=outcome,
                        decision=decision,
                    ),
                    request,
                    failures,
                )

            if attempt >= max_attempts:
                failures.append(
                    _Failure(attempt, failure, candidate, "attempts_exhausted", result.error)
                )
                break

            candidate, action = await self._recovery_target(
                failure, candidate, attempted, request, budget, decision
            )
            failures.append(_Failure(attempt, failure, attempted[-1], action, result.error))

        return self._ultimate_fallback(request, attempted, failures, outcome, decision)

    async def _attempt(self, provider_id: str, request: ChatRequest) -> _AttemptOutcome:
        start = time.monotonic()
        try:
            response = await self.executor.execute(provider_id, request)
        except asyncio.CancelledError:
            logger.warning(
                f"dispatch_cancelled: request={request.request_id}, provider={provider_id}"
            )
            raise
        except Exception as e:
            latency_ms = (time.monotonic() - start) * 1000.0
            failure = classify_error(e)
            logger.warning(
                f"provider_call_failed: request={request.request_id}, provider={provider_id}, "
                f"class={failure.value}, error={e}"
            )
            return _AttemptOutcome(None, failure, str(e), latency_ms)

        latency_ms = (time.monotonic() - start) * 1000.0
        refusal = classify_response(response)
        if refusal is not None:
            logger.warning(
                f"provider_refused: request={request.request_id}, provider={provider_id}, "
                f"finish_reason={response.finish_reason}"
            )
            return _AttemptOutcome(response, refusal, "empty or filtered response", latency_ms)
        return _AttemptOutcome(response, None, "", latency_ms)

    async def _recovery_target(
        self,
        failure: FailureClass,
        failed_provider: str,
        attempted: list[str],
        request: ChatRequest,
        budget: UserBudgetState,
        decision: Optional[RoutingDecision],
    ) -> tuple[Optional[str], str]:
        """Pick the recovery provider for a failure class, with the action taken."""
        if failure == FailureClass.PROVIDER_FAILURE:
            if decision is not None and decision.is_high_stakes:
                return None, "provider_fallback:high_stakes_no_retry"
            chain = decision.candidates if decision is not None else []
            tokens = decision.estimated_tokens if decision is not None else None
            target, _ = await self._select(chain, attempted, request, budget, tokens)
            if target is None:
                return None, "provider_fallback:none_available"
            return target, f"provider_fallback:{target}"

        if failure == FailureClass.MODEL_REFUSAL:
            sibling = self.registry.cheaper_sibling(failed_provider)
            if sibling is None or not self.registry.same_family(failed_provider, sibling.id):
                return None, "refusal_sibling:none_available"
            if not self._usable(sibling.id, attempted):
                return None, "refusal_sibling:none_available"
            if sibling.id not in self.registry.allowed_ids(budget.plan, request.region):
                return None, "refusal_sibling:none_available"
            return sibling.id, f"refusal_sibling:{sibling.id}"

        if failure == FailureClass.ORCHESTRATION_FAILURE:
            safe = self.registry.safe_default(budget.plan)
            if not self._usable(safe, attempted):
                return None, "safe_default:unavailable"
            return safe, f"safe_default:{safe}"

        return None, "no_retry"

    async def _dispatch_safe_default(
        self,
        request: ChatRequest,
        budget: UserBudgetState,
        outcome: OutcomeResult,
        error: Exception,
    ) -> DispatchResult:
        logger.error(
            f"orchestration_failed: request={request.request_id}, "
            f"error={error}, plan={budget.plan.value}"
        )
        safe = self.registry.safe_default(budget.plan)
        usable = self._usable(safe, [])
        failures = [
            _Failure(
                attempt=1,
                classification=FailureClass.ORCHESTRATION_FAILURE,
                provider_id=None,
                action=f"safe_default:{safe}" if usable else "safe_default:unavailable",
                error=str(error),
            )
        ]
        if not usable:
            return self._ultimate_fallback(request, [], failures, outcome, None)
        return await self._run(request, budget, safe, None, outcome, failures, max_attempts=1)

    # Candidate selection

    def _usable(self, provider_id: str, attempted: list[str]) -> bool:
        return (
            provider_id not in attempted
            and self.policy.is_provider_allowed(provider_id)
            and not self.circuits.is_open(provider_id)
        )

    async def _select(
        self,
        chain: list[str],
        attempted: list[str],
        request: ChatRequest,
        budget: UserBudgetState,
        tokens_needed: Optional[int] = None,
    ) -> tuple[Optional[str], bool]:
        """First usable chain entry, downgraded by quota when needed.

        Args:
            chain: Candidates in preference order.
            attempted: Providers already tried for this request.
            request: The request being dispatched.
            budget: The user's budget snapshot.
            tokens_needed: Quota headroom required; the ledger minimum if None.

        Returns:
            (provider id or None, whether quota forced a downgrade).
        """
        viable = [pid for pid in chain if self._usable(pid, attempted)]
        if not viable:
            return None, False

        preferred = viable[0]
        try:
            best = await self.quota.get_best_available(
                request.user_id,
                budget.plan,
                request.region,
                preferred,
                candidates=viable,
                tokens_needed=tokens_needed,
            )
        except Exception as e:
            logger.warning(
                f"quota_check_degraded: user={request.user_id}, provider={preferred}, error={e}"
            )
            return preferred, False

        if best.provider_id not in viable:
            return preferred, False
        return best.provider_id, best.was_downgraded

    # Bookkeeping

    async def _account_usage(
        self,
        request: ChatRequest,
        budget: UserBudgetState,
        provider_id: str,
        result: _AttemptOutcome,
        decision: Optional[RoutingDecision],
    ) -> None:
        self.circuits.record_success(provider_id)
        estimated = decision.estimated_tokens if decision is not None else 0
        response = result.response
        tokens = response.tokens_used if response is not None and response.tokens_used else estimated
        try:
            await self.quota.record_usage(request.user_id, provider_id, tokens)
        except Exception as e:
            logger.error(
                f"quota_record_failed: request={request.request_id}, user={request.user_id}, "
                f"provider={provider_id}, tokens={tokens}, error={e}"
            )

        provider = self.registry.get(provider_id)
        cost = tokens / 1_000_000 * provider.cost_per_unit if provider is not None else 0.0
        self._emit(
            "report_usage",
            UsageLog(
                request_id=request.request_id,
                user_id=request.user_id,
                provider_id=provider_id,
                plan=budget.plan,
                tokens_estimated=estimated,
                tokens_actual=tokens,
                cost=cost,
                latency_ms=result.latency_ms,
            ),
        )

    def _ultimate_fallback(
        self,
        request: ChatRequest,
        attempted: list[str],
        failures: list[_Failure],
        outcome: Optional[OutcomeResult],
        decision: Optional[RoutingDecision],
    ) -> DispatchResult:
        logger.warning(
            f"ultimate_fallback: request={request.request_id}, attempted={attempted}"
        )
        return self._finish(
            DispatchResult(
                request_id=request.request_id,
                status=DispatchStatus.ALL_ATTEMPTS_EXHAUSTED,
                text=messages.ultimate_fallback(request.language),
                recovered=False,
                attempts_used=len(attempted),
                attempted_providers=attempted,
                action=failures[-1].action if failures else None,
                outcome=outcome,
                decision=decision,
            ),
            request,
            failures,
        )

    def _finish(
        self,
        result: DispatchResult,
        request: ChatRequest,
        failures: list[_Failure],
    ) -> DispatchResult:
        """Turn recorded failures into traces, report them and attach them."""
        traces = self._report_failures(
            request,
            failures,
            final_provider=result.final_provider,
            recovered=result.recovered and result.final_provider is not None,
        )
        if traces:
            result = result.model_copy(update={"traces": traces})
        return result

    def _report_failures(
        self,
        request: ChatRequest,
        failures: list[_Failure],
        final_provider: Optional[str],
        recovered: bool,
    ) -> list[FailureTrace]:
        traces = [
            FailureTrace(
                request_id=request.request_id,
                user_id=request.user_id,
                attempt=failure.attempt,
                classification=failure.classification,
                original_provider=failure.provider_id,
                final_provider=final_provider,
                recovered=recovered,
                action=failure.action,
                error=failure.error,
            )
            for failure in failures
        ]
        for trace in traces:
            self._emit("report_failure_trace", trace)
        return traces

    async def _fetch_budget(self, user_id: str) -> UserBudgetState:
        if self.budget_source is None:
            raise OrchestrationError("No budget state supplied and no budget source configured")
        return await self.budget_source.get_user_budget_state(user_id)

    def _emit(self, method: str, payload: Any) -> None:
        """Hand a report to every sink without waiting on it."""
        for sink in self._sinks:
            try:
                outcome = getattr(sink, method)(payload)
            except Exception as e:
                logger.warning(f"sink_failed: sink={type(sink).__name__}, method={method}, error={e}")
                continue
            if inspect.isawaitable(outcome):
                task = asyncio.ensure_future(outcome)
                self._pending.add(task)
                task.add_done_callback(self._sink_done)

    def _sink_done(self, task: "asyncio.Future[Any]") -> None:
        self._pending.discard(task)
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            logger.warning(f"sink_failed: method=async, error={error}")
