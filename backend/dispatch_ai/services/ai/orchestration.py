"""
Dispatch orchestration.

Responsibilities:
- Drive one turn through its lifecycle:
  IDLE -> SELECTING -> DISPATCHING -> STREAMING -> REDUCING -> COMPLETED,
  with FAILED reachable from every non-terminal state
- Retry transient backend failures with capped exponential backoff, each
  attempt under its own timeout and with a fresh accumulator
- Request a deep analysis from the reasoning backend on quoting/planning turns
- Generate work orders from a finished analysis on the same backend
- Attach the business' contact instruction to every terminal failure

NON-responsibilities:
- Does NOT score backends (router)
- Does NOT speak provider wire formats (llm_client)
- Does NOT interpret model output (reducer / analysis)
"""
import asyncio
from contextlib import aclosing
from typing import Awaitable, Callable, Dict, List, Mapping, Optional, Tuple, TypeVar

from pydantic import BaseModel, ConfigDict, Field

from dispatch_ai.core.config import BusinessProfile, Settings, get_settings, load_business_profile
from dispatch_ai.core.logging import generate_turn_id, get_logger
from dispatch_ai.core.metrics import record_dispatch_retry, record_llm_error, record_turn_outcome
from dispatch_ai.core.tracing import get_tracer, record_exception
from dispatch_ai.services.ai.analysis import (
    build_analysis_request,
    build_work_order_request,
    default_request_type,
    reduce_analysis_stream,
    reduce_work_order_stream,
    should_request_analysis,
    work_order_customer,
)
from dispatch_ai.services.ai.errors import (
    CapabilityMismatch,
    DispatchError,
    ExhaustedRetries,
    InvalidTransition,
    TransientDispatchFailure,
    UnknownBackend,
)
from dispatch_ai.services.ai.llm_client import BackendClient, get_backend_clients
from dispatch_ai.services.ai.prompts import build_chat_request
from dispatch_ai.services.ai.reducer import StreamAccumulator, reduce_chat_stream
from dispatch_ai.services.ai.registry import (
    DETAILED_ANALYSIS_TAG,
    CapabilityRegistry,
    get_capability_registry,
)
from dispatch_ai.services.ai.router import BackendRouter, get_backend_router, validate_capabilities
from dispatch_ai.services.ai.schema import (
    BackendRequest,
    DetailedAnalysis,
    FailureDetail,
    ModelCapabilities,
    QueryContext,
    StreamState,
    TurnResult,
    TurnState,
    WorkOrder,
)
from dispatch_ai.services.triage.classification import UrgencyClassifier, get_classifier
from dispatch_ai.services.triage.pricing import PriceEntry, build_price_table

logger = get_logger(__name__)

ResultT = TypeVar("ResultT")

TERMINAL_STATES = frozenset({TurnState.COMPLETED, TurnState.FAILED})

ALLOWED_TRANSITIONS: Dict[TurnState, frozenset] = {
    TurnState.IDLE: frozenset({TurnState.SELECTING}),
    TurnState.SELECTING: frozenset({TurnState.DISPATCHING}),
    # DISPATCHING -> DISPATCHING and STREAMING -> DISPATCHING are retries
    TurnState.DISPATCHING: frozenset({TurnState.STREAMING, TurnState.DISPATCHING}),
    TurnState.STREAMING: frozenset({TurnState.REDUCING, TurnState.DISPATCHING}),
    TurnState.REDUCING: frozenset({TurnState.COMPLETED}),
    TurnState.COMPLETED: frozenset(),
    TurnState.FAILED: frozenset(),
}


class TurnLifecycle:
    """State machine of one dispatch. Records every state it passed through."""

    def __init__(self, turn_id: Optional[str] = None):
        self.turn_id = turn_id or generate_turn_id()
        self._history: List[TurnState] = [TurnState.IDLE]

    @property
    def state(self) -> TurnState:
        return self._history[-1]

    @property
    def history(self) -> List[TurnState]:
        return list(self._history)

    @property
    def is_terminal(self) -> bool:
        return self.state in TERMINAL_STATES

    def advance(self, target: TurnState) -> None:
        """
        Raises:
            InvalidTransition if the lifecycle has no edge to ``target``.
        """
        current = self.state
        allowed = ALLOWED_TRANSITIONS[current]
        if target is TurnState.FAILED and current not in TERMINAL_STATES:
            allowed = allowed | {TurnState.FAILED}
        if target not in allowed:
            raise InvalidTransition(f"Invalid turn transition: {current.value} -> {target.value}")
        self._history.append(target)
        logger.debug("turn_state_changed", turn_id=self.turn_id, previous=current.value, state=target.value)

    def fail(self) -> None:
        if not self.is_terminal:
            self.advance(TurnState.FAILED)


class RetryPolicy(BaseModel):
    """Attempt budget and capped exponential backoff."""

    model_config = ConfigDict(frozen=True)

    max_attempts: int = Field(3, ge=1)
    base_delay_seconds: float = Field(0.5, ge=0)
    max_delay_seconds: float = Field(4.0, ge=0)
    attempt_timeout_seconds: float = Field(30.0, gt=0)

    @classmethod
    def from_settings(cls, settings: Settings) -> "RetryPolicy":
        return cls(
            max_attempts=settings.max_attempts,
            base_delay_seconds=settings.backoff_base_seconds,
            max_delay_seconds=settings.backoff_max_seconds,
            attempt_timeout_seconds=settings.attempt_timeout_seconds,
        )

    def delay_for(self, attempt: int) -> float:
        """Delay after the failed ``attempt`` (1-based)."""
        return min(self.max_delay_seconds, self.base_delay_seconds * 2 ** (attempt - 1))


class DispatchOrchestrator:
    """
    Runs turns against the backends.

    All collaborators are injected; the defaults are the process-wide
    singletons. ``sleep`` is injectable so tests do not wait out backoffs.
    """

    def __init__(
        self,
        profile: BusinessProfile,
        settings: Optional[Settings] = None,
        registry: Optional[CapabilityRegistry] = None,
        router: Optional[BackendRouter] = None,
        clients: Optional[Mapping[str, BackendClient]] = None,
        classifier: Optional[UrgencyClassifier] = None,
        retry_policy: Optional[RetryPolicy] = None,
        price_table: Optional[Mapping[str, PriceEntry]] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.profile = profile
        self.settings = settings or get_settings()
        self.registry = registry or get_capability_registry()
        self.router = router or BackendRouter(self.registry)
        self.clients = clients if clients is not None else get_backend_clients()
        self.classifier = classifier or get_classifier()
        self.retry_policy = retry_policy or RetryPolicy.from_settings(self.settings)
        self.price_table = price_table if price_table is not None else build_price_table(profile)
        self._sleep = sleep

    async def handle_turn(self, context: QueryContext) -> TurnResult:
        """
        Answer one customer message.

        Raises:
            DispatchError subclasses (CapabilityMismatch, BackendRejected,
            ExhaustedRetries, escalated ParseFailure, ...) with the contact
            instruction attached. Cancellation propagates unchanged.
        """
        lifecycle = TurnLifecycle()
        tracer = get_tracer()

        with tracer.start_as_current_span("dispatch.turn") as span:
            span.set_attribute("dispatch.turn_id", lifecycle.turn_id)
            span.set_attribute("dispatch.language", context.language)
            try:
                lifecycle.advance(TurnState.SELECTING)
                decision = self.router.select(context)
                span.set_attribute("dispatch.backend", decision.backend_id)

                lifecycle.advance(TurnState.DISPATCHING)
                request = build_chat_request(context, self.profile, self.price_table)
                response, attempts = await self._dispatch(
                    decision.backend_id,
                    request,
                    lifecycle,
                    lambda state: reduce_chat_stream(
                        state, context, self.profile, self.classifier, self.price_table
                    ),
                )
                lifecycle.advance(TurnState.COMPLETED)
            except asyncio.CancelledError:
                self._cancelled(lifecycle, "chat")
                raise
            except DispatchError as exc:
                self._failed(lifecycle, exc, context, "chat")
                raise

            record_turn_outcome("chat", TurnState.COMPLETED.value)
            span.set_attribute("dispatch.attempts", attempts)
            logger.info(
                "dispatch_turn_completed",
                turn_id=lifecycle.turn_id,
                backend=decision.backend_id,
                attempts=attempts,
                urgency=response.urgency,
                fallback=response.fallback,
            )

            analysis: Optional[DetailedAnalysis] = None
            analysis_error: Optional[FailureDetail] = None
            if self.settings.enable_deep_analysis and should_request_analysis(context):
                try:
                    analysis = await self.request_analysis(context)
                except DispatchError as exc:
                    analysis_error = FailureDetail(
                        error_type=exc.error_type,
                        detail=exc.message,
                        instruction=exc.instruction,
                        backend=exc.backend,
                    )

        return TurnResult(
            response=response,
            routing=decision,
            analysis=analysis,
            analysis_error=analysis_error,
            states=lifecycle.history,
            attempts=attempts,
        )

    async def request_analysis(
        self,
        context: QueryContext,
        request_type: Optional[str] = None,
    ) -> DetailedAnalysis:
        """
        Ask the reasoning backend for a DetailedAnalysis of the conversation.

        Raises:
            DispatchError subclasses with the contact instruction attached.
        """
        lifecycle = TurnLifecycle()
        request_type = request_type or default_request_type(context)
        tracer = get_tracer()

        with tracer.start_as_current_span("dispatch.analysis") as span:
            span.set_attribute("dispatch.turn_id", lifecycle.turn_id)
            span.set_attribute("dispatch.request_type", request_type)
            try:
                lifecycle.advance(TurnState.SELECTING)
                caps = self._reasoning_backend(context)
                span.set_attribute("dispatch.backend", caps.backend_id)

                lifecycle.advance(TurnState.DISPATCHING)
                request = build_analysis_request(context, self.profile, request_type)
                analysis, attempts = await self._dispatch(
                    caps.backend_id,
                    request,
                    lifecycle,
                    lambda state: reduce_analysis_stream(state, self.profile),
                )
                lifecycle.advance(TurnState.COMPLETED)
            except asyncio.CancelledError:
                self._cancelled(lifecycle, "analysis")
                raise
            except DispatchError as exc:
                self._failed(lifecycle, exc, context, "analysis")
                raise

        record_turn_outcome("analysis", TurnState.COMPLETED.value)
        logger.info(
            "dispatch_analysis_completed",
            turn_id=lifecycle.turn_id,
            backend=caps.backend_id,
            request_type=request_type,
            attempts=attempts,
            fallback=analysis.fallback,
        )
        return analysis

    async def generate_work_order(
        self,
        context: QueryContext,
        analysis: DetailedAnalysis,
    ) -> WorkOrder:
        """
        Turn a finished DetailedAnalysis into a work order for the plumber.

        Raises:
            WorkOrderFailed when the reply holds no valid work order; other
            DispatchError subclasses as for request_analysis. The contact
            instruction is attached to all of them.
        """
        lifecycle = TurnLifecycle()
        work_order_id = f"WO-{lifecycle.turn_id}"
        tracer = get_tracer()

        with tracer.start_as_current_span("dispatch.work_order") as span:
            span.set_attribute("dispatch.turn_id", lifecycle.turn_id)
            try:
                lifecycle.advance(TurnState.SELECTING)
                caps = self._reasoning_backend(context)
                span.set_attribute("dispatch.backend", caps.backend_id)

                lifecycle.advance(TurnState.DISPATCHING)
                request = build_work_order_request(context, analysis, self.profile)
                customer = work_order_customer(context)
                work_order, attempts = await self._dispatch(
                    caps.backend_id,
                    request,
                    lifecycle,
                    lambda state: reduce_work_order_stream(state, analysis, customer, work_order_id),
                )
                lifecycle.advance(TurnState.COMPLETED)
            except asyncio.CancelledError:
                self._cancelled(lifecycle, "work_order")
                raise
            except DispatchError as exc:
                self._failed(lifecycle, exc, context, "work_order")
                raise

        record_turn_outcome("work_order", TurnState.COMPLETED.value)
        logger.info(
            "dispatch_work_order_completed",
            turn_id=lifecycle.turn_id,
            work_order_id=work_order_id,
            backend=caps.backend_id,
            attempts=attempts,
        )
        return work_order

    def _reasoning_backend(self, context: QueryContext) -> ModelCapabilities:
        caps = self.registry.find_by_strength(DETAILED_ANALYSIS_TAG)
        issues = validate_capabilities(caps, context)
        if issues:
            raise CapabilityMismatch(
                [f"{caps.backend_id}: {issue}" for issue in issues],
                backend=caps.backend_id,
            )
        return caps

    async def _dispatch(
        self,
        backend_id: str,
        request: BackendRequest,
        lifecycle: TurnLifecycle,
        reduce: Callable[[StreamState], ResultT],
    ) -> Tuple[ResultT, int]:
        """
        Run attempts until one stream completes, then reduce it.

        Raises:
            ExhaustedRetries when every attempt failed transiently.
            Any non-transient DispatchError unchanged.
        """
        client = self.clients.get(backend_id)
        if client is None:
            raise UnknownBackend(f"No client configured for backend: {backend_id}", backend=backend_id)

        policy = self.retry_policy
        tracer = get_tracer()
        last_error: Optional[TransientDispatchFailure] = None

        for attempt in range(1, policy.max_attempts + 1):
            if attempt > 1:
                delay = policy.delay_for(attempt - 1)
                record_dispatch_retry(backend_id)
                logger.info(
                    "dispatch_retry",
                    turn_id=lifecycle.turn_id,
                    backend=backend_id,
                    attempt=attempt,
                    delay_seconds=delay,
                    reason=last_error.reason if last_error else None,
                )
                await self._sleep(delay)
                lifecycle.advance(TurnState.DISPATCHING)

            with tracer.start_as_current_span("dispatch.attempt") as span:
                span.set_attribute("dispatch.backend", backend_id)
                span.set_attribute("dispatch.attempt", attempt)
                try:
                    state = await asyncio.wait_for(
                        self._collect(client, request, lifecycle),
                        timeout=policy.attempt_timeout_seconds,
                    )
                except asyncio.TimeoutError:
                    # The stream saw a cancellation; the hang still counts against the backend.
                    client.circuit_breaker.record_failure()
                    record_llm_error(backend_id, "attempt_timeout")
                    last_error = TransientDispatchFailure(
                        f"{backend_id} attempt timed out after {policy.attempt_timeout_seconds:g}s",
                        reason="timeout",
                        backend=backend_id,
                    )
                except TransientDispatchFailure as exc:
                    last_error = exc
                else:
                    lifecycle.advance(TurnState.REDUCING)
                    try:
                        return reduce(state), attempt
                    except DispatchError as exc:
                        exc.backend = exc.backend or backend_id
                        raise

                span.set_attribute("dispatch.error", last_error.reason)
                logger.warning(
                    "dispatch_attempt_failed",
                    turn_id=lifecycle.turn_id,
                    backend=backend_id,
                    attempt=attempt,
                    reason=last_error.reason,
                    error=last_error.message,
                )

        raise ExhaustedRetries(policy.max_attempts, last_error, backend=backend_id)

    async def _collect(
        self,
        client: BackendClient,
        request: BackendRequest,
        lifecycle: TurnLifecycle,
    ) -> StreamState:
        accumulator = StreamAccumulator()
        async with aclosing(client.stream(request)) as stream:
            async for fragment in stream:
                if lifecycle.state is TurnState.DISPATCHING:
                    lifecycle.advance(TurnState.STREAMING)
                accumulator.feed(fragment)

        if not accumulator.completed:
            raise TransientDispatchFailure(
                f"{client.backend_id} stream ended before completion",
                reason="stream_cut",
                backend=client.backend_id,
            )
        return accumulator.snapshot()

    def _failed(
        self,
        lifecycle: TurnLifecycle,
        exc: DispatchError,
        context: QueryContext,
        path: str,
    ) -> None:
        if exc.instruction is None:
            exc.instruction = self.profile.contact_line(context.language)
        lifecycle.fail()
        record_exception(exc)
        record_turn_outcome(path, TurnState.FAILED.value)
        logger.warning(
            "dispatch_turn_failed",
            turn_id=lifecycle.turn_id,
            path=path,
            error_type=exc.error_type,
            error=exc.message,
            backend=exc.backend,
            states=[state.value for state in lifecycle.history],
        )

    def _cancelled(self, lifecycle: TurnLifecycle, path: str) -> None:
        lifecycle.fail()
        record_turn_outcome(path, "cancelled")
        logger.info("dispatch_turn_cancelled", turn_id=lifecycle.turn_id, path=path, state=lifecycle.history[-2].value)


_dispatch_orchestrator: Optional[DispatchOrchestrator] = None


def get_dispatch_orchestrator() -> DispatchOrchestrator:
    """Global singleton accessor for the dispatch orchestrator."""
    global _dispatch_orchestrator
    if _dispatch_orchestrator is None:
        _dispatch_orchestrator = DispatchOrchestrator(
            profile=load_business_profile(),
            router=get_backend_router(),
        )
    return _dispatch_orchestrator
