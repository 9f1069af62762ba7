"""
Backend router.

Scores every registered backend for a turn and picks the best one that passes
the capability gate.

score(backend) = 50 + sum(points of every signal that targets the backend and
whose predicate holds), clamped to [0, 100].

Signals target a backend through a strength tag (ROUTING_SIGNALS below), so the
table does not depend on backend ids. Ties go to the customer-facing backend.
Reasons are re-derived from the signals that fired for the winner and never
affect the score.

Selection is pure and deterministic: the same context gives the same decision.
"""
import math
import re
from typing import Callable, Dict, List, NamedTuple, Optional, Tuple

from dispatch_ai.core.logging import get_logger
from dispatch_ai.core.metrics import record_routing_decision
from dispatch_ai.services.ai.errors import CapabilityMismatch
from dispatch_ai.services.ai.registry import (
    CUSTOMER_FACING_TAG,
    CapabilityRegistry,
    get_capability_registry,
)
from dispatch_ai.services.ai.schema import ModelCapabilities, QueryContext, RoutingDecision
from dispatch_ai.services.triage.classification import tokenize

logger = get_logger(__name__)

BASE_SCORE = 50.0
MIN_SCORE = 0.0
MAX_SCORE = 100.0

REASONING_TAG = "extended_reasoning"

SHORT_CONVERSATION_TURNS = 5
LONG_CONVERSATION_TURNS = 10
SIMPLE_QUERY_MAX_CHARS = 20
COMPLEX_QUERY_MIN_CHARS = 100

SIMPLE_QUERY_PATTERNS = [
    re.compile(r"^(hallo|hello|hi)\b", re.IGNORECASE),
    re.compile(r"^(wat kost|what does.*cost)", re.IGNORECASE),
    re.compile(r"^(wanneer|when)\b", re.IGNORECASE),
    re.compile(r"^(ja|nee|yes|no)$", re.IGNORECASE),
    re.compile(r"^(bedankt|dank je|thank you|thanks)", re.IGNORECASE),
]

COMPLEX_QUERY_PATTERNS = [
    re.compile(r"\b(plan|planning|schedule|route)", re.IGNORECASE),
    re.compile(r"\b(multiple|several|verschillende|meerdere)\b", re.IGNORECASE),
    re.compile(r"\b(technical|technisch|exactly|precies)\b", re.IGNORECASE),
    re.compile(r"estimate.*cost|kosten.*inschatting", re.IGNORECASE),
    re.compile(r"materials?.*labou?r|materiaal.*arbeid", re.IGNORECASE),
    re.compile(r"step.*by.*step|stap.*voor.*stap", re.IGNORECASE),
]

PRECISION_WORDS = frozenset({"technical", "exactly", "detailed", "technisch", "precies", "gedetailleerd"})


def is_simple_query(message: str) -> bool:
    text = message.strip()
    return len(text) < SIMPLE_QUERY_MAX_CHARS or any(p.search(text) for p in SIMPLE_QUERY_PATTERNS)


def is_complex_technical_query(message: str) -> bool:
    text = message.strip()
    return len(text) > COMPLEX_QUERY_MIN_CHARS or any(p.search(text) for p in COMPLEX_QUERY_PATTERNS)


def wants_precision(message: str) -> bool:
    return bool(tokenize(message) & PRECISION_WORDS)


class RoutingSignal(NamedTuple):
    name: str
    target_tag: str
    points: float
    predicate: Callable[[QueryContext, ModelCapabilities], bool]
    reason: str


ROUTING_SIGNALS: Tuple[RoutingSignal, ...] = (
    # Customer-facing backend
    RoutingSignal(
        "initial_phase", CUSTOMER_FACING_TAG, 25,
        lambda ctx, caps: ctx.phase == "initial",
        "Initial contact - customer interaction",
    ),
    RoutingSignal(
        "emergency", CUSTOMER_FACING_TAG, 30,
        lambda ctx, caps: ctx.urgency_hint == "emergency",
        "Emergency - need fast response",
    ),
    RoutingSignal(
        "dutch_language", CUSTOMER_FACING_TAG, 20,
        lambda ctx, caps: ctx.language == "nl",
        "Dutch language expertise",
    ),
    RoutingSignal(
        "images", CUSTOMER_FACING_TAG, 25,
        lambda ctx, caps: ctx.has_images and caps.supports_images,
        "Image analysis capability",
    ),
    RoutingSignal(
        "short_conversation", CUSTOMER_FACING_TAG, 15,
        lambda ctx, caps: ctx.message_count <= SHORT_CONVERSATION_TURNS,
        "Early conversation - customer interaction",
    ),
    RoutingSignal(
        "simple_query", CUSTOMER_FACING_TAG, 20,
        lambda ctx, caps: is_simple_query(ctx.message),
        "Simple query - cost optimization",
    ),
    RoutingSignal(
        "real_time", CUSTOMER_FACING_TAG, 15,
        lambda ctx, caps: ctx.phase == "initial" or ctx.urgency_hint != "low",
        "Real-time response expected",
    ),
    # Reasoning backend
    RoutingSignal(
        "extended_reasoning", REASONING_TAG, 35,
        lambda ctx, caps: ctx.needs_extended_reasoning,
        "Complex reasoning required",
    ),
    RoutingSignal(
        "planning", REASONING_TAG, 30,
        lambda ctx, caps: ctx.needs_planning,
        "Planning and analysis required",
    ),
    RoutingSignal(
        "long_conversation", REASONING_TAG, 25,
        lambda ctx, caps: ctx.message_count > LONG_CONVERSATION_TURNS,
        "Long conversation - large context",
    ),
    RoutingSignal(
        "complex_query", REASONING_TAG, 30,
        lambda ctx, caps: is_complex_technical_query(ctx.message),
        "Technical analysis needed",
    ),
    RoutingSignal(
        "quote_follow_up", REASONING_TAG, 25,
        lambda ctx, caps: ctx.phase == "quoted" and bool(ctx.session and ctx.session.problem_type),
        "Quoted problem - detailed cost estimation",
    ),
    RoutingSignal(
        "prior_quotes", REASONING_TAG, 20,
        lambda ctx, caps: bool(ctx.quoted_amounts),
        "Prior quotes to reconcile",
    ),
    RoutingSignal(
        "precision", REASONING_TAG, 20,
        lambda ctx, caps: wants_precision(ctx.message),
        "Technical precision requested",
    ),
)


def estimate_tokens(context: QueryContext) -> int:
    """Rough token footprint: four characters per token plus per-message overhead."""
    chars = len(context.message) + sum(len(turn.content) for turn in context.turns)
    return math.ceil(chars / 4) + 4 * (len(context.turns) + 1)


def validate_capabilities(
    caps: ModelCapabilities,
    context: QueryContext,
    estimated_tokens: Optional[int] = None,
) -> List[str]:
    """Reasons ``caps`` cannot serve ``context``; empty when it can."""
    tokens = estimated_tokens if estimated_tokens is not None else estimate_tokens(context)
    issues = []
    if tokens > caps.context_window:
        issues.append(f"Context too large: {tokens} > {caps.context_window} tokens")
    if context.has_images and not caps.supports_images:
        issues.append("Backend does not support image analysis")
    if context.needs_extended_reasoning and not caps.supports_extended_reasoning:
        issues.append("Backend does not support extended reasoning")
    return issues


class BackendRouter:
    """Scores backends and applies the capability gate."""

    def __init__(
        self,
        registry: CapabilityRegistry,
        signals: Tuple[RoutingSignal, ...] = ROUTING_SIGNALS,
    ):
        self.registry = registry
        self.signals = signals

    def fired_signals(self, caps: ModelCapabilities, context: QueryContext) -> List[RoutingSignal]:
        return [
            signal for signal in self.signals
            if signal.target_tag in caps.strengths and signal.predicate(context, caps)
        ]

    def score(self, caps: ModelCapabilities, context: QueryContext) -> float:
        total = BASE_SCORE + sum(signal.points for signal in self.fired_signals(caps, context))
        return max(MIN_SCORE, min(MAX_SCORE, total))

    def rank(self, context: QueryContext) -> List[Tuple[ModelCapabilities, float]]:
        """Backends by descending score; ties go to the customer-facing backend."""
        scored = [(caps, self.score(caps, context)) for caps in self.registry.all()]
        order = {caps.backend_id: index for index, (caps, _) in enumerate(scored)}
        return sorted(
            scored,
            key=lambda item: (
                -item[1],
                0 if CUSTOMER_FACING_TAG in item[0].strengths else 1,
                order[item[0].backend_id],
            ),
        )

    def select(self, context: QueryContext) -> RoutingDecision:
        """
        Pick the best-scoring backend that passes the capability gate.

        Raises:
            CapabilityMismatch if no backend passes.
        """
        ranked = self.rank(context)
        scores: Dict[str, float] = {caps.backend_id: score for caps, score in ranked}
        tokens = estimate_tokens(context)
        rejected: Dict[str, List[str]] = {}

        for caps, score in ranked:
            issues = validate_capabilities(caps, context, tokens)
            if issues:
                rejected[caps.backend_id] = issues
                logger.info(
                    "routing_candidate_rejected",
                    backend=caps.backend_id,
                    score=score,
                    issues=issues,
                )
                continue

            reasons = [signal.reason for signal in self.fired_signals(caps, context)]
            if rejected:
                reasons.append("Preferred backend rejected by capability gate")
            decision = RoutingDecision(
                backend_id=caps.backend_id,
                scores=scores,
                reasons=reasons,
                rejected=rejected,
                estimated_tokens=tokens,
            )
            record_routing_decision(caps.backend_id, scores)
            logger.info(
                "routing_decision",
                backend=caps.backend_id,
                scores=scores,
                reasons=reasons,
                estimated_tokens=tokens,
            )
            return decision

        issues = [f"{backend_id}: {issue}" for backend_id, found in rejected.items() for issue in found]
        logger.warning("routing_no_capable_backend", issues=issues, estimated_tokens=tokens)
        raise CapabilityMismatch(issues)


_router: Optional[BackendRouter] = None


def get_backend_router() -> BackendRouter:
    """Global router accessor."""
    global _router
    if _router is None:
        _router = BackendRouter(get_capability_registry())
    return _router
