"""
Streaming reducer for the customer-facing path.

Backend clients emit an ordered stream of fragments (text deltas, tool-call
argument slices, one StreamEnd). A StreamAccumulator collects them; once the
stream has ended, ``reduce_chat_stream`` turns the snapshot into a validated
ChatResponse:

1. Valid ``analyze_customer_request`` payload: normalise it (keyword emergency
   escalates, categories filtered to the vocabulary, cost from the price
   table, confidence clamped) and return ``fallback=False``.
2. Missing or invalid payload: heuristic extraction from the user message and
   the reply text, ``fallback=True`` with confidence capped.
3. Neither text nor a valid payload: escalate ParseFailure. An empty success
   is never returned.

Reduction is a pure function of (state, context, profile).
"""
from typing import List, Mapping, Optional, Union

from dispatch_ai.core.config import BusinessProfile
from dispatch_ai.core.logging import get_logger
from dispatch_ai.core.metrics import record_fallback_extraction, record_parse_failure
from dispatch_ai.services.ai.errors import ParseFailure, StreamProtocolError
from dispatch_ai.services.ai.prompts import CHAT_TOOL_NAME
from dispatch_ai.services.ai.schema import (
    DEFAULT_PAYLOAD_CONFIDENCE,
    FALLBACK_CONFIDENCE_CAP,
    ChatAnalysisPayload,
    ChatResponse,
    CostRange,
    ExtractedInfo,
    QueryContext,
    StreamEnd,
    StreamState,
    TextFragment,
    TokenUsage,
    ToolCallFragment,
    parse_tool_arguments,
)
from dispatch_ai.services.triage.classification import (
    DEFAULT_CATEGORY,
    UrgencyClassifier,
    get_classifier,
    max_urgency,
)
from dispatch_ai.services.triage.extraction import extract_contact_info, merge_extracted
from dispatch_ai.services.triage.pricing import PriceEntry, build_price_table, estimate_cost

logger = get_logger(__name__)

Fragment = Union[TextFragment, ToolCallFragment, StreamEnd]

NEXT_STEPS = {
    "nl": {
        "emergency": [
            "Neem contact op voor een spoedafspraak",
            "Geef adres en telefoonnummer door",
            "Beschrijf de situatie zo precies mogelijk",
            "Wacht op bevestiging binnen 30 minuten",
        ],
        "default": [
            "Plan een afspraak op een gewenst tijdstip",
            "Bevestig uw contactgegevens",
            "Zorg voor toegang tot het probleem",
        ],
    },
    "en": {
        "emergency": [
            "Contact us for an emergency appointment",
            "Provide your address and phone number",
            "Describe the situation in as much detail as possible",
            "Wait for confirmation within 30 minutes",
        ],
        "default": [
            "Schedule an appointment at a convenient time",
            "Confirm your contact details",
            "Ensure access to the problem area",
        ],
    },
}


class StreamAccumulator:
    """
    Collects fragments of one attempt in arrival order.

    One accumulator per attempt; a retried attempt starts from a fresh one so
    partial output of a failed attempt never leaks into the result.
    """

    def __init__(self):
        self._text: List[str] = []
        self._tool_name: Optional[str] = None
        self._tool_arguments: List[str] = []
        self._end: Optional[StreamEnd] = None
        self._count = 0

    @property
    def completed(self) -> bool:
        return self._end is not None

    @property
    def fragment_count(self) -> int:
        return self._count

    def feed(self, fragment: Fragment) -> None:
        """
        Raises:
            StreamProtocolError if the stream already ended.
        """
        if self._end is not None:
            raise StreamProtocolError(
                f"Received {type(fragment).__name__} after the end of the stream"
            )
        self._count += 1
        if isinstance(fragment, TextFragment):
            self._text.append(fragment.text)
        elif isinstance(fragment, ToolCallFragment):
            if fragment.name and self._tool_name is None:
                self._tool_name = fragment.name
            if fragment.arguments:
                self._tool_arguments.append(fragment.arguments)
        elif isinstance(fragment, StreamEnd):
            self._end = fragment
        else:
            raise StreamProtocolError(f"Unknown fragment type: {type(fragment).__name__}")

    def snapshot(self) -> StreamState:
        return StreamState(
            text="".join(self._text),
            tool_name=self._tool_name,
            tool_arguments="".join(self._tool_arguments),
            completed=self._end is not None,
            finish_reason=self._end.finish_reason if self._end else None,
            usage=self._end.usage if self._end else TokenUsage(),
            fragment_count=self._count,
        )


def next_steps_for(urgency: str, language: str) -> List[str]:
    steps = NEXT_STEPS.get(language, NEXT_STEPS["en"])
    return list(steps["emergency"] if urgency == "emergency" else steps["default"])


def _format_cost(cost: CostRange) -> str:
    sign = "€" if cost.currency == "EUR" else f"{cost.currency} "
    if cost.min == cost.max:
        return f"{sign}{cost.min:g}"
    return f"{sign}{cost.min:g}-{cost.max:g}"


def compose_reply(urgency: str, cost: CostRange, language: str, profile: BusinessProfile) -> str:
    """Reply text for a payload that arrived without any text."""
    amount = _format_cost(cost)
    if language == "nl":
        if urgency == "emergency":
            opening = f"Dit klinkt als een spoedgeval. {profile.name} komt zo snel mogelijk langs."
        elif urgency == "high":
            opening = f"Dit vraagt om snelle actie. {profile.name} plant u met voorrang in."
        else:
            opening = f"Bedankt voor uw bericht. {profile.name} helpt u graag verder."
        return f"{opening} De geschatte kosten zijn {amount} ({cost.description})."

    if urgency == "emergency":
        opening = f"This sounds like an emergency. {profile.name} will be there as soon as possible."
    elif urgency == "high":
        opening = f"This needs quick action. {profile.name} will schedule you with priority."
    else:
        opening = f"Thank you for your message. {profile.name} is happy to help."
    return f"{opening} The estimated cost is {amount} ({cost.description})."


def _session_info(context: QueryContext) -> ExtractedInfo:
    session = context.session
    if session is None:
        return ExtractedInfo()
    return ExtractedInfo(
        customer_name=session.customer_name,
        customer_phone=session.customer_phone,
        address=session.customer_address,
        problem_type=session.problem_type,
    )


def _parse_payload(state: StreamState) -> Optional[ChatAnalysisPayload]:
    """
    Structured payload of the stream, or None when no tool call arrived.

    Raises:
        ParseFailure if a tool call arrived but is unusable.
    """
    if state.tool_name is None and not state.tool_arguments:
        return None
    if state.tool_name is not None and state.tool_name != CHAT_TOOL_NAME:
        raise ParseFailure(f"Unexpected tool call: {state.tool_name}")
    return parse_tool_arguments("chat", state.tool_arguments, ChatAnalysisPayload)


def reduce_chat_stream(
    state: StreamState,
    context: QueryContext,
    profile: BusinessProfile,
    classifier: Optional[UrgencyClassifier] = None,
    price_table: Optional[Mapping[str, PriceEntry]] = None,
) -> ChatResponse:
    """
    Reduce a finished stream into a ChatResponse.

    Raises:
        ParseFailure (escalated) if the stream produced neither text nor a
        valid payload.
    """
    classifier = classifier or get_classifier()
    table = price_table if price_table is not None else build_price_table(profile)
    text = state.text.strip()

    fallback_reason = "missing_payload"
    try:
        payload = _parse_payload(state)
    except ParseFailure as exc:
        payload = None
        fallback_reason = "parse_failure"
        record_parse_failure("chat")
        logger.warning(
            "reducer_payload_invalid",
            path="chat",
            error=exc.message,
            tool_name=state.tool_name,
        )

    if payload is None and not text:
        raise ParseFailure(
            "Backend produced neither text nor a valid structured payload",
            escalated=True,
        )

    if payload is not None:
        return _from_payload(payload, text, context, profile, classifier, table)

    record_fallback_extraction("chat", fallback_reason)
    logger.info("reducer_fallback", path="chat", reason=fallback_reason)
    return _from_heuristics(text, context, profile, classifier, table)


def _from_payload(
    payload: ChatAnalysisPayload,
    text: str,
    context: QueryContext,
    profile: BusinessProfile,
    classifier: UrgencyClassifier,
    table: Mapping[str, PriceEntry],
) -> ChatResponse:
    classification = classifier.classify(context.message)
    urgency = max_urgency(payload.urgency, classification.urgency)

    categories = classifier.filter_categories(payload.categories)
    if not categories and payload.problem_type:
        categories = classifier.filter_categories([payload.problem_type])
    if not categories:
        categories = classification.categories

    cost = estimate_cost(categories, urgency, context.language, table, currency=profile.currency)

    confidence = payload.confidence if payload.confidence is not None else DEFAULT_PAYLOAD_CONFIDENCE
    confidence = max(0.0, min(100.0, confidence))

    problem_type = payload.problem_type or (categories[0] if categories[0] != DEFAULT_CATEGORY else None)
    reported = None
    if payload.extracted_info is not None:
        reported = ExtractedInfo(
            customer_name=payload.extracted_info.customer_name or None,
            customer_phone=payload.extracted_info.customer_phone or None,
            address=payload.extracted_info.address or None,
            problem_type=problem_type,
        )
    extracted = merge_extracted(reported, extract_contact_info(context.message, problem_type))
    extracted = merge_extracted(extracted, _session_info(context))

    if urgency != payload.urgency:
        logger.info(
            "reducer_urgency_escalated",
            reported_urgency=payload.urgency,
            urgency=urgency,
            matched_keywords=classification.matched_keywords,
        )

    return ChatResponse(
        text=text or compose_reply(urgency, cost, context.language, profile),
        urgency=urgency,
        categories=categories,
        estimated_cost=cost,
        extracted_info=extracted,
        should_show_booking_form=payload.should_book or urgency == "emergency",
        confidence=confidence,
        next_steps=next_steps_for(urgency, context.language),
        fallback=False,
    )


def _from_heuristics(
    text: str,
    context: QueryContext,
    profile: BusinessProfile,
    classifier: UrgencyClassifier,
    table: Mapping[str, PriceEntry],
) -> ChatResponse:
    classification = classifier.classify(context.message)
    urgency = classification.urgency
    categories = classification.categories
    if categories == [DEFAULT_CATEGORY]:
        categories = classifier.detect_categories(text)

    cost = estimate_cost(categories, urgency, context.language, table, currency=profile.currency)
    problem_type = categories[0] if categories[0] != DEFAULT_CATEGORY else None
    extracted = merge_extracted(
        extract_contact_info(context.message, problem_type),
        _session_info(context),
    )

    return ChatResponse(
        text=text,
        urgency=urgency,
        categories=categories,
        estimated_cost=cost,
        extracted_info=extracted,
        should_show_booking_form=urgency == "emergency",
        confidence=FALLBACK_CONFIDENCE_CAP,
        next_steps=next_steps_for(urgency, context.language),
        fallback=True,
    )
