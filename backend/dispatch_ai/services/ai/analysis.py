"""
Deep-analysis requester.

Builds a single request for the reasoning backend from the full conversation,
the known customer fields and any prior quotes, and reduces the streamed
answer into a DetailedAnalysis.

Reduction order (same strategy as the chat reducer):
1. ``provide_detailed_analysis`` tool payload, validated and normalised
2. JSON object embedded in the reply text
3. Regex extraction from the reply text with conservative defaults,
   ``fallback=True`` and confidence capped
4. Nothing usable: escalated ParseFailure

Work orders are generated from a finished DetailedAnalysis with the same
forced-tool request. They have no regex fallback: a reply without a valid
``create_work_order`` payload or JSON object raises WorkOrderFailed.
"""
import json
import re
from typing import List, Optional, Tuple

from dispatch_ai.core.config import BusinessProfile
from dispatch_ai.core.logging import get_logger
from dispatch_ai.core.metrics import record_fallback_extraction, record_parse_failure
from dispatch_ai.services.ai.errors import ParseFailure, WorkOrderFailed
from dispatch_ai.services.ai.prompts import (
    ANALYSIS_TOOL,
    ANALYSIS_TOOL_NAME,
    WORK_ORDER_TOOL,
    WORK_ORDER_TOOL_NAME,
    build_analysis_system_prompt,
    build_work_order_system_prompt,
)
from dispatch_ai.services.ai.schema import (
    FALLBACK_CONFIDENCE_CAP,
    BackendRequest,
    ConversationTurn,
    CostBreakdown,
    DetailedAnalysis,
    DetailedAnalysisPayload,
    DurationEstimate,
    ExtractedInfo,
    LaborCost,
    MaterialCost,
    MaterialNeed,
    QueryContext,
    Risk,
    Scheduling,
    StreamState,
    TechnicalAssessment,
    WorkOrder,
    WorkOrderPayload,
    WorkOrderTimeline,
    parse_tool_arguments,
)
from dispatch_ai.services.triage.extraction import extract_contact_info, merge_extracted

logger = get_logger(__name__)

DEFAULT_MIN_HOURS = 1.0
DEFAULT_MAX_HOURS = 3.0
DEFAULT_TEXT_TOTAL = 150.0
LABOR_SHARE = 0.7

EXPERTISE_BY_COMPLEXITY = {
    "simple": "basic",
    "moderate": "intermediate",
    "complex": "advanced",
    "very_complex": "specialist",
}

SLOT_BY_PRIORITY = {
    "emergency": "Binnen 2 uur",
    "high": "Zelfde dag",
    "normal": "Binnen 2-3 werkdagen",
    "low": "Binnen een week",
}

BASE_RISK = Risk(
    level="low",
    description="Standaard loodgieter risico's",
    mitigation="Volg veiligheidsprotocollen",
)

DEFAULT_TOOLS = ["Standaard loodgieter gereedschap"]
DEFAULT_PREPARATION = ["Zorg voor toegang tot het werkgebied"]
DEFAULT_RECOMMENDATIONS = ["Professionele uitvoering aanbevolen"]
DEFAULT_MATERIAL_ITEM = "Standaard loodgieter materialen"
MATERIAL_MARKERS = ("materiaal", "material", "onderdel")

_JSON_BLOCK = re.compile(r"```json\s*(.*?)\s*```", re.DOTALL)
_JSON_OBJECT = re.compile(r"\{[\s\S]*\}")
_SUMMARY = re.compile(r"(?:samenvatting|summary)\s*:?\s*([^\n]+)", re.IGNORECASE)
_DURATION = re.compile(r"(\d+(?:[.,]\d+)?)\s*[-–]\s*(\d+(?:[.,]\d+)?)\s*(?:uur|hours?)", re.IGNORECASE)
_EURO = re.compile(r"€\s*(\d+(?:[.,]\d{1,2})?)")
_CONFIDENCE = re.compile(
    r"(\d{1,3})\s*%\s*(?:confidence|vertrouwen)|(?:confidence|vertrouwen)\D{0,20}?(\d{1,3})\s*%",
    re.IGNORECASE,
)


def default_request_type(context: QueryContext) -> str:
    return "planning" if context.needs_planning else "technical_assessment"


def should_request_analysis(context: QueryContext) -> bool:
    """Planning turns, quoting/booking phases and turns with prior quotes."""
    return (
        context.needs_planning
        or context.phase in ("quoted", "booking")
        or bool(context.quoted_amounts)
    )


def _format_amount(amount: float) -> str:
    return f"€{amount:g}"


def build_analysis_prompt(context: QueryContext, request_type: str) -> str:
    lines = [f"ANALYSEVERZOEK: {request_type.upper()}", "", "CONVERSATIEGESCHIEDENIS:"]
    history = context.turns + (ConversationTurn(role="user", content=context.message),)
    for index, turn in enumerate(history, start=1):
        lines.append(f"{index}. {turn.role}: {turn.content}")

    session = context.session
    unknown = "Onbekend"
    lines += [
        "",
        "KLANTGEGEVENS:",
        f"- Naam: {(session and session.customer_name) or unknown}",
        f"- Telefoon: {(session and session.customer_phone) or unknown}",
        f"- Adres: {(session and session.customer_address) or unknown}",
        f"- Probleem: {(session and session.problem_type) or 'Te bepalen'}",
        f"- Urgentie: {context.urgency_hint}",
    ]
    if context.quoted_amounts:
        quotes = ", ".join(_format_amount(amount) for amount in context.quoted_amounts)
        lines += ["", "AANVULLENDE CONTEXT:", f"- Eerdere offertes: {quotes}"]

    lines += ["", "VOER EEN UITGEBREIDE ANALYSE UIT EN GEEF EEN GEDETAILLEERD ANTWOORD."]
    return "\n".join(lines)


def build_analysis_request(
    context: QueryContext,
    profile: BusinessProfile,
    request_type: Optional[str] = None,
) -> BackendRequest:
    """Single forced-tool request for the reasoning backend."""
    request_type = request_type or default_request_type(context)
    return BackendRequest(
        system_prompt=build_analysis_system_prompt(profile),
        messages=(ConversationTurn(role="user", content=build_analysis_prompt(context, request_type)),),
        tool=ANALYSIS_TOOL,
        force_tool=True,
        max_tokens=4000,
        temperature=0.3,
    )


def risks_for_complexity(complexity: str) -> List[Risk]:
    if complexity == "very_complex":
        return [
            BASE_RISK,
            Risk(
                level="high",
                description="Complex werk vereist specialistische kennis",
                mitigation="Zet een ervaren loodgieter in en plan een inspectie achteraf",
            ),
        ]
    if complexity == "complex":
        return [
            BASE_RISK,
            Risk(
                level="medium",
                description="Uitgebreide werkzaamheden kunnen onvoorziene problemen opleveren",
                mitigation="Plan extra tijd en overleg tussentijds",
            ),
        ]
    return [BASE_RISK]


def _vat_consistent(subtotal: float, vat_amount: float, total: float) -> bool:
    return abs(subtotal + vat_amount - total) <= 0.01


def _recompute_vat(subtotal: float, vat_rate: float) -> Tuple[float, float, float]:
    subtotal = round(subtotal, 2)
    vat_amount = round(subtotal * vat_rate, 2)
    return subtotal, vat_amount, round(subtotal + vat_amount, 2)


def normalize_analysis_payload(
    payload: DetailedAnalysisPayload,
    profile: BusinessProfile,
) -> DetailedAnalysis:
    """Turn a validated tool payload into a consistent DetailedAnalysis."""
    duration = payload.estimated_duration_hours
    min_hours, max_hours = sorted((duration.min, duration.max))
    complexity = payload.problem_complexity
    costs = payload.cost_breakdown

    subtotal = costs.subtotal or (costs.labor_total + costs.materials_total)
    vat_amount = costs.vat_amount
    total = costs.total_with_vat
    if not _vat_consistent(subtotal, vat_amount, total):
        subtotal, vat_amount, total = _recompute_vat(subtotal, profile.vat_rate)
        logger.info(
            "analysis_vat_recomputed",
            reported_vat=costs.vat_amount,
            reported_total=costs.total_with_vat,
            vat_amount=vat_amount,
            total=total,
        )

    return DetailedAnalysis(
        summary=payload.summary,
        technical_assessment=TechnicalAssessment(
            complexity=complexity,
            duration=DurationEstimate(
                min_hours=min_hours,
                max_hours=max_hours,
                description=duration.description or f"Geschatte duur: {min_hours:g}-{max_hours:g} uur",
            ),
            materials=[
                MaterialNeed(
                    item=material.item,
                    quantity=material.quantity,
                    estimated_cost=material.estimated_cost,
                    essential=material.essential,
                )
                for material in payload.materials_needed
            ],
            tools_required=list(DEFAULT_TOOLS),
            expertise=EXPERTISE_BY_COMPLEXITY[complexity],
        ),
        cost_breakdown=CostBreakdown(
            labor=LaborCost(hours=costs.labor_hours, rate=costs.labor_rate, total=costs.labor_total),
            materials=[
                MaterialCost(item=material.item, cost=material.estimated_cost)
                for material in payload.materials_needed
            ],
            subtotal=subtotal,
            vat_rate=profile.vat_rate,
            vat_amount=vat_amount,
            total=total,
        ),
        scheduling=Scheduling(
            priority=payload.urgency_priority,
            recommended_slot=SLOT_BY_PRIORITY[payload.urgency_priority],
            preparation=list(DEFAULT_PREPARATION),
            follow_up_needed=complexity == "very_complex",
        ),
        risks=risks_for_complexity(complexity),
        recommendations=payload.recommendations or list(DEFAULT_RECOMMENDATIONS),
        confidence=max(0.0, min(100.0, payload.confidence_percentage)),
        fallback=False,
    )


def extract_json_from_text(text: str) -> Optional[str]:
    """JSON from a ```json fence, else the outermost {...} of the text."""
    match = _JSON_BLOCK.search(text)
    if match:
        return match.group(1).strip()
    match = _JSON_OBJECT.search(text)
    if match:
        return match.group(0).strip()
    return None


def _number(value: str) -> float:
    return float(value.replace(",", "."))


def _extract_complexity(lower: str) -> str:
    if "zeer complex" in lower or "very complex" in lower:
        return "very_complex"
    if "complex" in lower:
        return "complex"
    if "eenvoudig" in lower or "simple" in lower:
        return "simple"
    return "moderate"


def _extract_expertise(lower: str, complexity: str) -> str:
    if "specialist" in lower or "expert" in lower:
        return "specialist"
    if "gevorderd" in lower or "advanced" in lower:
        return "advanced"
    if "basiskennis" in lower or "basic" in lower:
        return "basic"
    return EXPERTISE_BY_COMPLEXITY[complexity]


def _extract_material_lines(text: str) -> List[str]:
    """Lines naming materials or parts, bullets stripped, in order of appearance."""
    items: List[str] = []
    for line in text.splitlines():
        if any(marker in line.lower() for marker in MATERIAL_MARKERS):
            item = line.strip().lstrip("-*• ").strip()
            if item and item not in items:
                items.append(item)
    return items


def parse_text_analysis(text: str, profile: BusinessProfile) -> DetailedAnalysis:
    """Regex extraction from free text. Always ``fallback=True``."""
    lower = text.lower()

    summary_match = _SUMMARY.search(text)
    summary = summary_match.group(1).strip() if summary_match else "Geen specifieke samenvatting beschikbaar"

    complexity = _extract_complexity(lower)

    duration_match = _DURATION.search(text)
    if duration_match:
        min_hours, max_hours = sorted((_number(duration_match.group(1)), _number(duration_match.group(2))))
    else:
        min_hours, max_hours = DEFAULT_MIN_HOURS, DEFAULT_MAX_HOURS

    amounts = [_number(value) for value in _EURO.findall(text)]
    basis = max(amounts) if amounts else DEFAULT_TEXT_TOTAL
    labor_total = round(basis * LABOR_SHARE, 2)
    materials_total = round(basis - labor_total, 2)
    subtotal, vat_amount, total = _recompute_vat(labor_total + materials_total, profile.vat_rate)
    rate = profile.standard_rate
    labor_hours = round(labor_total / rate, 1) if rate > 0 else 0.0

    material_lines = _extract_material_lines(text)
    if material_lines:
        share = round(materials_total / len(material_lines), 2)
        materials = [
            MaterialNeed(item=item, quantity="1x", estimated_cost=share, essential=True)
            for item in material_lines
        ]
    else:
        materials = [
            MaterialNeed(
                item=DEFAULT_MATERIAL_ITEM,
                quantity="Naar behoefte",
                estimated_cost=materials_total,
                essential=True,
            )
        ]

    confidence = FALLBACK_CONFIDENCE_CAP
    confidence_match = _CONFIDENCE.search(text)
    if confidence_match:
        found = float(confidence_match.group(1) or confidence_match.group(2))
        confidence = max(0.0, min(FALLBACK_CONFIDENCE_CAP, found))

    return DetailedAnalysis(
        summary=summary,
        technical_assessment=TechnicalAssessment(
            complexity=complexity,
            duration=DurationEstimate(
                min_hours=min_hours,
                max_hours=max_hours,
                description=f"Geschatte duur: {min_hours:g}-{max_hours:g} uur",
            ),
            materials=materials,
            tools_required=list(DEFAULT_TOOLS),
            expertise=_extract_expertise(lower, complexity),
        ),
        cost_breakdown=CostBreakdown(
            labor=LaborCost(hours=labor_hours, rate=rate, total=labor_total),
            materials=[MaterialCost(item="Loodgieter materialen", cost=materials_total)],
            subtotal=subtotal,
            vat_rate=profile.vat_rate,
            vat_amount=vat_amount,
            total=total,
        ),
        scheduling=Scheduling(
            priority="normal",
            recommended_slot=SLOT_BY_PRIORITY["normal"],
            preparation=list(DEFAULT_PREPARATION),
            follow_up_needed=False,
        ),
        risks=risks_for_complexity(complexity),
        recommendations=list(DEFAULT_RECOMMENDATIONS),
        confidence=confidence,
        fallback=True,
    )


def reduce_analysis_stream(state: StreamState, profile: BusinessProfile) -> DetailedAnalysis:
    """
    Reduce a finished reasoning-backend stream into a DetailedAnalysis.

    Raises:
        ParseFailure (escalated) if the stream produced neither text nor a
        valid payload.
    """
    text = state.text.strip()
    fallback_reason = "missing_payload"

    if state.tool_name is not None or state.tool_arguments:
        try:
            if state.tool_name is not None and state.tool_name != ANALYSIS_TOOL_NAME:
                raise ParseFailure(f"Unexpected tool call: {state.tool_name}")
            payload = parse_tool_arguments("analysis", state.tool_arguments, DetailedAnalysisPayload)
            return normalize_analysis_payload(payload, profile)
        except ParseFailure as exc:
            fallback_reason = "parse_failure"
            record_parse_failure("analysis")
            logger.warning("reducer_payload_invalid", path="analysis", error=exc.message)

    if not text:
        raise ParseFailure(
            "Reasoning backend produced neither text nor a valid analysis payload",
            escalated=True,
        )

    raw_json = extract_json_from_text(text)
    if raw_json is not None:
        try:
            payload = parse_tool_arguments("analysis", raw_json, DetailedAnalysisPayload)
            logger.info("analysis_json_from_text")
            return normalize_analysis_payload(payload, profile)
        except ParseFailure as exc:
            logger.info("analysis_text_json_unusable", error=exc.message)

    record_fallback_extraction("analysis", fallback_reason)
    logger.info("reducer_fallback", path="analysis", reason=fallback_reason)
    return parse_text_analysis(text, profile)


def work_order_customer(context: QueryContext) -> ExtractedInfo:
    """Customer fields from the session, completed from what the customer wrote."""
    session = context.session
    known = ExtractedInfo(
        customer_name=session and session.customer_name,
        customer_phone=session and session.customer_phone,
        address=session and session.customer_address,
        problem_type=session and session.problem_type,
    )
    written = "\n".join(
        [turn.content for turn in context.turns if turn.role == "user"] + [context.message]
    )
    return merge_extracted(known, extract_contact_info(written)) or ExtractedInfo()


def build_work_order_prompt(customer: ExtractedInfo, analysis: DetailedAnalysis) -> str:
    customer_json = json.dumps(customer.model_dump(exclude_none=True), indent=2, ensure_ascii=False)
    analysis_json = analysis.model_dump_json(indent=2)
    return "\n".join([
        "Maak een werkorder op basis van deze analyse:",
        "",
        "KLANTGEGEVENS:",
        customer_json,
        "",
        "TECHNISCHE ANALYSE:",
        analysis_json,
    ])


def build_work_order_request(
    context: QueryContext,
    analysis: DetailedAnalysis,
    profile: BusinessProfile,
) -> BackendRequest:
    """Single forced-tool request; low temperature for a repeatable job sheet."""
    prompt = build_work_order_prompt(work_order_customer(context), analysis)
    return BackendRequest(
        system_prompt=build_work_order_system_prompt(profile),
        messages=(ConversationTurn(role="user", content=prompt),),
        tool=WORK_ORDER_TOOL,
        force_tool=True,
        max_tokens=2000,
        temperature=0.1,
    )


def _work_order_payload(state: StreamState) -> WorkOrderPayload:
    if state.tool_name is not None or state.tool_arguments:
        try:
            if state.tool_name is not None and state.tool_name != WORK_ORDER_TOOL_NAME:
                raise ParseFailure(f"Unexpected tool call: {state.tool_name}")
            return parse_tool_arguments("work_order", state.tool_arguments, WorkOrderPayload)
        except ParseFailure as exc:
            record_parse_failure("work_order")
            logger.warning("reducer_payload_invalid", path="work_order", error=exc.message)

    raw_json = extract_json_from_text(state.text)
    if raw_json is None:
        raise WorkOrderFailed()
    try:
        payload = parse_tool_arguments("work_order", raw_json, WorkOrderPayload)
    except ParseFailure as exc:
        raise WorkOrderFailed() from exc
    logger.info("work_order_json_from_text")
    return payload


def reduce_work_order_stream(
    state: StreamState,
    analysis: DetailedAnalysis,
    customer: ExtractedInfo,
    work_order_id: str,
) -> WorkOrder:
    """
    Reduce a finished reasoning-backend stream into a WorkOrder.

    Materials, cost and timeline are taken from ``analysis``; the backend only
    supplies the job text.

    Raises:
        WorkOrderFailed if neither the tool payload nor JSON in the reply text
        is a valid work order.
    """
    payload = _work_order_payload(state)
    scheduling = analysis.scheduling
    duration = analysis.technical_assessment.duration
    return WorkOrder(
        work_order_id=work_order_id,
        customer=customer,
        job_title=payload.job_title.strip(),
        job_description=payload.job_description.strip(),
        specifications=payload.specifications,
        materials=analysis.technical_assessment.materials,
        cost_estimate=analysis.cost_breakdown,
        timeline=WorkOrderTimeline(
            priority=scheduling.priority,
            recommended_slot=scheduling.recommended_slot,
            min_hours=duration.min_hours,
            max_hours=duration.max_hours,
        ),
        instructions=payload.instructions,
        safety_notes=payload.safety_notes,
    )
