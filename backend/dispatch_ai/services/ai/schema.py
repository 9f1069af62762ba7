"""
Pydantic models for the dispatch layer.

Three groups:
- Per-turn value objects (QueryContext, RoutingDecision, ChatResponse,
  DetailedAnalysis, WorkOrder, TurnResult). Created fresh per turn, frozen.
- Stream fragments emitted by backend clients and the reduced StreamState.
- Tool-call payload schemas (ChatAnalysisPayload, DetailedAnalysisPayload,
  WorkOrderPayload) that raw model output is validated against before it is trusted.
"""
import json
from enum import Enum
from typing import Any, Dict, FrozenSet, List, Literal, Optional, Tuple, Type, TypeVar

from pydantic import BaseModel, ConfigDict, Field, ValidationError, model_validator

from dispatch_ai.services.ai.errors import ParseFailure

Urgency = Literal["low", "normal", "high", "emergency"]
Language = Literal["nl", "en"]
ConversationPhase = Literal["initial", "problem_identified", "quoted", "booking"]
Speed = Literal["fast", "medium", "slow"]
Complexity = Literal["simple", "moderate", "complex", "very_complex"]
Expertise = Literal["basic", "intermediate", "advanced", "specialist"]
RiskLevel = Literal["low", "medium", "high"]
AnalysisRequestType = Literal["cost_analysis", "scheduling", "technical_assessment", "planning"]

URGENCY_ORDER: Tuple[str, ...] = ("low", "normal", "high", "emergency")

FALLBACK_CONFIDENCE_CAP = 60.0
DEFAULT_PAYLOAD_CONFIDENCE = 70.0


class _Frozen(BaseModel):
    model_config = ConfigDict(frozen=True)


# ============================================================================
# TURN INPUT
# ============================================================================

class ConversationTurn(_Frozen):
    role: Literal["user", "assistant"]
    content: str


class SessionHints(_Frozen):
    """What earlier turns of the session already established."""

    problem_type: Optional[str] = None
    customer_name: Optional[str] = None
    customer_phone: Optional[str] = None
    customer_address: Optional[str] = None
    quoted_amounts: Tuple[float, ...] = ()


class QueryContext(_Frozen):
    """
    Everything known about the turn being handled.

    ``turns`` holds prior turns only; ``message`` is the inbound message.
    """

    message: str
    turns: Tuple[ConversationTurn, ...] = ()
    urgency_hint: Urgency = "normal"
    language: Language = "nl"
    has_images: bool = False
    needs_planning: bool = False
    needs_extended_reasoning: bool = False
    phase: ConversationPhase = "initial"
    session: Optional[SessionHints] = None

    @property
    def message_count(self) -> int:
        return len(self.turns)

    @property
    def quoted_amounts(self) -> Tuple[float, ...]:
        return self.session.quoted_amounts if self.session else ()

    def with_turn(self, turn: ConversationTurn) -> "QueryContext":
        """Return a new context with ``turn`` appended to the history."""
        return self.model_copy(update={"turns": self.turns + (turn,)})


# ============================================================================
# ROUTING
# ============================================================================

class ModelCapabilities(_Frozen):
    backend_id: str
    model: str
    strengths: FrozenSet[str]
    context_window: int = Field(..., gt=0)
    cost_per_million_input: float = Field(..., ge=0)
    cost_per_million_output: float = Field(..., ge=0)
    supports_streaming: bool = True
    supports_images: bool = False
    supports_extended_reasoning: bool = False
    speed: Speed = "medium"


class RoutingDecision(_Frozen):
    backend_id: str
    scores: Dict[str, float]
    reasons: List[str] = Field(default_factory=list)
    rejected: Dict[str, List[str]] = Field(default_factory=dict)
    estimated_tokens: int = 0


# ============================================================================
# CHAT RESPONSE
# ============================================================================

class CostRange(_Frozen):
    min: float = Field(..., ge=0)
    max: float = Field(..., ge=0)
    currency: str = "EUR"
    description: str = ""

    @model_validator(mode="after")
    def check_bounds(self) -> "CostRange":
        if self.min > self.max:
            raise ValueError("cost range min must not exceed max")
        return self


class ExtractedInfo(_Frozen):
    customer_name: Optional[str] = None
    customer_phone: Optional[str] = None
    address: Optional[str] = None
    problem_type: Optional[str] = None

    def is_empty(self) -> bool:
        return not any((self.customer_name, self.customer_phone, self.address, self.problem_type))


class ChatResponse(_Frozen):
    """Reduced, validated answer of the customer-facing path."""

    text: str
    urgency: Urgency
    categories: List[str]
    estimated_cost: Optional[CostRange] = None
    extracted_info: Optional[ExtractedInfo] = None
    should_show_booking_form: bool = False
    confidence: float = Field(..., ge=0, le=100)
    next_steps: List[str] = Field(default_factory=list)
    fallback: bool = False

    @model_validator(mode="after")
    def check_fallback_confidence(self) -> "ChatResponse":
        if self.fallback and self.confidence > FALLBACK_CONFIDENCE_CAP:
            raise ValueError("fallback responses must not exceed the fallback confidence cap")
        return self


# ============================================================================
# DETAILED ANALYSIS
# ============================================================================

class DurationEstimate(_Frozen):
    min_hours: float = Field(..., ge=0)
    max_hours: float = Field(..., ge=0)
    description: str = ""

    @model_validator(mode="after")
    def check_order(self) -> "DurationEstimate":
        if self.min_hours > self.max_hours:
            raise ValueError("min_hours must not exceed max_hours")
        return self


class MaterialNeed(_Frozen):
    item: str
    quantity: str = "1x"
    estimated_cost: float = Field(0.0, ge=0)
    essential: bool = True


class TechnicalAssessment(_Frozen):
    complexity: Complexity
    duration: DurationEstimate
    materials: List[MaterialNeed] = Field(default_factory=list)
    tools_required: List[str] = Field(default_factory=list)
    expertise: Expertise


class LaborCost(_Frozen):
    hours: float = Field(..., ge=0)
    rate: float = Field(..., ge=0)
    total: float = Field(..., ge=0)


class MaterialCost(_Frozen):
    item: str
    cost: float = Field(..., ge=0)


class CostBreakdown(_Frozen):
    labor: LaborCost
    materials: List[MaterialCost] = Field(default_factory=list)
    subtotal: float = Field(..., ge=0)
    vat_rate: float = Field(..., ge=0, le=1)
    vat_amount: float = Field(..., ge=0)
    total: float = Field(..., ge=0)

    @model_validator(mode="after")
    def check_total(self) -> "CostBreakdown":
        if abs(self.subtotal + self.vat_amount - self.total) > 0.01:
            raise ValueError("subtotal + vat_amount must equal total")
        return self


class Scheduling(_Frozen):
    priority: Urgency
    recommended_slot: str
    preparation: List[str] = Field(default_factory=list)
    follow_up_needed: bool = False


class Risk(_Frozen):
    level: RiskLevel
    description: str
    mitigation: str


class DetailedAnalysis(_Frozen):
    """Structured technical/cost breakdown from the reasoning backend."""

    summary: str
    technical_assessment: TechnicalAssessment
    cost_breakdown: CostBreakdown
    scheduling: Scheduling
    risks: List[Risk] = Field(default_factory=list)
    recommendations: List[str] = Field(default_factory=list)
    confidence: float = Field(..., ge=0, le=100)
    fallback: bool = False

    @model_validator(mode="after")
    def check_fallback_confidence(self) -> "DetailedAnalysis":
        if self.fallback and self.confidence > FALLBACK_CONFIDENCE_CAP:
            raise ValueError("fallback analyses must not exceed the fallback confidence cap")
        return self


class WorkOrderTimeline(_Frozen):
    priority: Urgency
    recommended_slot: str
    min_hours: float = Field(..., ge=0)
    max_hours: float = Field(..., ge=0)


class WorkOrder(_Frozen):
    """
    Job sheet for the plumber who carries out the work.

    Job text comes from the reasoning backend; materials, cost and timeline
    are copied from the DetailedAnalysis it was generated from.
    """

    work_order_id: str
    customer: ExtractedInfo
    job_title: str
    job_description: str
    specifications: List[str] = Field(default_factory=list)
    materials: List[MaterialNeed] = Field(default_factory=list)
    cost_estimate: CostBreakdown
    timeline: WorkOrderTimeline
    instructions: List[str] = Field(default_factory=list)
    safety_notes: List[str] = Field(default_factory=list)


# ============================================================================
# TURN RESULT
# ============================================================================

class TurnState(str, Enum):
    IDLE = "idle"
    SELECTING = "selecting"
    DISPATCHING = "dispatching"
    STREAMING = "streaming"
    REDUCING = "reducing"
    COMPLETED = "completed"
    FAILED = "failed"


class FailureDetail(_Frozen):
    error_type: str
    detail: str
    instruction: Optional[str] = None
    backend: Optional[str] = None


class TurnResult(_Frozen):
    response: ChatResponse
    routing: RoutingDecision
    analysis: Optional[DetailedAnalysis] = None
    analysis_error: Optional[FailureDetail] = None
    states: List[TurnState] = Field(default_factory=list)
    attempts: int = 1


# ============================================================================
# BACKEND REQUESTS AND STREAM FRAGMENTS
# ============================================================================

class ToolSpec(_Frozen):
    """Provider-neutral tool definition (JSON schema parameters)."""

    name: str
    description: str
    parameters: Dict[str, Any]


class BackendRequest(_Frozen):
    system_prompt: str
    messages: Tuple[ConversationTurn, ...]
    tool: Optional[ToolSpec] = None
    force_tool: bool = False
    max_tokens: int = 1000
    temperature: float = 0.7


class TokenUsage(_Frozen):
    input_tokens: int = 0
    output_tokens: int = 0


class TextFragment(_Frozen):
    text: str


class ToolCallFragment(_Frozen):
    """A piece of a tool call: the name (first piece) and/or a slice of arguments."""

    name: Optional[str] = None
    arguments: str = ""


class StreamEnd(_Frozen):
    finish_reason: Optional[str] = None
    usage: TokenUsage = Field(default_factory=TokenUsage)


class StreamState(_Frozen):
    """Immutable snapshot of everything a stream delivered."""

    text: str = ""
    tool_name: Optional[str] = None
    tool_arguments: str = ""
    completed: bool = False
    finish_reason: Optional[str] = None
    usage: TokenUsage = Field(default_factory=TokenUsage)
    fragment_count: int = 0


# ============================================================================
# TOOL-CALL PAYLOADS
# ============================================================================

class ExtractedInfoPayload(BaseModel):
    model_config = ConfigDict(extra="ignore")

    customer_name: Optional[str] = None
    customer_phone: Optional[str] = None
    address: Optional[str] = None
    problem_description: Optional[str] = None


class ChatAnalysisPayload(BaseModel):
    """
    Arguments of the ``analyze_customer_request`` tool.

    Schema:
    {
      "urgency": "low | normal | high | emergency",
      "confidence": 0-100,
      "problem_type": "leak_repair",
      "categories": ["leak_repair"],
      "extracted_info": {"customer_name": ..., "customer_phone": ..., "address": ...},
      "should_book": true
    }
    """

    model_config = ConfigDict(extra="ignore")

    urgency: Urgency
    confidence: Optional[float] = None
    problem_type: Optional[str] = None
    categories: List[str] = Field(default_factory=list)
    extracted_info: Optional[ExtractedInfoPayload] = None
    should_book: bool = False


class DurationPayload(BaseModel):
    min: float = Field(..., ge=0)
    max: float = Field(..., ge=0)
    description: str = ""


class MaterialPayload(BaseModel):
    item: str
    quantity: str = "1x"
    estimated_cost: float = Field(0.0, ge=0)
    essential: bool = True


class CostBreakdownPayload(BaseModel):
    labor_hours: float = Field(..., ge=0)
    labor_rate: float = Field(..., ge=0)
    labor_total: float = Field(..., ge=0)
    materials_total: float = Field(0.0, ge=0)
    subtotal: float = Field(..., ge=0)
    vat_amount: float = Field(..., ge=0)
    total_with_vat: float = Field(..., ge=0)


class DetailedAnalysisPayload(BaseModel):
    """Arguments of the ``provide_detailed_analysis`` tool."""

    model_config = ConfigDict(extra="ignore")

    summary: str
    problem_complexity: Complexity
    estimated_duration_hours: DurationPayload
    materials_needed: List[MaterialPayload] = Field(default_factory=list)
    cost_breakdown: CostBreakdownPayload
    urgency_priority: Urgency
    recommendations: List[str] = Field(default_factory=list)
    confidence_percentage: float


class WorkOrderPayload(BaseModel):
    """Arguments of the ``create_work_order`` tool."""

    model_config = ConfigDict(extra="ignore")

    job_title: str = Field(..., min_length=1)
    job_description: str = Field(..., min_length=1)
    specifications: List[str] = Field(default_factory=list)
    instructions: List[str] = Field(..., min_length=1)
    safety_notes: List[str] = Field(default_factory=list)


class SchemaValidationError(ParseFailure):
    """Raised when LLM output fails schema validation."""

    def __init__(self, path: str, message: str, raw_output: Optional[str] = None):
        super().__init__(message)
        self.path = path
        self.raw_output = raw_output


PayloadT = TypeVar("PayloadT", bound=BaseModel)


def validate_payload(path: str, payload: Any, model: Type[PayloadT]) -> PayloadT:
    """
    Validate a decoded tool-call payload.

    Raises:
        SchemaValidationError if validation fails.
    """
    if not isinstance(payload, dict):
        raise SchemaValidationError(
            path=path,
            message=f"Expected a JSON object for {model.__name__}, got {type(payload).__name__}",
        )
    try:
        return model.model_validate(payload)
    except ValidationError as exc:
        raise SchemaValidationError(
            path=path,
            message=f"Invalid {model.__name__}: {exc}",
        ) from exc


def validate_chat_payload(payload: Any) -> ChatAnalysisPayload:
    return validate_payload("chat", payload, ChatAnalysisPayload)


def validate_analysis_payload(payload: Any) -> DetailedAnalysisPayload:
    return validate_payload("analysis", payload, DetailedAnalysisPayload)


def parse_tool_arguments(path: str, raw: str, model: Type[PayloadT]) -> PayloadT:
    """
    Decode streamed tool-call arguments and validate them.

    Raises:
        SchemaValidationError on invalid JSON or an invalid payload.
    """
    try:
        payload = json.loads(raw)
    except json.JSONDecodeError as exc:
        raise SchemaValidationError(
            path=path,
            message=f"Tool arguments are not valid JSON: {exc}",
            raw_output=raw,
        ) from exc
    return validate_payload(path, payload, model)
