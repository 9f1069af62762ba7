"""
Request and response models for API endpoints.

These models define the HTTP surface; the dispatch layer works on the frozen
models in ``services/ai/schema.py``.
"""
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field

from dispatch_ai.services.ai.schema import (
    AnalysisRequestType,
    ConversationPhase,
    ConversationTurn,
    DetailedAnalysis,
    Language,
    QueryContext,
    SessionHints,
    Urgency,
)


class ChatTurnRequest(BaseModel):
    """One inbound customer message plus what the session already knows."""
    message: str = Field(..., min_length=1, description="Inbound customer message")
    history: List[ConversationTurn] = Field(default_factory=list, description="Prior turns, oldest first")
    urgency_hint: Urgency = "normal"
    language: Language = "nl"
    has_images: bool = False
    needs_planning: bool = False
    needs_extended_reasoning: bool = False
    phase: ConversationPhase = "initial"
    session: Optional[SessionHints] = None

    def to_context(self) -> QueryContext:
        return QueryContext(
            message=self.message.strip(),
            turns=tuple(self.history),
            urgency_hint=self.urgency_hint,
            language=self.language,
            has_images=self.has_images,
            needs_planning=self.needs_planning,
            needs_extended_reasoning=self.needs_extended_reasoning,
            phase=self.phase,
            session=self.session,
        )


class AnalysisRequest(ChatTurnRequest):
    """Explicit deep-analysis request."""
    request_type: Optional[AnalysisRequestType] = None


class WorkOrderRequest(ChatTurnRequest):
    """Work-order generation from a finished deep analysis."""
    analysis: DetailedAnalysis


class ErrorResponse(BaseModel):
    """Body of every dispatch failure. Always tells the customer to call."""
    error_type: str
    detail: str
    instruction: Optional[str] = None
    fallback_contact: bool = True
    trace_id: Optional[str] = None


class HealthResponse(BaseModel):
    status: str
    message: str


class BackendHealth(BaseModel):
    backend_id: str
    model: str
    configured: bool
    strengths: List[str]
    circuit_breaker: Dict[str, Any]
