"""
Chat endpoints.

POST /chat/messages   one customer turn -> TurnResult
POST /chat/analysis   explicit deep analysis -> DetailedAnalysis
POST /chat/work-orders  work order from a DetailedAnalysis -> WorkOrder

Dispatch failures propagate as DispatchError and are rendered by the
application's exception handler (status code + contact instruction).
"""
import time

from fastapi import APIRouter, HTTPException

from dispatch_ai.core.logging import get_logger
from dispatch_ai.models.responses import AnalysisRequest, ChatTurnRequest, WorkOrderRequest
from dispatch_ai.services.ai.orchestration import get_dispatch_orchestrator
from dispatch_ai.services.ai.schema import DetailedAnalysis, TurnResult, WorkOrder

logger = get_logger(__name__)

router = APIRouter()


@router.post("/messages", response_model=TurnResult)
async def post_message(body: ChatTurnRequest):
    """
    Answer one customer message.

    Routes the turn to a backend, streams and reduces the answer, and adds a
    deep analysis on quoting/planning turns when enabled.
    """
    if not body.message.strip():
        raise HTTPException(status_code=400, detail="Field 'message' must not be blank")

    start_time = time.time()
    context = body.to_context()
    result = await get_dispatch_orchestrator().handle_turn(context)

    logger.info(
        "chat_message_completed",
        backend=result.routing.backend_id,
        urgency=result.response.urgency,
        fallback=result.response.fallback,
        has_analysis=result.analysis is not None,
        attempts=result.attempts,
        latency_ms=int((time.time() - start_time) * 1000),
    )
    return result


@router.post("/analysis", response_model=DetailedAnalysis)
async def post_analysis(body: AnalysisRequest):
    """Deep analysis of the conversation by the reasoning backend."""
    if not body.message.strip():
        raise HTTPException(status_code=400, detail="Field 'message' must not be blank")

    start_time = time.time()
    analysis = await get_dispatch_orchestrator().request_analysis(body.to_context(), body.request_type)

    logger.info(
        "chat_analysis_completed",
        request_type=body.request_type,
        fallback=analysis.fallback,
        latency_ms=int((time.time() - start_time) * 1000),
    )
    return analysis


@router.post("/work-orders", response_model=WorkOrder)
async def post_work_order(body: WorkOrderRequest):
    """Work order for the plumber, generated from a finished deep analysis."""
    if not body.message.strip():
        raise HTTPException(status_code=400, detail="Field 'message' must not be blank")

    start_time = time.time()
    work_order = await get_dispatch_orchestrator().generate_work_order(body.to_context(), body.analysis)

    logger.info(
        "chat_work_order_completed",
        work_order_id=work_order.work_order_id,
        latency_ms=int((time.time() - start_time) * 1000),
    )
    return work_order
