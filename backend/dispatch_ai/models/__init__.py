"""Pydantic models for API requests and responses."""

from .responses import (
    AnalysisRequest,
    BackendHealth,
    ChatTurnRequest,
    ErrorResponse,
    HealthResponse,
    WorkOrderRequest,
)

__all__ = [
    "AnalysisRequest",
    "BackendHealth",
    "ChatTurnRequest",
    "ErrorResponse",
    "HealthResponse",
    "WorkOrderRequest",
]
