"""
Health check endpoints.
"""
from typing import List

from fastapi import APIRouter

from dispatch_ai.core.logging import get_logger
from dispatch_ai.models.responses import BackendHealth, HealthResponse
from dispatch_ai.services.ai.llm_client import get_backend_clients
from dispatch_ai.services.ai.registry import get_capability_registry

logger = get_logger(__name__)
router = APIRouter()


@router.get("", response_model=HealthResponse)
async def health_check():
    """
    Basic health check endpoint.
    """
    return HealthResponse(status="ok", message="API is running")


@router.get("/backends", response_model=List[BackendHealth])
async def backends_health():
    """
    Health of every registered backend.

    Returns per backend:
        - configured: whether an API key is set
        - strengths: capability tags used by the router
        - circuit_breaker: state, recent requests/failures and error rate
    """
    registry = get_capability_registry()
    clients = get_backend_clients()

    backends = []
    for caps in registry.all():
        client = clients.get(caps.backend_id)
        backends.append(
            BackendHealth(
                backend_id=caps.backend_id,
                model=caps.model,
                configured=bool(client and client.api_key),
                strengths=sorted(caps.strengths),
                circuit_breaker=client.circuit_breaker.get_metrics() if client else {},
            )
        )
    return backends
