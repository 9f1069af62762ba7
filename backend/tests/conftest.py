"""
Shared fixtures for the dispatch tests.

Backend clients are replaced by ScriptedClient, which replays scripted
attempts (fragments, raised failures or a hang) and never touches the network.
"""
import asyncio
import json
from typing import Any, Dict, List, Optional

import pytest

from dispatch_ai.core.circuit_breaker import CircuitBreaker
from dispatch_ai.core.config import BusinessProfile, Settings
from dispatch_ai.services.ai.orchestration import DispatchOrchestrator
from dispatch_ai.services.ai.registry import CapabilityRegistry, default_capabilities
from dispatch_ai.services.ai.schema import QueryContext, StreamEnd, TextFragment, TokenUsage, ToolCallFragment

HANG = object()


class ScriptedClient:
    """Stand-in for a BackendClient: one script per attempt."""

    def __init__(self, backend_id: str, attempts: List[List[Any]]):
        self.backend_id = backend_id
        self.api_key = "test-key"
        self.circuit_breaker = CircuitBreaker(name=f"scripted_{backend_id}")
        self._attempts = list(attempts)
        self.calls = []
        self.closed = 0
        self.started = asyncio.Event()

    async def stream(self, request):
        self.calls.append(request)
        script = self._attempts.pop(0)
        try:
            for item in script:
                if item is HANG:
                    self.started.set()
                    await asyncio.Event().wait()
                if isinstance(item, BaseException):
                    raise item
                yield item
        finally:
            self.closed += 1


def tool_call(name: str, payload: Dict[str, Any], chunk_size: int = 16) -> List[ToolCallFragment]:
    """Tool call split into a name fragment and argument slices."""
    raw = json.dumps(payload)
    fragments = [ToolCallFragment(name=name)]
    fragments.extend(
        ToolCallFragment(arguments=raw[index:index + chunk_size])
        for index in range(0, len(raw), chunk_size)
    )
    return fragments


def end(finish_reason: Optional[str] = "stop") -> StreamEnd:
    return StreamEnd(finish_reason=finish_reason, usage=TokenUsage(input_tokens=12, output_tokens=34))


def chat_payload(**overrides) -> Dict[str, Any]:
    payload = {
        "urgency": "high",
        "confidence": 85,
        "problem_type": "leak_repair",
        "categories": ["leak_repair"],
        "extracted_info": {"customer_name": "Jan de Vries"},
        "should_book": False,
    }
    payload.update(overrides)
    return payload


def analysis_payload(**overrides) -> Dict[str, Any]:
    payload = {
        "summary": "Lekkende leiding onder het aanrecht vervangen",
        "problem_complexity": "moderate",
        "estimated_duration_hours": {"min": 1, "max": 2, "description": "Vervangen van een leidingdeel"},
        "materials_needed": [
            {"item": "Koperen leiding 15mm", "quantity": "2m", "estimated_cost": 25, "essential": True},
        ],
        "cost_breakdown": {
            "labor_hours": 2,
            "labor_rate": 75,
            "labor_total": 150,
            "materials_total": 25,
            "subtotal": 175,
            "vat_amount": 36.75,
            "total_with_vat": 211.75,
        },
        "urgency_priority": "high",
        "recommendations": ["Controleer ook de afsluiter"],
        "confidence_percentage": 80,
    }
    payload.update(overrides)
    return payload


def work_order_payload(**overrides) -> Dict[str, Any]:
    payload = {
        "job_title": "Lekkende leiding vervangen",
        "job_description": "Koperen leiding onder het aanrecht vervangen en afdichten",
        "specifications": ["Koper 15mm", "Knelkoppelingen"],
        "instructions": ["Hoofdkraan dichtdraaien", "Leidingdeel vervangen", "Lektest uitvoeren"],
        "safety_notes": ["Controleer op elektra in de buurt van de leiding"],
    }
    payload.update(overrides)
    return payload


@pytest.fixture
def profile():
    return BusinessProfile(
        name="Loodgietersbedrijf De Vries",
        service_area="Amsterdam",
        specialties=["lekkages", "cv-ketels"],
        business_hours="ma-vr 08:00-18:00",
        contact_phone="020-1234567",
    )


@pytest.fixture
def settings():
    return Settings(
        openai_api_key="test-openai",
        anthropic_api_key="test-anthropic",
        max_attempts=3,
        attempt_timeout_seconds=5.0,
        backoff_base_seconds=0.5,
        backoff_max_seconds=4.0,
        enable_deep_analysis=True,
    )


@pytest.fixture
def registry(settings):
    return CapabilityRegistry(default_capabilities(settings))


@pytest.fixture
def make_context():
    def _make(message: str = "Mijn kraan lekt", **fields) -> QueryContext:
        return QueryContext(message=message, **fields)
    return _make


@pytest.fixture
def make_orchestrator(profile, settings, registry):
    """Orchestrator over scripted clients; backoff sleeps are recorded, not awaited."""
    def _make(clients, **kwargs) -> DispatchOrchestrator:
        sleeps: List[float] = []

        async def fake_sleep(delay: float) -> None:
            sleeps.append(delay)

        kwargs.setdefault("settings", settings)
        orchestrator = DispatchOrchestrator(
            profile=profile,
            registry=registry,
            clients=clients,
            sleep=fake_sleep,
            **kwargs,
        )
        orchestrator.sleeps = sleeps
        return orchestrator
    return _make
