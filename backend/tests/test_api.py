"""
HTTP tests for the FastAPI application.

The orchestrator is swapped for scripted clients or a stub, so no backend is
contacted and no business profile needs to be configured.
"""
import pytest
from fastapi.testclient import TestClient

from conftest import ScriptedClient, analysis_payload, chat_payload, end, tool_call, work_order_payload
from dispatch_ai.main import app, dispatch_status_code
from dispatch_ai.services.ai.analysis import normalize_analysis_payload
from dispatch_ai.services.ai.errors import (
    BackendRejected,
    CapabilityMismatch,
    ExhaustedRetries,
    ParseFailure,
    TransientDispatchFailure,
    WorkOrderFailed,
)
from dispatch_ai.services.ai.prompts import CHAT_TOOL_NAME, WORK_ORDER_TOOL_NAME
from dispatch_ai.services.ai.registry import ANTHROPIC_BACKEND, OPENAI_BACKEND
from dispatch_ai.services.ai.schema import DetailedAnalysisPayload, TextFragment

client = TestClient(app)


class FailingOrchestrator:
    def __init__(self, error):
        self.error = error

    async def handle_turn(self, context):
        raise self.error

    async def request_analysis(self, context, request_type=None):
        raise self.error

    async def generate_work_order(self, context, analysis):
        raise self.error


@pytest.fixture
def use_orchestrator(monkeypatch):
    def _use(orchestrator):
        monkeypatch.setattr("dispatch_ai.routes.chat.get_dispatch_orchestrator", lambda: orchestrator)
        return orchestrator
    return _use


def test_health_check():
    response = client.get("/health")

    assert response.status_code == 200
    assert response.json() == {"status": "ok", "message": "API is running"}
    assert "X-Trace-ID" in response.headers


def test_trace_id_header_is_propagated():
    response = client.get("/health", headers={"X-Trace-ID": "trace-from-caller"})

    assert response.headers["X-Trace-ID"] == "trace-from-caller"


def test_backends_health(monkeypatch, registry):
    clients = {OPENAI_BACKEND: ScriptedClient(OPENAI_BACKEND, [])}
    monkeypatch.setattr("dispatch_ai.routes.health.get_capability_registry", lambda: registry)
    monkeypatch.setattr("dispatch_ai.routes.health.get_backend_clients", lambda: clients)

    response = client.get("/health/backends")

    assert response.status_code == 200
    backends = {item["backend_id"]: item for item in response.json()}
    assert backends[OPENAI_BACKEND]["configured"] is True
    assert backends[OPENAI_BACKEND]["circuit_breaker"]["state"] == "closed"
    assert backends[ANTHROPIC_BACKEND]["configured"] is False
    assert backends[ANTHROPIC_BACKEND]["circuit_breaker"] == {}


def test_chat_message_completed(use_orchestrator, make_orchestrator):
    chat_client = ScriptedClient(OPENAI_BACKEND, [[
        TextFragment(text="We komen vandaag nog langs."),
        *tool_call(CHAT_TOOL_NAME, chat_payload()),
        end(),
    ]])
    use_orchestrator(make_orchestrator({
        OPENAI_BACKEND: chat_client,
        ANTHROPIC_BACKEND: ScriptedClient(ANTHROPIC_BACKEND, []),
    }))

    response = client.post("/chat/messages", json={"message": "Mijn kraan lekt"})

    assert response.status_code == 200
    body = response.json()
    assert body["routing"]["backend_id"] == OPENAI_BACKEND
    assert body["response"]["text"] == "We komen vandaag nog langs."
    assert body["states"][-1] == "completed"
    assert len(chat_client.calls) == 1


def test_blank_message_is_rejected(use_orchestrator):
    use_orchestrator(FailingOrchestrator(AssertionError("must not be called")))

    response = client.post("/chat/messages", json={"message": "   "})

    assert response.status_code == 400


def test_missing_message_is_validation_error():
    response = client.post("/chat/messages", json={"history": []})

    assert response.status_code == 422


def test_exhausted_retries_maps_to_503(use_orchestrator):
    error = ExhaustedRetries(
        3,
        TransientDispatchFailure("timeout", reason="timeout"),
        backend=OPENAI_BACKEND,
        instruction="Bel direct met De Vries (020-1234567) voor hulp.",
    )
    use_orchestrator(FailingOrchestrator(error))

    response = client.post("/chat/messages", json={"message": "Mijn kraan lekt"})

    assert response.status_code == 503
    body = response.json()
    assert body["error_type"] == "exhausted_retries"
    assert body["instruction"] == "Bel direct met De Vries (020-1234567) voor hulp."
    assert body["fallback_contact"] is True
    assert body["trace_id"]


def test_capability_mismatch_maps_to_422(use_orchestrator):
    use_orchestrator(FailingOrchestrator(CapabilityMismatch(["context window too small"])))

    response = client.post("/chat/analysis", json={"message": "Offerte voor nieuwe badkamer"})

    assert response.status_code == 422
    assert response.json()["error_type"] == "capability_mismatch"


def _analysis_body(profile):
    analysis = normalize_analysis_payload(DetailedAnalysisPayload.model_validate(analysis_payload()), profile)
    return analysis.model_dump(mode="json")


def test_work_order_created(use_orchestrator, make_orchestrator, profile):
    reasoning = ScriptedClient(ANTHROPIC_BACKEND, [[
        *tool_call(WORK_ORDER_TOOL_NAME, work_order_payload()),
        end("tool_use"),
    ]])
    use_orchestrator(make_orchestrator({ANTHROPIC_BACKEND: reasoning}))

    response = client.post(
        "/chat/work-orders",
        json={"message": "Plan de reparatie maar in", "analysis": _analysis_body(profile)},
    )

    assert response.status_code == 200
    body = response.json()
    assert body["work_order_id"].startswith("WO-")
    assert body["job_title"] == "Lekkende leiding vervangen"
    assert body["cost_estimate"]["total"] == pytest.approx(211.75)
    assert body["timeline"]["priority"] == "high"


def test_work_order_failure_maps_to_502(use_orchestrator, profile):
    error = WorkOrderFailed(backend=ANTHROPIC_BACKEND, instruction=profile.contact_line("nl"))
    use_orchestrator(FailingOrchestrator(error))

    response = client.post(
        "/chat/work-orders",
        json={"message": "Maak de werkorder", "analysis": _analysis_body(profile)},
    )

    assert response.status_code == 502
    body = response.json()
    assert body["error_type"] == "work_order_failed"
    assert "Handmatig aanmaken vereist" in body["detail"]
    assert body["instruction"] == profile.contact_line("nl")


def test_work_order_requires_analysis():
    response = client.post("/chat/work-orders", json={"message": "Maak de werkorder"})

    assert response.status_code == 422


@pytest.mark.parametrize("error,status", [
    (BackendRejected("invalid api key", status_code=401), 502),
    (ParseFailure("empty stream", escalated=True), 502),
    (TransientDispatchFailure("circuit open", reason="circuit_open"), 503),
    (CapabilityMismatch(["no images"]), 422),
    (WorkOrderFailed(), 502),
])
def test_dispatch_status_code(error, status):
    assert dispatch_status_code(error) == status


def test_metrics_endpoint():
    client.get("/health")

    response = client.get("/metrics")

    assert response.status_code == 200
    assert response.headers["content-type"].startswith("text/plain")
    assert "http_requests_total" in response.text
