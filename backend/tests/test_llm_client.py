"""
Unit tests for the streaming backend clients.

HTTP is served by httpx.MockTransport; no network access.
"""
import json

import httpx
import pytest

from dispatch_ai.core.circuit_breaker import CircuitBreaker, CircuitState
from dispatch_ai.services.ai.errors import BackendRejected, TransientDispatchFailure
from dispatch_ai.services.ai.llm_client import (
    AnthropicMessagesClient,
    OpenAIChatClient,
    build_backend_clients,
)
from dispatch_ai.services.ai.prompts import CHAT_TOOL
from dispatch_ai.services.ai.registry import ANTHROPIC_BACKEND, OPENAI_BACKEND
from dispatch_ai.services.ai.schema import (
    BackendRequest,
    ConversationTurn,
    StreamEnd,
    TextFragment,
    ToolCallFragment,
)


def _sse(*events):
    lines = []
    for event in events:
        if isinstance(event, tuple):
            name, data = event
            lines.append(f"event: {name}")
        else:
            data = event
        lines.append(f"data: {data if isinstance(data, str) else json.dumps(data)}")
        lines.append("")
    return ("\n".join(lines) + "\n").encode()


def _request(force_tool=False):
    return BackendRequest(
        system_prompt="Je bent een assistent.",
        messages=(ConversationTurn(role="user", content="Mijn kraan lekt"),),
        tool=CHAT_TOOL,
        force_tool=force_tool,
    )


def _openai(handler, **kwargs):
    return OpenAIChatClient(
        model="gpt-4o",
        api_base="https://llm.test/v1",
        api_key=kwargs.pop("api_key", "sk-test"),
        transport=httpx.MockTransport(handler),
        **kwargs,
    )


def _anthropic(handler, **kwargs):
    return AnthropicMessagesClient(
        model="claude-test",
        api_base="https://anthropic.test/v1",
        api_key="ant-test",
        transport=httpx.MockTransport(handler),
        anthropic_version="2023-06-01",
        **kwargs,
    )


async def _collect(client, request=None):
    return [fragment async for fragment in client.stream(request or _request())]


OPENAI_STREAM = _sse(
    {"choices": [{"delta": {"content": "Vervelend, "}}]},
    {"choices": [{"delta": {"content": "we komen langs."}}]},
    {"choices": [{"delta": {"tool_calls": [{"index": 0, "function": {"name": "analyze_customer_request", "arguments": "{\"urgency\""}}]}}]},
    {"choices": [{"delta": {"tool_calls": [{"index": 0, "function": {"arguments": ": \"high\", \"confidence\": 80}"}}]}}]},
    {"choices": [{"delta": {}, "finish_reason": "tool_calls"}]},
    {"choices": [], "usage": {"prompt_tokens": 120, "completion_tokens": 40}},
    "[DONE]",
)


@pytest.mark.asyncio
async def test_openai_stream_fragments():
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["url"] = str(request.url)
        seen["auth"] = request.headers["Authorization"]
        seen["body"] = json.loads(request.content)
        return httpx.Response(200, content=OPENAI_STREAM, headers={"Content-Type": "text/event-stream"})

    fragments = await _collect(_openai(handler))

    assert seen["url"] == "https://llm.test/v1/chat/completions"
    assert seen["auth"] == "Bearer sk-test"
    assert seen["body"]["stream"] is True
    assert seen["body"]["messages"][0] == {"role": "system", "content": "Je bent een assistent."}
    assert seen["body"]["tools"][0]["function"]["name"] == "analyze_customer_request"
    assert seen["body"]["tool_choice"] == "auto"

    text = "".join(f.text for f in fragments if isinstance(f, TextFragment))
    arguments = "".join(f.arguments for f in fragments if isinstance(f, ToolCallFragment))
    assert text == "Vervelend, we komen langs."
    assert json.loads(arguments) == {"urgency": "high", "confidence": 80}
    assert [f.name for f in fragments if isinstance(f, ToolCallFragment) and f.name] == ["analyze_customer_request"]

    last = fragments[-1]
    assert isinstance(last, StreamEnd)
    assert last.finish_reason == "tool_calls"
    assert (last.usage.input_tokens, last.usage.output_tokens) == (120, 40)


@pytest.mark.asyncio
async def test_openai_forced_tool_choice():
    seen = {}

    def handler(request):
        seen["body"] = json.loads(request.content)
        return httpx.Response(200, content=_sse("[DONE]"))

    await _collect(_openai(handler), _request(force_tool=True))

    assert seen["body"]["tool_choice"] == {"type": "function", "function": {"name": "analyze_customer_request"}}


@pytest.mark.asyncio
async def test_anthropic_stream_fragments():
    seen = {}
    stream = _sse(
        ("message_start", {"type": "message_start", "message": {"usage": {"input_tokens": 200, "output_tokens": 1}}}),
        ("content_block_start", {"type": "content_block_start", "index": 0, "content_block": {"type": "text", "text": ""}}),
        ("content_block_delta", {"type": "content_block_delta", "index": 0, "delta": {"type": "text_delta", "text": "Analyse klaar."}}),
        ("content_block_start", {"type": "content_block_start", "index": 1, "content_block": {"type": "tool_use", "name": "provide_detailed_analysis"}}),
        ("content_block_delta", {"type": "content_block_delta", "index": 1, "delta": {"type": "input_json_delta", "partial_json": "{\"summary\": "}}),
        ("content_block_delta", {"type": "content_block_delta", "index": 1, "delta": {"type": "input_json_delta", "partial_json": "\"Lek\"}"}}),
        ("message_delta", {"type": "message_delta", "delta": {"stop_reason": "tool_use"}, "usage": {"output_tokens": 55}}),
        ("message_stop", {"type": "message_stop"}),
    )

    def handler(request):
        seen["headers"] = request.headers
        seen["body"] = json.loads(request.content)
        return httpx.Response(200, content=stream)

    fragments = await _collect(_anthropic(handler), _request(force_tool=True))

    assert seen["headers"]["x-api-key"] == "ant-test"
    assert seen["headers"]["anthropic-version"] == "2023-06-01"
    assert seen["body"]["system"] == "Je bent een assistent."
    assert seen["body"]["tools"][0]["input_schema"] == CHAT_TOOL.parameters
    assert seen["body"]["tool_choice"] == {"type": "tool", "name": "analyze_customer_request"}

    assert fragments[0] == TextFragment(text="Analyse klaar.")
    assert fragments[1] == ToolCallFragment(name="provide_detailed_analysis")
    arguments = "".join(f.arguments for f in fragments if isinstance(f, ToolCallFragment))
    assert json.loads(arguments) == {"summary": "Lek"}
    last = fragments[-1]
    assert last.finish_reason == "tool_use"
    assert (last.usage.input_tokens, last.usage.output_tokens) == (200, 55)


@pytest.mark.asyncio
@pytest.mark.parametrize("status_code,reason", [(500, "http_500"), (503, "http_503"), (429, "rate_limited"), (408, "http_408")])
async def test_retryable_status_is_transient(status_code, reason):
    client = _openai(lambda request: httpx.Response(status_code, text="try later"))

    with pytest.raises(TransientDispatchFailure) as exc_info:
        await _collect(client)

    assert exc_info.value.reason == reason
    assert exc_info.value.status_code == status_code
    assert exc_info.value.backend == OPENAI_BACKEND


@pytest.mark.asyncio
@pytest.mark.parametrize("status_code", [400, 401, 403, 404])
async def test_client_error_is_rejected(status_code):
    client = _anthropic(lambda request: httpx.Response(status_code, text="nope"))

    with pytest.raises(BackendRejected) as exc_info:
        await _collect(client)

    assert exc_info.value.status_code == status_code
    assert exc_info.value.backend == ANTHROPIC_BACKEND


@pytest.mark.asyncio
async def test_missing_api_key_is_rejected_without_request():
    calls = []

    def handler(request):
        calls.append(request)
        return httpx.Response(200, content=OPENAI_STREAM)

    with pytest.raises(BackendRejected):
        await _collect(_openai(handler, api_key=None))
    assert calls == []


@pytest.mark.asyncio
async def test_cut_stream_is_transient():
    stream = _sse({"choices": [{"delta": {"content": "Half"}}]})
    client = _openai(lambda request: httpx.Response(200, content=stream))

    with pytest.raises(TransientDispatchFailure) as exc_info:
        await _collect(client)

    assert exc_info.value.reason == "stream_cut"


@pytest.mark.asyncio
async def test_malformed_chunk_is_transient():
    client = _openai(lambda request: httpx.Response(200, content=b"data: {not json\n\n"))

    with pytest.raises(TransientDispatchFailure) as exc_info:
        await _collect(client)

    assert exc_info.value.reason == "malformed_stream"


@pytest.mark.asyncio
async def test_in_stream_error_event_is_transient():
    stream = _sse(("error", {"type": "error", "error": {"type": "overloaded_error", "message": "Overloaded"}}))
    client = _anthropic(lambda request: httpx.Response(200, content=stream))

    with pytest.raises(TransientDispatchFailure) as exc_info:
        await _collect(client)

    assert exc_info.value.reason == "stream_error"


@pytest.mark.asyncio
async def test_network_error_is_transient():
    def handler(request):
        raise httpx.ConnectError("connection refused", request=request)

    with pytest.raises(TransientDispatchFailure) as exc_info:
        await _collect(_openai(handler))

    assert exc_info.value.reason == "network"


@pytest.mark.asyncio
async def test_timeout_is_transient():
    def handler(request):
        raise httpx.ReadTimeout("read timed out", request=request)

    with pytest.raises(TransientDispatchFailure) as exc_info:
        await _collect(_openai(handler))

    assert exc_info.value.reason == "timeout"


@pytest.mark.asyncio
async def test_open_circuit_short_circuits_requests():
    calls = []

    def handler(request):
        calls.append(request)
        return httpx.Response(502, text="bad gateway")

    breaker = CircuitBreaker("test_llm", min_requests_for_threshold=2, failure_threshold=0.5)
    client = _openai(handler, circuit_breaker=breaker)

    for _ in range(2):
        with pytest.raises(TransientDispatchFailure):
            await _collect(client)
    assert breaker.state == CircuitState.OPEN

    with pytest.raises(TransientDispatchFailure) as exc_info:
        await _collect(client)
    assert exc_info.value.reason == "circuit_open"
    assert len(calls) == 2


@pytest.mark.asyncio
async def test_rejections_do_not_open_the_circuit():
    breaker = CircuitBreaker("test_llm_rejected", min_requests_for_threshold=2)
    client = _openai(lambda request: httpx.Response(400, text="bad request"), circuit_breaker=breaker)

    for _ in range(3):
        with pytest.raises(BackendRejected):
            await _collect(client)

    assert breaker.state == CircuitState.CLOSED


def test_build_backend_clients(settings, registry):
    clients = build_backend_clients(settings, registry)

    assert isinstance(clients[OPENAI_BACKEND], OpenAIChatClient)
    assert isinstance(clients[ANTHROPIC_BACKEND], AnthropicMessagesClient)
    assert clients[OPENAI_BACKEND].model == settings.fast_model
    assert clients[ANTHROPIC_BACKEND].api_key == settings.anthropic_api_key
