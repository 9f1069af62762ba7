"""
Streaming LLM backend clients.

Design constraints:
- Do NOT use provider SDKs
- Use an HTTP client (httpx) and parse server-sent events directly
- Emit provider-neutral fragments (TextFragment, ToolCallFragment, StreamEnd)
  so the reducers never see provider wire formats

Backends:
- "openai": OpenAI-compatible /chat/completions (``data:`` lines, ``[DONE]``)
- "anthropic": Anthropic Messages API /messages (typed SSE events)

Failure mapping:
- timeouts, network errors, HTTP 5xx/408/429, an open circuit, malformed or
  cut streams -> TransientDispatchFailure (retried by the orchestrator)
- other HTTP 4xx, missing API key -> BackendRejected (not retried)
"""
import json
import time
from typing import Any, AsyncIterator, Dict, List, Optional, Tuple, Union

import httpx

from dispatch_ai.core.circuit_breaker import CircuitBreaker, CircuitBreakerOpenError
from dispatch_ai.core.config import Settings, get_settings
from dispatch_ai.core.logging import get_logger
from dispatch_ai.core.metrics import (
    record_llm_error,
    record_llm_request,
    record_llm_tokens_and_cost,
)
from dispatch_ai.services.ai.errors import BackendRejected, TransientDispatchFailure
from dispatch_ai.services.ai.registry import (
    ANTHROPIC_BACKEND,
    OPENAI_BACKEND,
    CapabilityRegistry,
    get_capability_registry,
)
from dispatch_ai.services.ai.schema import (
    BackendRequest,
    StreamEnd,
    TextFragment,
    TokenUsage,
    ToolCallFragment,
)

logger = get_logger(__name__)

Fragment = Union[TextFragment, ToolCallFragment, StreamEnd]

RETRYABLE_STATUS_CODES = {408, 429}


async def iter_sse(response: httpx.Response) -> AsyncIterator[Tuple[Optional[str], str]]:
    """Yield (event, data) pairs of a server-sent event stream."""
    event: Optional[str] = None
    data_lines: List[str] = []
    async for line in response.aiter_lines():
        if line == "":
            if data_lines:
                yield event, "\n".join(data_lines)
            event = None
            data_lines = []
            continue
        if line.startswith(":"):
            continue
        field, _, value = line.partition(":")
        if value.startswith(" "):
            value = value[1:]
        if field == "event":
            event = value
        elif field == "data":
            data_lines.append(value)
    if data_lines:
        yield event, "\n".join(data_lines)


class BackendClient:
    """
    Base class for streaming backend clients.

    Subclasses provide the endpoint, headers, request payload and the
    translation of provider events into fragments.
    """

    backend_id = ""
    path = ""

    def __init__(
        self,
        model: str,
        api_base: str,
        api_key: Optional[str],
        timeout_seconds: float = 30.0,
        registry: Optional[CapabilityRegistry] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        circuit_breaker: Optional[CircuitBreaker] = None,
    ):
        self.model = model
        self.api_base = api_base.rstrip("/")
        self.api_key = api_key
        self.timeout_seconds = timeout_seconds
        self.registry = registry
        self._transport = transport

        self.circuit_breaker = circuit_breaker or CircuitBreaker(
            name=f"llm_{self.backend_id}",
            failure_threshold=0.5,
            time_window_seconds=60,
            open_duration_seconds=30,
        )

    def headers(self) -> Dict[str, str]:
        raise NotImplementedError

    def build_payload(self, request: BackendRequest) -> Dict[str, Any]:
        raise NotImplementedError

    def fragments(self, response: httpx.Response) -> AsyncIterator[Fragment]:
        raise NotImplementedError

    def _decode(self, data: str) -> Dict[str, Any]:
        try:
            decoded = json.loads(data)
        except json.JSONDecodeError as exc:
            raise TransientDispatchFailure(
                f"Malformed stream chunk from {self.backend_id}: {exc}",
                reason="malformed_stream",
                backend=self.backend_id,
            ) from exc
        if not isinstance(decoded, dict):
            raise TransientDispatchFailure(
                f"Unexpected stream chunk from {self.backend_id}",
                reason="malformed_stream",
                backend=self.backend_id,
            )
        return decoded

    def _status_error(self, status_code: int, body: bytes) -> Exception:
        detail = body.decode("utf-8", errors="replace")[:500]
        if status_code >= 500 or status_code in RETRYABLE_STATUS_CODES:
            error_type = "rate_limited" if status_code == 429 else f"http_{status_code}"
            record_llm_error(self.backend_id, error_type)
            return TransientDispatchFailure(
                f"{self.backend_id} returned HTTP {status_code}: {detail}",
                reason=error_type,
                status_code=status_code,
                backend=self.backend_id,
            )
        record_llm_error(self.backend_id, "http_4xx")
        return BackendRejected(
            f"{self.backend_id} rejected the request with HTTP {status_code}: {detail}",
            status_code=status_code,
            backend=self.backend_id,
        )

    def _record_usage(self, usage: TokenUsage) -> None:
        cost_usd = 0.0
        if self.registry is not None:
            cost_usd = self.registry.estimate_cost(self.backend_id, usage.input_tokens, usage.output_tokens)
        record_llm_tokens_and_cost(
            backend=self.backend_id,
            input_tokens=usage.input_tokens,
            output_tokens=usage.output_tokens,
            cost_usd=cost_usd,
        )

    async def stream(self, request: BackendRequest) -> AsyncIterator[Fragment]:
        """
        Stream one backend call as fragments, ending with exactly one StreamEnd.

        Raises:
            BackendRejected: the provider refused the call (not retryable)
            TransientDispatchFailure: anything worth retrying
        """
        if not self.api_key:
            record_llm_error(self.backend_id, "missing_api_key")
            raise BackendRejected(f"API key for {self.backend_id} is not configured", backend=self.backend_id)

        payload = self.build_payload(request)
        url = f"{self.api_base}{self.path}"
        start = time.time()
        ended = False

        try:
            async with self.circuit_breaker.guard(excluded=(BackendRejected,)):
                async with httpx.AsyncClient(timeout=self.timeout_seconds, transport=self._transport) as client:
                    async with client.stream("POST", url, headers=self.headers(), json=payload) as response:
                        if response.status_code != 200:
                            body = await response.aread()
                            raise self._status_error(response.status_code, body)

                        async for fragment in self.fragments(response):
                            if isinstance(fragment, StreamEnd):
                                ended = True
                                self._record_usage(fragment.usage)
                            yield fragment

                        if not ended:
                            record_llm_error(self.backend_id, "stream_cut")
                            raise TransientDispatchFailure(
                                f"{self.backend_id} stream ended before completion",
                                reason="stream_cut",
                                backend=self.backend_id,
                            )
        except CircuitBreakerOpenError as exc:
            record_llm_error(self.backend_id, "circuit_open")
            logger.warning("llm_circuit_open", backend=self.backend_id)
            raise TransientDispatchFailure(str(exc), reason="circuit_open", backend=self.backend_id) from exc
        except httpx.TimeoutException as exc:
            record_llm_error(self.backend_id, "timeout")
            logger.warning(
                "llm_timeout",
                backend=self.backend_id,
                error=str(exc),
                error_type=type(exc).__name__,
            )
            raise TransientDispatchFailure(
                f"{self.backend_id} timed out", reason="timeout", backend=self.backend_id
            ) from exc
        except httpx.HTTPError as exc:
            record_llm_error(self.backend_id, "network")
            logger.warning(
                "llm_http_error",
                backend=self.backend_id,
                error=str(exc),
                error_type=type(exc).__name__,
            )
            raise TransientDispatchFailure(
                f"{self.backend_id} network error: {exc}", reason="network", backend=self.backend_id
            ) from exc
        finally:
            record_llm_request(self.backend_id, self.model, time.time() - start)


class OpenAIChatClient(BackendClient):
    """OpenAI-compatible streaming chat completions with function tools."""

    backend_id = OPENAI_BACKEND
    path = "/chat/completions"

    def headers(self) -> Dict[str, str]:
        return {
            "Content-Type": "application/json",
            "Authorization": f"Bearer {self.api_key}",
        }

    def build_payload(self, request: BackendRequest) -> Dict[str, Any]:
        messages = [{"role": "system", "content": request.system_prompt}]
        messages.extend({"role": turn.role, "content": turn.content} for turn in request.messages)
        payload: Dict[str, Any] = {
            "model": self.model,
            "messages": messages,
            "stream": True,
            "stream_options": {"include_usage": True},
            "temperature": request.temperature,
            "max_tokens": request.max_tokens,
        }
        if request.tool is not None:
            payload["tools"] = [{
                "type": "function",
                "function": {
                    "name": request.tool.name,
                    "description": request.tool.description,
                    "parameters": request.tool.parameters,
                },
            }]
            if request.force_tool:
                payload["tool_choice"] = {"type": "function", "function": {"name": request.tool.name}}
            else:
                payload["tool_choice"] = "auto"
        return payload

    async def fragments(self, response: httpx.Response) -> AsyncIterator[Fragment]:
        finish_reason: Optional[str] = None
        usage = TokenUsage()
        async for _, data in iter_sse(response):
            if data.strip() == "[DONE]":
                yield StreamEnd(finish_reason=finish_reason, usage=usage)
                return

            chunk = self._decode(data)
            if chunk.get("error"):
                record_llm_error(self.backend_id, "stream_error")
                raise TransientDispatchFailure(
                    f"{self.backend_id} stream error: {chunk['error']}",
                    reason="stream_error",
                    backend=self.backend_id,
                )
            if chunk.get("usage"):
                usage = TokenUsage(
                    input_tokens=int(chunk["usage"].get("prompt_tokens") or 0),
                    output_tokens=int(chunk["usage"].get("completion_tokens") or 0),
                )
            for choice in chunk.get("choices") or []:
                delta = choice.get("delta") or {}
                if delta.get("content"):
                    yield TextFragment(text=delta["content"])
                for call in delta.get("tool_calls") or []:
                    function = call.get("function") or {}
                    name = function.get("name")
                    arguments = function.get("arguments") or ""
                    if name or arguments:
                        yield ToolCallFragment(name=name, arguments=arguments)
                if choice.get("finish_reason"):
                    finish_reason = choice["finish_reason"]


class AnthropicMessagesClient(BackendClient):
    """Anthropic Messages API streaming with tool use."""

    backend_id = ANTHROPIC_BACKEND
    path = "/messages"

    def __init__(self, *args, anthropic_version: str = "2023-06-01", **kwargs):
        super().__init__(*args, **kwargs)
        self.anthropic_version = anthropic_version

    def headers(self) -> Dict[str, str]:
        return {
            "Content-Type": "application/json",
            "x-api-key": self.api_key or "",
            "anthropic-version": self.anthropic_version,
        }

    def build_payload(self, request: BackendRequest) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "model": self.model,
            "system": request.system_prompt,
            "messages": [{"role": turn.role, "content": turn.content} for turn in request.messages],
            "max_tokens": request.max_tokens,
            "temperature": request.temperature,
            "stream": True,
        }
        if request.tool is not None:
            payload["tools"] = [{
                "name": request.tool.name,
                "description": request.tool.description,
                "input_schema": request.tool.parameters,
            }]
            if request.force_tool:
                payload["tool_choice"] = {"type": "tool", "name": request.tool.name}
            else:
                payload["tool_choice"] = {"type": "auto"}
        return payload

    async def fragments(self, response: httpx.Response) -> AsyncIterator[Fragment]:
        finish_reason: Optional[str] = None
        input_tokens = 0
        output_tokens = 0
        async for event, data in iter_sse(response):
            payload = self._decode(data)
            event_type = payload.get("type") or event

            if event_type == "message_start":
                usage = (payload.get("message") or {}).get("usage") or {}
                input_tokens = int(usage.get("input_tokens") or 0)
                output_tokens = int(usage.get("output_tokens") or 0)
            elif event_type == "content_block_start":
                block = payload.get("content_block") or {}
                if block.get("type") == "tool_use":
                    yield ToolCallFragment(name=block.get("name"))
                elif block.get("type") == "text" and block.get("text"):
                    yield TextFragment(text=block["text"])
            elif event_type == "content_block_delta":
                delta = payload.get("delta") or {}
                if delta.get("type") == "text_delta" and delta.get("text"):
                    yield TextFragment(text=delta["text"])
                elif delta.get("type") == "input_json_delta" and delta.get("partial_json"):
                    yield ToolCallFragment(arguments=delta["partial_json"])
            elif event_type == "message_delta":
                finish_reason = (payload.get("delta") or {}).get("stop_reason") or finish_reason
                usage = payload.get("usage") or {}
                output_tokens = int(usage.get("output_tokens") or output_tokens)
            elif event_type == "message_stop":
                yield StreamEnd(
                    finish_reason=finish_reason,
                    usage=TokenUsage(input_tokens=input_tokens, output_tokens=output_tokens),
                )
                return
            elif event_type == "error":
                error = payload.get("error") or {}
                record_llm_error(self.backend_id, "stream_error")
                raise TransientDispatchFailure(
                    f"{self.backend_id} stream error: {error.get('type')}: {error.get('message')}",
                    reason="stream_error",
                    backend=self.backend_id,
                )


def build_backend_clients(
    settings: Settings,
    registry: CapabilityRegistry,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> Dict[str, BackendClient]:
    """One client per registered backend, keyed by backend id."""
    return {
        OPENAI_BACKEND: OpenAIChatClient(
            model=registry.capabilities(OPENAI_BACKEND).model,
            api_base=settings.openai_api_base,
            api_key=settings.openai_api_key,
            timeout_seconds=settings.attempt_timeout_seconds,
            registry=registry,
            transport=transport,
        ),
        ANTHROPIC_BACKEND: AnthropicMessagesClient(
            model=registry.capabilities(ANTHROPIC_BACKEND).model,
            api_base=settings.anthropic_api_base,
            api_key=settings.anthropic_api_key,
            timeout_seconds=settings.attempt_timeout_seconds,
            registry=registry,
            transport=transport,
            anthropic_version=settings.anthropic_version,
        ),
    }


_backend_clients: Optional[Dict[str, BackendClient]] = None


def get_backend_clients() -> Dict[str, BackendClient]:
    """Global backend clients, built from settings on first use."""
    global _backend_clients
    if _backend_clients is None:
        _backend_clients = build_backend_clients(get_settings(), get_capability_registry())
    return _backend_clients
