"""
Capability registry.

Immutable, process-wide table describing each backend: strengths, context
window, per-token cost, streaming/image/extended-reasoning support and speed
class. Built once per process and shared by all concurrent turns without
locking.
"""
from types import MappingProxyType
from typing import Iterable, List, Mapping, Optional

from dispatch_ai.core.config import Settings, get_settings
from dispatch_ai.core.logging import get_logger
from dispatch_ai.services.ai.errors import UnknownBackend
from dispatch_ai.services.ai.schema import ModelCapabilities

logger = get_logger(__name__)

OPENAI_BACKEND = "openai"
ANTHROPIC_BACKEND = "anthropic"

CUSTOMER_FACING_TAG = "customer_interaction"
DETAILED_ANALYSIS_TAG = "detailed_analysis"

USE_CASE_BACKENDS: Mapping[str, str] = MappingProxyType({
    "customer_chat": OPENAI_BACKEND,
    "emergency_response": OPENAI_BACKEND,
    "dutch_support": OPENAI_BACKEND,
    "image_analysis": OPENAI_BACKEND,
    "cost_estimation": ANTHROPIC_BACKEND,
    "technical_planning": ANTHROPIC_BACKEND,
    "long_conversation": ANTHROPIC_BACKEND,
    "complex_reasoning": ANTHROPIC_BACKEND,
    "backend_analysis": ANTHROPIC_BACKEND,
})


def default_capabilities(settings: Settings) -> List[ModelCapabilities]:
    return [
        ModelCapabilities(
            backend_id=OPENAI_BACKEND,
            model=settings.fast_model,
            strengths=frozenset({
                CUSTOMER_FACING_TAG,
                "dutch_language",
                "emergency_handling",
                "multimodal",
                "instruction_following",
                "streaming_responses",
            }),
            context_window=32_000,
            cost_per_million_input=20.0,
            cost_per_million_output=60.0,
            supports_streaming=True,
            supports_images=True,
            supports_extended_reasoning=False,
            speed="fast",
        ),
        ModelCapabilities(
            backend_id=ANTHROPIC_BACKEND,
            model=settings.reasoning_model,
            strengths=frozenset({
                "extended_reasoning",
                "complex_planning",
                "large_context",
                DETAILED_ANALYSIS_TAG,
                "cost_estimation",
                "technical_accuracy",
            }),
            context_window=200_000,
            cost_per_million_input=15.0,
            cost_per_million_output=75.0,
            supports_streaming=True,
            supports_images=True,
            supports_extended_reasoning=True,
            speed="medium",
        ),
    ]


class CapabilityRegistry:
    """Read-only lookup of backend capabilities, in registration order."""

    def __init__(self, entries: Iterable[ModelCapabilities]):
        table = {}
        for entry in entries:
            if entry.backend_id in table:
                raise ValueError(f"Duplicate backend id: {entry.backend_id}")
            table[entry.backend_id] = entry
        if not table:
            raise ValueError("Capability registry needs at least one backend")
        self._entries: Mapping[str, ModelCapabilities] = MappingProxyType(table)

    def capabilities(self, backend_id: str) -> ModelCapabilities:
        """
        Raises:
            UnknownBackend if ``backend_id`` is not registered.
        """
        try:
            return self._entries[backend_id]
        except KeyError:
            raise UnknownBackend(f"Unknown backend: {backend_id}", backend=backend_id) from None

    def all(self) -> List[ModelCapabilities]:
        return list(self._entries.values())

    def backend_ids(self) -> List[str]:
        return list(self._entries)

    def find_by_strength(self, tag: str) -> ModelCapabilities:
        """First backend carrying ``tag``."""
        for entry in self._entries.values():
            if tag in entry.strengths:
                return entry
        raise UnknownBackend(f"No backend with strength {tag!r}")

    def recommended_for(self, use_case: str) -> Optional[ModelCapabilities]:
        backend_id = USE_CASE_BACKENDS.get(use_case)
        if backend_id is None or backend_id not in self._entries:
            return None
        return self._entries[backend_id]

    def estimate_cost(self, backend_id: str, input_tokens: int, output_tokens: int) -> float:
        """Cost in USD of one call, from the per-million token prices."""
        caps = self.capabilities(backend_id)
        return (
            input_tokens / 1_000_000 * caps.cost_per_million_input
            + output_tokens / 1_000_000 * caps.cost_per_million_output
        )


_registry: Optional[CapabilityRegistry] = None


def get_capability_registry() -> CapabilityRegistry:
    """Global registry accessor."""
    global _registry
    if _registry is None:
        _registry = CapabilityRegistry(default_capabilities(get_settings()))
        logger.info("capability_registry_loaded", backends=_registry.backend_ids())
    return _registry
