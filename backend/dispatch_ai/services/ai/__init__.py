"""
LLM dispatch services package.

Selects a backend for each customer turn, streams its output and reduces it
into validated structured records:

- registry / router: which backend may and should answer
- llm_client: provider glue (OpenAI-compatible and Anthropic streaming)
- reducer / analysis: fragments in, ChatResponse / DetailedAnalysis out
- orchestration: per-turn lifecycle, retries and failure semantics

Deterministic code decides; the models only answer.
"""
