"""
Unit tests for the chat stream accumulator and reducer.
"""
import pytest

from conftest import chat_payload, end, tool_call
from dispatch_ai.services.ai.errors import ParseFailure, StreamProtocolError
from dispatch_ai.services.ai.reducer import (
    StreamAccumulator,
    compose_reply,
    next_steps_for,
    reduce_chat_stream,
)
from dispatch_ai.services.ai.schema import CostRange, SessionHints, StreamState, TextFragment
from dispatch_ai.services.triage.pricing import build_price_table, estimate_cost


def _state(*fragments):
    accumulator = StreamAccumulator()
    for fragment in fragments:
        accumulator.feed(fragment)
    return accumulator.snapshot()


def test_accumulator_collects_in_order():
    state = _state(
        TextFragment(text="Goed"),
        TextFragment(text="emiddag"),
        *tool_call("analyze_customer_request", {"urgency": "low", "confidence": 50}, chunk_size=5),
        end("tool_calls"),
    )

    assert state.text == "Goedemiddag"
    assert state.tool_name == "analyze_customer_request"
    assert state.tool_arguments == '{"urgency": "low", "confidence": 50}'
    assert state.completed
    assert state.finish_reason == "tool_calls"
    assert state.usage.output_tokens == 34


def test_accumulator_rejects_fragments_after_end():
    accumulator = StreamAccumulator()
    accumulator.feed(end())

    with pytest.raises(StreamProtocolError):
        accumulator.feed(TextFragment(text="te laat"))


def test_accumulator_snapshot_before_end():
    accumulator = StreamAccumulator()
    accumulator.feed(TextFragment(text="half"))

    state = accumulator.snapshot()

    assert not state.completed
    assert state.fragment_count == 1


def test_valid_payload(profile, make_context):
    context = make_context("Mijn kraan lekt onder het aanrecht")
    state = _state(
        TextFragment(text="Vervelend! We komen vandaag nog langs."),
        *tool_call("analyze_customer_request", chat_payload()),
        end(),
    )

    response = reduce_chat_stream(state, context, profile)

    assert not response.fallback
    assert response.text == "Vervelend! We komen vandaag nog langs."
    assert response.urgency == "high"
    assert response.categories == ["leak_repair"]
    assert response.estimated_cost == estimate_cost(["leak_repair"], "high", "nl", build_price_table(profile))
    assert response.confidence == 85
    assert response.extracted_info.customer_name == "Jan de Vries"
    assert response.extracted_info.problem_type == "leak_repair"
    assert not response.should_show_booking_form
    assert response.next_steps == next_steps_for("high", "nl")


def test_keyword_emergency_escalates_reported_urgency(profile, make_context):
    context = make_context("Water stroomt door het plafond naar beneden")
    state = _state(*tool_call("analyze_customer_request", chat_payload(urgency="normal")), end())

    response = reduce_chat_stream(state, context, profile)

    assert response.urgency == "emergency"
    assert response.should_show_booking_form
    assert response.estimated_cost.description.endswith("(spoed)")
    assert response.next_steps == next_steps_for("emergency", "nl")


def test_unknown_categories_fall_back_to_classifier(profile, make_context):
    context = make_context("Mijn afvoer is verstopt")
    payload = chat_payload(categories=["roof_repair"], problem_type="something_else")
    state = _state(TextFragment(text="Ok"), *tool_call("analyze_customer_request", payload), end())

    response = reduce_chat_stream(state, context, profile)

    assert response.categories == ["drain_unclog"]


def test_missing_confidence_uses_default(profile, make_context):
    state = _state(TextFragment(text="Ok"), *tool_call("analyze_customer_request", chat_payload(confidence=None)), end())

    response = reduce_chat_stream(state, make_context(), profile)

    assert response.confidence == 70


def test_payload_without_confidence_key_is_structured(profile, make_context):
    payload = {"urgency": "high", "categories": ["leak_repair"], "should_book": True}
    state = _state(TextFragment(text="Ok"), *tool_call("analyze_customer_request", payload), end())

    response = reduce_chat_stream(state, make_context("Mijn kraan lekt"), profile)

    assert not response.fallback
    assert response.confidence == 70
    assert response.should_show_booking_form


def test_keyword_urgency_raises_lower_reported_urgency(profile, make_context):
    context = make_context("De afvoer is verstopt en loopt over")
    state = _state(TextFragment(text="Ok"), *tool_call("analyze_customer_request", chat_payload(urgency="low")), end())

    response = reduce_chat_stream(state, context, profile)

    assert response.urgency == "high"
    assert response.estimated_cost == estimate_cost(response.categories, "high", "nl", build_price_table(profile))


def test_reported_urgency_above_keywords_is_kept(profile, make_context):
    state = _state(TextFragment(text="Ok"), *tool_call("analyze_customer_request", chat_payload(urgency="high")), end())

    assert reduce_chat_stream(state, make_context("Goedemorgen"), profile).urgency == "high"


def test_out_of_range_confidence_is_clamped(profile, make_context):
    state = _state(TextFragment(text="Ok"), *tool_call("analyze_customer_request", chat_payload(confidence=140)), end())

    assert reduce_chat_stream(state, make_context(), profile).confidence == 100


def test_invalid_json_arguments_use_fallback(profile, make_context):
    context = make_context("Mijn afvoer is verstopt, bel 0612345678")
    state = StreamState(
        text="Er komt zo snel mogelijk iemand langs.",
        tool_name="analyze_customer_request",
        tool_arguments='{"urgency": "high", "confid',
        completed=True,
    )

    response = reduce_chat_stream(state, context, profile)

    assert response.fallback
    assert response.confidence <= 60
    assert response.text == "Er komt zo snel mogelijk iemand langs."
    assert response.urgency == "high"
    assert response.categories == ["drain_unclog"]
    assert response.extracted_info.customer_phone == "0612345678"


def test_schema_violation_uses_fallback(profile, make_context):
    state = _state(
        TextFragment(text="Ik help u graag."),
        *tool_call("analyze_customer_request", {"urgency": "whenever", "confidence": 90}),
        end(),
    )

    response = reduce_chat_stream(state, make_context(), profile)

    assert response.fallback
    assert response.confidence <= 60


def test_unexpected_tool_name_uses_fallback(profile, make_context):
    state = _state(TextFragment(text="Ok"), *tool_call("book_appointment", chat_payload()), end())

    assert reduce_chat_stream(state, make_context(), profile).fallback


def test_text_without_payload_uses_fallback(profile, make_context):
    context = make_context("Hoeveel kost een nieuwe douche?")
    state = _state(TextFragment(text="Een douchecabine plaatsen kost ongeveer 275 euro."), end())

    response = reduce_chat_stream(state, context, profile)

    assert response.fallback
    assert response.categories == ["shower_install"]
    assert response.estimated_cost.min == 275


def test_nothing_usable_escalates(profile, make_context):
    state = _state(end())

    with pytest.raises(ParseFailure) as exc_info:
        reduce_chat_stream(state, make_context(), profile)

    assert exc_info.value.escalated


def test_invalid_payload_without_text_escalates(profile, make_context):
    state = StreamState(tool_name="analyze_customer_request", tool_arguments="{not json", completed=True)

    with pytest.raises(ParseFailure) as exc_info:
        reduce_chat_stream(state, make_context(), profile)

    assert exc_info.value.escalated


def test_payload_without_text_gets_composed_reply(profile, make_context):
    state = _state(*tool_call("analyze_customer_request", chat_payload()), end())

    response = reduce_chat_stream(state, make_context(), profile)

    assert profile.name in response.text
    assert response.text.strip()


def test_session_hints_fill_missing_fields(profile, make_context):
    context = make_context(
        "Wanneer kunt u komen?",
        session=SessionHints(customer_address="Dorpsstraat 12, 3512 AB", customer_phone="0611111111"),
    )
    state = _state(TextFragment(text="Morgen om 10 uur."), end())

    response = reduce_chat_stream(state, context, profile)

    assert response.extracted_info.address == "Dorpsstraat 12, 3512 AB"
    assert response.extracted_info.customer_phone == "0611111111"


def test_reduction_is_pure(profile, make_context):
    context = make_context("De wc loopt over")
    state = _state(TextFragment(text="We komen eraan."), *tool_call("analyze_customer_request", chat_payload()), end())

    assert reduce_chat_stream(state, context, profile) == reduce_chat_stream(state, context, profile)


def test_compose_reply_english(profile):
    cost = CostRange(min=75, max=85, description="Tap replacement")

    reply = compose_reply("normal", cost, "en", profile)

    assert reply.startswith("Thank you for your message.")
    assert "€75-85" in reply
