"""Tests for batch prompt building and output extraction."""

import json

import pytest

from harmony.providers.prompt import (
    MAX_PREFERENCE_SIGNALS,
    OUTPUT_SCHEMA_NAME,
    RESPONSES_ENDPOINT,
    PromptInput,
    build_batch_line,
    build_system_prompt,
    clean_output,
    extract_rewritten_text,
    extract_text,
    minimize_context,
)


def _prompt(**overrides) -> PromptInput:
    fields = {
        "model": "gpt-5-nano",
        "prompt_version": "v1",
        "target_locale": "en",
        "intent": "request",
        "original_text": "Stop blasting music at 2am.",
        "context_pack": {
            "power": {"power_mode": "peer"},
            "recipient_signals": [
                {"preference_id": "communication_directness", "value_key": "gentle"}
            ],
            "preference_payload": {"preferences": {"secret_pref": "very_private"}},
        },
        "policy": {"tone": "gentle", "directness": "soft"},
        "routing_decision": {"provider": "openai", "model": "gpt-5-nano"},
    }
    fields.update(overrides)
    return PromptInput(**fields)


class TestBuildBatchLine:
    def test_line_shape(self):
        line = build_batch_line("job-1", _prompt())

        assert line["custom_id"] == "job-1"
        assert line["method"] == "POST"
        assert line["url"] == RESPONSES_ENDPOINT
        body = line["body"]
        assert body["model"] == "gpt-5-nano"
        assert body["temperature"] == 0.15
        assert body["max_output_tokens"] == 650
        assert body["metadata"] == {"prompt_version": "v1"}
        assert body["text"]["format"]["name"] == OUTPUT_SCHEMA_NAME
        assert body["text"]["format"]["strict"] is True
        assert "Output must be in en." in body["instructions"]

    def test_user_payload_carries_minimized_context_only(self):
        line = build_batch_line("job-1", _prompt())
        payload = json.loads(line["body"]["input"][0]["content"])

        assert line["body"]["input"][0]["role"] == "user"
        assert payload["original_message"] == "Stop blasting music at 2am."
        assert payload["target_language"] == "en"
        assert payload["context_signals"]["power_mode"] == "peer"
        assert payload["context_signals"]["preference_signals"] == [
            {"key": "communication_directness", "value": "gentle"}
        ]
        assert "very_private" not in line["body"]["input"][0]["content"]

    def test_system_prompt_preserves_intent(self):
        prompt = build_system_prompt("pt-BR", "boundary")
        assert "Output must be in pt-BR." in prompt
        assert "Preserve intent: boundary." in prompt


class TestMinimizeContext:
    def test_defaults_without_context(self):
        out = minimize_context(None, None)
        assert out["tone_hints"] == {"directness": "soft", "warmth": "gentle", "brevity": "concise"}
        assert out["policy_hints"]["avoid_blame"] is True
        assert "power_mode" not in out
        assert "preference_signals" not in out

    def test_policy_overrides_tone(self):
        out = minimize_context({}, {"tone": "neutral", "directness": "neutral"})
        assert out["tone_hints"]["warmth"] == "neutral"
        assert out["tone_hints"]["directness"] == "neutral"

    def test_unknown_power_mode_dropped(self):
        out = minimize_context({"power": {"power_mode": "landlord"}}, None)
        assert "power_mode" not in out

    def test_signals_are_bounded(self):
        signals = [{"key": f"k{i}", "value": "v"} for i in range(12)]
        signals.append({"key": "x" * 40, "value": "v"})
        out = minimize_context({"preference_signals": signals}, None)
        assert len(out["preference_signals"]) == MAX_PREFERENCE_SIGNALS

    def test_overlong_signals_filtered(self):
        out = minimize_context(
            {"preference_signals": [{"key": "k", "value": "v" * 33}, {"key": "", "value": "v"}]},
            None,
        )
        assert "preference_signals" not in out


class TestExtraction:
    def test_structured_output_text(self):
        body = {"output_text": json.dumps({"rewritten_text": "Could you keep it down?"})}
        assert extract_rewritten_text(body) == "Could you keep it down?"

    def test_direct_rewritten_text_key(self):
        assert extract_rewritten_text({"rewritten_text": " Hi there "}) == "Hi there"

    def test_responses_output_array(self):
        body = {
            "output": [
                {"type": "reasoning", "content": None},
                {
                    "type": "message",
                    "content": [
                        {"type": "output_text", "text": '{"rewritten_text": "Thanks!"}'}
                    ],
                },
            ]
        }
        assert extract_rewritten_text(body) == "Thanks!"

    def test_chat_completions_body(self):
        body = {"choices": [{"message": {"content": "Rewritten message: \"Please knock.\""}}]}
        assert extract_rewritten_text(body) == "Please knock."

    def test_plain_text_preface_stripped(self):
        body = {"output_text": "Here's a rewritten version: Could we talk later?"}
        assert extract_rewritten_text(body) == "Could we talk later?"

    @pytest.mark.parametrize("body", [None, {}, {"output_text": "   "}, {"choices": []}, "text"])
    def test_empty_bodies(self, body):
        assert extract_rewritten_text(body) == ""
        assert extract_text(body) == ""

    def test_clean_output_strips_curly_quotes(self):
        assert clean_output("“Please knock first.”") == "Please knock first."
