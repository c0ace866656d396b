"""
Tests for ConversationRelay protocol handling.
"""

import json

import pytest

from src.callbridge.relay_protocol import (
    OUTBOUND_SCHEMAS,
    RelayDTMFEvent,
    RelayErrorEvent,
    RelayEventType,
    RelayInterruptEvent,
    RelayPromptEvent,
    RelaySetupEvent,
    is_schema_rejection,
    parse_relay_message,
    render_text_message,
)


class TestMessageParsing:
    """Tests for parsing ConversationRelay messages."""

    def test_parse_setup_event(self, relay_setup_message):
        event_type, event = parse_relay_message(relay_setup_message)

        assert event_type == RelayEventType.SETUP
        assert isinstance(event, RelaySetupEvent)
        assert event.session_id == "VX123456"
        assert event.call_sid == "CA789012"
        assert event.from_number == "+19165550100"
        assert event.custom_parameters == {}

    def test_parse_prompt_event(self):
        message = json.dumps({"type": "prompt", "voicePrompt": "Are you open?", "lang": "en-US", "last": False})

        event_type, event = parse_relay_message(message)

        assert event_type == RelayEventType.PROMPT
        assert isinstance(event, RelayPromptEvent)
        assert event.voice_prompt == "Are you open?"
        assert event.lang == "en-US"
        assert event.last is False

    def test_prompt_last_defaults_to_true(self):
        _, event = parse_relay_message(json.dumps({"type": "prompt", "voicePrompt": "hi"}))
        assert event.last is True

    def test_parse_interrupt_event(self):
        message = json.dumps({
            "type": "interrupt",
            "utteranceUntilInterrupt": "Our hours are",
            "durationUntilInterruptMs": "850",
        })

        event_type, event = parse_relay_message(message)

        assert event_type == RelayEventType.INTERRUPT
        assert isinstance(event, RelayInterruptEvent)
        assert event.utterance_until_interrupt == "Our hours are"
        assert event.duration_until_interrupt_ms == 850

    def test_parse_dtmf_event(self):
        event_type, event = parse_relay_message(json.dumps({"type": "dtmf", "digit": "5"}))

        assert event_type == RelayEventType.DTMF
        assert isinstance(event, RelayDTMFEvent)
        assert event.digit == "5"

    def test_parse_error_event(self):
        event_type, event = parse_relay_message(json.dumps({"type": "error", "description": "Invalid message"}))

        assert event_type == RelayEventType.ERROR
        assert isinstance(event, RelayErrorEvent)
        assert event.description == "Invalid message"

    def test_parse_bytes(self):
        event_type, _ = parse_relay_message(b'{"type": "dtmf", "digit": "1"}')
        assert event_type == RelayEventType.DTMF

    @pytest.mark.parametrize("raw", [
        "not json",
        "",
        "[1, 2, 3]",
        '"prompt"',
        '{"type": "unknown"}',
        '{"voicePrompt": "no type"}',
    ])
    def test_parse_rejects_bad_messages(self, raw):
        with pytest.raises(ValueError):
            parse_relay_message(raw)


class TestOutboundMessages:
    """Tests for rendering outbound text replies."""

    def test_default_shape(self):
        message = json.loads(render_text_message("Hello", last=True))
        assert message == {"type": "text", "token": "Hello", "last": True}

    def test_alternate_shapes(self):
        assert json.loads(render_text_message("Hi", False, 1)) == {"type": "text", "text": "Hi", "last": False}
        assert json.loads(render_text_message("Hi", True, 2)) == {
            "type": "assistant",
            "modality": "speech",
            "content": "Hi",
            "last": True,
        }

    def test_index_is_clamped(self):
        last_shape = render_text_message("Hi", True, len(OUTBOUND_SCHEMAS) - 1)
        assert render_text_message("Hi", True, 99) == last_shape
        assert render_text_message("Hi", True, -3) == render_text_message("Hi", True, 0)

    def test_empty_end_of_turn(self):
        message = json.loads(render_text_message("", last=True))
        assert message["token"] == ""
        assert message["last"] is True


class TestSchemaRejection:
    @pytest.mark.parametrize("description", [
        "Invalid message received",
        "Message failed schema validation",
        "Unrecognized field 'token'",
        "Missing required property: text",
    ])
    def test_rejections(self, description):
        assert is_schema_rejection(RelayErrorEvent(description=description)) is True

    @pytest.mark.parametrize("description", ["", "TTS provider timeout", "Call ended"])
    def test_other_errors(self, description):
        assert is_schema_rejection(RelayErrorEvent(description=description)) is False

    def test_none(self):
        assert is_schema_rejection(None) is False
