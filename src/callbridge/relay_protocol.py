"""
Twilio ConversationRelay WebSocket protocol.

Twilio sends JSON messages keyed by "type":
- setup: Connection handshake, carries sessionId and callSid
- prompt: Caller utterance (voicePrompt), with a "last" end-of-turn flag
- interrupt: Caller talked over the assistant
- dtmf: Keypad digit
- error: Twilio rejected something we sent (or failed on its side)

Outbound messages are text replies for Twilio to speak. The exact shape has
changed between protocol versions, so it is rendered from an ordered table of
candidates instead of being hard-coded; a session can step down the table when
Twilio reports that a message was rejected.
"""

import msgspec
from dataclasses import dataclass, field
from typing import Optional, Dict, Any, Tuple
from enum import Enum

import structlog

logger = structlog.get_logger(__name__)

# Create global msgspec encoder/decoder
decoder = msgspec.json.Decoder()
encoder = msgspec.json.Encoder()


class RelayEventType(str, Enum):
    """ConversationRelay inbound event types."""
    SETUP = "setup"
    PROMPT = "prompt"
    INTERRUPT = "interrupt"
    DTMF = "dtmf"
    ERROR = "error"


@dataclass
class RelaySetupEvent:
    """Parsed setup event."""
    session_id: str
    call_sid: str
    from_number: str = ""
    to_number: str = ""
    custom_parameters: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_message(cls, message: Dict[str, Any]) -> "RelaySetupEvent":
        """Parse from Twilio message."""
        params = message.get("customParameters")
        return cls(
            session_id=str(message.get("sessionId") or ""),
            call_sid=str(message.get("callSid") or ""),
            from_number=str(message.get("from") or ""),
            to_number=str(message.get("to") or ""),
            custom_parameters=params if isinstance(params, dict) else {},
        )


@dataclass
class RelayPromptEvent:
    """Parsed prompt event (one transcribed caller utterance, or part of one)."""
    voice_prompt: str
    lang: str = ""
    last: bool = True

    @classmethod
    def from_message(cls, message: Dict[str, Any]) -> "RelayPromptEvent":
        """Parse from Twilio message."""
        last = message.get("last", True)
        return cls(
            voice_prompt=str(message.get("voicePrompt") or ""),
            lang=str(message.get("lang") or ""),
            last=last if isinstance(last, bool) else True,
        )


@dataclass
class RelayInterruptEvent:
    """Parsed interrupt event."""
    utterance_until_interrupt: str = ""
    duration_until_interrupt_ms: int = 0

    @classmethod
    def from_message(cls, message: Dict[str, Any]) -> "RelayInterruptEvent":
        """Parse from Twilio message."""
        try:
            duration = int(message.get("durationUntilInterruptMs") or 0)
        except (TypeError, ValueError):
            duration = 0
        return cls(
            utterance_until_interrupt=str(message.get("utteranceUntilInterrupt") or ""),
            duration_until_interrupt_ms=duration,
        )


@dataclass
class RelayDTMFEvent:
    """Parsed DTMF event."""
    digit: str

    @classmethod
    def from_message(cls, message: Dict[str, Any]) -> "RelayDTMFEvent":
        """Parse from Twilio message."""
        return cls(digit=str(message.get("digit") or ""))


@dataclass
class RelayErrorEvent:
    """Parsed error event."""
    description: str

    @classmethod
    def from_message(cls, message: Dict[str, Any]) -> "RelayErrorEvent":
        """Parse from Twilio message."""
        return cls(description=str(message.get("description") or ""))


_EVENT_PARSERS = {
    RelayEventType.SETUP: RelaySetupEvent.from_message,
    RelayEventType.PROMPT: RelayPromptEvent.from_message,
    RelayEventType.INTERRUPT: RelayInterruptEvent.from_message,
    RelayEventType.DTMF: RelayDTMFEvent.from_message,
    RelayEventType.ERROR: RelayErrorEvent.from_message,
}


def parse_relay_message(raw_message) -> Tuple[RelayEventType, Any]:
    """
    Parse a raw ConversationRelay WebSocket message.

    Args:
        raw_message: Raw JSON string (or bytes) from Twilio

    Returns:
        Tuple of (event_type, parsed_event)

    Raises:
        ValueError: If the message is not a JSON object with a known type
    """
    try:
        message = decoder.decode(raw_message.encode("utf-8") if isinstance(raw_message, str) else raw_message)
    except (msgspec.DecodeError, TypeError) as e:
        raise ValueError(f"Invalid JSON: {e}")

    if not isinstance(message, dict):
        raise ValueError("Relay message must be a JSON object")

    event_type_str = message.get("type", "")
    try:
        event_type = RelayEventType(event_type_str)
    except ValueError:
        raise ValueError(f"Unknown event type: {event_type_str}")

    return event_type, _EVENT_PARSERS[event_type](message)


# Ordered outbound candidates: (type, text field, extra fields).
# Index 0 is the current documented shape.
OUTBOUND_SCHEMAS: Tuple[Tuple[str, str, Dict[str, Any]], ...] = (
    ("text", "token", {}),
    ("text", "text", {}),
    ("assistant", "content", {"modality": "speech"}),
)


def clamp_schema_index(schema_index: int) -> int:
    return min(max(int(schema_index), 0), len(OUTBOUND_SCHEMAS) - 1)


def render_text_message(token: str, last: bool, schema_index: int = 0) -> str:
    """
    Render one outbound text reply.

    Args:
        token: Text to speak (may be an empty string to end a streamed turn)
        last: True if this message completes the turn
        schema_index: Position in OUTBOUND_SCHEMAS (clamped)

    Returns:
        JSON string to send to Twilio
    """
    event_type, text_field, extra = OUTBOUND_SCHEMAS[clamp_schema_index(schema_index)]
    message: Dict[str, Any] = {"type": event_type}
    message.update(extra)
    message[text_field] = token or ""
    message["last"] = bool(last)
    return encoder.encode(message).decode("utf-8")


_SCHEMA_ERROR_KEYWORDS = (
    "invalid message",
    "invalid json",
    "schema",
    "validation",
    "unrecognized",
    "unknown message",
    "unsupported message",
    "malformed",
    "missing required",
    "missing field",
    "expected",
)


def is_schema_rejection(event: Optional[RelayErrorEvent]) -> bool:
    """True if Twilio is complaining about the shape of a message we sent."""
    if event is None:
        return False
    description = (event.description or "").lower()
    return any(keyword in description for keyword in _SCHEMA_ERROR_KEYWORDS)
