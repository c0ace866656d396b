"""
Tests for TwiML generation.
"""

import dataclasses
import xml.etree.ElementTree as ET

from src.callbridge.config import get_config
from src.callbridge.twiml import TRANSFER_HANDOFF_LINE, build_transfer_twiml, build_voice_twiml


class TestVoiceTwiml:
    def test_connects_conversation_relay(self):
        root = ET.fromstring(build_voice_twiml())

        assert root.tag == "Response"
        relay = root.find("./Connect/ConversationRelay")
        assert relay is not None
        assert relay.get("url") == "wss://test.ngrok.io/ws/relay"
        assert relay.get("welcomeGreeting").startswith("Thanks for calling Crystal Nugs Dispensary")

    def test_relay_url_override_and_voice(self):
        config = dataclasses.replace(
            get_config(),
            relay_url_override="wss://relay.example.com/custom",
            welcome_greeting="Hi there!",
            tts_provider="ElevenLabs",
            tts_voice="UgBBYS2sOqTuMpoF3BR0",
        )

        relay = ET.fromstring(build_voice_twiml(config)).find("./Connect/ConversationRelay")

        assert relay.get("url") == "wss://relay.example.com/custom"
        assert relay.get("welcomeGreeting") == "Hi there!"
        assert relay.get("ttsProvider") == "ElevenLabs"
        assert relay.get("voice") == "UgBBYS2sOqTuMpoF3BR0"

    def test_voice_attributes_omitted_by_default(self):
        relay = ET.fromstring(build_voice_twiml()).find("./Connect/ConversationRelay")
        assert relay.get("ttsProvider") is None
        assert relay.get("voice") is None


class TestTransferTwiml:
    def test_says_handoff_then_dials(self):
        root = ET.fromstring(build_transfer_twiml())

        say, dial = list(root)
        assert say.tag == "Say"
        assert say.text == TRANSFER_HANDOFF_LINE
        assert say.get("voice") == "Polly.Joanna-Neural"
        assert dial.tag == "Dial"
        assert dial.text == "+19165071099"

    def test_custom_number(self):
        config = dataclasses.replace(get_config(), transfer_number="+15551234567")
        dial = ET.fromstring(build_transfer_twiml(config)).find("Dial")
        assert dial.text == "+15551234567"
