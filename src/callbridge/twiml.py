"""
TwiML documents served to Twilio.

- build_voice_twiml: answers the inbound call by opening a ConversationRelay
  socket to this server, with the welcome greeting Twilio speaks first
- build_transfer_twiml: short handoff line, then dial the transfer number
"""

from typing import Optional

from twilio.twiml.voice_response import Connect, VoiceResponse

from src.callbridge.config import Config, get_config

TRANSFER_HANDOFF_LINE = "Please hold while I connect you with a team member."


def build_voice_twiml(config: Optional[Config] = None) -> str:
    config = config or get_config()

    relay_options = {
        "url": config.relay_url,
        "welcome_greeting": config.greeting,
    }
    if config.tts_provider:
        relay_options["tts_provider"] = config.tts_provider
    if config.tts_voice:
        relay_options["voice"] = config.tts_voice

    connect = Connect()
    connect.conversation_relay(**relay_options)

    response = VoiceResponse()
    response.append(connect)
    return str(response)


def build_transfer_twiml(config: Optional[Config] = None) -> str:
    config = config or get_config()

    response = VoiceResponse()
    response.say(TRANSFER_HANDOFF_LINE, voice=config.transfer_voice)
    response.dial(config.transfer_number)
    return str(response)
