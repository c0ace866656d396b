"""
Pytest configuration and fixtures.
"""

import json
import os
from decimal import Decimal
from unittest.mock import patch

import pytest


@pytest.fixture(autouse=True)
def mock_env_vars():
    """Mock environment variables for tests."""
    env_vars = {
        "PUBLIC_HOST": "test.ngrok.io",
        "PORT": "7860",
        "LOG_LEVEL": "DEBUG",
        "TWILIO_ACCOUNT_SID": "",
        "TWILIO_AUTH_TOKEN": "",
        "OPENAI_API_KEY": "",
        "MODEL_MODE": "completion",
        "ADMIN_TOKEN": "",
        "RELAY_SCHEMA_NEGOTIATION": "false",
        "LOCAL_INTENTS_ENABLED": "true",
        "USE_SSML": "false",
        "PRICING_SOURCE": "data/zip_rules.json",
        "PRICING_ETA_POLICY": "minimum",
    }

    with patch.dict(os.environ, env_vars):
        # Clear config cache and process-wide singletons
        from src.callbridge import llm, pricing, registry
        from src.callbridge.config import get_config

        get_config.cache_clear()
        pricing.reset_pricing_store()
        registry._registry = None
        llm._completion_client = None
        yield
        get_config.cache_clear()
        pricing.reset_pricing_store()
        registry._registry = None
        llm._completion_client = None


@pytest.fixture
def sample_table():
    """Small pricing table with one cheap and one expensive ZIP."""
    from src.callbridge.pricing import PricingEntry, PricingTable

    entries = {
        "95816": PricingEntry(postal_code="95816", minimum=Decimal("40"), fee=Decimal("1.99"), lead_minutes=30),
        "95841": PricingEntry(postal_code="95841", minimum=Decimal("90"), fee=Decimal("5.99"), lead_minutes=90),
        "95630": PricingEntry(
            postal_code="95630",
            minimum=Decimal("150"),
            fee=Decimal("9.99"),
            eta_window="2 to 4 hours",
            last_call_minutes=120,
        ),
    }
    return PricingTable(entries=entries, source="test")


@pytest.fixture
def relay_setup_message():
    """Sample ConversationRelay setup message."""
    return json.dumps({
        "type": "setup",
        "sessionId": "VX123456",
        "callSid": "CA789012",
        "from": "+19165550100",
        "to": "+19165071000",
        "customParameters": {},
    })


@pytest.fixture
def relay_prompt():
    """Build ConversationRelay prompt messages."""
    def _build(text: str, last: bool = True) -> str:
        return json.dumps({"type": "prompt", "voicePrompt": text, "lang": "en-US", "last": last})

    return _build
