"""
Tests for live call transfer.
"""

import dataclasses
from unittest.mock import MagicMock

import pytest
from twilio.base.exceptions import TwilioRestException

from src.callbridge.config import get_config
from src.callbridge.transfer import TransferError, TwilioCallTransfer, create_transfer_client


def twilio_config():
    return dataclasses.replace(get_config(), twilio_account_sid="ACtest", twilio_auth_token="token")


class TestTwilioCallTransfer:
    @pytest.mark.asyncio
    async def test_updates_live_call(self):
        rest_client = MagicMock()
        transfer = TwilioCallTransfer(twilio_config(), client=rest_client)

        await transfer.transfer("CA789012")

        rest_client.calls.assert_called_once_with("CA789012")
        twiml = rest_client.calls.return_value.update.call_args.kwargs["twiml"]
        assert "<Dial>+19165071099</Dial>" in twiml
        assert "<Say" in twiml

    @pytest.mark.asyncio
    async def test_missing_call_sid(self):
        rest_client = MagicMock()
        transfer = TwilioCallTransfer(twilio_config(), client=rest_client)

        with pytest.raises(TransferError):
            await transfer.transfer("")
        rest_client.calls.assert_not_called()

    @pytest.mark.asyncio
    async def test_twilio_rejection(self):
        rest_client = MagicMock()
        rest_client.calls.return_value.update.side_effect = TwilioRestException(
            400, "/Calls/CA789012.json", msg="Call is not in-progress"
        )
        transfer = TwilioCallTransfer(twilio_config(), client=rest_client)

        with pytest.raises(TransferError, match="rejected"):
            await transfer.transfer("CA789012")

    @pytest.mark.asyncio
    async def test_network_failure(self):
        rest_client = MagicMock()
        rest_client.calls.return_value.update.side_effect = ConnectionError("reset")
        transfer = TwilioCallTransfer(twilio_config(), client=rest_client)

        with pytest.raises(TransferError, match="reset"):
            await transfer.transfer("CA789012")


def test_factory_requires_credentials():
    assert create_transfer_client() is None
    assert isinstance(create_transfer_client(twilio_config()), TwilioCallTransfer)
