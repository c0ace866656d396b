"""
Live transfer to a person.

Redirects the in-progress call through the Twilio REST API by replacing its
TwiML with a short handoff line and a <Dial> to the transfer number.
"""

import asyncio
from typing import Any, Optional

import structlog
from twilio.base.exceptions import TwilioException
from twilio.rest import Client as TwilioClient

from src.callbridge.config import Config, get_config
from src.callbridge.twiml import build_transfer_twiml

logger = structlog.get_logger(__name__)


class TransferError(Exception):
    """Raised when the call could not be redirected."""
    pass


class TwilioCallTransfer:
    """Call-transfer collaborator backed by the Twilio REST client."""

    def __init__(self, config: Optional[Config] = None, client: Optional[Any] = None):
        self.config = config or get_config()
        self._client = client or TwilioClient(
            self.config.twilio_account_sid,
            self.config.twilio_auth_token,
        )

    async def transfer(self, call_sid: str) -> None:
        """
        Redirect the live call to TRANSFER_NUMBER.

        Raises:
            TransferError: if there's no call SID or Twilio rejects the update
        """
        if not call_sid:
            raise TransferError("No call SID for this session")

        twiml = build_transfer_twiml(self.config)
        try:
            # The REST client is blocking
            await asyncio.to_thread(self._client.calls(call_sid).update, twiml=twiml)
        except TwilioException as e:
            raise TransferError(f"Twilio rejected the transfer: {e}") from e
        except Exception as e:
            raise TransferError(f"Transfer request failed: {e}") from e

        logger.info("Call transferred", call_sid=call_sid, to=self.config.transfer_number)


def create_transfer_client(config: Optional[Config] = None) -> Optional[TwilioCallTransfer]:
    """Build the transfer collaborator, or None when Twilio credentials are missing."""
    config = config or get_config()
    if not config.transfer_enabled:
        return None
    return TwilioCallTransfer(config)
