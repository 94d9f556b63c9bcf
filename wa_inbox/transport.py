"""Twilio outbound transport.

Thin wrapper around the Twilio REST API for sending WhatsApp messages.
The SDK is blocking, so sends run in the threadpool.
"""

import logging
from dataclasses import dataclass
from typing import Optional

from starlette.concurrency import run_in_threadpool
from twilio.base.exceptions import TwilioException, TwilioRestException
from twilio.rest import Client

from wa_inbox.errors import ConfigurationError, TransportError

logger = logging.getLogger(__name__)

# Twilio rejects longer bodies
MAX_BODY_LENGTH = 1600


@dataclass
class SentMessage:
    sid: str
    status: str


class TwilioTransport:
    """
    Sends messages through the Twilio Messages API.

    A missing account sid or auth token leaves the transport unconfigured:
    every send raises ConfigurationError instead of reaching Twilio.
    """

    def __init__(self, account_sid: str = "", auth_token: str = "", client: Optional[Client] = None):
        self.client = client
        if self.client is None and account_sid and auth_token:
            self.client = Client(account_sid, auth_token)
            logger.info("Twilio client initialized")
        elif self.client is None:
            logger.warning("Twilio credentials not configured. Set TWILIO_SID and TWILIO_AUTH.")

    @property
    def configured(self) -> bool:
        return self.client is not None

    async def send(self, from_: str, to: str, body: str) -> SentMessage:
        """
        Send a single message.

        Raises:
            ConfigurationError: no Twilio credentials
            TransportError: Twilio refused the message or could not be reached
        """
        if self.client is None:
            raise ConfigurationError("Twilio credentials not configured")

        if body and len(body) > MAX_BODY_LENGTH:
            raise TransportError(f"Message body exceeds {MAX_BODY_LENGTH} characters")

        try:
            message = await run_in_threadpool(
                self.client.messages.create,
                from_=from_,
                to=to,
                body=body,
            )
        except TwilioRestException as e:
            logger.error(f"Twilio API error sending to {to}: {e.code} {e.msg}")
            raise TransportError(e.msg or "Twilio API error", {"code": e.code, "status": e.status}) from e
        except (TwilioException, OSError) as e:
            logger.error(f"Twilio transport error sending to {to}: {e}")
            raise TransportError(str(e) or "Twilio transport error") from e

        logger.info(f"Message sent to {to}: sid={message.sid}, status={message.status}")
        return SentMessage(sid=message.sid, status=message.status or "queued")
