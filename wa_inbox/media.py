"""Authenticated passthrough for Twilio-hosted media.

Dashboard clients cannot fetch Twilio media URLs directly (they need the
account credentials), so the media descriptors stored with each message point
at local routes that stream the bytes through this proxy.
"""

import logging
from typing import Optional

import httpx
from starlette.background import BackgroundTask
from starlette.responses import StreamingResponse

from wa_inbox.errors import ConfigurationError, TransportError

logger = logging.getLogger(__name__)

API_BASE = "https://api.twilio.com/2010-04-01"


class MediaProxy:
    def __init__(
        self,
        account_sid: str,
        auth_token: str,
        region: str = "us1",
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.account_sid = account_sid
        self.auth_token = auth_token
        self.region = region or "us1"
        self.client = client or httpx.AsyncClient(timeout=30)

    def message_media_url(self, message_sid: str, media_sid: str) -> str:
        return f"{API_BASE}/Accounts/{self.account_sid}/Messages/{message_sid}/Media/{media_sid}"

    def conversation_media_url(self, service_sid: str, media_sid: str) -> str:
        return f"https://mcs.{self.region}.twilio.com/v1/Services/{service_sid}/Media/{media_sid}/Content"

    async def open(self, url: str) -> StreamingResponse:
        """
        Start streaming a media URL.

        Raises:
            ConfigurationError: no Twilio credentials
            TransportError: Twilio answered with an error or could not be reached
        """
        if not self.account_sid or not self.auth_token:
            raise ConfigurationError("Twilio credentials not configured")

        request = self.client.build_request("GET", url)
        try:
            response = await self.client.send(
                request,
                auth=(self.account_sid, self.auth_token),
                stream=True,
                follow_redirects=True,
            )
        except httpx.HTTPError as e:
            logger.error(f"Media fetch failed for {url}: {e}")
            raise TransportError(f"Media fetch failed: {e}") from e

        if response.status_code >= 400:
            await response.aclose()
            logger.error(f"Twilio media response {response.status_code} for {url}")
            raise TransportError(
                f"Twilio media response {response.status_code}",
                {"status": response.status_code},
            )

        headers = {}
        if response.headers.get("content-type"):
            headers["Content-Type"] = response.headers["content-type"]
        # aiter_bytes decodes any content-encoding, so the upstream length only holds without one
        if response.headers.get("content-length") and not response.headers.get("content-encoding"):
            headers["Content-Length"] = response.headers["content-length"]

        return StreamingResponse(
            response.aiter_bytes(),
            headers=headers,
            background=BackgroundTask(response.aclose),
        )

    async def aclose(self) -> None:
        await self.client.aclose()
