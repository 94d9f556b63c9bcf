"""
Inbound webhook payload parsing.

Twilio delivers WhatsApp messages in two shapes:
- Messaging API webhooks: From/To/Body plus NumMedia, MediaUrl<i>, MediaContentType<i>
- Conversations API webhooks (EventType=onMessageAdded): Author/Body plus a JSON
  encoded Media list and the ChatServiceSid needed to fetch it

Both are reduced to an InboundMessage whose media descriptors point at the
local media proxy routes.
"""

import json
import logging
import re
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional
from urllib.parse import urlparse

logger = logging.getLogger(__name__)

CONVERSATION_MESSAGE_ADDED = "onMessageAdded"
MEDIA_PLACEHOLDER = "[media]"
# Twilio attaches at most 10 media items to one message
MAX_MEDIA = 10

_MEDIA_PATH = re.compile(r"/Messages/([^/]+)/Media/([^/.]+)", re.IGNORECASE)


@dataclass
class InboundMessage:
    sender: Optional[str]
    recipient: str
    text: str
    media: List[Dict[str, Any]] = field(default_factory=list)
    sid: Optional[str] = None
    event_type: Optional[str] = None

    @property
    def display_text(self) -> str:
        """Text stored for the message; media-only messages get a placeholder."""
        return self.text or (MEDIA_PLACEHOLDER if self.media else "")


def _first(payload: Mapping[str, Any], *names: str) -> Optional[Any]:
    for name in names:
        value = payload.get(name)
        if value:
            return value
    return None


def _to_int(value: Any, default: int = 0) -> int:
    try:
        return int(str(value).strip())
    except (TypeError, ValueError):
        return default


def safe_json_parse(payload: Any, fallback: Any = None) -> Any:
    if isinstance(payload, (str, bytes)):
        try:
            return json.loads(payload)
        except ValueError:
            return fallback
    if isinstance(payload, (list, dict)):
        return payload
    return fallback


def extract_media_info(url: Optional[str]) -> Dict[str, Optional[str]]:
    """
    Pull the message and media sids out of a Twilio media URL.

    >>> extract_media_info("https://api.twilio.com/2010-04-01/Accounts/AC1/Messages/MM1/Media/ME1")
    {'messageSid': 'MM1', 'mediaSid': 'ME1'}
    """
    empty = {"messageSid": None, "mediaSid": None}
    if not url or not isinstance(url, str):
        return empty
    try:
        path = urlparse(url).path
    except ValueError:
        return empty
    match = _MEDIA_PATH.search(path)
    if not match:
        return empty
    return {"messageSid": match.group(1), "mediaSid": match.group(2)}


def _conversation_media(payload: Mapping[str, Any]) -> List[Dict[str, Any]]:
    service_sid = _first(payload, "ChatServiceSid", "MessagingServiceSid")
    conversation_sid = payload.get("ConversationSid") or None
    items = safe_json_parse(payload.get("Media"), [])
    if not isinstance(items, list):
        return []

    media = []
    for item in items:
        if not isinstance(item, dict):
            continue
        media_sid = item.get("Sid") or item.get("sid") or None
        media.append({
            "sid": media_sid,
            "filename": item.get("Filename") or None,
            "contentType": item.get("ContentType") or None,
            "size": item.get("Size") or None,
            "serviceSid": service_sid,
            "conversationSid": conversation_sid,
            "proxyUrl": f"/media/conversations/{service_sid}/{media_sid}" if media_sid and service_sid else None,
            "type": "conversation",
        })
    return media


def _message_media(payload: Mapping[str, Any], inbound_sid: Optional[str]) -> List[Dict[str, Any]]:
    media = []
    for i in range(min(_to_int(payload.get("NumMedia")), MAX_MEDIA)):
        url = payload.get(f"MediaUrl{i}")
        if not url or not isinstance(url, str):
            continue
        info = extract_media_info(url)
        message_sid = info["messageSid"] or inbound_sid
        media_sid = info["mediaSid"]
        proxy = f"/media/messages/{message_sid}/{media_sid}" if media_sid and message_sid else None
        media.append({
            "sid": media_sid,
            "messageSid": message_sid or None,
            "originalUrl": url,
            "proxyUrl": proxy or url,
            "contentType": payload.get(f"MediaContentType{i}") or None,
            "type": "message",
        })
    return media


def parse_inbound(payload: Mapping[str, Any]) -> InboundMessage:
    """Build an InboundMessage from a webhook form or JSON body. Never raises."""
    event_type = _first(payload, "EventType", "eventType")
    sender = _first(payload, "From", "from", "Author")
    recipient = _first(payload, "To", "to", "Recipient", "ChannelToAddress") or "unknown"
    text = _first(payload, "Body", "body") or ""
    inbound_sid = _first(payload, "MessageSid", "SmsSid", "SmsMessageSid")

    if event_type == CONVERSATION_MESSAGE_ADDED:
        sender = payload.get("Author") or sender
        media = _conversation_media(payload)
    else:
        media = _message_media(payload, inbound_sid)

    return InboundMessage(
        sender=str(sender) if sender else None,
        recipient=str(recipient),
        text=str(text),
        media=media,
        sid=inbound_sid,
        event_type=event_type,
    )
