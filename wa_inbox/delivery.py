"""
Delivery status tracking.

Store layout:
- messageStatuses/<conversationId>/<sid>: latest status payload for a sent message
- sidToConversation/<sid>: {conversationId, messageId}, so a callback that only
  carries the sid can find its conversation without a scan
- logs/status/<pushKey>: every provider callback in arrival order, matched or not
"""

import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional

from wa_inbox.message_log import MessageLog
from wa_inbox.store import DocumentStore, child
from wa_inbox.utils import now_ms

logger = logging.getLogger(__name__)

STATUSES = "messageStatuses"
SID_INDEX = "sidToConversation"
STATUS_LOG = "logs/status"

DEFAULT_QUERY_LIMIT = 500
DEFAULT_LOG_LIMIT = 1000


@dataclass
class StatusCallback:
    """A provider delivery-status callback."""

    sid: Optional[str]
    status: Optional[str]
    to: Optional[str] = None
    error_code: Optional[str] = None
    error_message: Optional[str] = None


@dataclass
class CallbackOutcome:
    """
    Result of applying a callback.

    matched is False for a correlation miss: the sid is unknown to this
    store, the callback was only written to the audit log.
    """

    matched: bool
    audit_key: str
    timestamp: int
    conversation_id: Optional[str] = None
    message_id: Optional[str] = None


class DeliveryStatusTracker:
    def __init__(self, store: DocumentStore, messages: MessageLog):
        self.store = store
        self.messages = messages

    async def record_for_send(
        self,
        conversation_id: str,
        sid: str,
        message_id: Optional[str] = None,
        initial_status: str = "queued",
    ) -> None:
        """Seed the status record and link sid to the conversation/message."""
        if not conversation_id or not sid:
            return
        await self.store.update(
            child(STATUSES, conversation_id, sid),
            {"sid": sid, "status": initial_status, "timestamp": now_ms()},
        )
        await self.store.set(
            child(SID_INDEX, sid),
            {"conversationId": conversation_id, "messageId": message_id or None},
        )

    async def apply_callback(self, callback: StatusCallback) -> CallbackOutcome:
        timestamp = now_ms()
        audit_key = await self.store.push(
            STATUS_LOG,
            {
                "sid": callback.sid,
                "status": callback.status,
                "to": callback.to,
                "errorCode": callback.error_code or None,
                "errorMessage": callback.error_message or None,
                "timestamp": timestamp,
            },
        )

        link = await self.store.get(child(SID_INDEX, callback.sid)) if callback.sid else None
        if not isinstance(link, dict) or not link.get("conversationId"):
            logger.info(
                "Status callback for unknown sid",
                extra={"sid": callback.sid, "status": callback.status},
            )
            return CallbackOutcome(matched=False, audit_key=audit_key, timestamp=timestamp)

        conversation_id = link["conversationId"]
        message_id = link.get("messageId")

        await self.store.update(
            child(STATUSES, conversation_id, callback.sid),
            {
                "sid": callback.sid,
                "status": callback.status,
                "errorCode": callback.error_code or None,
                "errorMessage": callback.error_message or None,
                "timestamp": timestamp,
            },
        )
        if message_id:
            await self.messages.set_status(conversation_id, message_id, callback.status)

        return CallbackOutcome(
            matched=True,
            audit_key=audit_key,
            timestamp=timestamp,
            conversation_id=conversation_id,
            message_id=message_id,
        )

    async def query(self, conversation_id: str, limit: int = DEFAULT_QUERY_LIMIT) -> Dict[str, Any]:
        rows = await self.store.range_query(child(STATUSES, conversation_id), limit_to_last=limit)
        return dict(rows)

    async def query_by_sid(self, sid: str) -> Dict[str, Any]:
        link = await self.store.get(child(SID_INDEX, sid)) if sid else None
        if not isinstance(link, dict) or not link.get("conversationId"):
            return {"conversationId": None, "messageId": None, "status": None, "payload": None}

        payload = await self.store.get(child(STATUSES, link["conversationId"], sid))
        return {
            "conversationId": link["conversationId"],
            "messageId": link.get("messageId"),
            "status": payload.get("status") if isinstance(payload, dict) else None,
            "payload": payload,
        }

    async def audit_log(self, limit: int = DEFAULT_LOG_LIMIT) -> Dict[str, Any]:
        rows = await self.store.range_query(STATUS_LOG, limit_to_last=limit)
        return dict(rows)

    async def remove_conversation(self, conversation_id: str) -> None:
        """Drop the status records of a conversation and unlink their sids."""
        if not conversation_id:
            return
        statuses = await self.store.children(child(STATUSES, conversation_id))
        for sid in statuses:
            await self.store.remove(child(SID_INDEX, sid))
        await self.store.remove(child(STATUSES, conversation_id))
