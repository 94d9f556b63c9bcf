"""
Message pipelines.

Each pipeline is a short linear sequence of store calls followed by one live
broadcast. Stages are not transactional: a failure part way leaves the stages
already applied in place (each one individually consistent) and surfaces the
error to the caller, who may retry the whole operation. Re-resolving the
conversation and re-folding the summary are safe to repeat; a retried inbound
event does append a second message record.
"""

import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from wa_inbox.delivery import CallbackOutcome, DeliveryStatusTracker, StatusCallback
from wa_inbox.directory import ConversationDirectory
from wa_inbox.errors import ConfigurationError, ValidationError
from wa_inbox.inbound import InboundMessage
from wa_inbox.ledger import ConversationSummaryLedger
from wa_inbox.live import LiveUpdateBus, message_event, status_event, summary_event
from wa_inbox.message_log import INBOUND, OUTBOUND, MessageLog
from wa_inbox.phone import CHANNEL_PREFIX, DEFAULT_COUNTRY_CODE, normalize, sender_address
from wa_inbox.store import DocumentStore
from wa_inbox.transport import TwilioTransport
from wa_inbox.utils import now_ms

logger = logging.getLogger(__name__)


@dataclass
class IngestResult:
    conversation_id: str
    message_id: str
    phone: str
    summary: Optional[Dict[str, Any]]


@dataclass
class DispatchResult:
    conversation_id: str
    message_id: str
    sid: str
    status: str
    phone: str

    def to_dict(self) -> Dict[str, str]:
        return {
            "conversationId": self.conversation_id,
            "messageId": self.message_id,
            "sid": self.sid,
            "status": self.status,
            "phone": self.phone,
        }


class Inbox:
    """Core components over one document store and one live bus."""

    def __init__(
        self,
        store: DocumentStore,
        bus: LiveUpdateBus,
        transport: TwilioTransport,
        *,
        sender_number: str = "",
        default_country_code: str = DEFAULT_COUNTRY_CODE,
        channel_prefix: str = CHANNEL_PREFIX,
    ):
        self.store = store
        self.bus = bus
        self.transport = transport
        self.sender_number = sender_number
        self.default_country_code = default_country_code
        self.channel_prefix = channel_prefix

        self.directory = ConversationDirectory(store)
        self.ledger = ConversationSummaryLedger(store)
        self.messages = MessageLog(store)
        self.delivery = DeliveryStatusTracker(store, self.messages)

        self.ingest = IngestPipeline(self)
        self.dispatch = DispatchPipeline(self)
        self.status_callback = StatusCallbackPipeline(self)
        self.conversations = ConversationCommands(self)

    def normalize(self, raw) -> str:
        return normalize(raw, self.default_country_code, self.channel_prefix)


class IngestPipeline:
    """Inbound provider message -> conversation, message log, summary, broadcast."""

    def __init__(self, inbox: Inbox):
        self.inbox = inbox

    async def run(self, message: InboundMessage) -> IngestResult:
        if not message.sender or (not message.text and not message.media):
            raise ValidationError("Inbound message is missing sender or content")

        phone = self.inbox.normalize(message.sender)
        if not phone:
            raise ValidationError("Cannot normalize sender number", {"sender": message.sender})

        inbox = self.inbox
        conversation_id = await inbox.directory.get_or_create(phone)
        timestamp = now_ms()
        record = {
            "text": message.display_text,
            "direction": INBOUND,
            "timestamp": timestamp,
            "media": message.media,
            "sid": message.sid or None,
        }
        message_id = await inbox.messages.append(conversation_id, record)

        summary = await inbox.ledger.update(
            conversation_id,
            phone=phone,
            text=record["text"],
            timestamp=timestamp,
            increment_unread=True,
        )

        inbox.bus.broadcast(message_event(conversation_id, phone, summary, {"id": message_id, **record}))
        logger.info(
            "Inbound message stored",
            extra={"conversation_id": conversation_id, "message_id": message_id, "media": len(message.media)},
        )
        return IngestResult(conversation_id, message_id, phone, summary)


class DispatchPipeline:
    """Dashboard send -> provider, message log, status seed, summary, broadcast."""

    def __init__(self, inbox: Inbox):
        self.inbox = inbox

    async def run(self, to, body: Optional[str], conversation_id: Optional[str] = None) -> DispatchResult:
        inbox = self.inbox
        phone = inbox.normalize(to)
        if not phone:
            raise ValidationError("Invalid recipient number", {"to": to})
        if not body:
            raise ValidationError("Message body is empty")

        from_address = sender_address(inbox.sender_number, inbox.default_country_code, inbox.channel_prefix)
        if not from_address:
            raise ConfigurationError("WhatsApp sender number not configured")
        to_address = f"{inbox.channel_prefix}{phone}"

        timestamp = now_ms()

        # nothing is written if the provider rejects the send
        sent = await inbox.transport.send(from_address, to_address, body)
        status = sent.status or "queued"

        conversation_id = conversation_id or await inbox.directory.get_or_create(phone)

        record = {
            "text": body,
            "direction": OUTBOUND,
            "timestamp": timestamp,
            "sid": sent.sid,
        }
        message_id = await inbox.messages.append(conversation_id, record)
        await inbox.delivery.record_for_send(conversation_id, sent.sid, message_id, status)

        summary = await inbox.ledger.update(
            conversation_id,
            phone=phone,
            text=body,
            timestamp=timestamp,
            increment_unread=False,
        )

        inbox.bus.broadcast(message_event(conversation_id, phone, summary, {"id": message_id, **record}))
        logger.info(
            "Outbound message sent",
            extra={"conversation_id": conversation_id, "message_id": message_id, "sid": sent.sid},
        )
        return DispatchResult(conversation_id, message_id, sent.sid, status, phone)


class StatusCallbackPipeline:
    """Provider delivery callback -> audit log, status record, message status, broadcast."""

    def __init__(self, inbox: Inbox):
        self.inbox = inbox

    async def run(self, callback: StatusCallback) -> CallbackOutcome:
        outcome = await self.inbox.delivery.apply_callback(callback)
        if outcome.matched:
            self.inbox.bus.broadcast(
                status_event(
                    outcome.conversation_id,
                    callback.sid,
                    callback.status,
                    callback.error_code,
                    callback.error_message,
                    outcome.timestamp,
                )
            )
        return outcome


class ConversationCommands:
    """Dashboard reads and conversation-level mutations."""

    def __init__(self, inbox: Inbox):
        self.inbox = inbox

    async def list(self, limit: int) -> List[Dict[str, Any]]:
        return await self.inbox.ledger.list_recent(limit)

    async def messages(self, conversation_id: str) -> List[Dict[str, Any]]:
        return await self.inbox.messages.list(conversation_id)

    async def mark_read(self, conversation_id: str) -> Optional[Dict[str, Any]]:
        summary = await self.inbox.ledger.reset_unread(conversation_id)
        self.inbox.bus.broadcast(summary_event(conversation_id, summary))
        return summary

    async def mark_unread(self, conversation_id: str, count: Any = None) -> Optional[Dict[str, Any]]:
        summary = await self.inbox.ledger.set_unread(conversation_id, count)
        self.inbox.bus.broadcast(summary_event(conversation_id, summary))
        return summary

    async def delete(self, conversation_id: str) -> None:
        """Remove the directory entry, message log, status records and summary."""
        inbox = self.inbox
        summary = await inbox.ledger.get(conversation_id)
        phone = summary.get("phone") if isinstance(summary, dict) else None

        # the key may already point at a newer conversation
        if phone and await inbox.directory.lookup(phone) == conversation_id:
            await inbox.directory.forget(phone)

        await inbox.messages.delete_all(conversation_id)
        await inbox.delivery.remove_conversation(conversation_id)
        await inbox.ledger.remove(conversation_id)
        logger.info("Conversation deleted", extra={"conversation_id": conversation_id, "phone": phone})
