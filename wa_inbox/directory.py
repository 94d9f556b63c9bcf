"""
Conversation directory: PhoneKey -> conversation id.

The index at conversationsByPhone/<phoneKey> is populated once, atomically.
Only the caller whose update installed the id seeds the summary record.
"""

import logging
from typing import Optional

from wa_inbox.ledger import SUMMARIES
from wa_inbox.store import DocumentStore, child
from wa_inbox.utils import now_ms

logger = logging.getLogger(__name__)

BY_PHONE = "conversationsByPhone"


class ConversationDirectory:
    def __init__(self, store: DocumentStore):
        self.store = store

    async def get_or_create(self, phone_key: str) -> Optional[str]:
        """
        Resolve the conversation for a phone key, creating it on first use.

        Concurrent callers for the same key all receive the same id.
        Returns None for an empty key.
        """
        if not phone_key:
            return None

        candidate = self.store.push_key()

        def install(current):
            return current if current else candidate

        result = await self.store.atomic_update(child(BY_PHONE, phone_key), install)
        conversation_id = result.value
        if not conversation_id:
            return None

        if result.committed and not result.previous and conversation_id == candidate:
            seed = {
                "phone": phone_key,
                "lastMessageText": "",
                "lastMessageAt": now_ms(),
                "unreadCount": 0,
            }
            # a loser may already have folded its first message into the summary
            await self.store.atomic_update(
                child(SUMMARIES, conversation_id),
                lambda current: current if current else seed,
            )
            logger.info("Conversation created", extra={"conversation_id": conversation_id, "phone": phone_key})

        return conversation_id

    async def lookup(self, phone_key: str) -> Optional[str]:
        if not phone_key:
            return None
        return await self.store.get(child(BY_PHONE, phone_key))

    async def forget(self, phone_key: str) -> None:
        if phone_key:
            await self.store.remove(child(BY_PHONE, phone_key))
