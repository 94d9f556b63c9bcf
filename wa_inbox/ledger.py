"""
Conversation summary ledger.

One mutable rollup per conversation at conversationSummaries/<id>:
{phone, lastMessageText, lastMessageAt, unreadCount}. Every mutation goes
through the store's atomic update so concurrent increments are never lost.
"""

import logging
from typing import Any, Dict, List, Optional

from wa_inbox.store import DocumentStore, child

logger = logging.getLogger(__name__)

SUMMARIES = "conversationSummaries"

DEFAULT_LIST_LIMIT = 200


def _unread(summary: Dict[str, Any]) -> int:
    value = summary.get("unreadCount") or 0
    return value if isinstance(value, int) and value > 0 else 0


class ConversationSummaryLedger:
    def __init__(self, store: DocumentStore):
        self.store = store

    async def update(
        self,
        conversation_id: Optional[str],
        *,
        phone: Optional[str],
        text: Optional[str],
        timestamp: Optional[int],
        increment_unread: bool,
    ) -> Optional[Dict[str, Any]]:
        """
        Fold one message event into the summary.

        Unread is additive; last text and timestamp are last-writer-wins;
        phone is only filled in when missing. Returns the committed summary,
        or None when conversation_id or timestamp is missing.
        """
        if not conversation_id or not timestamp:
            return None

        def fold(current):
            curr = current if isinstance(current, dict) else {}
            return {
                "phone": curr.get("phone") or phone or "",
                "lastMessageText": text or curr.get("lastMessageText") or "",
                "lastMessageAt": timestamp,
                "unreadCount": _unread(curr) + (1 if increment_unread else 0),
            }

        result = await self.store.atomic_update(child(SUMMARIES, conversation_id), fold)
        return result.value

    async def reset_unread(self, conversation_id: str) -> Optional[Dict[str, Any]]:
        """Mark read. Returns the summary, or None if the conversation has none."""
        return await self._set_count(conversation_id, 0)

    async def set_unread(self, conversation_id: str, count: Any = None) -> Optional[Dict[str, Any]]:
        """Mark unread with an explicit count, never below 1."""
        if isinstance(count, bool) or not isinstance(count, int):
            count = 1
        return await self._set_count(conversation_id, max(1, count))

    async def _set_count(self, conversation_id: str, count: int) -> Optional[Dict[str, Any]]:
        if not conversation_id:
            return None

        def apply(current):
            if not isinstance(current, dict):
                # never create a summary from a read marker
                return None
            current["unreadCount"] = count
            return current

        result = await self.store.atomic_update(child(SUMMARIES, conversation_id), apply)
        return result.value if result.committed else None

    async def get(self, conversation_id: str) -> Optional[Dict[str, Any]]:
        if not conversation_id:
            return None
        return await self.store.get(child(SUMMARIES, conversation_id))

    async def list_recent(self, limit: int = DEFAULT_LIST_LIMIT) -> List[Dict[str, Any]]:
        """Summaries with their id, most recent first."""
        rows = await self.store.range_query(SUMMARIES, order_by="lastMessageAt", limit_to_last=limit)
        return [{"id": key, **value} for key, value in reversed(rows)]

    async def remove(self, conversation_id: str) -> None:
        if conversation_id:
            await self.store.remove(child(SUMMARIES, conversation_id))
