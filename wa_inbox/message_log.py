"""
Per-conversation message log at conversationMessages/<conversationId>/<messageId>.

Message ids are push keys, so key order is creation order.
"""

from typing import Any, Dict, List

from wa_inbox.store import DocumentStore, child

MESSAGES = "conversationMessages"

INBOUND = "inbound"
OUTBOUND = "outbound"


class MessageLog:
    def __init__(self, store: DocumentStore):
        self.store = store

    async def append(self, conversation_id: str, record: Dict[str, Any]) -> str:
        return await self.store.push(child(MESSAGES, conversation_id), record)

    async def list(self, conversation_id: str) -> List[Dict[str, Any]]:
        """Messages ascending by timestamp, ties broken by message id."""
        rows = await self.store.range_query(child(MESSAGES, conversation_id), order_by="timestamp")
        return [{"id": key, **value} for key, value in rows]

    async def set_status(self, conversation_id: str, message_id: str, status: str) -> bool:
        """Patch the status field of one message. False if the message is gone."""

        def patch(current):
            if not isinstance(current, dict):
                return None
            current["status"] = status
            return current

        result = await self.store.atomic_update(child(MESSAGES, conversation_id, message_id), patch)
        return result.committed

    async def delete_all(self, conversation_id: str) -> None:
        await self.store.remove(child(MESSAGES, conversation_id))
