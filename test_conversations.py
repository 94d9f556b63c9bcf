"""
Tests for the conversation core: directory, summary ledger, message log and
delivery status tracking, driven directly against the in-memory store.
"""

import asyncio

from wa_inbox.delivery import StatusCallback
from wa_inbox.directory import BY_PHONE, ConversationDirectory
from wa_inbox.inbound import InboundMessage
from wa_inbox.ledger import SUMMARIES, ConversationSummaryLedger
from wa_inbox.message_log import INBOUND, OUTBOUND, MessageLog
from wa_inbox.store import InMemoryDocumentStore, child

PHONE = "+393331234567"


class TestConversationDirectory:

    def test_get_or_create_is_stable(self, store):
        async def main():
            directory = ConversationDirectory(store)
            first = await directory.get_or_create(PHONE)
            second = await directory.get_or_create(PHONE)
            return first, second, await store.get(child(SUMMARIES, first))

        first, second, summary = asyncio.run(main())
        assert first == second
        assert summary["phone"] == PHONE
        assert summary["unreadCount"] == 0
        assert summary["lastMessageText"] == ""

    def test_concurrent_callers_share_one_id(self, store):
        async def main():
            directory = ConversationDirectory(store)
            ids = await asyncio.gather(*[directory.get_or_create(PHONE) for _ in range(15)])
            return ids, await store.children(SUMMARIES)

        ids, summaries = asyncio.run(main())
        assert len(set(ids)) == 1
        assert list(summaries) == [ids[0]]

    def test_empty_key(self, store):
        assert asyncio.run(ConversationDirectory(store).get_or_create("")) is None

    def test_forget_allocates_new_id(self, store):
        async def main():
            directory = ConversationDirectory(store)
            old = await directory.get_or_create(PHONE)
            await directory.forget(PHONE)
            assert await directory.lookup(PHONE) is None
            return old, await directory.get_or_create(PHONE)

        old, new = asyncio.run(main())
        assert old != new


class TestSummaryLedger:

    def test_concurrent_increments_are_additive(self, store):
        async def main():
            ledger = ConversationSummaryLedger(store)
            await asyncio.gather(*[
                ledger.update("c1", phone=PHONE, text=f"m{i}", timestamp=1000 + i, increment_unread=True)
                for i in range(12)
            ])
            return await ledger.get("c1")

        summary = asyncio.run(main())
        assert summary["unreadCount"] == 12
        assert summary["phone"] == PHONE

    def test_mark_read_survives_concurrent_outbound_folds(self, store):
        async def main():
            ledger = ConversationSummaryLedger(store)
            for i in range(3):
                await ledger.update("c1", phone=PHONE, text=f"in{i}", timestamp=1 + i, increment_unread=True)
            await asyncio.gather(
                ledger.reset_unread("c1"),
                *[
                    ledger.update("c1", phone=PHONE, text=f"out{i}", timestamp=100 + i, increment_unread=False)
                    for i in range(10)
                ],
            )
            return await ledger.get("c1")

        assert asyncio.run(main())["unreadCount"] == 0

    def test_fold_rules(self, store):
        async def main():
            ledger = ConversationSummaryLedger(store)
            await ledger.update("c1", phone=PHONE, text="hi", timestamp=1, increment_unread=True)
            await ledger.update("c1", phone="+15550000000", text="", timestamp=2, increment_unread=False)
            return await ledger.get("c1")

        summary = asyncio.run(main())
        # phone is kept, empty text keeps the previous text
        assert summary == {"phone": PHONE, "lastMessageText": "hi", "lastMessageAt": 2, "unreadCount": 1}

    def test_missing_id_or_timestamp_is_a_no_op(self, store):
        async def main():
            ledger = ConversationSummaryLedger(store)
            a = await ledger.update(None, phone=PHONE, text="x", timestamp=1, increment_unread=True)
            b = await ledger.update("c1", phone=PHONE, text="x", timestamp=None, increment_unread=True)
            return a, b, await store.children(SUMMARIES)

        assert asyncio.run(main()) == (None, None, {})

    def test_read_markers(self, store):
        async def main():
            ledger = ConversationSummaryLedger(store)
            await ledger.update("c1", phone=PHONE, text="x", timestamp=1, increment_unread=True)
            read = await ledger.reset_unread("c1")
            unread = await ledger.set_unread("c1", 0)
            explicit = await ledger.set_unread("c1", 7)
            flag = await ledger.set_unread("c1", True)
            return read["unreadCount"], unread["unreadCount"], explicit["unreadCount"], flag["unreadCount"]

        assert asyncio.run(main()) == (0, 1, 7, 1)

    def test_read_marker_never_creates_summary(self, store):
        async def main():
            ledger = ConversationSummaryLedger(store)
            return await ledger.reset_unread("ghost"), await ledger.get("ghost")

        assert asyncio.run(main()) == (None, None)

    def test_list_recent(self, store):
        async def main():
            ledger = ConversationSummaryLedger(store)
            for cid, ts in [("a", 3), ("b", 1), ("c", 2)]:
                await ledger.update(cid, phone=PHONE, text=cid, timestamp=ts, increment_unread=False)
            return await ledger.list_recent(2)

        recent = asyncio.run(main())
        assert [s["id"] for s in recent] == ["a", "c"]


class TestMessageLog:

    def test_chronological_order(self, store):
        async def main():
            log = MessageLog(store)
            await log.append("c1", {"text": "late", "direction": INBOUND, "timestamp": 200})
            await log.append("c1", {"text": "early", "direction": OUTBOUND, "timestamp": 100})
            await log.append("c1", {"text": "tie", "direction": INBOUND, "timestamp": 200})
            return await log.list("c1")

        messages = asyncio.run(main())
        assert [m["text"] for m in messages] == ["early", "late", "tie"]
        assert all(len(m["id"]) == 20 for m in messages)

    def test_set_status_on_deleted_message(self, store):
        async def main():
            log = MessageLog(store)
            mid = await log.append("c1", {"text": "x", "direction": OUTBOUND, "timestamp": 1})
            await log.delete_all("c1")
            return await log.set_status("c1", mid, "delivered"), await log.list("c1")

        assert asyncio.run(main()) == (False, [])


class TestDeliveryStatusTracker:

    def test_unknown_sid_only_audited(self, inbox):
        async def main():
            outcome = await inbox.delivery.apply_callback(StatusCallback(sid="SMx", status="sent"))
            return outcome, await inbox.delivery.audit_log(), await inbox.store.children("messageStatuses")

        outcome, audit, statuses = asyncio.run(main())
        assert outcome.matched is False
        assert list(audit) == [outcome.audit_key]
        assert audit[outcome.audit_key]["sid"] == "SMx"
        assert statuses == {}

    def test_callback_without_sid(self, inbox):
        outcome = asyncio.run(inbox.delivery.apply_callback(StatusCallback(sid=None, status="sent")))
        assert outcome.matched is False

    def test_status_precedes_message(self, inbox):
        async def main():
            await inbox.delivery.record_for_send("c1", "SM1", None, "queued")
            outcome = await inbox.delivery.apply_callback(StatusCallback(sid="SM1", status="sent"))
            return outcome, await inbox.delivery.query_by_sid("SM1")

        outcome, by_sid = asyncio.run(main())
        assert outcome.matched is True
        assert by_sid["status"] == "sent"
        assert by_sid["messageId"] is None

    def test_audit_log_keeps_order(self, inbox):
        async def main():
            for status in ("queued", "sent", "delivered", "read"):
                await inbox.delivery.apply_callback(StatusCallback(sid="SM1", status=status))
            return await inbox.delivery.audit_log(limit=3)

        audit = asyncio.run(main())
        assert [entry["status"] for entry in audit.values()] == ["sent", "delivered", "read"]


class TestPipelines:

    def test_ingest_then_dispatch_then_callback(self, inbox, transport):
        async def main():
            handle = inbox.bus.subscribe()
            ingested = await inbox.ingest.run(
                InboundMessage(sender="whatsapp:+39 333 1234567", recipient="unknown", text="hi")
            )
            sent = await inbox.dispatch.run("3331234567", "ok", ingested.conversation_id)
            await inbox.status_callback.run(StatusCallback(sid=sent.sid, status="delivered"))

            chunks = []
            while handle.channel.pending():
                chunks.append(await handle.channel.__anext__())
            handle.close()
            return ingested, sent, chunks, await inbox.conversations.messages(ingested.conversation_id)

        ingested, sent, chunks, messages = asyncio.run(main())
        assert ingested.phone == PHONE
        assert ingested.summary["unreadCount"] == 1
        assert sent.conversation_id == ingested.conversation_id
        assert transport.sent[0]["to"] == "whatsapp:" + PHONE
        assert messages[-1]["status"] == "delivered"
        assert [c.split('"type": "')[1].split('"')[0] for c in chunks] == ["message", "message", "status"]

    def test_delete_keeps_newer_index_entry(self, inbox):
        async def main():
            old = await inbox.directory.get_or_create(PHONE)
            await inbox.ledger.update(old, phone=PHONE, text="x", timestamp=1, increment_unread=True)
            # the phone key was re-pointed at another conversation meanwhile
            await inbox.store.set(child(BY_PHONE, PHONE), "newer")
            await inbox.conversations.delete(old)
            return await inbox.directory.lookup(PHONE), await inbox.ledger.get(old)

        assert asyncio.run(main()) == ("newer", None)

    def test_mark_read_on_unknown_conversation(self, inbox):
        assert asyncio.run(inbox.conversations.mark_read("ghost")) is None


def test_directory_and_ledger_race():
    """A first message folded by a losing caller survives the winner's seed."""

    async def main():
        s = InMemoryDocumentStore()
        directory = ConversationDirectory(s)
        ledger = ConversationSummaryLedger(s)

        async def ingest(i):
            cid = await directory.get_or_create(PHONE)
            await ledger.update(cid, phone=PHONE, text=f"m{i}", timestamp=1000 + i, increment_unread=True)
            return cid

        ids = await asyncio.gather(*[ingest(i) for i in range(10)])
        return set(ids), await ledger.get(ids[0])

    ids, summary = asyncio.run(main())
    assert len(ids) == 1
    assert summary["unreadCount"] == 10
