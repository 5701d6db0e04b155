"""Unit tests for conversation persistence store behavior."""

from __future__ import annotations

import json
import sqlite3

import pytest

from localchat.conversations import (
    ConversationStore,
    InvalidArgument,
    InvalidFormat,
    Message,
    NotFound,
    StorageUnavailable,
)
from localchat.conversations.store import DEFAULT_CONVERSATION_NAME, SCHEMA_VERSION


def _count_notifications(store: ConversationStore) -> list[int]:
    calls: list[int] = []
    store.subscribe(lambda: calls.append(1))
    return calls


class TestCreateAndRead:
    """Creating conversations and reading them back."""

    @pytest.mark.asyncio
    async def test_create_conversation_starts_empty(self, store, clock):
        conversation = await store.create_conversation("Trip planning")

        assert conversation.id.startswith("conv-")
        assert conversation.name == "Trip planning"
        assert conversation.last_modified == clock.now
        assert conversation.messages == []

        loaded = await store.get_conversation(conversation.id)
        assert loaded == conversation

    @pytest.mark.asyncio
    async def test_blank_initial_name_uses_default(self, store):
        conversation = await store.create_conversation("   ")
        assert conversation.name == DEFAULT_CONVERSATION_NAME

    @pytest.mark.asyncio
    async def test_get_all_conversations_newest_first(self, store, clock):
        first = await store.create_conversation("first")
        clock.advance()
        second = await store.create_conversation("second")
        clock.advance()
        await store.update_conversation_name(first.id, "first renamed")

        listed = await store.get_all_conversations()

        assert [meta.id for meta in listed] == [first.id, second.id]
        assert listed[0].name == "first renamed"

    @pytest.mark.asyncio
    async def test_get_missing_conversation_raises_not_found(self, store):
        with pytest.raises(NotFound):
            await store.get_conversation("conv-missing")

    @pytest.mark.asyncio
    async def test_returned_snapshots_are_detached(self, store):
        conversation = await store.create_conversation("snapshot")
        await store.append_message(conversation.id, Message(id="m1", role="user", content="hi"))

        snapshot = await store.get_conversation(conversation.id)
        snapshot.messages.clear()
        snapshot.name = "mutated locally"

        reloaded = await store.get_conversation(conversation.id)
        assert reloaded.name == "snapshot"
        assert [m.id for m in reloaded.messages] == ["m1"]

    @pytest.mark.asyncio
    async def test_data_survives_reopen(self, tmp_path, clock):
        path = tmp_path / "persist.sqlite3"
        first = ConversationStore(path, clock=clock)
        await first.initialize()
        conversation = await first.create_conversation("durable")
        await first.append_message(conversation.id, {"id": "m1", "role": "user", "content": "x"})
        await first.close()

        second = ConversationStore(path, clock=clock)
        await second.initialize()
        try:
            loaded = await second.get_conversation(conversation.id)
        finally:
            await second.close()
        assert loaded.name == "durable"
        assert [m.content for m in loaded.messages] == ["x"]


class TestRename:
    """Renaming conversations."""

    @pytest.mark.asyncio
    async def test_rename_updates_name_and_last_modified(self, store, clock):
        conversation = await store.create_conversation("old")
        calls = _count_notifications(store)
        clock.advance(5000)

        meta = await store.update_conversation_name(conversation.id, "new")

        assert meta.name == "new"
        assert meta.last_modified == clock.now
        loaded = await store.get_conversation(conversation.id)
        assert (loaded.name, loaded.last_modified) == ("new", clock.now)
        assert len(calls) == 1

    @pytest.mark.asyncio
    @pytest.mark.parametrize("bad_name", ["", "   ", "\n\t"])
    async def test_rename_rejects_empty_names_without_side_effects(self, store, clock, bad_name):
        conversation = await store.create_conversation("keep me")
        calls = _count_notifications(store)
        clock.advance()

        with pytest.raises(InvalidArgument):
            await store.update_conversation_name(conversation.id, bad_name)

        loaded = await store.get_conversation(conversation.id)
        assert loaded.name == "keep me"
        assert loaded.last_modified == conversation.last_modified
        assert calls == []

    @pytest.mark.asyncio
    async def test_rename_missing_conversation(self, store):
        calls = _count_notifications(store)
        with pytest.raises(NotFound):
            await store.update_conversation_name("conv-missing", "name")
        assert calls == []


class TestMessages:
    """Appending, editing and deleting messages."""

    @pytest.mark.asyncio
    async def test_append_preserves_order_and_opaque_fields(self, store, clock):
        conversation = await store.create_conversation("chat")
        clock.advance()
        await store.append_message(
            conversation.id,
            Message(id="m1", role="user", content="hello", timestamp=1, convId=conversation.id),
        )
        clock.advance()
        await store.append_message(
            conversation.id,
            {
                "id": "m2",
                "role": "assistant",
                "content": "hi there",
                "model": "llama-3",
                "timings": {"prompt_n": 12, "predicted_ms": 140.5},
            },
        )

        loaded = await store.get_conversation(conversation.id)

        assert [m.id for m in loaded.messages] == ["m1", "m2"]
        assert loaded.messages[0].extra_fields == {"timestamp": 1, "convId": conversation.id}
        assert loaded.messages[1].extra_fields["timings"] == {"prompt_n": 12, "predicted_ms": 140.5}
        assert loaded.last_modified == clock.now

    @pytest.mark.asyncio
    async def test_append_mints_message_id_when_missing(self, store):
        conversation = await store.create_conversation("chat")
        message = await store.append_message(conversation.id, {"role": "user", "content": "x"})
        assert message.id
        loaded = await store.get_conversation(conversation.id)
        assert loaded.messages[0].id == message.id

    @pytest.mark.asyncio
    async def test_append_rejects_duplicate_message_id(self, store):
        conversation = await store.create_conversation("chat")
        await store.append_message(conversation.id, Message(id="m1", role="user", content="a"))
        calls = _count_notifications(store)

        with pytest.raises(InvalidArgument):
            await store.append_message(conversation.id, Message(id="m1", role="user", content="b"))

        loaded = await store.get_conversation(conversation.id)
        assert [m.content for m in loaded.messages] == ["a"]
        assert calls == []

    @pytest.mark.asyncio
    async def test_append_rejects_malformed_message(self, store):
        conversation = await store.create_conversation("chat")
        with pytest.raises(InvalidArgument):
            await store.append_message(conversation.id, {"role": "user"})

    @pytest.mark.asyncio
    async def test_append_rejects_unserializable_fields(self, store):
        conversation = await store.create_conversation("chat")
        calls = _count_notifications(store)

        with pytest.raises(InvalidArgument, match="JSON serializable"):
            await store.append_message(
                conversation.id, {"role": "user", "content": "x", "handle": object()}
            )

        loaded = await store.get_conversation(conversation.id)
        assert loaded.messages == []
        assert calls == []

    @pytest.mark.asyncio
    async def test_append_to_missing_conversation(self, store):
        with pytest.raises(NotFound):
            await store.append_message("conv-missing", Message(role="user", content="x"))

    @pytest.mark.asyncio
    async def test_edit_message_keeps_position(self, store, clock):
        conversation = await store.create_conversation("chat")
        for index in range(3):
            await store.append_message(
                conversation.id, Message(id=f"m{index}", role="user", content=f"c{index}", n=index)
            )
        clock.advance()

        edited = await store.edit_message(conversation.id, "m1", "changed")

        assert edited.content == "changed"
        assert edited.extra_fields == {"n": 1}
        loaded = await store.get_conversation(conversation.id)
        assert [m.content for m in loaded.messages] == ["c0", "changed", "c2"]
        assert loaded.last_modified == clock.now

    @pytest.mark.asyncio
    async def test_delete_message(self, store, clock):
        conversation = await store.create_conversation("chat")
        for index in range(3):
            await store.append_message(
                conversation.id, Message(id=f"m{index}", role="user", content=str(index))
            )
        clock.advance()

        await store.delete_message(conversation.id, "m1")
        await store.append_message(conversation.id, Message(id="m3", role="user", content="3"))

        loaded = await store.get_conversation(conversation.id)
        assert [m.id for m in loaded.messages] == ["m0", "m2", "m3"]
        assert loaded.last_modified == clock.now

    @pytest.mark.asyncio
    async def test_missing_message_raises_not_found(self, store, clock):
        conversation = await store.create_conversation("chat")
        calls = _count_notifications(store)
        clock.advance()

        with pytest.raises(NotFound):
            await store.edit_message(conversation.id, "nope", "x")
        with pytest.raises(NotFound):
            await store.delete_message(conversation.id, "nope")
        with pytest.raises(NotFound):
            await store.delete_message("conv-missing", "nope")

        loaded = await store.get_conversation(conversation.id)
        assert loaded.last_modified == conversation.last_modified
        assert calls == []


class TestLastModified:
    """last_modified is monotonically non-decreasing."""

    @pytest.mark.asyncio
    async def test_monotonic_when_clock_goes_backwards(self, store, clock):
        conversation = await store.create_conversation("chat")
        observed = [conversation.last_modified]

        clock.advance(10_000)
        await store.append_message(conversation.id, Message(id="m1", role="user", content="a"))
        observed.append((await store.get_conversation(conversation.id)).last_modified)

        clock.advance(-60_000)
        await store.edit_message(conversation.id, "m1", "b")
        observed.append((await store.get_conversation(conversation.id)).last_modified)

        await store.update_conversation_name(conversation.id, "renamed")
        observed.append((await store.get_conversation(conversation.id)).last_modified)

        await store.delete_message(conversation.id, "m1")
        observed.append((await store.get_conversation(conversation.id)).last_modified)

        assert observed == sorted(observed)
        assert observed[-1] == observed[1]


class TestDeleteConversation:
    """Deleting conversations."""

    @pytest.mark.asyncio
    async def test_delete_removes_conversation_and_messages(self, store, tmp_path):
        conversation = await store.create_conversation("doomed")
        await store.append_message(conversation.id, Message(id="m1", role="user", content="a"))
        await store.append_message(conversation.id, Message(id="m2", role="user", content="b"))

        await store.delete_conversation(conversation.id)

        with pytest.raises(NotFound):
            await store.get_conversation(conversation.id)
        assert conversation.id not in {meta.id for meta in await store.get_all_conversations()}

        conn = sqlite3.connect(tmp_path / "conversations.sqlite3")
        try:
            remaining = conn.execute(
                "SELECT COUNT(*) FROM messages WHERE conversation_id = ?", (conversation.id,)
            ).fetchone()[0]
        finally:
            conn.close()
        assert remaining == 0

    @pytest.mark.asyncio
    async def test_delete_retry_is_a_silent_no_op(self, store):
        conversation = await store.create_conversation("doomed")
        await store.delete_conversation(conversation.id)
        calls = _count_notifications(store)

        await store.delete_conversation(conversation.id)

        assert calls == []

    @pytest.mark.asyncio
    async def test_delete_unknown_id_raises_not_found(self, store):
        calls = _count_notifications(store)
        with pytest.raises(NotFound):
            await store.delete_conversation("conv-never-issued")
        assert calls == []

    @pytest.mark.asyncio
    async def test_deleted_ids_are_never_reissued(self, store):
        deleted = set()
        for _ in range(5):
            conversation = await store.create_conversation("temp")
            deleted.add(conversation.id)
            await store.delete_conversation(conversation.id)

        fresh = {(await store.create_conversation("fresh")).id for _ in range(20)}

        assert deleted.isdisjoint(fresh)

    @pytest.mark.asyncio
    async def test_observers_run_in_order_after_commit(self, store):
        doomed = await store.create_conversation("doomed")
        survivor = await store.create_conversation("survivor")
        order: list[str] = []
        seen_by_first: list[list[str]] = []

        def first():
            order.append("first")

            async def requery():
                seen_by_first.append([meta.id for meta in await store.get_all_conversations()])

            return requery()

        def second():
            order.append("second")

        store.subscribe(first)
        store.subscribe(second)

        await store.delete_conversation(doomed.id)
        await store.notifier.drain()

        assert order == ["first", "second"]
        assert seen_by_first == [[survivor.id]]


class TestExportImport:
    """Portable document export and import."""

    @pytest.mark.asyncio
    async def test_export_document_shape(self, store, clock):
        conversation = await store.create_conversation("exported")
        await store.append_message(
            conversation.id, Message(id="m1", role="user", content="hello", timestamp=42)
        )

        document = await store.export_conversation(conversation.id)

        assert document["conversationId"] == conversation.id
        assert document["name"] == "exported"
        assert document["lastModified"] == clock.now
        assert document["format"] == "localchat.conversation"
        assert document["messages"] == [
            {"id": "m1", "role": "user", "content": "hello", "timestamp": 42}
        ]
        json.dumps(document)

    @pytest.mark.asyncio
    async def test_export_missing_conversation(self, store):
        with pytest.raises(NotFound):
            await store.export_conversation("conv-missing")

    @pytest.mark.asyncio
    async def test_export_then_import_on_other_store(self, store, other_store):
        original = await store.create_conversation("round trip")
        await store.append_message(original.id, Message(id="a", role="user", content="q"))
        await store.append_message(
            original.id, Message(id="b", role="assistant", content="r", model="m")
        )
        document = await store.export_conversation(original.id)

        imported = await other_store.import_conversation(document)

        assert imported.id != original.id
        reloaded = await other_store.get_conversation(imported.id)
        source = await store.get_conversation(original.id)
        assert reloaded.name == source.name
        assert reloaded.messages == source.messages

    @pytest.mark.asyncio
    async def test_import_into_same_store_gets_new_id(self, store):
        original = await store.create_conversation("dup")
        document = await store.export_conversation(original.id)
        calls = _count_notifications(store)

        imported = await store.import_conversation(json.dumps(document))

        assert imported.id != original.id
        assert len(await store.get_all_conversations()) == 2
        assert len(calls) == 1

    @pytest.mark.asyncio
    async def test_import_minimal_document(self, store):
        imported = await store.import_conversation(
            {"name": "legacy", "messages": [{"role": "user", "content": "hi"}]}
        )
        assert imported.name == "legacy"
        assert len(imported.messages) == 1

    @pytest.mark.asyncio
    @pytest.mark.parametrize("blank", ["", "   "])
    async def test_import_blank_name_uses_default(self, store, blank):
        imported = await store.import_conversation({"name": blank, "messages": []})

        assert imported.name == DEFAULT_CONVERSATION_NAME
        assert (await store.get_conversation(imported.id)).name == DEFAULT_CONVERSATION_NAME

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "document",
        [
            {"conversationId": "x", "name": "no messages"},
            {"conversationId": "x", "messages": []},
            {"name": "not a list", "messages": "hello"},
            {"name": "dict messages", "messages": {"id": "m1"}},
            {"name": "bad entry", "messages": [{"id": "m1", "role": "user"}]},
            {"name": "dupes", "messages": [
                {"id": "m1", "role": "user", "content": "a"},
                {"id": "m1", "role": "user", "content": "b"},
            ]},
            ["not", "an", "object"],
            "{not json",
        ],
    )
    async def test_import_rejects_malformed_documents(self, store, document):
        calls = _count_notifications(store)

        with pytest.raises(InvalidFormat):
            await store.import_conversation(document)

        assert await store.get_all_conversations() == []
        assert calls == []


class TestStorageFailures:
    """Storage availability and schema versioning."""

    @pytest.mark.asyncio
    async def test_operations_before_initialize(self, tmp_path):
        store = ConversationStore(tmp_path / "never-opened.sqlite3")
        with pytest.raises(StorageUnavailable):
            await store.get_all_conversations()

    @pytest.mark.asyncio
    async def test_newer_schema_version_is_refused(self, tmp_path):
        path = tmp_path / "future.sqlite3"
        conn = sqlite3.connect(path)
        conn.execute(f"PRAGMA user_version = {SCHEMA_VERSION + 1}")
        conn.close()

        store = ConversationStore(path)
        try:
            with pytest.raises(StorageUnavailable, match="newer than supported"):
                await store.initialize()
        finally:
            await store.close()

    @pytest.mark.asyncio
    async def test_unwritable_location_raises_storage_unavailable(self, tmp_path):
        blocker = tmp_path / "blocker"
        blocker.write_text("not a directory", encoding="utf-8")
        store = ConversationStore(blocker / "conversations.sqlite3")
        try:
            with pytest.raises(StorageUnavailable):
                await store.initialize()
        finally:
            await store.close()

    @pytest.mark.asyncio
    async def test_close_is_idempotent(self, tmp_path):
        store = ConversationStore(tmp_path / "c.sqlite3")
        await store.initialize()
        await store.close()
        await store.close()
        with pytest.raises(StorageUnavailable):
            await store.create_conversation("after close")
