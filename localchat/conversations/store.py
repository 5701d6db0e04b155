"""Durable storage for conversations and their messages."""

from __future__ import annotations

import asyncio
import contextlib
import functools
import json
import logging
import sqlite3
import time
from collections.abc import Callable, Iterator, Mapping
from concurrent.futures import ThreadPoolExecutor
from pathlib import Path
from typing import Any, TypeVar
from uuid import uuid4

from pydantic import ValidationError
from pydantic_core import PydanticSerializationError

from localchat.config import get_settings
from localchat.conversations.errors import (
    InvalidArgument,
    InvalidFormat,
    NotFound,
    StorageUnavailable,
)
from localchat.conversations.models import (
    Conversation,
    ConversationMeta,
    ExportDocument,
    Message,
)
from localchat.conversations.notifier import ChangeHandler, ChangeNotifier, Subscription

logger = logging.getLogger(__name__)

T = TypeVar("T")

SCHEMA_VERSION = 1
DEFAULT_CONVERSATION_NAME = "New Conversation"
DEFAULT_BUSY_TIMEOUT_MS = 5000
_CORE_MESSAGE_FIELDS = ("id", "role", "content")

_SCHEMA = """
CREATE TABLE IF NOT EXISTS issued_ids (
    id TEXT PRIMARY KEY,
    issued_at INTEGER NOT NULL
);

CREATE TABLE IF NOT EXISTS conversations (
    id TEXT PRIMARY KEY REFERENCES issued_ids(id),
    name TEXT NOT NULL,
    last_modified INTEGER NOT NULL
);

CREATE INDEX IF NOT EXISTS conversations_last_modified_idx
ON conversations (last_modified DESC);

CREATE TABLE IF NOT EXISTS messages (
    conversation_id TEXT NOT NULL REFERENCES conversations(id) ON DELETE CASCADE,
    id TEXT NOT NULL,
    position INTEGER NOT NULL,
    role TEXT NOT NULL,
    content TEXT NOT NULL,
    extra_json TEXT NOT NULL DEFAULT '{}',
    PRIMARY KEY (conversation_id, id)
);

CREATE INDEX IF NOT EXISTS messages_position_idx
ON messages (conversation_id, position);
"""


def epoch_millis() -> int:
    return int(time.time() * 1000)


class ConversationStore:
    """
    Persist conversations in a local SQLite database.

    Every public operation is a coroutine. The blocking SQLite work runs on a
    single dedicated worker thread, so mutations are applied in the order they
    were issued and each one commits in its own transaction. Subscribers of
    the attached ChangeNotifier are told about a mutation only after it has
    committed.

    Mutations are not cancellable: once submitted, the write and its
    notification complete even if the awaiting task is cancelled.
    """

    def __init__(
        self,
        path: str | Path | None = None,
        *,
        notifier: ChangeNotifier | None = None,
        clock: Callable[[], int] | None = None,
        busy_timeout_ms: int | None = None,
    ) -> None:
        if path is None:
            settings = get_settings()
            path = settings.store.path
            if busy_timeout_ms is None:
                busy_timeout_ms = settings.store.busy_timeout_ms
        self._path = Path(path)
        self._busy_timeout_ms = (
            busy_timeout_ms if busy_timeout_ms is not None else DEFAULT_BUSY_TIMEOUT_MS
        )
        self._clock = clock or epoch_millis
        self.notifier = notifier or ChangeNotifier()
        self._conn: sqlite3.Connection | None = None
        self._executor: ThreadPoolExecutor | None = None

    @property
    def path(self) -> Path:
        return self._path

    async def initialize(self) -> None:
        if self._executor is None:
            self._executor = ThreadPoolExecutor(
                max_workers=1, thread_name_prefix="localchat-store"
            )
        await self._run(self._open)
        logger.info("Conversation store ready", extra={"path": str(self._path)})

    async def close(self) -> None:
        if self._executor is None:
            return
        try:
            await self._run(self._close_connection)
        finally:
            self._executor.shutdown(wait=True)
            self._executor = None

    def subscribe(self, handler: ChangeHandler) -> Subscription:
        return self.notifier.subscribe(handler)

    def unsubscribe(self, token: Subscription) -> None:
        self.notifier.unsubscribe(token)

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    async def get_all_conversations(self) -> list[ConversationMeta]:
        """Return every conversation's metadata, most recently modified first."""
        return await self._run(self._select_all)

    async def get_conversation(self, conversation_id: str) -> Conversation:
        return await self._run(self._select_conversation, conversation_id)

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------

    async def create_conversation(self, initial_name: str = DEFAULT_CONVERSATION_NAME) -> Conversation:
        name = initial_name if initial_name and initial_name.strip() else DEFAULT_CONVERSATION_NAME
        return await self._mutate("create_conversation", self._insert_conversation, name, [])

    async def update_conversation_name(self, conversation_id: str, new_name: str) -> ConversationMeta:
        if not isinstance(new_name, str) or not new_name.strip():
            raise InvalidArgument(
                "Conversation name must not be empty",
                context={"conversation_id": conversation_id},
            )
        return await self._mutate(
            "update_conversation_name", self._rename, conversation_id, new_name
        )

    async def append_message(self, conversation_id: str, message: Message | Mapping[str, Any]) -> Message:
        if not isinstance(message, Message):
            try:
                message = Message.model_validate(message)
            except ValidationError as e:
                raise InvalidArgument(
                    f"Invalid message: {e.errors()[0]['msg']}",
                    context={"conversation_id": conversation_id},
                ) from e
        try:
            message.model_dump(mode="json")
        except PydanticSerializationError as e:
            raise InvalidArgument(
                f"Message fields must be JSON serializable: {e}",
                context={"conversation_id": conversation_id, "message_id": message.id},
            ) from e
        return await self._mutate("append_message", self._append, conversation_id, message)

    async def edit_message(self, conversation_id: str, message_id: str, new_content: str) -> Message:
        if not isinstance(new_content, str):
            raise InvalidArgument(
                "Message content must be a string",
                context={"conversation_id": conversation_id, "message_id": message_id},
            )
        return await self._mutate(
            "edit_message", self._edit, conversation_id, message_id, new_content
        )

    async def delete_message(self, conversation_id: str, message_id: str) -> None:
        await self._mutate("delete_message", self._remove_message, conversation_id, message_id)

    async def delete_conversation(self, conversation_id: str) -> None:
        """
        Delete a conversation and all of its messages.

        Raises NotFound for ids this store never issued. Repeating the call for
        an already deleted conversation does nothing and notifies no one.
        """
        task = asyncio.ensure_future(self._delete_and_notify(conversation_id))
        await asyncio.shield(task)

    async def export_conversation(self, conversation_id: str) -> dict[str, Any]:
        conversation = await self.get_conversation(conversation_id)
        document = ExportDocument.from_conversation(conversation, exported_at=self._clock())
        return document.to_wire()

    async def import_conversation(self, document: Mapping[str, Any] | str | bytes) -> Conversation:
        """
        Insert a previously exported conversation under a freshly minted id.

        The id recorded in the document is ignored so imports never collide
        with existing data.
        """
        parsed = self._parse_document(document)
        name = parsed.name if parsed.name.strip() else DEFAULT_CONVERSATION_NAME
        messages = [message.model_copy(deep=True) for message in parsed.messages]
        conversation = await self._mutate(
            "import_conversation", self._insert_conversation, name, messages
        )
        logger.info(
            "conversation_imported",
            extra={
                "conversation_id": conversation.id,
                "source_conversation_id": parsed.conversation_id,
                "message_count": len(messages),
            },
        )
        return conversation

    # ------------------------------------------------------------------
    # Async plumbing
    # ------------------------------------------------------------------

    async def _run(self, func: Callable[..., T], /, *args: Any) -> T:
        if self._executor is None:
            raise StorageUnavailable("ConversationStore not initialized")
        loop = asyncio.get_running_loop()
        future = loop.run_in_executor(self._executor, functools.partial(self._guarded, func, *args))
        return await asyncio.shield(future)

    def _guarded(self, func: Callable[..., T], *args: Any) -> T:
        try:
            return func(*args)
        except (sqlite3.Error, OSError) as e:
            logger.error(
                "Conversation storage failure",
                extra={"operation": func.__name__, "path": str(self._path), "error": str(e)},
            )
            raise StorageUnavailable(
                f"Conversation storage unavailable: {e}",
                context={"operation": func.__name__, "path": str(self._path)},
            ) from e

    async def _mutate(self, operation: str, func: Callable[..., T], /, *args: Any) -> T:
        task = asyncio.ensure_future(self._commit_and_notify(operation, func, *args))
        return await asyncio.shield(task)

    async def _commit_and_notify(self, operation: str, func: Callable[..., T], *args: Any) -> T:
        result = await self._run(func, *args)
        logger.debug("Committed %s", operation, extra={"operation": operation})
        self.notifier.notify()
        return result

    async def _delete_and_notify(self, conversation_id: str) -> None:
        removed = await self._run(self._remove_conversation, conversation_id)
        if removed:
            logger.debug(
                "Committed delete_conversation",
                extra={"operation": "delete_conversation", "conversation_id": conversation_id},
            )
            self.notifier.notify()

    @staticmethod
    def _parse_document(document: Mapping[str, Any] | str | bytes) -> ExportDocument:
        if isinstance(document, (str, bytes, bytearray)):
            try:
                document = json.loads(document)
            except (json.JSONDecodeError, UnicodeDecodeError) as e:
                raise InvalidFormat(f"Conversation document is not valid JSON: {e}") from e
        if not isinstance(document, Mapping):
            raise InvalidFormat("Conversation document must be a JSON object")
        try:
            return ExportDocument.model_validate(dict(document))
        except ValidationError as e:
            problems = "; ".join(
                f"{'.'.join(str(part) for part in error['loc']) or 'document'}: {error['msg']}"
                for error in e.errors()
            )
            raise InvalidFormat(f"Malformed conversation document: {problems}") from e

    # ------------------------------------------------------------------
    # Worker-thread SQLite operations
    # ------------------------------------------------------------------

    def _open(self) -> None:
        if self._conn is not None:
            return
        self._path.parent.mkdir(parents=True, exist_ok=True)
        conn = sqlite3.connect(self._path, isolation_level=None)
        try:
            conn.row_factory = sqlite3.Row
            conn.execute("PRAGMA foreign_keys = ON")
            conn.execute(f"PRAGMA busy_timeout = {int(self._busy_timeout_ms)}")
            conn.execute("PRAGMA journal_mode = WAL")
            version = conn.execute("PRAGMA user_version").fetchone()[0]
            if version > SCHEMA_VERSION:
                raise StorageUnavailable(
                    f"Database schema version {version} is newer than supported ({SCHEMA_VERSION})",
                    context={"path": str(self._path)},
                )
            conn.executescript(_SCHEMA)
            conn.execute(f"PRAGMA user_version = {SCHEMA_VERSION}")
        except BaseException:
            conn.close()
            raise
        self._conn = conn

    def _close_connection(self) -> None:
        if self._conn is not None:
            self._conn.close()
            self._conn = None

    def _connection(self) -> sqlite3.Connection:
        if self._conn is None:
            raise StorageUnavailable("ConversationStore not initialized")
        return self._conn

    @contextlib.contextmanager
    def _transaction(self) -> Iterator[sqlite3.Connection]:
        conn = self._connection()
        conn.execute("BEGIN IMMEDIATE")
        try:
            yield conn
        except BaseException:
            conn.execute("ROLLBACK")
            raise
        conn.execute("COMMIT")

    def _select_all(self) -> list[ConversationMeta]:
        rows = self._connection().execute(
            """
            SELECT id, name, last_modified
            FROM conversations
            ORDER BY last_modified DESC, rowid DESC
            """
        ).fetchall()
        return [self._row_to_meta(row) for row in rows]

    def _select_conversation(self, conversation_id: str) -> Conversation:
        conn = self._connection()
        row = self._require_conversation(conn, conversation_id)
        return Conversation(
            id=row["id"],
            name=row["name"],
            last_modified=row["last_modified"],
            messages=self._select_messages(conn, conversation_id),
        )

    def _insert_conversation(self, name: str, messages: list[Message]) -> Conversation:
        with self._transaction() as conn:
            now = self._clock()
            conversation_id = self._mint_id(conn, now)
            conn.execute(
                "INSERT INTO conversations (id, name, last_modified) VALUES (?, ?, ?)",
                (conversation_id, name, now),
            )
            for position, message in enumerate(messages):
                self._insert_message(conn, conversation_id, position, message)
        return Conversation(id=conversation_id, name=name, last_modified=now, messages=messages)

    def _rename(self, conversation_id: str, new_name: str) -> ConversationMeta:
        with self._transaction() as conn:
            row = self._require_conversation(conn, conversation_id)
            last_modified = self._touch(conn, conversation_id, row["last_modified"], name=new_name)
        return ConversationMeta(id=conversation_id, name=new_name, last_modified=last_modified)

    def _append(self, conversation_id: str, message: Message) -> Message:
        with self._transaction() as conn:
            row = self._require_conversation(conn, conversation_id)
            exists = conn.execute(
                "SELECT 1 FROM messages WHERE conversation_id = ? AND id = ?",
                (conversation_id, message.id),
            ).fetchone()
            if exists is not None:
                raise InvalidArgument(
                    f"Message {message.id} already exists in conversation {conversation_id}",
                    context={"conversation_id": conversation_id, "message_id": message.id},
                )
            position = conn.execute(
                "SELECT COALESCE(MAX(position), -1) + 1 FROM messages WHERE conversation_id = ?",
                (conversation_id,),
            ).fetchone()[0]
            self._insert_message(conn, conversation_id, position, message)
            self._touch(conn, conversation_id, row["last_modified"])
        return message.model_copy(deep=True)

    def _edit(self, conversation_id: str, message_id: str, new_content: str) -> Message:
        with self._transaction() as conn:
            row = self._require_conversation(conn, conversation_id)
            message_row = self._require_message(conn, conversation_id, message_id)
            conn.execute(
                "UPDATE messages SET content = ? WHERE conversation_id = ? AND id = ?",
                (new_content, conversation_id, message_id),
            )
            self._touch(conn, conversation_id, row["last_modified"])
        edited = self._row_to_message(message_row)
        edited.content = new_content
        return edited

    def _remove_message(self, conversation_id: str, message_id: str) -> None:
        with self._transaction() as conn:
            row = self._require_conversation(conn, conversation_id)
            self._require_message(conn, conversation_id, message_id)
            conn.execute(
                "DELETE FROM messages WHERE conversation_id = ? AND id = ?",
                (conversation_id, message_id),
            )
            self._touch(conn, conversation_id, row["last_modified"])

    def _remove_conversation(self, conversation_id: str) -> bool:
        with self._transaction() as conn:
            cursor = conn.execute("DELETE FROM conversations WHERE id = ?", (conversation_id,))
            if cursor.rowcount > 0:
                return True
            issued = conn.execute(
                "SELECT 1 FROM issued_ids WHERE id = ?", (conversation_id,)
            ).fetchone()
        if issued is None:
            raise NotFound(
                f"Conversation not found: {conversation_id}",
                context={"conversation_id": conversation_id},
            )
        return False

    # ------------------------------------------------------------------
    # Helpers (called with an open connection, on the worker thread)
    # ------------------------------------------------------------------

    def _mint_id(self, conn: sqlite3.Connection, now: int) -> str:
        while True:
            candidate = f"conv-{uuid4().hex}"
            cursor = conn.execute(
                "INSERT OR IGNORE INTO issued_ids (id, issued_at) VALUES (?, ?)",
                (candidate, now),
            )
            if cursor.rowcount == 1:
                return candidate

    def _touch(
        self,
        conn: sqlite3.Connection,
        conversation_id: str,
        previous: int,
        *,
        name: str | None = None,
    ) -> int:
        last_modified = max(self._clock(), previous)
        conn.execute(
            "UPDATE conversations SET name = COALESCE(?, name), last_modified = ? WHERE id = ?",
            (name, last_modified, conversation_id),
        )
        return last_modified

    @staticmethod
    def _require_conversation(conn: sqlite3.Connection, conversation_id: str) -> sqlite3.Row:
        row = conn.execute(
            "SELECT id, name, last_modified FROM conversations WHERE id = ?",
            (conversation_id,),
        ).fetchone()
        if row is None:
            raise NotFound(
                f"Conversation not found: {conversation_id}",
                context={"conversation_id": conversation_id},
            )
        return row

    @staticmethod
    def _require_message(
        conn: sqlite3.Connection, conversation_id: str, message_id: str
    ) -> sqlite3.Row:
        row = conn.execute(
            """
            SELECT id, role, content, extra_json
            FROM messages
            WHERE conversation_id = ? AND id = ?
            """,
            (conversation_id, message_id),
        ).fetchone()
        if row is None:
            raise NotFound(
                f"Message {message_id} not found in conversation {conversation_id}",
                context={"conversation_id": conversation_id, "message_id": message_id},
            )
        return row

    @classmethod
    def _select_messages(cls, conn: sqlite3.Connection, conversation_id: str) -> list[Message]:
        rows = conn.execute(
            """
            SELECT id, role, content, extra_json
            FROM messages
            WHERE conversation_id = ?
            ORDER BY position ASC
            """,
            (conversation_id,),
        ).fetchall()
        return [cls._row_to_message(row) for row in rows]

    @staticmethod
    def _insert_message(
        conn: sqlite3.Connection, conversation_id: str, position: int, message: Message
    ) -> None:
        payload = message.model_dump(mode="json")
        extra = {key: value for key, value in payload.items() if key not in _CORE_MESSAGE_FIELDS}
        conn.execute(
            """
            INSERT INTO messages (conversation_id, id, position, role, content, extra_json)
            VALUES (?, ?, ?, ?, ?, ?)
            """,
            (
                conversation_id,
                message.id,
                position,
                message.role,
                message.content,
                json.dumps(extra, ensure_ascii=False),
            ),
        )

    @staticmethod
    def _decode_extra(value: str | None) -> dict[str, Any]:
        if not value:
            return {}
        try:
            decoded = json.loads(value)
        except json.JSONDecodeError:
            return {}
        return decoded if isinstance(decoded, dict) else {}

    @classmethod
    def _row_to_message(cls, row: sqlite3.Row) -> Message:
        extra = cls._decode_extra(row["extra_json"])
        return Message(id=row["id"], role=row["role"], content=row["content"], **extra)

    @staticmethod
    def _row_to_meta(row: sqlite3.Row) -> ConversationMeta:
        return ConversationMeta(id=row["id"], name=row["name"], last_modified=row["last_modified"])
