"""
Generation guard contract.

The streaming subsystem owns the knowledge of which conversations are
currently receiving a model response. The store never asks; instead the
user-facing actions in ConversationActions check the guard before renaming,
deleting or exporting, and refuse with GenerationInProgress.
"""

from __future__ import annotations

import contextlib
import logging
from collections import Counter
from collections.abc import Iterator
from typing import Any, Protocol, runtime_checkable

from localchat.conversations.errors import GenerationInProgress, InvalidArgument
from localchat.conversations.models import ConversationMeta
from localchat.conversations.store import ConversationStore

logger = logging.getLogger(__name__)


@runtime_checkable
class GenerationGuard(Protocol):
    """Answers whether a conversation is currently being written by a response stream."""

    def is_generating(self, conversation_id: str) -> bool: ...


class GenerationTracker:
    """In-memory GenerationGuard driven by the streaming subsystem."""

    def __init__(self) -> None:
        self._active: Counter[str] = Counter()

    def is_generating(self, conversation_id: str) -> bool:
        return self._active[conversation_id] > 0

    def mark_started(self, conversation_id: str) -> None:
        self._active[conversation_id] += 1

    def mark_finished(self, conversation_id: str) -> None:
        if self._active[conversation_id] <= 1:
            del self._active[conversation_id]
        else:
            self._active[conversation_id] -= 1

    @contextlib.contextmanager
    def generating(self, conversation_id: str) -> Iterator[None]:
        """Mark a conversation as generating for the duration of the block."""
        self.mark_started(conversation_id)
        try:
            yield
        finally:
            self.mark_finished(conversation_id)


class ConversationActions:
    """User-facing conversation actions that honour the generation guard."""

    def __init__(self, store: ConversationStore, guard: GenerationGuard) -> None:
        self._store = store
        self._guard = guard

    def _ensure_idle(self, conversation_id: str, action: str) -> None:
        if self._guard.is_generating(conversation_id):
            logger.info(
                "Refused %s during generation",
                action,
                extra={"conversation_id": conversation_id, "action": action},
            )
            raise GenerationInProgress(conversation_id, action)

    async def rename(self, conversation_id: str, new_name: str) -> ConversationMeta:
        self._ensure_idle(conversation_id, "rename")
        name = (new_name or "").strip()
        if not name:
            raise InvalidArgument(
                "Conversation name must not be empty",
                context={"conversation_id": conversation_id},
            )
        return await self._store.update_conversation_name(conversation_id, name)

    async def delete(self, conversation_id: str) -> None:
        self._ensure_idle(conversation_id, "delete")
        await self._store.delete_conversation(conversation_id)

    async def export(self, conversation_id: str) -> dict[str, Any]:
        self._ensure_idle(conversation_id, "export")
        return await self._store.export_conversation(conversation_id)
