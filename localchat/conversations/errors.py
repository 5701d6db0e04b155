"""Error taxonomy for conversation persistence."""

from __future__ import annotations

from typing import Any


class ConversationStoreError(Exception):
    """
    Base exception for conversation store failures.

    Attributes:
        message: Error description
        context: Additional context for logging (ids, operation name, ...)
    """

    def __init__(self, message: str, context: dict[str, Any] | None = None):
        self.message = message
        self.context = context or {}
        super().__init__(message)

    def to_dict(self) -> dict[str, Any]:
        """Convert error to dictionary for logging."""
        return {
            "type": self.__class__.__name__,
            "message": self.message,
            "context": self.context,
        }


class NotFound(ConversationStoreError):
    """Referenced conversation or message id does not exist."""

    pass


class InvalidArgument(ConversationStoreError):
    """Caller supplied an unusable value (e.g. an empty name)."""

    pass


class InvalidFormat(ConversationStoreError):
    """Imported document does not have the expected shape."""

    pass


class StorageUnavailable(ConversationStoreError):
    """Underlying database cannot be read or written."""

    pass


class GenerationInProgress(ConversationStoreError):
    """A destructive action was refused because a response is still streaming."""

    def __init__(self, conversation_id: str, action: str):
        super().__init__(
            f"Cannot {action} conversation {conversation_id} while a response is being generated",
            context={"conversation_id": conversation_id, "action": action},
        )
        self.conversation_id = conversation_id
        self.action = action
