"""Conversation persistence, change notification and recency grouping."""

from .errors import (
    ConversationStoreError,
    GenerationInProgress,
    InvalidArgument,
    InvalidFormat,
    NotFound,
    StorageUnavailable,
)
from .grouping import group_conversations
from .guard import ConversationActions, GenerationGuard, GenerationTracker
from .models import Conversation, ConversationGroup, ConversationMeta, ExportDocument, Message
from .notifier import ChangeNotifier, Subscription
from .store import ConversationStore

__all__ = [
    "ChangeNotifier",
    "Conversation",
    "ConversationActions",
    "ConversationGroup",
    "ConversationMeta",
    "ConversationStore",
    "ConversationStoreError",
    "ExportDocument",
    "GenerationGuard",
    "GenerationInProgress",
    "GenerationTracker",
    "InvalidArgument",
    "InvalidFormat",
    "Message",
    "NotFound",
    "StorageUnavailable",
    "Subscription",
    "group_conversations",
]
