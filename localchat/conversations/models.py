"""Conversation, message and export document models."""

from __future__ import annotations

from typing import Any
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

EXPORT_FORMAT = "localchat.conversation"
EXPORT_VERSION = 1


def new_message_id() -> str:
    return uuid4().hex


class Message(BaseModel):
    """
    One chat message.

    Only id, role and content are interpreted by the store. Anything else the
    caller attaches (model name, timings, attachments, ...) is kept as-is and
    round-trips through persistence and export.
    """

    id: str = Field(default_factory=new_message_id, min_length=1)
    role: str = Field(..., description="Message author (user, assistant, system, ...)")
    content: str = Field(..., description="Message text")

    model_config = ConfigDict(extra="allow")

    @property
    def extra_fields(self) -> dict[str, Any]:
        return dict(self.model_extra or {})


class ConversationMeta(BaseModel):
    """Conversation metadata without message bodies."""

    id: str
    name: str
    last_modified: int = Field(..., ge=0, description="Epoch milliseconds of the last write")


class Conversation(ConversationMeta):
    """A conversation together with its messages, oldest first."""

    messages: list[Message] = Field(default_factory=list)

    def meta(self) -> ConversationMeta:
        return ConversationMeta(id=self.id, name=self.name, last_modified=self.last_modified)


class ExportDocument(BaseModel):
    """Portable, self-describing representation of a single conversation."""

    format: str = Field(default=EXPORT_FORMAT)
    version: int = Field(default=EXPORT_VERSION, ge=1)
    exported_at: int | None = Field(default=None, alias="exportedAt")
    conversation_id: str | None = Field(default=None, alias="conversationId")
    name: str
    last_modified: int | None = Field(default=None, alias="lastModified")
    messages: list[Message]

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    @field_validator("format")
    @classmethod
    def validate_format(cls, v: str) -> str:
        if v != EXPORT_FORMAT:
            raise ValueError(f"Unsupported document format: {v!r}")
        return v

    @field_validator("version")
    @classmethod
    def validate_version(cls, v: int) -> int:
        if v > EXPORT_VERSION:
            raise ValueError(f"Document version {v} is newer than supported ({EXPORT_VERSION})")
        return v

    @model_validator(mode="after")
    def validate_unique_message_ids(self) -> "ExportDocument":
        seen: set[str] = set()
        for message in self.messages:
            if message.id in seen:
                raise ValueError(f"Duplicate message id in document: {message.id}")
            seen.add(message.id)
        return self

    @classmethod
    def from_conversation(cls, conversation: Conversation, exported_at: int) -> "ExportDocument":
        return cls(
            exported_at=exported_at,
            conversation_id=conversation.id,
            name=conversation.name,
            last_modified=conversation.last_modified,
            messages=[message.model_copy(deep=True) for message in conversation.messages],
        )

    def to_wire(self) -> dict[str, Any]:
        """Serialize with the camelCase keys used in exported files."""
        return self.model_dump(by_alias=True, mode="json")


class ConversationGroup(BaseModel):
    """A display bucket of conversations sharing a recency category."""

    label: str
    conversations: list[Any] = Field(default_factory=list)
