"""
chatrelay: Pydantic request/response schemas for the callable API.
"""

from pydantic import BaseModel, Field

MAX_ITEMS = 100


class _Request(BaseModel):
    model_config = {"populate_by_name": True}


# ── Presence ────────────────────────────────────────────


class UpdatePresenceRequest(_Request):
    online: bool = True
    last_seen: int | None = Field(None, alias="lastSeen", ge=0)


class GetPresenceRequest(_Request):
    user_ids: list[str] = Field(..., alias="userIds", min_length=1, max_length=MAX_ITEMS)


# ── Message status ──────────────────────────────────────


class MessageRef(_Request):
    message_id: str = Field(..., alias="messageId", min_length=1, max_length=128)


class TypingIndicator(_Request):
    chat_id: str = Field(..., alias="chatId", min_length=1, max_length=128)
    is_typing: bool = Field(True, alias="isTyping")


class BatchStatusUpdateRequest(_Request):
    delivery_updates: list[MessageRef] = Field(default_factory=list, alias="deliveryUpdates", max_length=MAX_ITEMS)
    read_receipts: list[MessageRef] = Field(default_factory=list, alias="readReceipts", max_length=MAX_ITEMS)
    typing_indicators: list[TypingIndicator] = Field(
        default_factory=list, alias="typingIndicators", max_length=MAX_ITEMS
    )


class ResetUnreadCountRequest(_Request):
    chat_id: str = Field(..., alias="chatId", min_length=1, max_length=128)


class ValidateMessageRequest(_Request):
    recipient_id: str | None = Field(None, alias="recipientId", max_length=128)
    chat_id: str | None = Field(None, alias="chatId", max_length=128)


# ── Moderation ──────────────────────────────────────────


class BlockUserRequest(_Request):
    user_id: str = Field(..., alias="userId", min_length=1, max_length=128)


class ReportUserRequest(_Request):
    user_id: str = Field(..., alias="userId", min_length=1, max_length=128)
    reason: str = Field(..., min_length=1, max_length=50)
    description: str = Field("", max_length=1000)
    type: str = Field("user", max_length=50)


# ── Profiles ────────────────────────────────────────────


class GetUserProfileRequest(_Request):
    user_id: str = Field(..., alias="userId", min_length=1, max_length=128)


class ShouldSendReadReceiptRequest(_Request):
    # Accepted for older clients; the answer depends only on the reader
    message_id: str | None = Field(None, alias="messageId", max_length=128)
    chat_id: str | None = Field(None, alias="chatId", max_length=128)


# ── Admin ───────────────────────────────────────────────


class BroadcastRequest(_Request):
    title: str = Field(..., min_length=1, max_length=200)
    body: str = Field(..., min_length=1, max_length=1000)
    user_ids: list[str] | None = Field(None, alias="userIds")
    data: dict[str, str] = Field(default_factory=dict)


class HealthResponse(BaseModel):
    status: str
    timestamp: str
    version: str
    breakers: dict[str, dict]


# ── Triggers ────────────────────────────────────────────


class DocumentCreatedEvent(_Request):
    """A document-created push: the new document and its ids."""
    event_id: str = Field("", alias="eventId", max_length=256)
    document_id: str = Field(..., alias="documentId", min_length=1)
    parent_id: str | None = Field(None, alias="parentId")
    data: dict | None = None


class DocumentWrittenEvent(_Request):
    event_id: str = Field("", alias="eventId", max_length=256)
    document_id: str = Field(..., alias="documentId", min_length=1)
    before: dict | None = None
    after: dict | None = None


class IdentityDeletedEvent(_Request):
    event_id: str = Field("", alias="eventId", max_length=256)
    uid: str = Field(..., min_length=1, max_length=128)
