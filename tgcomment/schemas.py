"""
Pydantic schemas for bot API payloads.

This module contains:
- Models for the parts of a platform update the relay reads
- The tagged update kinds produced by classify_update()
- Response models for the HTTP surface
"""

from typing import Any, Literal, Optional, Union

from pydantic import BaseModel, Field


# =============================================================================
# Platform Payload Models
# =============================================================================

class TelegramUser(BaseModel):
    """Sender of a message or callback query."""
    id: int
    is_bot: bool = False
    first_name: Optional[str] = None
    username: Optional[str] = None

    model_config = {"extra": "allow"}


class TelegramChat(BaseModel):
    id: int
    type: Optional[str] = None

    model_config = {"extra": "allow"}


class TelegramFile(BaseModel):
    """
    Common shape of photo sizes, videos, audio, voice notes, video notes
    and documents. Only the fields used for download and naming are typed.
    """
    file_id: str
    file_unique_id: Optional[str] = None
    file_name: Optional[str] = None
    mime_type: Optional[str] = None
    width: Optional[int] = None
    height: Optional[int] = None
    duration: Optional[int] = None
    length: Optional[int] = None  # video notes: diameter of the circle
    thumbnail: Optional[dict[str, Any]] = None

    model_config = {"extra": "allow"}


class TelegramMessage(BaseModel):
    """
    Inbound message. `from` is a reserved word in Python, so the sender is
    exposed as `from_user`.
    """
    message_id: int
    from_user: Optional[TelegramUser] = Field(None, alias="from")
    chat: TelegramChat
    date: Optional[int] = None
    text: Optional[str] = None
    caption: Optional[str] = None
    media_group_id: Optional[str] = None
    photo: Optional[list[TelegramFile]] = None
    video: Optional[TelegramFile] = None
    audio: Optional[TelegramFile] = None
    voice: Optional[TelegramFile] = None
    video_note: Optional[TelegramFile] = None
    document: Optional[TelegramFile] = None
    reply_to_message: Optional["TelegramMessage"] = None

    model_config = {"extra": "allow", "populate_by_name": True}

    @property
    def content(self) -> str:
        """Text of the message, falling back to the media caption."""
        if self.text is not None:
            return self.text
        return self.caption or ""

    def media_files(self) -> list[tuple[str, TelegramFile]]:
        """
        Downloadable files in a fixed order: photo (largest variant only),
        video, audio, voice, video note, document.
        """
        files: list[tuple[str, TelegramFile]] = []
        if self.photo:
            files.append(("photo", self.photo[-1]))
        for kind in ("video", "audio", "voice", "video_note", "document"):
            item = getattr(self, kind)
            if item is not None:
                files.append((kind, item))
        return files


class TelegramCallbackQuery(BaseModel):
    id: str
    from_user: TelegramUser = Field(..., alias="from")
    message: Optional[TelegramMessage] = None
    data: Optional[str] = None

    model_config = {"extra": "allow", "populate_by_name": True}


class TelegramUpdate(BaseModel):
    update_id: Optional[int] = None
    message: Optional[TelegramMessage] = None
    edited_message: Optional[TelegramMessage] = None
    callback_query: Optional[TelegramCallbackQuery] = None

    model_config = {"extra": "allow"}


# =============================================================================
# Update Kinds
# =============================================================================

class MessageUpdate(BaseModel):
    kind: Literal["message"] = "message"
    update_id: Optional[int] = None
    message: TelegramMessage
    raw: dict[str, Any]


class EditedMessageUpdate(BaseModel):
    kind: Literal["edited_message"] = "edited_message"
    update_id: Optional[int] = None
    message: TelegramMessage


class CallbackQueryUpdate(BaseModel):
    kind: Literal["callback_query"] = "callback_query"
    update_id: Optional[int] = None
    callback_query: TelegramCallbackQuery


class UnsupportedUpdate(BaseModel):
    kind: Literal["unsupported"] = "unsupported"
    update_id: Optional[int] = None


UpdateKind = Union[MessageUpdate, EditedMessageUpdate, CallbackQueryUpdate, UnsupportedUpdate]


def classify_update(update: dict[str, Any]) -> UpdateKind:
    """
    Turn a raw update into exactly one tagged kind.

    Raises:
        pydantic.ValidationError: the update does not match the bot API shape
    """
    parsed = TelegramUpdate.model_validate(update)
    if parsed.message is not None:
        return MessageUpdate(update_id=parsed.update_id, message=parsed.message, raw=update["message"])
    if parsed.edited_message is not None:
        return EditedMessageUpdate(update_id=parsed.update_id, message=parsed.edited_message)
    if parsed.callback_query is not None:
        return CallbackQueryUpdate(update_id=parsed.update_id, callback_query=parsed.callback_query)
    return UnsupportedUpdate(update_id=parsed.update_id)


# =============================================================================
# Pydantic Response Models
# =============================================================================

class WebhookResponse(BaseModel):
    """Response model for an accepted webhook delivery."""
    ok: bool = Field(default=True, description="Update accepted")


class ErrorResponse(BaseModel):
    """Response model for error responses."""
    detail: str = Field(..., description="Error description")


class HealthResponse(BaseModel):
    """Response model for health check endpoints."""
    status: str = Field(..., description="Health status")
    reason: Optional[str] = Field(None, description="Reason if not ready")
