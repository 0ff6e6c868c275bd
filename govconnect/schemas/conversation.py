"""
Live chat schemas: conversations, timeline messages and AI processing status.
"""
from datetime import datetime
from enum import Enum
from typing import Any, Optional

from pydantic import (
    AliasChoices,
    BaseModel,
    Field,
    ValidationInfo,
    field_validator,
)

from govconnect.core.validation import PhoneNumberValidator, extract_image_url

WEBCHAT_KEY_PREFIX = "web_"


class Channel(str, Enum):
    WHATSAPP = "WHATSAPP"
    WEBCHAT = "WEBCHAT"


class ConversationFilter(str, Enum):
    """Conversation list tabs"""
    ALL = "all"
    TAKEOVER = "takeover"
    BOT = "bot"


class AiStatus(str, Enum):
    PROCESSING = "processing"
    ERROR = "error"


class MessageDirection(str, Enum):
    IN = "IN"
    OUT = "OUT"


class MessageSource(str, Enum):
    ADMIN = "ADMIN"
    AI = "AI"
    SYSTEM = "SYSTEM"


# Wire spellings seen from the channel service
_SOURCE_ALIASES = {
    "ADMIN": MessageSource.ADMIN,
    "AI": MessageSource.AI,
    "BOT": MessageSource.AI,
    "SYSTEM": MessageSource.SYSTEM,
}


class ProcessingStage(str, Enum):
    """AI pipeline stages, in the order they happen"""
    RECEIVING = "receiving"
    READING = "reading"
    SEARCHING = "searching"
    THINKING = "thinking"
    PREPARING = "preparing"
    SENDING = "sending"
    COMPLETED = "completed"
    ERROR = "error"


STAGE_ORDER: dict[ProcessingStage, int] = {stage: index for index, stage in enumerate(ProcessingStage)}
TERMINAL_STAGES = frozenset({ProcessingStage.COMPLETED, ProcessingStage.ERROR})


def is_webchat_key(key: str) -> bool:
    return key.startswith(WEBCHAT_KEY_PREFIX)


class Conversation(BaseModel):
    """One end-user thread as listed by the backend"""
    id: Optional[str] = None
    wa_user_id: Optional[str] = None
    channel: Channel = Channel.WHATSAPP
    channel_identifier: str = ""
    display_name: Optional[str] = Field(
        default=None, validation_alias=AliasChoices("display_name", "user_name")
    )
    collected_phone: Optional[str] = Field(
        default=None, validation_alias=AliasChoices("collected_phone", "user_phone")
    )
    last_message: Optional[str] = None
    last_message_at: Optional[datetime] = None
    unread_count: int = 0
    is_takeover: bool = False
    ai_status: Optional[AiStatus] = None
    ai_error_message: Optional[str] = None
    pending_message_id: Optional[str] = None

    @field_validator("id", "pending_message_id", mode="before")
    @classmethod
    def coerce_id(cls, v: Any) -> Optional[str]:
        return None if v is None else str(v)

    @field_validator("unread_count", mode="before")
    @classmethod
    def clamp_unread(cls, v: Any) -> int:
        return max(0, int(v or 0))

    @field_validator("ai_status", mode="before")
    @classmethod
    def unknown_ai_status_is_idle(cls, v: Any) -> Optional[str]:
        if isinstance(v, str) and v.lower() in {s.value for s in AiStatus}:
            return v.lower()
        return None

    @property
    def conversation_key(self) -> str:
        return self.wa_user_id or self.channel_identifier or ""

    @property
    def is_webchat(self) -> bool:
        return self.channel == Channel.WEBCHAT or is_webchat_key(self.conversation_key)

    @property
    def title(self) -> str:
        """Collected name first; otherwise the phone (WA) or session id (webchat)."""
        return self.display_name or self.conversation_key

    @property
    def phone_display(self) -> Optional[str]:
        if self.collected_phone:
            return PhoneNumberValidator.format_display(self.collected_phone)
        if not self.is_webchat:
            return PhoneNumberValidator.format_display(self.conversation_key)
        return None

    def matches(self, query: str) -> bool:
        """Case-insensitive search over key, name and last message."""
        needle = (query or "").strip().lower()
        if not needle:
            return True
        return any(
            needle in (value or "").lower()
            for value in (self.conversation_key, self.display_name, self.last_message)
        )


class Message(BaseModel):
    """One line of a conversation timeline"""
    id: str
    text: str = Field(default="", validation_alias=AliasChoices("text", "message_text"))
    direction: MessageDirection
    source: Optional[MessageSource] = Field(default=None, validate_default=True)
    timestamp: datetime
    is_read: Optional[bool] = None

    @field_validator("id", mode="before")
    @classmethod
    def coerce_id(cls, v: Any) -> str:
        return str(v)

    @field_validator("source", mode="before")
    @classmethod
    def normalize_source(cls, v: Any, info: ValidationInfo) -> Optional[MessageSource]:
        # Source only means something for outgoing lines
        if info.data.get("direction") != MessageDirection.OUT:
            return None
        if isinstance(v, MessageSource):
            return v
        return _SOURCE_ALIASES.get(str(v or "").upper(), MessageSource.SYSTEM)

    @property
    def is_ai_reply(self) -> bool:
        return self.direction == MessageDirection.OUT and self.source == MessageSource.AI

    @property
    def image_url(self) -> Optional[str]:
        return extract_image_url(self.text)


class ProcessingStatus(BaseModel):
    """Ephemeral progress of an in-flight AI turn"""
    conversation_key: str = Field(
        validation_alias=AliasChoices("conversation_key", "conversationKey", "userId", "user_id")
    )
    stage: ProcessingStage
    message: str = ""
    progress: int = 0

    @field_validator("progress", mode="before")
    @classmethod
    def clamp_progress(cls, v: Any) -> int:
        try:
            value = int(v or 0)
        except (TypeError, ValueError):
            return 0
        return min(100, max(0, value))

    @property
    def is_terminal(self) -> bool:
        return self.stage in TERMINAL_STAGES


class TakeoverInfo(BaseModel):
    """Takeover record as reported by the backend"""
    conversation_key: str = Field(
        default="",
        validation_alias=AliasChoices("conversation_key", "wa_user_id", "conversationKey"),
    )
    is_takeover: bool = Field(default=False, validation_alias=AliasChoices("is_takeover", "isTakeover"))
    admin_id: Optional[str] = None
    admin_name: Optional[str] = None
    reason: Optional[str] = None
    started_at: Optional[datetime] = None

    @field_validator("admin_id", mode="before")
    @classmethod
    def coerce_admin_id(cls, v: Any) -> Optional[str]:
        return None if v is None else str(v)
