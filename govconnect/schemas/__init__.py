from govconnect.schemas.envelope import ApiEnvelope
from govconnect.schemas.channel import (
    ChannelSession,
    ChannelSettings,
    DuplicateInfo,
    SessionCreateResult,
)
from govconnect.schemas.conversation import (
    AiStatus,
    Channel,
    Conversation,
    ConversationFilter,
    Message,
    MessageDirection,
    MessageSource,
    ProcessingStage,
    ProcessingStatus,
    TakeoverInfo,
)

__all__ = [
    "ApiEnvelope",
    "ChannelSession",
    "ChannelSettings",
    "DuplicateInfo",
    "SessionCreateResult",
    "AiStatus",
    "Channel",
    "Conversation",
    "ConversationFilter",
    "Message",
    "MessageDirection",
    "MessageSource",
    "ProcessingStage",
    "ProcessingStatus",
    "TakeoverInfo",
]
