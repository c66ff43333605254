"""Read models and wire schemas."""

from hookchat.models.records import (
    AgentRecord,
    AttachmentRecord,
    ConversationRecord,
    MessageMetadata,
    MessageRecord,
    VoiceSettings,
)
from hookchat.models.webhook import (
    PayloadMetadata,
    WebhookAttachment,
    WebhookPayload,
    WebhookResponse,
    WebhookTestPayload,
    WebhookValidation,
)

__all__ = [
    "AgentRecord",
    "AttachmentRecord",
    "ConversationRecord",
    "MessageMetadata",
    "MessageRecord",
    "VoiceSettings",
    "PayloadMetadata",
    "WebhookAttachment",
    "WebhookPayload",
    "WebhookResponse",
    "WebhookTestPayload",
    "WebhookValidation",
]
