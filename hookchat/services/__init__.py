"""Service layer for HookChat.

Persistence, webhook dispatch, retry policy and the message exchange
engine that coordinates them.
"""

from hookchat.services.chat_store import ChatStore
from hookchat.services.events import (
    ConversationQueueObserver,
    MessageEvent,
    MessageEventEmitter,
    MessageEventObserver,
)
from hookchat.services.message_exchange import MessageExchangeEngine
from hookchat.services.retry_policy import (
    GiveUp,
    RetryAfter,
    RetryPolicyConfig,
    decide,
    execute_with_retry,
)
from hookchat.services.webhook_dispatcher import (
    Dispatcher,
    WebhookDispatcher,
    validate_webhook,
)

__all__ = [
    "ChatStore",
    "ConversationQueueObserver",
    "Dispatcher",
    "GiveUp",
    "MessageEvent",
    "MessageEventEmitter",
    "MessageEventObserver",
    "MessageExchangeEngine",
    "RetryAfter",
    "RetryPolicyConfig",
    "WebhookDispatcher",
    "decide",
    "execute_with_retry",
    "validate_webhook",
]
