"""Retention sweep: drop chat history older than a configured age.

Runs out-of-band (``hookchat purge``), never during a send.
"""

import logging
from datetime import UTC, datetime, timedelta

from hookchat.services.chat_store import ChatStore

logger = logging.getLogger(__name__)

DEFAULT_MAX_AGE_DAYS = 90


async def purge_old_messages(
    store: ChatStore,
    max_age: timedelta = timedelta(days=DEFAULT_MAX_AGE_DAYS),
    now: datetime | None = None,
) -> int:
    """Delete messages older than ``max_age`` along with their attachments.

    Conversations that lost messages get ``last_message_at`` recomputed.
    Conversations themselves are kept, even when emptied.

    Args:
        store: Persistence service.
        max_age: Messages with a timestamp before ``now - max_age`` go.
        now: Reference time; current UTC time when None.

    Returns:
        Number of messages deleted.
    """
    if max_age <= timedelta(0):
        raise ValueError("max_age must be positive")
    cutoff = (now or datetime.now(UTC)) - max_age
    deleted = await store.delete_messages_older_than(cutoff)
    logger.info("Retention sweep removed %d message(s) before %s", deleted, cutoff)
    return deleted
