"""Wires production services from configuration.

CLI commands never construct services directly; they open an AppContext
and use what it holds. Nothing here is cached between calls.
"""

import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import dataclass

from sqlalchemy.ext.asyncio import AsyncEngine

from hookchat import __version__
from hookchat.cli.config import HookChatConfig
from hookchat.db.connection import (
    async_init_db,
    close_async_db,
    create_engine_for_url,
    create_session_factory,
    get_async_database_url,
)
from hookchat.services.chat_store import ChatStore
from hookchat.services.events import MessageEventEmitter
from hookchat.services.keyring_store import (
    InMemorySecretStore,
    KeyringSecretStore,
    SecretProvider,
)
from hookchat.services.message_exchange import MessageExchangeEngine
from hookchat.services.webhook_dispatcher import WebhookDispatcher
from hookchat.utils.device import DeviceInfo, load_device_info

logger = logging.getLogger(__name__)


@dataclass
class AppContext:
    """Everything a CLI command may need, bound to one event loop."""

    config: HookChatConfig
    db_engine: AsyncEngine
    store: ChatStore
    secrets: SecretProvider
    dispatcher: WebhookDispatcher
    engine: MessageExchangeEngine


def get_secret_store(config: HookChatConfig) -> SecretProvider:
    """Select the secret backend named in ``secrets.backend``."""
    if config.secrets.backend == "memory":
        return InMemorySecretStore()
    return KeyringSecretStore(service_name=config.secrets.service_name)


@asynccontextmanager
async def build_engine(
    config: HookChatConfig,
    device: DeviceInfo | None = None,
    emitter: MessageEventEmitter | None = None,
) -> AsyncIterator[AppContext]:
    """Open the database, build store/dispatcher/engine, and clean up after.

    Args:
        config: Loaded configuration.
        device: Device identity; read from the data directory when None.
        emitter: Shared event emitter for observers.

    Yields:
        AppContext with ready-to-use services.
    """
    url = get_async_database_url(config.database.url)
    db_engine = create_engine_for_url(url)
    await async_init_db(db_engine)
    store = ChatStore(create_session_factory(db_engine))
    secrets = get_secret_store(config)
    dispatcher = WebhookDispatcher(
        secrets=secrets,
        request_timeout=config.dispatcher.request_timeout,
        resource_timeout=config.dispatcher.resource_timeout,
        app_id=config.dispatcher.app_id,
        app_version=__version__,
    )
    engine = MessageExchangeEngine(
        store,
        dispatcher,
        device or load_device_info(),
        emitter=emitter,
        retry_config=config.retry,
    )
    logger.debug("Engine ready on %s", url)
    try:
        async with dispatcher:
            yield AppContext(
                config=config,
                db_engine=db_engine,
                store=store,
                secrets=secrets,
                dispatcher=dispatcher,
                engine=engine,
            )
    finally:
        await close_async_db(db_engine)
