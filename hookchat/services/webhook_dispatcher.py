"""Webhook dispatcher: one request/response exchange with an agent endpoint.

The exchange engine depends on the ``Dispatcher`` protocol only.
``WebhookDispatcher`` is the httpx implementation used in production.

Every failure surfaces as a DispatchError subclass:
    InvalidEndpointError  URL missing or not http(s)
    TransportError        connection failure or timeout
    HttpStatusError       status outside 200-299
    DecodeError           body does not match WebhookResponse

Example:
    async with WebhookDispatcher(secrets=KeyringSecretStore()) as dispatcher:
        response = await dispatcher.dispatch(agent.webhook_url, payload)
"""

import asyncio
import json
import logging
from datetime import UTC, datetime
from typing import Any, Protocol
from urllib.parse import urlparse

import httpx
from pydantic import ValidationError as PydanticValidationError

from hookchat import APP_ID, __version__
from hookchat.errors import (
    DecodeError,
    HttpStatusError,
    InvalidEndpointError,
    TransportError,
)
from hookchat.models.records import AgentRecord
from hookchat.models.webhook import (
    PayloadMetadata,
    WebhookPayload,
    WebhookResponse,
    WebhookTestPayload,
    WebhookValidation,
)
from hookchat.services.keyring_store import SecretProvider, webhook_secret_key
from hookchat.utils.device import DeviceInfo
from hookchat.utils.redaction import redact_for_logging, sanitize_error_message

logger = logging.getLogger(__name__)

DEFAULT_REQUEST_TIMEOUT = 30.0
DEFAULT_RESOURCE_TIMEOUT = 60.0


class Dispatcher(Protocol):
    """Interface the exchange engine uses to talk to agents."""

    async def dispatch(self, endpoint: str, payload: WebhookPayload) -> WebhookResponse:
        """POST ``payload`` to ``endpoint`` and decode the reply."""
        ...

    async def test_connection(self, endpoint: str, agent_id: str) -> bool:
        """Probe ``endpoint``; True when it answers with a 2xx status."""
        ...


def validate_webhook(url: str | None) -> WebhookValidation:
    """Check that ``url`` is an absolute http(s) URL with a host."""
    if not url or not url.strip():
        return WebhookValidation(is_valid=False, error="Webhook URL is empty")
    try:
        parsed = urlparse(url.strip())
    except ValueError:
        return WebhookValidation(is_valid=False, error="Invalid URL format")
    if parsed.scheme not in ("http", "https") or not parsed.netloc:
        return WebhookValidation(is_valid=False, error="Invalid URL format")
    return WebhookValidation(is_valid=True)


def build_payload(text: str, agent: AgentRecord, device: DeviceInfo) -> WebhookPayload:
    """Assemble the request body for a user message."""
    return WebhookPayload(
        message=text,
        timestamp=datetime.now(UTC),
        user_id=device.device_id,
        agent_id=agent.id,
        metadata=PayloadMetadata(
            platform=device.platform,
            app_version=device.app_version,
            device_model=device.device_model,
            os_version=device.os_version,
            voice_enabled=agent.is_voice_enabled,
        ),
    )


class WebhookDispatcher:
    """httpx-based Dispatcher.

    Two timeouts apply: ``request_timeout`` bounds each connect/read/write
    phase, ``resource_timeout`` bounds the whole exchange.
    """

    def __init__(
        self,
        secrets: SecretProvider | None = None,
        request_timeout: float = DEFAULT_REQUEST_TIMEOUT,
        resource_timeout: float = DEFAULT_RESOURCE_TIMEOUT,
        app_id: str = APP_ID,
        app_version: str = __version__,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        """Initialize the dispatcher.

        Args:
            secrets: Source of per-webhook bearer secrets. Optional.
            request_timeout: Per-phase timeout in seconds.
            resource_timeout: Overall timeout for one exchange in seconds.
            app_id: Product token for the User-Agent header.
            app_version: Version for the User-Agent header.
            client: Pre-built httpx client (tests inject a fake transport).
        """
        self._secrets = secrets
        self._request_timeout = request_timeout
        self._resource_timeout = resource_timeout
        self._user_agent = f"{app_id}/{app_version}"
        self._client = client
        self._owns_client = client is None

    async def __aenter__(self) -> "WebhookDispatcher":
        self._get_client()
        return self

    async def __aexit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        await self.close()

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                timeout=httpx.Timeout(self._request_timeout),
            )
        return self._client

    async def close(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None

    async def _headers(self, endpoint: str) -> dict[str, str]:
        headers = {
            "Content-Type": "application/json",
            "User-Agent": self._user_agent,
        }
        secret = await self._load_secret(endpoint)
        if secret:
            headers["Authorization"] = f"Bearer {secret}"
        return headers

    async def _load_secret(self, endpoint: str) -> str | None:
        if self._secrets is None:
            return None
        # OS keychain lookups block; keep them off the event loop.
        try:
            return await asyncio.to_thread(
                self._secrets.load_secret, webhook_secret_key(endpoint),
            )
        except Exception:
            logger.warning("Secret lookup failed for webhook; sending without auth", exc_info=True)
            return None

    async def _post(self, endpoint: str, body: dict, headers: dict[str, str]) -> httpx.Response:
        validation = validate_webhook(endpoint)
        if not validation.is_valid:
            raise InvalidEndpointError(endpoint)

        logger.debug(
            "POST %s headers=%s", endpoint, redact_for_logging(headers),
        )
        client = self._get_client()
        try:
            return await asyncio.wait_for(
                client.post(endpoint, content=json.dumps(body), headers=headers),
                timeout=self._resource_timeout,
            )
        except (httpx.InvalidURL, httpx.UnsupportedProtocol) as e:
            raise InvalidEndpointError(endpoint) from e
        except TimeoutError as e:
            raise TransportError(
                f"no response within {self._resource_timeout:.0f}s"
            ) from e
        except httpx.TimeoutException as e:
            raise TransportError(f"timed out ({type(e).__name__})") from e
        except httpx.TransportError as e:
            raise TransportError(str(e) or type(e).__name__) from e

    async def dispatch(self, endpoint: str, payload: WebhookPayload) -> WebhookResponse:
        """Send a message and decode the agent's reply.

        Args:
            endpoint: Agent webhook URL.
            payload: Request body.

        Returns:
            Decoded WebhookResponse.

        Raises:
            InvalidEndpointError, TransportError, HttpStatusError, DecodeError
        """
        response = await self._post(
            endpoint, payload.to_wire(), await self._headers(endpoint),
        )

        if not 200 <= response.status_code <= 299:
            logger.warning(
                "Webhook %s answered HTTP %d", endpoint, response.status_code,
            )
            raise HttpStatusError(
                response.status_code,
                sanitize_error_message(response.text[:200]) or "",
            )

        try:
            decoded = WebhookResponse.model_validate_json(response.content)
        except PydanticValidationError as e:
            raise DecodeError(
                sanitize_error_message(_summarize_validation(e)) or "invalid body"
            ) from e
        logger.info(
            "Webhook %s answered %d chars", endpoint, len(decoded.response),
        )
        return decoded

    async def test_connection(self, endpoint: str, agent_id: str) -> bool:
        """Probe an endpoint with a WebhookTestPayload.

        Only the HTTP status matters; the body is ignored.

        Raises:
            InvalidEndpointError: Endpoint is not a valid http(s) URL.
            TransportError: Connection failed or timed out.
        """
        probe = WebhookTestPayload(timestamp=datetime.now(UTC), agent_id=agent_id)
        response = await self._post(
            endpoint, probe.to_wire(), await self._headers(endpoint),
        )
        ok = 200 <= response.status_code <= 299
        logger.info(
            "Connection test for %s: HTTP %d (%s)",
            endpoint, response.status_code, "ok" if ok else "failed",
        )
        return ok


def _summarize_validation(error: PydanticValidationError) -> str:
    first = error.errors()[0] if error.errors() else None
    if first is None:
        return str(error)
    location = ".".join(str(p) for p in first.get("loc", ())) or "body"
    return f"{location}: {first.get('msg', 'invalid')}"
