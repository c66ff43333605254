"""Typed domain exceptions.

Every exception carries an E-XXXX code from the registry so callers (the
CLI, a view, tests) can branch on type while users see a stable code.

Usage:
    # In service layer
    raise NotFoundError("Conversation", conversation_id)

    # In a view
    try:
        await engine.retry(message_id)
    except NotRetryableError as e:
        show_banner(str(e))
"""

from hookchat.errors.registry import ERROR_TAGS, get_error


class HookChatError(Exception):
    """Base exception for all domain errors."""

    code = "E-4000"

    def __init__(self, message: str, *, code: str | None = None) -> None:
        super().__init__(message)
        self.message = message
        if code is not None:
            self.code = code

    @property
    def tag(self) -> str:
        """Short machine-readable tag persisted with failed messages."""
        return ERROR_TAGS.get(self.code, self.code)

    @property
    def is_retryable(self) -> bool:
        error_def = get_error(self.code)
        return bool(error_def and error_def.is_retryable)

    @classmethod
    def from_code(cls, code: str, **kwargs: object) -> "HookChatError":
        """Create an error from a registry code with context substitution.

        Args:
            code: Error code in E-XXXX format.
            **kwargs: Context values for message template substitution.

        Returns:
            Instance whose message is the formatted template.
        """
        error_def = get_error(code)
        if error_def is None:
            return cls(f"Unknown error: {code}", code=code)
        try:
            message = error_def.message_template.format(**kwargs)
        except KeyError:
            message = error_def.message_template
        return cls(message, code=code)

    def __str__(self) -> str:
        return f"{self.code}: {self.message}"


class NotFoundError(HookChatError):
    """Referenced entity does not exist."""

    code = "E-1001"

    def __init__(self, resource_type: str, identifier: str) -> None:
        super().__init__(f"{resource_type} '{identifier}' not found")
        self.resource_type = resource_type
        self.identifier = identifier


class ValidationError(HookChatError):
    """Input rejected before any network or storage I/O."""

    code = "E-2001"


class PersistenceError(HookChatError):
    """A durable write failed. Fatal to the current operation."""

    code = "E-4001"


class NotRetryableError(HookChatError):
    """retry() called on a message that is not a failed user message."""

    code = "E-4002"

    def __init__(self, message_id: str, reason: str) -> None:
        super().__init__(f"Message '{message_id}' cannot be retried: {reason}")
        self.message_id = message_id
        self.reason = reason


class DispatchError(HookChatError):
    """Base class for webhook exchange failures."""

    code = "E-3000"


class InvalidEndpointError(DispatchError):
    """Webhook URL is missing or malformed."""

    code = "E-3001"

    def __init__(self, url: str) -> None:
        super().__init__(f"Invalid webhook URL: {url!r}")
        self.url = url


class TransportError(DispatchError):
    """Connection failure or timeout."""

    code = "E-3002"

    def __init__(self, reason: str) -> None:
        super().__init__(f"Network error: {reason}")
        self.reason = reason


class HttpStatusError(DispatchError):
    """Response status outside 200-299."""

    code = "E-3003"

    def __init__(self, status_code: int, body: str = "") -> None:
        super().__init__(f"HTTP error: {status_code}")
        self.status_code = status_code
        self.body = body

    @property
    def is_retryable(self) -> bool:
        return self.status_code in (408, 429) or self.status_code >= 500


class DecodeError(DispatchError):
    """Response body does not match the expected schema."""

    code = "E-3004"

    def __init__(self, reason: str) -> None:
        super().__init__(f"Failed to decode response: {reason}")
        self.reason = reason


class CancelledSendError(DispatchError):
    """An in-flight send was cancelled by the caller."""

    code = "E-3005"

    def __init__(self) -> None:
        super().__init__("Send was cancelled")


class RetryCancelledError(HookChatError):
    """The retry loop was cancelled during an attempt or a backoff wait."""

    code = "E-3005"

    def __init__(self, attempt: int) -> None:
        super().__init__(f"Retry cancelled during attempt {attempt}")
        self.attempt = attempt
