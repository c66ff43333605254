"""Error code registry with E-XXXX format codes.

This module defines the error code system for HookChat, organizing errors
into categories:
- E-1xxx: Data errors (missing entities)
- E-2xxx: Validation errors (rejected before any I/O)
- E-3xxx: Dispatch errors (webhook exchange failures)
- E-4xxx: System/internal errors

Each error includes a code, title, message template, and remediation steps.
"""

from dataclasses import dataclass
from enum import Enum


class ErrorCategory(str, Enum):
    """Categories for error codes."""

    DATA = "data"  # E-1xxx
    VALIDATION = "validation"  # E-2xxx
    DISPATCH = "dispatch"  # E-3xxx
    SYSTEM = "system"  # E-4xxx


@dataclass
class ErrorCode:
    """Definition of an error code with metadata.

    Attributes:
        code: Error code in E-XXXX format.
        category: Error category for grouping.
        title: Short title for display.
        message_template: Message with {placeholders} for context.
        remediation: Action user should take to resolve.
        is_retryable: Whether the operation can be retried without user action.
    """

    code: str
    category: ErrorCategory
    title: str
    message_template: str
    remediation: str
    is_retryable: bool = False


# Stable short tags persisted in message metadata alongside the code.
ERROR_TAGS: dict[str, str] = {
    "E-3001": "invalid_endpoint",
    "E-3002": "transport",
    "E-3003": "http_status",
    "E-3004": "decode",
    "E-3005": "cancelled",
}


ERROR_REGISTRY: dict[str, ErrorCode] = {
    # Data errors (E-1xxx)
    "E-1001": ErrorCode(
        code="E-1001",
        category=ErrorCategory.DATA,
        title="Not Found",
        message_template="{resource_type} '{identifier}' not found.",
        remediation="Refresh the list and pick an existing item.",
    ),
    # Validation errors (E-2xxx)
    "E-2001": ErrorCode(
        code="E-2001",
        category=ErrorCategory.VALIDATION,
        title="Empty Message",
        message_template="Message text is empty.",
        remediation="Type a message before sending.",
    ),
    "E-2002": ErrorCode(
        code="E-2002",
        category=ErrorCategory.VALIDATION,
        title="Invalid Webhook URL",
        message_template="Webhook URL '{url}' is not a valid http(s) URL.",
        remediation="Enter an absolute URL such as https://n8n.example.com/webhook/abc.",
    ),
    "E-2003": ErrorCode(
        code="E-2003",
        category=ErrorCategory.VALIDATION,
        title="Invalid Attachment",
        message_template="{reason}",
        remediation="Provide exactly one of a local path or a remote URL.",
    ),
    "E-2004": ErrorCode(
        code="E-2004",
        category=ErrorCategory.VALIDATION,
        title="Missing Field",
        message_template="{field} is required.",
        remediation="Fill in the missing field and save again.",
    ),
    # Dispatch errors (E-3xxx)
    "E-3001": ErrorCode(
        code="E-3001",
        category=ErrorCategory.DISPATCH,
        title="Invalid Endpoint",
        message_template="Invalid webhook URL: {url}",
        remediation="Edit the agent and correct its webhook URL.",
    ),
    "E-3002": ErrorCode(
        code="E-3002",
        category=ErrorCategory.DISPATCH,
        title="Network Error",
        message_template="Network error: {reason}",
        remediation="Check your connection and that the webhook host is reachable.",
        is_retryable=True,
    ),
    "E-3003": ErrorCode(
        code="E-3003",
        category=ErrorCategory.DISPATCH,
        title="HTTP Error",
        message_template="HTTP error: {status_code}",
        remediation="Check the workflow behind the webhook for errors.",
        is_retryable=True,
    ),
    "E-3004": ErrorCode(
        code="E-3004",
        category=ErrorCategory.DISPATCH,
        title="Invalid Response",
        message_template="Failed to decode response: {reason}",
        remediation="Make the webhook reply with a JSON body containing 'response' and 'timestamp'.",
    ),
    "E-3005": ErrorCode(
        code="E-3005",
        category=ErrorCategory.DISPATCH,
        title="Cancelled",
        message_template="Send was cancelled.",
        remediation="Retry the message when ready.",
    ),
    # System errors (E-4xxx)
    "E-4001": ErrorCode(
        code="E-4001",
        category=ErrorCategory.SYSTEM,
        title="Storage Failure",
        message_template="Failed to write to the local database: {reason}",
        remediation="Check disk space and database file permissions.",
    ),
    "E-4002": ErrorCode(
        code="E-4002",
        category=ErrorCategory.SYSTEM,
        title="Not Retryable",
        message_template="Message '{message_id}' cannot be retried: {reason}",
        remediation="Only failed messages you sent can be retried.",
    ),
}


def get_error(code: str) -> ErrorCode | None:
    """Get error definition by code.

    Args:
        code: Error code in E-XXXX format.

    Returns:
        ErrorCode if found, None otherwise.
    """
    return ERROR_REGISTRY.get(code)


def get_errors_by_category(category: ErrorCategory) -> list[ErrorCode]:
    """Get all errors in a category.

    Args:
        category: The error category to filter by.

    Returns:
        List of ErrorCode objects in the specified category.
    """
    return [e for e in ERROR_REGISTRY.values() if e.category == category]
