"""Retry policy with exponential backoff and jitter.

Two pieces:
- ``decide`` is a pure function of the attempt number and configuration.
- ``execute_with_retry`` applies it to an async operation.

This loop is for transient dispatcher operations such as connection tests.
User messages are never retried automatically; see
MessageExchangeEngine.retry for the explicit, user-driven path.

Example:
    config = RetryPolicyConfig(max_attempts=3)
    ok = await execute_with_retry(
        lambda: dispatcher.test_connection(url, agent_id),
        config,
        is_retryable=lambda e: isinstance(e, TransportError),
    )
"""

import asyncio
import logging
import random
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import TypeVar

from pydantic import BaseModel, Field, model_validator

from hookchat.errors import HookChatError, RetryCancelledError

logger = logging.getLogger(__name__)

T = TypeVar("T")

JITTER_MIN = 0.8
JITTER_MAX = 1.2


class RetryPolicyConfig(BaseModel):
    """Backoff configuration.

    Attributes:
        max_attempts: Total attempts including the first one.
        initial_delay: Delay in seconds before the second attempt.
        max_delay: Ceiling for any single delay, jitter included.
        backoff_multiplier: Growth factor between consecutive delays.
    """

    max_attempts: int = Field(default=3, ge=1)
    initial_delay: float = Field(default=1.0, ge=0)
    max_delay: float = Field(default=60.0, ge=0)
    backoff_multiplier: float = Field(default=2.0, ge=1.0)

    @model_validator(mode="after")
    def max_not_below_initial(self) -> "RetryPolicyConfig":
        if self.max_delay < self.initial_delay:
            raise ValueError("max_delay must be >= initial_delay")
        return self


@dataclass(frozen=True)
class RetryAfter:
    """Wait ``delay`` seconds, then make another attempt."""

    delay: float


@dataclass(frozen=True)
class GiveUp:
    """No attempts left."""

    attempts: int


RetryDecision = RetryAfter | GiveUp


def expected_delay(attempt: int, config: RetryPolicyConfig) -> float:
    """Delay before attempt ``attempt + 1`` without jitter or ceiling."""
    return config.initial_delay * config.backoff_multiplier ** (attempt - 1)


def decide(
    attempt: int,
    config: RetryPolicyConfig | None = None,
    rng: random.Random | None = None,
) -> RetryDecision:
    """Decide what to do after attempt number ``attempt`` failed.

    Args:
        attempt: 1-based number of the attempt that just failed.
        config: Policy configuration (defaults apply when None).
        rng: Random source for jitter; module-level random when None.

    Returns:
        GiveUp once ``attempt`` reaches ``max_attempts``, otherwise
        RetryAfter with a jittered, capped delay.
    """
    if attempt < 1:
        raise ValueError("attempt is 1-based")
    config = config or RetryPolicyConfig()
    if attempt >= config.max_attempts:
        return GiveUp(attempts=attempt)
    jitter = (rng or random).uniform(JITTER_MIN, JITTER_MAX)
    delay = min(expected_delay(attempt, config) * jitter, config.max_delay)
    return RetryAfter(delay=delay)


def _default_is_retryable(error: BaseException) -> bool:
    if isinstance(error, HookChatError):
        return error.is_retryable
    return isinstance(error, (ConnectionError, TimeoutError))


async def execute_with_retry(
    operation: Callable[[], Awaitable[T]],
    config: RetryPolicyConfig | None = None,
    is_retryable: Callable[[BaseException], bool] | None = None,
    rng: random.Random | None = None,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> T:
    """Run ``operation`` until it succeeds or the policy gives up.

    Args:
        operation: Zero-argument coroutine factory, called once per attempt.
        config: Policy configuration.
        is_retryable: Classifier for failures. Non-retryable failures are
            re-raised immediately.
        rng: Random source for jitter.
        sleep: Awaitable sleep, replaceable in tests.

    Returns:
        The operation's result.

    Raises:
        RetryCancelledError: The surrounding task was cancelled during an
            attempt or a backoff wait.
        Exception: The last failure once the policy gives up, or the first
            non-retryable failure.
    """
    config = config or RetryPolicyConfig()
    classify = is_retryable or _default_is_retryable
    attempt = 0
    while True:
        attempt += 1
        try:
            return await operation()
        except asyncio.CancelledError as e:
            logger.info("[Retry] Cancelled during attempt %d", attempt)
            raise RetryCancelledError(attempt) from e
        except Exception as e:
            if not classify(e):
                raise
            decision = decide(attempt, config, rng)
            if isinstance(decision, GiveUp):
                logger.error(
                    "[Retry] Max attempts (%d) reached. Last error: %s: %s",
                    config.max_attempts, type(e).__name__, e,
                )
                raise
            logger.warning(
                "[Retry] Attempt %d/%d failed: %s: %s. Retrying in %.1fs...",
                attempt, config.max_attempts, type(e).__name__, e, decision.delay,
            )
        try:
            await sleep(decision.delay)
        except asyncio.CancelledError as e:
            logger.info("[Retry] Cancelled while waiting before attempt %d", attempt + 1)
            raise RetryCancelledError(attempt) from e
