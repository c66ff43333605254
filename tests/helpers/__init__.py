"""Shared test doubles for HookChat tests."""

from tests.helpers.fakes import (
    FakeDispatcher,
    RecordingObserver,
    make_response,
    seed_conversation,
)

__all__ = [
    "FakeDispatcher",
    "RecordingObserver",
    "make_response",
    "seed_conversation",
]
