"""HookChat: local-first chat client for webhook-backed agents."""

__version__ = "1.0.0"

APP_ID = "HookChat"
