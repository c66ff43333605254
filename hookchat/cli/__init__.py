"""HookChat command-line interface."""
