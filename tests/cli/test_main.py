"""CLI smoke tests against a temporary database and a fake webhook."""

import json
import re

import httpx
import pytest
from rich.console import Console
from typer.testing import CliRunner

from hookchat.cli.main import app
from hookchat.services.webhook_dispatcher import WebhookDispatcher

runner = CliRunner()

UUID_RE = re.compile(r"[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}")
WEBHOOK = "https://agents.example.com/webhook/abc"


class ScriptedTransport(httpx.AsyncBaseTransport):
    """Returns queued (status, body) pairs in order, then 200 echoes."""

    def __init__(self):
        self.script: list[tuple[int, dict]] = []
        self.requests: list[httpx.Request] = []

    async def handle_async_request(self, request):
        self.requests.append(request)
        if self.script:
            status, body = self.script.pop(0)
        else:
            sent = json.loads(request.content)
            status, body = 200, {
                "response": f"echo {sent.get('message')}",
                "timestamp": "2025-01-01T12:00:00Z",
            }
        return httpx.Response(status, json=body, request=request)


@pytest.fixture
def transport(tmp_path, monkeypatch):
    """Isolated data dir, memory secrets, and a fake webhook transport."""
    monkeypatch.chdir(tmp_path)
    monkeypatch.setenv("HOME", str(tmp_path))
    monkeypatch.setenv("HOOKCHAT_HOME", str(tmp_path / "home"))
    monkeypatch.setenv("HOOKCHAT_DB_PATH", str(tmp_path / "chat.db"))
    monkeypatch.setenv("HOOKCHAT_SECRETS_BACKEND", "memory")
    monkeypatch.delenv("DATABASE_URL", raising=False)

    fake = ScriptedTransport()

    def _dispatcher(**kwargs):
        return WebhookDispatcher(client=httpx.AsyncClient(transport=fake), **kwargs)

    monkeypatch.setattr("hookchat.cli.factory.WebhookDispatcher", _dispatcher)

    wide = Console(width=200)
    monkeypatch.setattr("hookchat.cli.output.console", wide)
    monkeypatch.setattr("hookchat.cli.main.console", wide)
    return fake


def _invoke(*args, input=None):
    return runner.invoke(app, list(args), input=input)


def _created_id(result) -> str:
    assert result.exit_code == 0, result.output
    return UUID_RE.search(result.output).group(0)


def test_version():
    result = _invoke("version")
    assert result.exit_code == 0
    assert "HookChat" in result.output


def test_agent_lifecycle(transport):
    agent_id = _created_id(_invoke("agent", "add", "Support", WEBHOOK, "-d", "FAQ"))

    listed = _invoke("agent", "list")
    assert listed.exit_code == 0
    assert "Support" in listed.output

    shown = _invoke("agent", "show", agent_id)
    assert shown.exit_code == 0
    assert "FAQ" in shown.output

    removed = _invoke("agent", "remove", agent_id, "--yes")
    assert removed.exit_code == 0

    missing = _invoke("agent", "show", agent_id)
    assert missing.exit_code == 1
    assert "E-1001" in missing.output


def test_agent_add_rejects_bad_url(transport):
    result = _invoke("agent", "add", "Bad", "ftp://example.com")
    assert result.exit_code == 1
    assert "Invalid webhook URL" in result.output


def test_agent_test_probe(transport):
    agent_id = _created_id(_invoke("agent", "add", "Support", WEBHOOK))
    result = _invoke("agent", "test", agent_id)
    assert result.exit_code == 0
    assert json.loads(transport.requests[-1].content)["test"] is True


def test_send_and_history(transport):
    agent_id = _created_id(_invoke("agent", "add", "Support", WEBHOOK))
    conversation_id = _created_id(_invoke("chat", "new", agent_id))

    sent = _invoke("send", conversation_id, "Hello")
    assert sent.exit_code == 0, sent.output
    assert "echo Hello" in sent.output

    history = _invoke("chat", "history", conversation_id)
    assert "Hello" in history.output
    assert "echo Hello" in history.output

    listed = _invoke("chat", "list")
    assert "Hello" in listed.output


def test_failed_send_then_retry(transport):
    agent_id = _created_id(_invoke("agent", "add", "Support", WEBHOOK))
    conversation_id = _created_id(_invoke("chat", "new", agent_id))
    transport.script.append((500, {"error": "workflow crashed"}))

    failed = _invoke("send", conversation_id, "Hello")
    assert failed.exit_code == 1
    assert "E-3003" in failed.output
    message_id = re.search(r"hookchat retry (\S+)", failed.output).group(1)

    retried = _invoke("retry", message_id)
    assert retried.exit_code == 0, retried.output
    assert "echo Hello" in retried.output

    again = _invoke("retry", message_id)
    assert again.exit_code == 1
    assert "E-1001" in again.output


def test_empty_message_rejected(transport):
    agent_id = _created_id(_invoke("agent", "add", "Support", WEBHOOK))
    conversation_id = _created_id(_invoke("chat", "new", agent_id))
    result = _invoke("send", conversation_id, "   ")
    assert result.exit_code == 1
    assert "E-2001" in result.output
    assert transport.requests == []


def test_conversation_management(transport):
    agent_id = _created_id(_invoke("agent", "add", "Support", WEBHOOK))
    conversation_id = _created_id(_invoke("chat", "new", agent_id, "--title", "Billing"))

    assert _invoke("chat", "rename", conversation_id, "Invoices").exit_code == 0
    assert "Invoices" in _invoke("chat", "list").output

    assert _invoke("chat", "archive", conversation_id).exit_code == 0
    assert "Invoices" not in _invoke("chat", "list").output
    assert "Invoices" in _invoke("chat", "list", "--all").output

    assert _invoke("chat", "delete", conversation_id, "--yes").exit_code == 0
    result = _invoke("chat", "rename", conversation_id, "x")
    assert result.exit_code == 1
    assert "E-1001" in result.output
    assert _invoke("chat", "archive", conversation_id).exit_code == 1


def test_purge(transport):
    result = _invoke("purge", "--days", "30", "--yes")
    assert result.exit_code == 0
    assert "Deleted 0 message(s)" in result.output


def test_secret_set_requires_known_agent(transport):
    result = _invoke("secret", "set", "missing", "--value", "abc")
    assert result.exit_code == 1
    assert "E-1001" in result.output
