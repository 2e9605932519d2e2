import json
from urllib.error import URLError

import pytest

import telegram_bridge
from telegram_bridge import TelegramClient


class FakeResponse:
    def __init__(self, payload):
        self.payload = payload

    def read(self):
        return json.dumps(self.payload).encode("utf-8")

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        return False


def _no_network(*args, **kwargs):
    raise AssertionError("urlopen should not be called")


def test_blank_chat_id_is_a_noop(monkeypatch):
    monkeypatch.setattr(telegram_bridge, "urlopen", _no_network)
    client = TelegramClient("token")
    client.send_message(None, "hello")
    client.send_message("   ", "hello")


def test_missing_token_is_a_noop(monkeypatch):
    monkeypatch.setattr(telegram_bridge, "urlopen", _no_network)
    client = TelegramClient("")
    assert client.enabled is False
    client.send_message("12345", "hello")


def test_non_numeric_chat_id_is_rejected(monkeypatch):
    monkeypatch.setattr(telegram_bridge, "urlopen", _no_network)
    with pytest.raises(ValueError):
        TelegramClient("token").send_message("@anna", "hello")


def test_send_posts_json_to_bot_endpoint(monkeypatch):
    seen = {}

    def fake_urlopen(req, timeout):
        seen["url"] = req.full_url
        seen["body"] = json.loads(req.data.decode("utf-8"))
        seen["timeout"] = timeout
        return FakeResponse({"ok": True, "result": {"message_id": 1}})

    monkeypatch.setattr(telegram_bridge, "urlopen", fake_urlopen)
    client = TelegramClient("abc", api_base="https://bot.example/", timeout=2.5)
    client.send_message(" 12345 ", "Budget warning")

    assert seen["url"] == "https://bot.example/botabc/sendMessage"
    assert seen["body"] == {"chat_id": 12345, "text": "Budget warning"}
    assert seen["timeout"] == 2.5


def test_transport_and_api_errors_raise_runtime_error(monkeypatch):
    def unreachable(req, timeout):
        raise URLError("connection refused")

    monkeypatch.setattr(telegram_bridge, "urlopen", unreachable)
    with pytest.raises(RuntimeError):
        TelegramClient("abc").send_message("12345", "hi")

    monkeypatch.setattr(
        telegram_bridge,
        "urlopen",
        lambda req, timeout: FakeResponse({"ok": False, "description": "chat not found"}),
    )
    with pytest.raises(RuntimeError, match="chat not found"):
        TelegramClient("abc").send_message("12345", "hi")
