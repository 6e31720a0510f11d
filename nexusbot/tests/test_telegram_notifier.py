from __future__ import annotations

import json

import httpx
import pytest

from nexusbot.telegram_notifier import TelegramError, send_telegram_message


def _client(handler) -> httpx.Client:
    return httpx.Client(transport=httpx.MockTransport(handler))


def test_send_posts_plain_text_without_previews() -> None:
    requests: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        requests.append(request)
        return httpx.Response(200, json={"ok": True, "result": {"message_id": 1}})

    send_telegram_message(bot_token="TEST_TOKEN", chat_id="42", text="hello", client=_client(handler))

    assert requests[0].url.path == "/botTEST_TOKEN/sendMessage"
    assert json.loads(requests[0].content) == {"chat_id": "42", "text": "hello", "disable_web_page_preview": True}


def test_blocked_bot_raises_telegram_error() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(
            403, json={"ok": False, "error_code": 403, "description": "Forbidden: bot was blocked by the user"}
        )

    with pytest.raises(TelegramError, match="blocked") as excinfo:
        send_telegram_message(bot_token="TEST_TOKEN", chat_id="42", text="hello", client=_client(handler))
    assert excinfo.value.status_code == 403
    assert excinfo.value.description == "Forbidden: bot was blocked by the user"
    assert excinfo.value.retryable is False


def test_rate_limit_carries_retry_after() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(
            429,
            json={"ok": False, "error_code": 429, "description": "Too Many Requests", "parameters": {"retry_after": 7}},
        )

    with pytest.raises(TelegramError) as excinfo:
        send_telegram_message(bot_token="TEST_TOKEN", chat_id="42", text="hello", client=_client(handler))
    assert excinfo.value.retry_after == 7
    assert excinfo.value.retryable is True


def test_non_json_error_raises_http_error() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(502, text="Bad Gateway")

    with pytest.raises(httpx.HTTPStatusError):
        send_telegram_message(bot_token="TEST_TOKEN", chat_id="42", text="hello", client=_client(handler))


def test_json_body_that_is_not_an_object_raises_telegram_error() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json=[True])

    with pytest.raises(TelegramError, match="unexpected body") as excinfo:
        send_telegram_message(bot_token="TEST_TOKEN", chat_id="42", text="hello", client=_client(handler))
    assert excinfo.value.status_code == 200
