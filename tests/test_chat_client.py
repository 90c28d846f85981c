"""Tests for the Synology Chat webhook client."""

import json
from unittest.mock import AsyncMock

import httpx
import pytest

from parley.bridge.chat_client import SynologyChatClient
from parley.bridge.rate_limiter import RateLimiter
from tests.conftest import make_settings

WEBHOOK = "https://nas.local/webapi/entry.cgi?api=SYNO.Chat.External&token=abc"


def _mock_http_client() -> AsyncMock:
    """Mock httpx.AsyncClient whose .post() succeeds by default."""
    client = AsyncMock(spec=httpx.AsyncClient)
    client.post.return_value = httpx.Response(200, json={"success": True})
    return client


def _sent_texts(client: AsyncMock) -> list[str]:
    return [json.loads(c.kwargs["data"]["payload"])["text"] for c in client.post.call_args_list]


def _chat(http: AsyncMock, **overrides) -> SynologyChatClient:
    values = dict(chat_send_interval=0, chat_retry_delay=0, chat_max_retries=3)
    values.update(overrides)
    return SynologyChatClient(WEBHOOK, RateLimiter(), make_settings(**values), http)


class TestSendMessage:
    @pytest.mark.asyncio
    async def test_posts_form_payload(self):
        http = _mock_http_client()
        chat = _chat(http)
        await chat.send_message("hello there")

        http.post.assert_awaited_once()
        assert http.post.call_args.args[0] == WEBHOOK
        assert _sent_texts(http) == ["hello there"]
        assert chat.pending == 0

    @pytest.mark.asyncio
    async def test_long_message_sent_in_order(self):
        http = _mock_http_client()
        await _chat(http, chat_max_message_length=15).send_message("a" * 10 + "\n\n" + "b" * 10)
        assert _sent_texts(http) == ["[1/2] " + "a" * 10, "[2/2] " + "b" * 10]

    @pytest.mark.asyncio
    async def test_network_error_retried(self):
        http = _mock_http_client()
        http.post.side_effect = [
            httpx.ConnectError("unreachable"),
            httpx.ReadTimeout("slow"),
            httpx.Response(200),
        ]
        await _chat(http).send_message("hi")
        assert http.post.await_count == 3

    @pytest.mark.asyncio
    async def test_gives_up_after_max_retries(self):
        http = _mock_http_client()
        http.post.side_effect = httpx.ConnectError("unreachable")
        chat = _chat(http, chat_max_retries=2)
        await chat.send_message("hi")
        assert http.post.await_count == 2
        assert chat.pending == 0

    @pytest.mark.asyncio
    async def test_api_error_not_retried(self):
        http = _mock_http_client()
        http.post.return_value = httpx.Response(400, text="bad token")
        await _chat(http, chat_max_message_length=15).send_message("a" * 10 + "\n\n" + "b" * 10)
        # each chunk tried once, the next chunk still goes out
        assert http.post.await_count == 2
