from __future__ import annotations

import json
from datetime import datetime, timezone

import httpx
import pytest

from healthwatch.config import TelegramConfig
from healthwatch.notifications import (
    TELEGRAM_MAX_MESSAGE_LEN,
    build_e2e_failure_message,
    build_status_change_message,
    send_message,
    send_message_chunked,
    split_telegram_message,
)


class _Sleeps:
    def __init__(self) -> None:
        self.delays: list[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)


def _config(**overrides) -> TelegramConfig:
    data = {"bot_token": "123:secret", "chat_id": "-100", "max_retries": 3, "initial_retry_delay_seconds": 1.0}
    data.update(overrides)
    return TelegramConfig(**data)


def _ok(request: httpx.Request) -> httpx.Response:
    return httpx.Response(200, json={"ok": True, "result": {"message_id": 7}})


@pytest.mark.asyncio
async def test_send_message_posts_html_payload() -> None:
    seen: list[dict] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(json.loads(request.content))
        assert request.url.path == "/bot123:secret/sendMessage"
        return _ok(request)

    async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
        result = await send_message(client, _config(), "<b>hi</b>")

    assert result.success is True
    assert result.message_id == 7
    assert seen == [{"chat_id": "-100", "text": "<b>hi</b>", "parse_mode": "HTML"}]


@pytest.mark.asyncio
async def test_send_message_retries_with_exponential_backoff() -> None:
    attempts = {"n": 0}

    def handler(request: httpx.Request) -> httpx.Response:
        attempts["n"] += 1
        if attempts["n"] < 3:
            return httpx.Response(500, json={"ok": False, "description": "Internal"})
        return _ok(request)

    sleeps = _Sleeps()
    async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
        result = await send_message(client, _config(), "hello", sleep=sleeps)

    assert result.success is True
    assert attempts["n"] == 3
    assert sleeps.delays == [1.0, 2.0]


@pytest.mark.asyncio
async def test_send_message_gives_up_and_redacts_token() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError(f"cannot reach {request.url}")

    sleeps = _Sleeps()
    async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
        result = await send_message(client, _config(max_retries=2), "hello", sleep=sleeps)

    assert result.success is False
    assert result.error is not None
    assert "123:secret" not in result.error
    assert "<redacted>" in result.error
    assert sleeps.delays == [1.0, 2.0]


@pytest.mark.asyncio
async def test_send_message_unconfigured_does_not_call_api() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise AssertionError("should not be called")

    async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
        result = await send_message(client, _config(bot_token=""), "hello")

    assert result.success is False
    assert result.error == "Telegram is not configured"


@pytest.mark.asyncio
async def test_send_message_chunked_sends_every_part() -> None:
    texts: list[str] = []

    def handler(request: httpx.Request) -> httpx.Response:
        texts.append(json.loads(request.content)["text"])
        return _ok(request)

    async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
        ok, results = await send_message_chunked(client, _config(), "line\n" * 400, max_len=500)

    assert ok is True
    assert len(results) == len(texts) > 1
    assert all(len(t) <= 500 for t in texts)


def test_split_telegram_message_default_limit() -> None:
    parts = split_telegram_message("a" * (TELEGRAM_MAX_MESSAGE_LEN + 10))
    assert len(parts) == 2
    assert all(len(p) <= TELEGRAM_MAX_MESSAGE_LEN for p in parts)


def test_failure_message_escapes_and_links() -> None:
    msg = build_e2e_failure_message(
        project_name="Shop <prod>",
        failed=3,
        total_tests=16,
        dashboard_url="https://dash.example/projects",
        timestamp=datetime(2026, 1, 2, 3, 4, 5, tzinfo=timezone.utc),
    )
    assert "Shop &lt;prod&gt;" in msg
    assert "<b>Failed Tests:</b> 3 out of 16" in msg
    assert '<a href="https://dash.example/projects">' in msg
    assert "2026-01-02 03:04:05 UTC" in msg


def test_failure_message_without_counts_shows_error() -> None:
    msg = build_e2e_failure_message(
        project_name="Shop",
        failed=0,
        total_tests=0,
        dashboard_url="https://dash.example/projects",
        error="Test execution timed out after 100ms",
    )
    assert "Failed Tests" not in msg
    assert "timed out after 100ms" in msg


def test_status_change_message() -> None:
    restored = build_status_change_message(project_name="Shop", check_type="E2E Tests", healthy=True)
    assert "Health Check Restored" in restored
    assert "Service is now operational." in restored

    failed = build_status_change_message(project_name="Shop", check_type="web", healthy=False, details="HTTP 502")
    assert "Health Check Failed" in failed
    assert "HTTP 502" in failed
