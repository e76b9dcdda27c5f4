"""Telegram notifications for project status changes and failed e2e runs."""

from __future__ import annotations

import asyncio
import html
from dataclasses import dataclass
from datetime import datetime, timezone

import httpx
import structlog

from healthwatch.config import TelegramConfig


logger = structlog.get_logger(__name__)

TELEGRAM_API_BASE_URL = "https://api.telegram.org/bot"
TELEGRAM_MAX_MESSAGE_LEN = 3900


@dataclass(frozen=True)
class SendResult:
    success: bool
    message_id: int | None = None
    error: str | None = None


def split_telegram_message(text: str, *, max_len: int = TELEGRAM_MAX_MESSAGE_LEN) -> list[str]:
    s = (text or "").strip()
    if not s:
        return [""]

    max_len = max(1, int(max_len))
    parts: list[str] = []
    while s:
        if len(s) <= max_len:
            parts.append(s)
            break
        cut = s.rfind("\n", 0, max_len + 1)
        if cut < max_len * 0.6:
            cut = max_len
        parts.append(s[:cut].rstrip())
        s = s[cut:].lstrip()
    return parts


def _redact(message: str, token: str) -> str:
    return message.replace(token, "<redacted>") if token else message


async def send_message(
    client: httpx.AsyncClient,
    config: TelegramConfig,
    text: str,
    *,
    parse_mode: str = "HTML",
    sleep=asyncio.sleep,
) -> SendResult:
    """Send one message, retrying with exponential backoff. Never raises."""
    if not config.configured:
        return SendResult(success=False, error="Telegram is not configured")

    url = f"{TELEGRAM_API_BASE_URL}{config.bot_token}/sendMessage"
    payload = {"chat_id": config.chat_id, "text": text, "parse_mode": parse_mode}

    last_error = "Failed to send message after retries"
    for attempt in range(config.max_retries + 1):
        try:
            resp = await client.post(url, json=payload, timeout=15.0)
            try:
                data = resp.json()
            except ValueError:
                data = {}
            if resp.status_code >= 400:
                raise RuntimeError(data.get("description") or f"Telegram API error: {resp.status_code}")
            if data.get("ok") and isinstance(data.get("result"), dict):
                return SendResult(success=True, message_id=data["result"].get("message_id"))
            raise RuntimeError("Telegram API returned unexpected response format")
        except (httpx.HTTPError, RuntimeError) as e:
            last_error = _redact(f"{type(e).__name__}: {e}", config.bot_token)
            logger.warning("Telegram send failed", attempt=attempt + 1, error=last_error)

        if attempt < config.max_retries:
            await sleep(config.initial_retry_delay_seconds * (2 ** attempt))

    return SendResult(success=False, error=last_error)


async def send_message_chunked(
    client: httpx.AsyncClient,
    config: TelegramConfig,
    text: str,
    *,
    max_len: int = TELEGRAM_MAX_MESSAGE_LEN,
    sleep=asyncio.sleep,
) -> tuple[bool, list[SendResult]]:
    results: list[SendResult] = []
    for part in split_telegram_message(text, max_len=max_len):
        results.append(await send_message(client, config, part, sleep=sleep))
    return all(r.success for r in results), results


def _format_timestamp(ts: datetime) -> str:
    return ts.astimezone(timezone.utc).strftime("%Y-%m-%d %H:%M:%S UTC")


def build_e2e_failure_message(
    *,
    project_name: str,
    failed: int,
    total_tests: int,
    dashboard_url: str,
    error: str | None = None,
    timestamp: datetime | None = None,
) -> str:
    lines = [
        "<b>🚨 E2E Tests Failed</b>",
        "",
        f"<b>Project:</b> {html.escape(project_name)}",
        f"<b>Time:</b> {_format_timestamp(timestamp or datetime.now(timezone.utc))}",
    ]
    if failed > 0:
        lines.append(f"<b>Failed Tests:</b> {int(failed)} out of {int(total_tests)}")
    if error:
        lines.append(f"<b>Error:</b> {html.escape(error[:500])}")
    url = html.escape(dashboard_url, quote=True)
    lines.extend(["", f'<b>View Details:</b> <a href="{url}">{url}</a>'])
    return "\n".join(lines)


def build_status_change_message(
    *,
    project_name: str,
    check_type: str,
    healthy: bool,
    details: str = "",
    timestamp: datetime | None = None,
) -> str:
    title = "<b>✅ Health Check Restored</b>" if healthy else "<b>🚨 Health Check Failed</b>"
    lines = [
        title,
        "",
        f"<b>Project:</b> {html.escape(project_name)}",
        f"<b>Type:</b> {html.escape(check_type)}",
        f"<b>Time:</b> {_format_timestamp(timestamp or datetime.now(timezone.utc))}",
        "",
        html.escape(details) if details else ("Service is now operational." if healthy else ""),
    ]
    return "\n".join(lines).strip()
