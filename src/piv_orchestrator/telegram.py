"""Minimal Telegram Bot API client over ``urllib`` plus message formatting helpers."""

from __future__ import annotations

import json
import logging
from typing import Any
from urllib.error import HTTPError, URLError
from urllib.request import Request, urlopen

logger = logging.getLogger(__name__)

MAX_MESSAGE_LENGTH = 4096
API_BASE = "https://api.telegram.org"
DEFAULT_REQUEST_TIMEOUT_SECONDS = 10


def escape_html(text: str) -> str:
    """Escape ``&``, ``<`` and ``>`` for ``parse_mode=HTML`` messages."""
    return str(text).replace("&", "&amp;").replace("<", "&lt;").replace(">", "&gt;")


def _pack(pieces: list[str], separator: str, limit: int) -> list[str]:
    """Greedily join pieces (each already within *limit*) into chunks."""
    chunks: list[str] = []
    current: str | None = None
    for piece in pieces:
        if current is None:
            current = piece
        elif len(current) + len(separator) + len(piece) <= limit:
            current = f"{current}{separator}{piece}"
        else:
            chunks.append(current)
            current = piece
    if current is not None:
        chunks.append(current)
    return chunks


def split_message(text: str, limit: int = MAX_MESSAGE_LENGTH) -> list[str]:
    """Split *text* into chunks of at most *limit* characters.

    Paragraph boundaries are preferred, then line boundaries; a line longer
    than the limit is hard-split.
    """
    if len(text) <= limit:
        return [text]
    pieces: list[str] = []
    for paragraph in text.split("\n\n"):
        if len(paragraph) <= limit:
            pieces.append(paragraph)
            continue
        lines: list[str] = []
        for line in paragraph.split("\n"):
            if len(line) <= limit:
                lines.append(line)
            else:
                lines.extend(line[i : i + limit] for i in range(0, len(line), limit))
        pieces.extend(_pack(lines, "\n", limit))
    return _pack(pieces, "\n\n", limit)


def approval_keyboard(resource: str) -> dict[str, Any]:
    """Inline keyboard for a tiered approval: approve / use fixture / skip."""
    return {
        "inline_keyboard": [
            [
                {"text": "Approve", "callback_data": f"approve:{resource}"},
                {"text": "Use fixture", "callback_data": f"use-fixture:{resource}"},
                {"text": "Skip", "callback_data": f"skip:{resource}"},
            ]
        ]
    }


class TelegramClient:
    """Bot API calls used by the bridge. Transport errors are returned, not raised."""

    def __init__(
        self,
        token: str,
        chat_id: str,
        *,
        timeout: float = DEFAULT_REQUEST_TIMEOUT_SECONDS,
        api_base: str = API_BASE,
    ) -> None:
        self.token = token
        self.chat_id = str(chat_id)
        self.timeout = timeout
        self.api_base = api_base.rstrip("/")

    def call(self, method: str, payload: dict[str, Any], *, timeout: float | None = None) -> dict[str, Any]:
        url = f"{self.api_base}/bot{self.token}/{method}"
        req = Request(
            url,
            data=json.dumps(payload).encode("utf-8"),
            headers={"Content-Type": "application/json"},
        )
        try:
            with urlopen(req, timeout=timeout or self.timeout) as resp:
                data = json.loads(resp.read().decode("utf-8"))
        except HTTPError as exc:
            body = ""
            try:
                body = exc.read().decode("utf-8", errors="replace")
                data = json.loads(body)
            except (OSError, json.JSONDecodeError):
                data = {"ok": False, "error_code": exc.code, "description": body or str(exc)}
            return data if isinstance(data, dict) else {"ok": False, "error_code": exc.code}
        except (URLError, OSError, json.JSONDecodeError) as exc:
            logger.warning("Telegram %s failed: %s", method, exc)
            return {"ok": False, "description": str(exc)}
        return data if isinstance(data, dict) else {"ok": False, "description": "unexpected response"}

    def send_message(
        self,
        text: str,
        *,
        parse_mode: str | None = "HTML",
        reply_markup: dict[str, Any] | None = None,
    ) -> bool:
        """Send *text*, split to the size limit; retry a chunk without HTML on a 400."""
        chunks = split_message(text)
        for idx, chunk in enumerate(chunks):
            payload: dict[str, Any] = {"chat_id": self.chat_id, "text": chunk}
            if parse_mode:
                payload["parse_mode"] = parse_mode
            if reply_markup is not None and idx == len(chunks) - 1:
                payload["reply_markup"] = reply_markup
            result = self.call("sendMessage", payload)
            if not result.get("ok") and result.get("error_code") == 400 and parse_mode:
                payload.pop("parse_mode", None)
                result = self.call("sendMessage", payload)
            if not result.get("ok"):
                logger.warning("Telegram sendMessage failed: %s", result.get("description"))
                return False
        return True

    def get_updates(self, offset: int, *, poll_timeout: int = 25) -> list[dict[str, Any]] | None:
        """Long-poll for updates; ``None`` when the request itself failed."""
        result = self.call(
            "getUpdates",
            {
                "offset": offset,
                "timeout": poll_timeout,
                "allowed_updates": ["message", "callback_query"],
            },
            timeout=poll_timeout + 10,
        )
        if not result.get("ok"):
            return None
        updates = result.get("result")
        return [u for u in updates if isinstance(u, dict)] if isinstance(updates, list) else []

    def answer_callback_query(self, callback_query_id: str, text: str = "") -> None:
        self.call("answerCallbackQuery", {"callback_query_id": callback_query_id, "text": text})
