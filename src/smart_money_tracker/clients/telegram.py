"""Telegram Bot API client.

Used for two things: delivering signal alerts to the primary and public
channels, and as the substrate of the durable record store (one channel
message per record, and a pinned JSON document listing them as the
cold-start anchor).
"""

from __future__ import annotations

import asyncio
import json
import logging
from typing import Any

import aiohttp

from smart_money_tracker.alerter.models import InlineButtons
from smart_money_tracker.clients.http import JsonHttpClient
from smart_money_tracker.store.record_store import SubstrateError

logger = logging.getLogger(__name__)

DEFAULT_API_BASE = "https://api.telegram.org"
MAX_REQUESTS_PER_SECOND = 20

NOT_MODIFIED = "message is not modified"


class DeliveryError(Exception):
    """Raised when the Bot API rejects or fails a request."""

    def __init__(self, message: str, *, error_code: int | None = None) -> None:
        super().__init__(message)
        self.error_code = error_code


def _reply_markup(buttons: InlineButtons | None) -> dict[str, Any] | None:
    if not buttons:
        return None
    return {"inline_keyboard": buttons}


class TelegramClient(JsonHttpClient):
    """Minimal async Bot API client over aiohttp.

    Example:
        ```python
        client = TelegramClient(bot_token)
        message_id = await client.send_text(chat_id, "<b>hello</b>")
        await client.edit_text(chat_id, message_id, "<b>hello again</b>")
        await client.aclose()
        ```
    """

    def __init__(
        self,
        bot_token: str,
        *,
        api_base: str = DEFAULT_API_BASE,
        session: aiohttp.ClientSession | None = None,
        timeout_seconds: float = 15.0,
    ) -> None:
        super().__init__(
            session=session,
            timeout_seconds=timeout_seconds,
            requests_per_second=MAX_REQUESTS_PER_SECOND,
            headers={"Accept": "application/json"},
        )
        self._base = f"{api_base.rstrip('/')}/bot{bot_token}"
        self._file_base = f"{api_base.rstrip('/')}/file/bot{bot_token}"

    async def _call(
        self,
        method: str,
        *,
        payload: dict[str, Any] | None = None,
        form: aiohttp.FormData | None = None,
    ) -> Any:
        """Call a Bot API method and return its ``result``.

        Raises:
            DeliveryError: On network failure or an ``ok: false`` response.
        """
        await self._rate_limiter.acquire()
        session = await self._get_session()
        url = f"{self._base}/{method}"
        try:
            if form is not None:
                request = session.post(url, data=form)
            else:
                request = session.post(url, json=payload or {})
            async with request as resp:
                try:
                    body = await resp.json(content_type=None)
                except ValueError as e:
                    raise DeliveryError(f"{method}: non-JSON response (HTTP {resp.status})") from e
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise DeliveryError(f"{method}: {e}") from e

        if not isinstance(body, dict) or not body.get("ok"):
            description = body.get("description") if isinstance(body, dict) else None
            code = body.get("error_code") if isinstance(body, dict) else None
            raise DeliveryError(f"{method}: {description or 'request failed'}", error_code=code)
        return body.get("result")

    async def send_text(
        self,
        chat_id: str,
        text: str,
        *,
        reply_to: int | None = None,
        buttons: InlineButtons | None = None,
        parse_mode: str | None = "HTML",
        disable_preview: bool = True,
    ) -> int:
        """Send a message (HTML by default) and return its message id."""
        payload: dict[str, Any] = {
            "chat_id": chat_id,
            "text": text,
            "disable_web_page_preview": disable_preview,
        }
        if parse_mode:
            payload["parse_mode"] = parse_mode
        if reply_to is not None:
            payload["reply_to_message_id"] = reply_to
            payload["allow_sending_without_reply"] = True
        markup = _reply_markup(buttons)
        if markup:
            payload["reply_markup"] = markup
        result = await self._call("sendMessage", payload=payload)
        return int(result["message_id"])

    async def send_photo(
        self,
        chat_id: str,
        image: bytes,
        caption: str,
        *,
        reply_to: int | None = None,
        buttons: InlineButtons | None = None,
    ) -> int:
        """Send a PNG with an HTML caption and return its message id."""
        form = aiohttp.FormData()
        form.add_field("chat_id", str(chat_id))
        form.add_field("caption", caption)
        form.add_field("parse_mode", "HTML")
        form.add_field("photo", image, filename="card.png", content_type="image/png")
        if reply_to is not None:
            form.add_field("reply_to_message_id", str(reply_to))
            form.add_field("allow_sending_without_reply", "true")
        markup = _reply_markup(buttons)
        if markup:
            form.add_field("reply_markup", json.dumps(markup))
        result = await self._call("sendPhoto", form=form)
        return int(result["message_id"])

    async def edit_text(self, chat_id: str, message_id: int, text: str, *, parse_mode: str | None = None) -> None:
        """Edit a message in place; an unchanged text counts as success."""
        payload: dict[str, Any] = {
            "chat_id": chat_id,
            "message_id": message_id,
            "text": text,
            "disable_web_page_preview": True,
        }
        if parse_mode:
            payload["parse_mode"] = parse_mode
        try:
            await self._call("editMessageText", payload=payload)
        except DeliveryError as e:
            if NOT_MODIFIED in str(e):
                return
            raise

    async def send_document(self, chat_id: str, data: bytes, filename: str) -> int:
        """Upload a file as a document message and return its message id."""
        form = aiohttp.FormData()
        form.add_field("chat_id", str(chat_id))
        form.add_field("disable_notification", "true")
        form.add_field("document", data, filename=filename, content_type="application/json")
        result = await self._call("sendDocument", form=form)
        return int(result["message_id"])

    async def edit_document(self, chat_id: str, message_id: int, data: bytes, filename: str) -> None:
        """Replace a document message's file in place."""
        media = {"type": "document", "media": "attach://document"}
        form = aiohttp.FormData()
        form.add_field("chat_id", str(chat_id))
        form.add_field("message_id", str(message_id))
        form.add_field("media", json.dumps(media))
        form.add_field("document", data, filename=filename, content_type="application/json")
        try:
            await self._call("editMessageMedia", form=form)
        except DeliveryError as e:
            if NOT_MODIFIED in str(e):
                return
            raise

    async def download_file(self, file_id: str) -> bytes:
        """Resolve ``file_id`` with getFile and download its contents.

        Raises:
            DeliveryError: On network failure or a non-200 download.
        """
        info = await self._call("getFile", payload={"file_id": file_id})
        file_path = (info or {}).get("file_path")
        if not file_path:
            raise DeliveryError(f"getFile: no file_path for {file_id}")

        await self._rate_limiter.acquire()
        session = await self._get_session()
        try:
            async with session.get(f"{self._file_base}/{file_path}") as resp:
                if resp.status != 200:
                    raise DeliveryError(f"download {file_path}: HTTP {resp.status}", error_code=resp.status)
                return await resp.read()
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise DeliveryError(f"download {file_path}: {e}") from e

    async def delete_message(self, chat_id: str, message_id: int) -> None:
        await self._call("deleteMessage", payload={"chat_id": chat_id, "message_id": message_id})

    async def get_pinned_message(self, chat_id: str) -> dict[str, Any] | None:
        """Return the chat's pinned message object, if any."""
        chat = await self._call("getChat", payload={"chat_id": chat_id})
        pinned = (chat or {}).get("pinned_message")
        return pinned if isinstance(pinned, dict) else None

    async def pin_message(self, chat_id: str, message_id: int, *, disable_notification: bool = True) -> None:
        await self._call(
            "pinChatMessage",
            payload={
                "chat_id": chat_id,
                "message_id": message_id,
                "disable_notification": disable_notification,
            },
        )


class TelegramSubstrate:
    """Adapts TelegramClient to the record store substrate protocol.

    Targets are chat ids; handles are message ids.
    """

    def __init__(self, client: TelegramClient) -> None:
        self._client = client

    async def send(self, target: str, text: str) -> int:
        try:
            return await self._client.send_text(target, text, parse_mode=None)
        except DeliveryError as e:
            raise SubstrateError(str(e)) from e

    async def edit(self, target: str, handle: int, text: str) -> None:
        try:
            await self._client.edit_text(target, handle, text)
        except DeliveryError as e:
            raise SubstrateError(str(e)) from e

    async def delete(self, target: str, handle: int) -> None:
        try:
            await self._client.delete_message(target, handle)
        except DeliveryError as e:
            raise SubstrateError(str(e)) from e

    async def send_file(self, target: str, filename: str, text: str) -> int:
        try:
            return await self._client.send_document(target, text.encode("utf-8"), filename)
        except DeliveryError as e:
            raise SubstrateError(str(e)) from e

    async def edit_file(self, target: str, handle: int, filename: str, text: str) -> None:
        try:
            await self._client.edit_document(target, handle, text.encode("utf-8"), filename)
        except DeliveryError as e:
            raise SubstrateError(str(e)) from e

    async def read_anchor(self, target: str) -> tuple[int, str] | None:
        """Return the pinned message's text, or its document's contents."""
        try:
            pinned = await self._client.get_pinned_message(target)
            if not pinned:
                return None
            document = pinned.get("document")
            if isinstance(document, dict) and document.get("file_id"):
                data = await self._client.download_file(str(document["file_id"]))
                return int(pinned["message_id"]), data.decode("utf-8", errors="replace")
        except DeliveryError as e:
            raise SubstrateError(str(e)) from e
        if "text" not in pinned:
            return None
        return int(pinned["message_id"]), str(pinned["text"])

    async def pin(self, target: str, handle: int) -> None:
        try:
            await self._client.pin_message(target, handle, disable_notification=True)
        except DeliveryError as e:
            raise SubstrateError(str(e)) from e
