"""Tests for the Telegram client and record store substrate."""

import json
from unittest.mock import AsyncMock, patch

import pytest

from smart_money_tracker.clients.telegram import DeliveryError, TelegramClient, TelegramSubstrate
from smart_money_tracker.store.record_store import SubstrateError


@pytest.fixture
def client():
    return TelegramClient("123:abc", api_base="https://bot.example.test")


class TestTelegramClient:
    """Tests for TelegramClient request building."""

    @pytest.mark.asyncio
    async def test_send_text_reply_and_buttons(self, client) -> None:
        """Replies tolerate a deleted parent and buttons become an inline keyboard."""
        buttons = [[{"text": "📊 Chart", "url": "https://dexscreener.com/solana/x"}]]
        with patch.object(client, "_call", new_callable=AsyncMock, return_value={"message_id": 55}) as call:
            message_id = await client.send_text("-100", "<b>hi</b>", reply_to=7, buttons=buttons)

        assert message_id == 55
        method = call.await_args.args[0]
        payload = call.await_args.kwargs["payload"]
        assert method == "sendMessage"
        assert payload["parse_mode"] == "HTML"
        assert payload["reply_to_message_id"] == 7
        assert payload["allow_sending_without_reply"] is True
        assert payload["reply_markup"] == {"inline_keyboard": buttons}

    @pytest.mark.asyncio
    async def test_edit_not_modified_is_success(self, client) -> None:
        """Editing to identical text is not an error."""
        error = DeliveryError("editMessageText: Bad Request: message is not modified", error_code=400)
        with patch.object(client, "_call", new_callable=AsyncMock, side_effect=error):
            await client.edit_text("-100", 5, "same")

    @pytest.mark.asyncio
    async def test_get_pinned_message(self, client) -> None:
        chat = {"id": -100, "pinned_message": {"message_id": 9, "text": "#main\n{}"}}
        with patch.object(client, "_call", new_callable=AsyncMock, return_value=chat):
            pinned = await client.get_pinned_message("-100")
        assert pinned["message_id"] == 9

    @pytest.mark.asyncio
    async def test_edit_document_uses_attached_media(self, client) -> None:
        """Document edits go through editMessageMedia with an attached file."""
        with patch.object(client, "_call", new_callable=AsyncMock, return_value=True) as call:
            await client.edit_document("-100", 9, b"{}", "records.json")

        assert call.await_args.args[0] == "editMessageMedia"
        form = call.await_args.kwargs["form"]
        fields = {options["name"]: value for options, _, value in form._fields}
        assert fields["message_id"] == "9"
        assert json.loads(fields["media"]) == {"type": "document", "media": "attach://document"}

    @pytest.mark.asyncio
    async def test_download_file_without_path(self, client) -> None:
        """A getFile result without a path is a delivery error."""
        with patch.object(client, "_call", new_callable=AsyncMock, return_value={"file_id": "f1"}):
            with pytest.raises(DeliveryError, match="file_path"):
                await client.download_file("f1")


class TestTelegramSubstrate:
    """Tests for the substrate adapter."""

    @pytest.mark.asyncio
    async def test_send_is_plain_text(self) -> None:
        """Records are sent without a parse mode."""
        client = AsyncMock(spec=TelegramClient)
        client.send_text.return_value = 11
        substrate = TelegramSubstrate(client)

        assert await substrate.send("-100", "#k\n{}") == 11
        client.send_text.assert_awaited_once_with("-100", "#k\n{}", parse_mode=None)

    @pytest.mark.asyncio
    async def test_errors_become_substrate_errors(self) -> None:
        client = AsyncMock(spec=TelegramClient)
        client.edit_text.side_effect = DeliveryError("message to edit not found")
        substrate = TelegramSubstrate(client)

        with pytest.raises(SubstrateError):
            await substrate.edit("-100", 3, "text")

    @pytest.mark.asyncio
    async def test_read_anchor(self) -> None:
        client = AsyncMock(spec=TelegramClient)
        client.get_pinned_message.return_value = {"message_id": 9, "text": "#main\n{}"}
        assert await TelegramSubstrate(client).read_anchor("-100") == (9, "#main\n{}")

        client.get_pinned_message.return_value = {"message_id": 10, "photo": []}
        assert await TelegramSubstrate(client).read_anchor("-100") is None

    @pytest.mark.asyncio
    async def test_read_anchor_downloads_pinned_document(self) -> None:
        """A pinned document anchor is read back as its file contents."""
        client = AsyncMock(spec=TelegramClient)
        client.get_pinned_message.return_value = {"message_id": 12, "document": {"file_id": "f1"}}
        client.download_file.return_value = b'{"version":1,"stores":{}}'

        assert await TelegramSubstrate(client).read_anchor("-100") == (12, '{"version":1,"stores":{}}')
        client.download_file.assert_awaited_once_with("f1")

    @pytest.mark.asyncio
    async def test_files_are_sent_as_documents(self) -> None:
        client = AsyncMock(spec=TelegramClient)
        client.send_document.return_value = 13
        substrate = TelegramSubstrate(client)

        assert await substrate.send_file("-100", "records.json", "{}") == 13
        client.send_document.assert_awaited_once_with("-100", b"{}", "records.json")

        client.edit_document.side_effect = DeliveryError("message to edit not found")
        with pytest.raises(SubstrateError):
            await substrate.edit_file("-100", 13, "records.json", "{}")
