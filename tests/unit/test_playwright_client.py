"""Tests for the Playwright client's page probing, with a mocked page."""

import asyncio
from unittest.mock import AsyncMock, MagicMock

import pytest
from playwright.async_api import Error as PlaywrightError

from app.core.messaging.client import ClientEventType
from app.core.messaging.errors import AutomationError
from app.core.messaging.playwright_client import (
    PlaywrightMessagingClient,
    profile_slug,
)


def _page(qr_code=None):
    page = MagicMock()
    page.is_closed.return_value = False
    qr = MagicMock()
    qr.count = AsyncMock(return_value=1 if qr_code else 0)
    qr.get_attribute = AsyncMock(return_value=qr_code)
    page.locator.return_value.first = qr
    page.evaluate = AsyncMock()
    return page


class TestProfileSlug:
    """Test profile directory naming."""

    def test_strips_unsafe_characters(self):
        assert profile_slug("../user-1/..") == "user_user1"

    def test_truncated(self):
        assert len(profile_slug("a" * 100)) == len("user_") + 32


class TestPageProbing:
    """Test pairing code detection and script evaluation."""

    @pytest.fixture
    def client(self, tmp_path):
        client = PlaywrightMessagingClient("user-1", profile_dir=str(tmp_path), headless=True)
        client._inbox = asyncio.Queue()
        return client

    def test_profile_path(self, client, tmp_path):
        assert client.profile_path == tmp_path / "user_user1"

    @pytest.mark.asyncio
    async def test_new_code_emitted_once(self, client):
        client._page = _page(qr_code="2@abc")

        await client._check_pairing_code()
        await client._check_pairing_code()

        assert client._inbox.qsize() == 1
        event = client._inbox.get_nowait()
        assert event.type == ClientEventType.QR
        assert event.pairing_code == "2@abc"

    @pytest.mark.asyncio
    async def test_rotated_code_emitted(self, client):
        client._page = _page(qr_code="2@abc")
        await client._check_pairing_code()
        client._page.locator.return_value.first.get_attribute.return_value = "2@def"

        await client._check_pairing_code()

        assert client._inbox.qsize() == 2

    @pytest.mark.asyncio
    async def test_no_qr_on_page(self, client):
        client._page = _page()

        await client._check_pairing_code()

        assert client._inbox.empty()

    @pytest.mark.asyncio
    async def test_evaluate_without_page(self, client):
        with pytest.raises(AutomationError):
            await client.list_chats()

    @pytest.mark.asyncio
    async def test_evaluate_wraps_browser_errors(self, client):
        client._page = _page()
        client._page.evaluate.side_effect = PlaywrightError("Execution context was destroyed")

        with pytest.raises(AutomationError):
            await client.get_message("m1")

    @pytest.mark.asyncio
    async def test_delete_unknown_message(self, client):
        client._page = _page()
        client._page.evaluate.return_value = False

        with pytest.raises(AutomationError):
            await client.delete_message("m1", for_everyone=True)

    @pytest.mark.asyncio
    async def test_payloads_parsed(self, client):
        client._page = _page()
        client._page.evaluate.return_value = [
            {"id": "5511000000002@c.us", "name": "Ana", "isGroup": False, "unreadCount": 2},
        ]

        chats = await client.list_chats()

        assert chats[0].id == "5511000000002@c.us"
        assert chats[0].unread_count == 2

    @pytest.mark.asyncio
    async def test_page_close_reports_disconnect(self, client):
        client._on_page_closed()

        event = client._inbox.get_nowait()
        assert event.type == ClientEventType.DISCONNECTED

    @pytest.mark.asyncio
    async def test_close_is_idempotent(self, client):
        await client.close()
        await client.close()

        assert client._closed
        client._on_page_closed()
        assert client._inbox.empty()
