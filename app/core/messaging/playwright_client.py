"""
WhatsApp Web client driven by Playwright (headless Chromium).

Each tenant gets a persistent browser profile so a paired device survives
page reloads. Pairing is observed by polling the page: the QR container
carries the raw pairing string in its ``data-ref`` attribute, and the
chat list appearing means the device is linked.

Message operations run inside the page against the web client's own
module collections, exposed as ``window.Store`` by ``_INJECT_STORE_JS``.
"""

import asyncio
import logging
import re
from pathlib import Path
from typing import Any, Optional

from playwright.async_api import (
    BrowserContext,
    Error as PlaywrightError,
    Page,
    Playwright,
    async_playwright,
)

from app.config import get_settings
from .client import (
    ClientEvent,
    ClientEventType,
    MessagingClient,
    RemoteChat,
    RemoteContact,
    RemoteMessage,
)
from .errors import AutomationError

logger = logging.getLogger(__name__)

BROWSER_ARGS = [
    "--no-sandbox",
    "--disable-setuid-sandbox",
    "--disable-dev-shm-usage",
    "--disable-accelerated-2d-canvas",
    "--no-first-run",
    "--no-zygote",
    "--disable-gpu",
    "--disable-blink-features=AutomationControlled",
]

USER_AGENT = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/124.0.0.0 Safari/537.36"
)

QR_SELECTOR = "div[data-ref]"
LOGGED_IN_SELECTORS = ('[data-testid="chat-list"]', "#side", 'div[data-tab="3"]')
MONITOR_INTERVAL = 1.0

_INJECT_STORE_JS = """
() => {
  if (window.Store) return true;
  if (typeof window.require !== 'function') return false;
  try {
    window.Store = Object.assign({}, window.require('WAWebCollections'), {
      Cmd: window.require('WAWebCmd').Cmd,
      User: window.require('WAWebUserPrefsMeUser'),
      WidFactory: window.require('WAWebWidFactory'),
      FindChat: window.require('WAWebFindChatAction'),
      SendText: window.require('WAWebSendTextMsgChatAction'),
      EditMessage: window.require('WAWebSendMessageEditAction'),
      Reaction: window.require('WAWebSendReactionMsgAction'),
    });
    window.__serializeMsg = (m) => ({
      id: m.id._serialized,
      chatId: m.id.remote._serialized || String(m.id.remote),
      body: m.body || '',
      fromMe: !!m.id.fromMe,
      timestamp: m.t,
      type: m.type,
      hasMedia: !!m.mediaData || ['image', 'video', 'audio', 'ptt', 'document', 'sticker'].includes(m.type),
      from: m.from ? (m.from._serialized || String(m.from)) : '',
      to: m.to ? (m.to._serialized || String(m.to)) : '',
      caption: m.caption || null,
      filename: m.filename || null,
      location: m.type === 'location' ? {latitude: m.lat, longitude: m.lng, description: m.loc || null} : null,
      isGroup: !!(m.id.remote && m.id.remote.server === 'g.us'),
    });
    return true;
  } catch (e) {
    return false;
  }
}
"""

_OWN_NUMBER_JS = """
() => {
  try {
    const me = window.Store && window.Store.User.getMaybeMePnUser
      ? window.Store.User.getMaybeMePnUser()
      : (window.Store ? window.Store.User.getMaybeMeUser() : null);
    if (me && me.user) return me.user;
  } catch (e) {}
  const raw = window.localStorage.getItem('last-wid-md') || window.localStorage.getItem('last-wid');
  if (!raw) return null;
  return raw.replace(/"/g, '').split(/[:@]/)[0];
}
"""

_SEND_JS = """
async ([chatId, content]) => {
  const wid = window.Store.WidFactory.createWid(chatId);
  const found = await window.Store.FindChat.findOrCreateLatestChat(wid);
  const chat = found.chat || found;
  await window.Store.SendText.sendTextMsgToChat(chat, content, {});
  const last = chat.msgs.getModelsArray().filter(m => m.id.fromMe).pop();
  return last ? window.__serializeMsg(last) : null;
}
"""

_GET_MESSAGE_JS = """
(messageId) => {
  const msg = window.Store.Msg.get(messageId);
  return msg ? window.__serializeMsg(msg) : null;
}
"""

_EDIT_JS = """
async ([messageId, content]) => {
  const msg = window.Store.Msg.get(messageId);
  if (!msg || !msg.id.fromMe) return false;
  await window.Store.EditMessage.sendMessageEdit(msg, content, {});
  return true;
}
"""

_DELETE_JS = """
async ([messageId, forEveryone]) => {
  const msg = window.Store.Msg.get(messageId);
  if (!msg) return false;
  const chat = window.Store.Chat.get(msg.id.remote);
  if (forEveryone) {
    await window.Store.Cmd.sendRevokeMsgs(chat, {list: [msg], type: 'message'}, {clearMedia: true});
  } else {
    await window.Store.Cmd.sendDeleteMsgs(chat, {list: [msg], type: 'message'}, true);
  }
  return true;
}
"""

_REACT_JS = """
async ([messageId, emoji]) => {
  const msg = window.Store.Msg.get(messageId);
  if (!msg) return false;
  await window.Store.Reaction.sendReactionToMsg(msg, emoji);
  return true;
}
"""

_CONTACTS_JS = """
() => window.Store.Contact.getModelsArray()
  .filter(c => {
    const id = (c.id && c.id._serialized) || '';
    return id.endsWith('@c.us') && !c.isMe && (c.isMyContact || c.name || c.pushname);
  })
  .map(c => ({
    id: c.id._serialized,
    phone: c.id.user || '',
    name: c.name || c.pushname || c.id.user || '',
    pushname: c.pushname || '',
    isMyContact: !!c.isMyContact,
  }))
"""

_CHATS_JS = """
() => window.Store.Chat.getModelsArray()
  .sort((a, b) => (b.t || 0) - (a.t || 0))
  .map(c => {
    const contact = c.contact || window.Store.Contact.get(c.id) || {};
    return {
      id: c.id._serialized,
      name: c.name || c.formattedTitle || null,
      isGroup: c.id.server === 'g.us',
      unreadCount: c.unreadCount || 0,
      contactName: contact.pushname || contact.name || null,
      contactNumber: contact.phoneNumber ? contact.phoneNumber.user : (contact.number || null),
    };
  })
"""

_FETCH_MESSAGES_JS = """
([chatId, limit]) => {
  const chat = window.Store.Chat.get(chatId);
  if (!chat) return [];
  const msgs = chat.msgs.getModelsArray().filter(m => !m.isNotification);
  return msgs.slice(-limit).map(window.__serializeMsg);
}
"""

_WATCH_MESSAGES_JS = """
() => {
  if (window.__watchingMessages) return true;
  window.__watchingMessages = true;
  window.Store.Msg.on('add', (msg) => {
    if (!msg.isNewMsg) return;
    window.__onMessage(window.__serializeMsg(msg));
  });
  return true;
}
"""


def profile_slug(tenant_id: str) -> str:
    """Filesystem-safe profile directory name for a tenant."""
    return "user_" + re.sub(r"[^0-9a-zA-Z]", "", tenant_id)[:32]


class PlaywrightMessagingClient(MessagingClient):
    """Live handle backed by a persistent Chromium context."""

    def __init__(
        self,
        tenant_id: str,
        profile_dir: Optional[str] = None,
        headless: Optional[bool] = None,
    ):
        super().__init__(tenant_id)
        settings = get_settings()
        base = Path(profile_dir or settings.browser_profile_dir)
        self.profile_path = base / profile_slug(tenant_id)
        self.headless = settings.browser_headless if headless is None else headless
        self.url = settings.whatsapp_web_url

        self._playwright: Optional[Playwright] = None
        self._context: Optional[BrowserContext] = None
        self._page: Optional[Page] = None
        self._monitor_task: Optional[asyncio.Task] = None
        self._last_code: Optional[str] = None
        self._ready = False
        self._closed = False

    async def _launch(self) -> None:
        self.profile_path.mkdir(parents=True, exist_ok=True)
        try:
            self._playwright = await async_playwright().start()
            self._context = await self._playwright.chromium.launch_persistent_context(
                user_data_dir=str(self.profile_path),
                headless=self.headless,
                args=BROWSER_ARGS,
                user_agent=USER_AGENT,
                viewport={"width": 1280, "height": 800},
                locale="en-US",
            )
            pages = self._context.pages
            self._page = pages[0] if pages else await self._context.new_page()
            self._page.on("close", lambda _: self._on_page_closed())
            await self._page.expose_function("__onMessage", self._on_message)
            await self._page.goto(self.url, wait_until="domcontentloaded", timeout=60000)
        except PlaywrightError as e:
            await self.close()
            raise AutomationError(f"Browser launch failed: {e}", tenant_id=self.tenant_id) from e

        self._monitor_task = asyncio.create_task(
            self._monitor(), name=f"wa-monitor-{self.tenant_id}"
        )
        logger.info(f"Browser session launched for tenant {self.tenant_id}")

    async def _monitor(self) -> None:
        """Watch the page for pairing codes, login and logout."""
        page = self._page
        while not self._closed and page is not None and not page.is_closed():
            try:
                if await self._is_logged_in():
                    if not self._ready:
                        await self._on_logged_in()
                else:
                    if self._ready:
                        self._ready = False
                        self._emit(ClientEvent(
                            type=ClientEventType.DISCONNECTED,
                            reason="Device unlinked",
                        ))
                        return
                    await self._check_pairing_code()
            except PlaywrightError as e:
                if self._closed:
                    return
                logger.debug(f"Monitor probe failed for tenant {self.tenant_id}: {e}")
            await asyncio.sleep(MONITOR_INTERVAL)

    async def _is_logged_in(self) -> bool:
        for selector in LOGGED_IN_SELECTORS:
            if await self._page.locator(selector).count() > 0:
                return True
        return False

    async def _check_pairing_code(self) -> None:
        qr = self._page.locator(QR_SELECTOR).first
        if await qr.count() == 0:
            return
        code = await qr.get_attribute("data-ref")
        if code and code != self._last_code:
            self._last_code = code
            self._emit(ClientEvent(type=ClientEventType.QR, pairing_code=code))

    async def _on_logged_in(self) -> None:
        if self._last_code is not None:
            self._emit(ClientEvent(type=ClientEventType.AUTHENTICATED))

        for _ in range(30):
            if await self._page.evaluate(_INJECT_STORE_JS):
                break
            await asyncio.sleep(1)
        else:
            self._emit(ClientEvent(
                type=ClientEventType.AUTH_FAILURE,
                reason="Web client modules never became available",
            ))
            return

        phone = await self._page.evaluate(_OWN_NUMBER_JS)
        await self._page.evaluate(_WATCH_MESSAGES_JS)
        self._ready = True
        self._emit(ClientEvent(type=ClientEventType.READY, phone_number=phone))

    def _on_page_closed(self) -> None:
        if self._closed:
            return
        self._emit(ClientEvent(type=ClientEventType.DISCONNECTED, reason="Browser page closed"))

    def _on_message(self, payload: dict) -> None:
        self._emit(ClientEvent(
            type=ClientEventType.MESSAGE,
            message=RemoteMessage.from_dict(payload),
        ))

    async def _evaluate(self, script: str, arg: Any = None) -> Any:
        """Run a page script, translating browser errors."""
        if self._page is None or self._page.is_closed():
            raise AutomationError("Browser page is gone", tenant_id=self.tenant_id)
        try:
            if arg is None:
                return await self._page.evaluate(script)
            return await self._page.evaluate(script, arg)
        except PlaywrightError as e:
            raise AutomationError(str(e), tenant_id=self.tenant_id) from e

    async def logout(self) -> None:
        if self._page is None or self._page.is_closed():
            return
        try:
            await self._page.evaluate(
                "() => window.Store && window.Store.Cmd && window.Store.Cmd.logout && window.Store.Cmd.logout()"
            )
        except PlaywrightError as e:
            logger.debug(f"Logout script failed for tenant {self.tenant_id}: {e}")

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True

        if self._monitor_task is not None and not self._monitor_task.done():
            self._monitor_task.cancel()
            try:
                await self._monitor_task
            except asyncio.CancelledError:
                pass

        try:
            if self._context is not None:
                await self._context.close()
        finally:
            self._context = None
            self._page = None
            if self._playwright is not None:
                await self._playwright.stop()
                self._playwright = None
        logger.info(f"Browser session closed for tenant {self.tenant_id}")

    async def send_message(self, chat_id: str, content: str) -> RemoteMessage:
        data = await self._evaluate(_SEND_JS, [chat_id, content])
        if not data:
            raise AutomationError("Message was not created", tenant_id=self.tenant_id)
        return RemoteMessage.from_dict(data)

    async def get_message(self, message_id: str) -> Optional[RemoteMessage]:
        data = await self._evaluate(_GET_MESSAGE_JS, message_id)
        return RemoteMessage.from_dict(data) if data else None

    async def edit_message(self, message_id: str, content: str) -> bool:
        return bool(await self._evaluate(_EDIT_JS, [message_id, content]))

    async def delete_message(self, message_id: str, for_everyone: bool) -> None:
        if not await self._evaluate(_DELETE_JS, [message_id, for_everyone]):
            raise AutomationError(f"Message {message_id} not found", tenant_id=self.tenant_id)

    async def react(self, message_id: str, emoji: str) -> None:
        if not await self._evaluate(_REACT_JS, [message_id, emoji]):
            raise AutomationError(f"Message {message_id} not found", tenant_id=self.tenant_id)

    async def list_contacts(self) -> list[RemoteContact]:
        return [RemoteContact.from_dict(c) for c in await self._evaluate(_CONTACTS_JS)]

    async def list_chats(self) -> list[RemoteChat]:
        return [RemoteChat.from_dict(c) for c in await self._evaluate(_CHATS_JS)]

    async def fetch_messages(self, chat_id: str, limit: int = 50) -> list[RemoteMessage]:
        data = await self._evaluate(_FETCH_MESSAGES_JS, [chat_id, limit])
        return [RemoteMessage.from_dict(m) for m in data]


def create_playwright_client(tenant_id: str) -> MessagingClient:
    """Default client factory used by the registry."""
    return PlaywrightMessagingClient(tenant_id)
