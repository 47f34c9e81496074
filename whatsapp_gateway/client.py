"""
WhatsApp Web client driven by Playwright.

One instance is one automated browser session:
- Persistent Chromium profile under ``auth_dir`` (credentials survive restarts)
- Watcher task that turns page state into lifecycle events:
  ``qr(code)``, ``authenticated()``, ``ready()``, ``disconnected(reason)``
- Registration check, text/media sending and logout through the web UI

The QR code shown by WhatsApp Web lives in the ``data-ref`` attribute of its
container, so the raw pairing string is read directly instead of scraping the
canvas; rendering it back to an image is done by ``render_qr_data_url``.
"""

import asyncio
import base64
import io
import logging
import mimetypes
import shutil
import tempfile
from collections import defaultdict
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Sequence, Union
from urllib.parse import urlparse

import httpx
import qrcode
from playwright.async_api import BrowserContext, Page, Playwright, async_playwright
from playwright.async_api import TimeoutError as PWTimeoutError

from .config import BROWSER_ARGS, DEFAULT_TIMEOUT_MS
from .logs import json_log
from .utils import jid_to_phone

WA_URL = "https://web.whatsapp.com/"
USER_AGENT = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/124.0.0.0 Safari/537.36"
)

EVENTS = ("qr", "authenticated", "ready", "disconnected")

# WhatsApp Web changes markup often; every lookup tries several selectors
LOGGED_IN_SELECTORS = ['[data-testid="chat-list"]', "#side", 'div[aria-label="Chat list"]']
QR_SELECTORS = ["div[data-ref]", '[data-testid="qrcode"][data-ref]']
COMPOSER_SELECTORS = [
    'footer div[contenteditable="true"][role="textbox"]',
    '#main footer div[contenteditable="true"]',
    'div[contenteditable="true"][data-tab="10"]',
]
INVALID_NUMBER_SELECTORS = [
    'div[data-testid="popup-controls-ok"]',
    'div[role="dialog"] button',
]
ATTACH_SELECTORS = [
    '[data-testid="attach-menu-plus"]',
    '[data-icon="attach-menu-plus"]',
    '[data-icon="plus"]',
    '[data-testid="clip"]',
    '[data-icon="clip"]',
    'button[aria-label="Attach"]',
]
CAPTION_SELECTORS = [
    '[data-testid="media-caption-input-container"] [contenteditable="true"]',
    'div[aria-label="Add a caption"]',
    'div[contenteditable="true"][data-tab="6"]',
]
SEND_SELECTORS = [
    '[data-testid="send"]',
    '[data-icon="send"]',
    'button[aria-label="Send"]',
    'div[role="button"][aria-label="Send"]',
]
MENU_SELECTORS = ['[data-testid="menu-bar-menu"]', '[data-icon="menu"]', 'div[aria-label="Menu"]']
LOGOUT_ITEM_SELECTORS = ['div[aria-label="Log out"]', 'li:has-text("Log out")', 'text="Log out"']
LOGOUT_CONFIRM_SELECTORS = [
    'div[data-testid="popup-controls-ok"]',
    'div[role="dialog"] button:has-text("Log out")',
]

EventHandler = Callable[..., Any]


def render_qr_data_url(code: str) -> str:
    """Render a raw pairing string to a ``data:image/png;base64,...`` URL."""
    qr = qrcode.QRCode(
        version=None,
        error_correction=qrcode.constants.ERROR_CORRECT_L,
        box_size=6,
        border=2,
    )
    qr.add_data(code)
    qr.make(fit=True)
    img = qr.make_image(fill_color="black", back_color="white")
    buf = io.BytesIO()
    img.save(buf)
    return "data:image/png;base64," + base64.b64encode(buf.getvalue()).decode("ascii")


@dataclass
class MessageMedia:
    """Media attachment held in memory as base64, ready to be attached to a chat."""
    mimetype: str
    data: str
    filename: Optional[str] = None
    filesize: Optional[int] = None

    @classmethod
    async def from_url(
        cls,
        url: str,
        mimetype: Optional[str] = None,
        filename: Optional[str] = None,
        http_client: Optional[httpx.AsyncClient] = None,
    ) -> "MessageMedia":
        """
        Download ``url`` and wrap it. Explicit ``mimetype``/``filename`` win over
        what the response and URL suggest.
        """
        if http_client is None:
            async with httpx.AsyncClient(timeout=60, follow_redirects=True) as client:
                resp = await client.get(url)
        else:
            resp = await http_client.get(url)
        resp.raise_for_status()
        content = resp.content

        url_name = Path(urlparse(url).path).name
        if not mimetype:
            header = (resp.headers.get("content-type") or "").split(";", 1)[0].strip()
            mimetype = header or mimetypes.guess_type(url_name)[0] or "application/octet-stream"
        if not filename:
            filename = url_name or None
        return cls(
            mimetype=mimetype,
            data=base64.b64encode(content).decode("ascii"),
            filename=filename,
            filesize=len(content),
        )

    def to_bytes(self) -> bytes:
        return base64.b64decode(self.data)

    def suggested_filename(self) -> str:
        if self.filename:
            return self.filename
        ext = mimetypes.guess_extension(self.mimetype) or ".bin"
        return f"media{ext}"

    @property
    def is_visual(self) -> bool:
        return self.mimetype.startswith("image/") or self.mimetype.startswith("video/")


class WhatsAppWebClient:
    """
    Playwright automation for WhatsApp Web
    - Persistent context (``auth_dir/session[-client_id]``)
    - Lifecycle events via ``on(event, handler)``
    - ``is_registered_user`` / ``send_message`` / ``logout`` / ``destroy``
    """

    def __init__(
        self,
        auth_dir: Union[str, Path] = "./wwebjs_auth",
        client_id: str = "",
        headless: bool = True,
        browser_args: Optional[Sequence[str]] = None,
        timeout_ms: int = DEFAULT_TIMEOUT_MS,
        poll_interval: float = 2.0,
    ):
        self.auth_dir = Path(auth_dir)
        self.client_id = client_id
        self.headless = headless
        self.browser_args = list(browser_args if browser_args is not None else BROWSER_ARGS)
        self.timeout_ms = timeout_ms
        self.poll_interval = poll_interval

        self._handlers: Dict[str, List[EventHandler]] = defaultdict(list)
        self._playwright: Optional[Playwright] = None
        self._ctx: Optional[BrowserContext] = None
        self._page: Optional[Page] = None
        self._watch_task: Optional[asyncio.Task] = None
        self._stop = asyncio.Event()
        self._close_task: Optional[asyncio.Task] = None
        # One tab: opening a chat and typing into it must not interleave
        self._page_lock = asyncio.Lock()

        self._last_qr: Optional[str] = None
        self._authenticated = False
        self._ready = False
        self._disconnected = False
        self._destroying = False
        self._logged_out = False
        # digits of the chat currently open in the page
        self._open_chat: Optional[str] = None

    @property
    def session_dir(self) -> Path:
        name = f"session-{self.client_id}" if self.client_id else "session"
        return self.auth_dir / name

    def on(self, event: str, handler: EventHandler) -> None:
        event = str(getattr(event, "value", event))
        if event not in EVENTS:
            raise ValueError(f"Unknown event: {event}")
        self._handlers[event].append(handler)

    async def _emit(self, event: str, *args: Any) -> None:
        for handler in list(self._handlers.get(event, [])):
            try:
                result = handler(*args)
                if asyncio.iscoroutine(result):
                    await result
            except Exception as e:
                json_log("wa_handler_error", level=logging.ERROR, wa_event=event, error=str(e))

    # ------------------------------------------------------------------
    # lifecycle
    # ------------------------------------------------------------------

    async def initialize(self) -> None:
        json_log("wa_initializing", session_dir=str(self.session_dir), headless=self.headless)
        self.session_dir.mkdir(parents=True, exist_ok=True)

        self._playwright = await async_playwright().start()
        self._ctx = await self._playwright.chromium.launch_persistent_context(
            user_data_dir=str(self.session_dir),
            headless=self.headless,
            args=self.browser_args,
            user_agent=USER_AGENT,
            viewport={"width": 1280, "height": 900},
            locale="en-US",
        )
        pages = self._ctx.pages
        self._page = pages[0] if pages else await self._ctx.new_page()
        self._page.set_default_navigation_timeout(self.timeout_ms)
        self._page.set_default_timeout(self.timeout_ms)
        self._page.on("close", self._on_page_close)

        try:
            await self._page.goto(WA_URL, wait_until="domcontentloaded")
        except PWTimeoutError as e:
            # The app shell may still finish loading; the watcher keeps polling
            json_log("wa_initial_goto_timeout", level=logging.WARNING, error=str(e))

        self._watch_task = asyncio.create_task(self._watch_loop())

    async def destroy(self) -> None:
        self._destroying = True
        self._stop.set()
        if self._watch_task and self._watch_task is not asyncio.current_task():
            self._watch_task.cancel()
            await asyncio.gather(self._watch_task, return_exceptions=True)
        self._watch_task = None
        try:
            if self._ctx:
                await self._ctx.close()
        finally:
            self._ctx = None
            self._page = None
            if self._playwright:
                await self._playwright.stop()
                self._playwright = None
        if self._logged_out:
            # A logged-out profile can't be reused; start the next session clean
            shutil.rmtree(self.session_dir, ignore_errors=True)
        json_log("wa_destroyed", session_dir=str(self.session_dir))

    def _on_page_close(self, _page: Page) -> None:
        if self._destroying:
            return
        if self._close_task is None:
            self._close_task = asyncio.create_task(self._emit_disconnected("CLOSED"))
            self._close_task.add_done_callback(self._log_task_error)

    @staticmethod
    def _log_task_error(task: asyncio.Task) -> None:
        if not task.cancelled() and task.exception() is not None:
            json_log("wa_task_error", level=logging.ERROR, error=str(task.exception()))

    async def _emit_disconnected(self, reason: str) -> None:
        if self._disconnected:
            return
        self._disconnected = True
        self._ready = False
        self._stop.set()
        await self._emit("disconnected", reason)

    async def _watch_loop(self) -> None:
        while not self._stop.is_set():
            try:
                await self._poll_once()
            except asyncio.CancelledError:
                raise
            except Exception as e:
                if self._page is None or self._page.is_closed():
                    await self._emit_disconnected("CLOSED")
                    break
                json_log("wa_watch_error", level=logging.WARNING, error=str(e))
            await asyncio.sleep(self.poll_interval)

    async def _poll_once(self) -> None:
        if self._disconnected:
            return
        page = self._page
        if page is None or page.is_closed():
            await self._emit_disconnected("CLOSED")
            return

        if await self._first_present(LOGGED_IN_SELECTORS):
            if not self._authenticated:
                self._authenticated = True
                await self._emit("authenticated")
            if not self._ready:
                self._ready = True
                self._last_qr = None
                await self._emit("ready")
            return

        ref = await self._current_qr_ref()
        if not ref:
            return
        if self._ready:
            # Linked device was removed from the phone
            await self._emit_disconnected("LOGOUT")
            return
        if ref != self._last_qr:
            self._last_qr = ref
            await self._emit("qr", ref)

    # ------------------------------------------------------------------
    # page helpers
    # ------------------------------------------------------------------

    def _require_page(self) -> Page:
        if self._page is None or self._page.is_closed():
            raise RuntimeError("WhatsApp Web page is not open")
        return self._page

    async def _first_present(self, selectors: Sequence[str]) -> Optional[str]:
        page = self._require_page()
        for selector in selectors:
            if await page.locator(selector).count() > 0:
                return selector
        return None

    async def _current_qr_ref(self) -> Optional[str]:
        page = self._require_page()
        for selector in QR_SELECTORS:
            loc = page.locator(selector)
            if await loc.count() > 0:
                ref = await loc.first.get_attribute("data-ref")
                if ref:
                    return ref
        return None

    async def _click_first(self, selectors: Sequence[str]) -> bool:
        page = self._require_page()
        for selector in selectors:
            loc = page.locator(selector)
            if await loc.count() > 0:
                await loc.first.click()
                return True
        return False

    # ------------------------------------------------------------------
    # operations
    # ------------------------------------------------------------------

    async def is_registered_user(self, chat_id: str) -> bool:
        """
        Open the click-to-chat URL for ``chat_id``. WhatsApp Web answers with a
        composer for registered numbers and an "invalid phone number" dialog otherwise.
        """
        async with self._page_lock:
            return await self._open_chat_for(chat_id)

    async def _open_chat_for(self, chat_id: str) -> bool:
        # caller holds _page_lock
        page = self._require_page()
        phone = chat_id.split("@", 1)[0]
        self._open_chat = None
        await page.goto(f"{WA_URL}send?phone={phone}", wait_until="domcontentloaded")
        await page.wait_for_selector(", ".join(COMPOSER_SELECTORS + INVALID_NUMBER_SELECTORS))

        if await self._first_present(COMPOSER_SELECTORS):
            self._open_chat = phone
            return True
        await self._click_first(INVALID_NUMBER_SELECTORS)
        return False

    async def send_message(
        self,
        chat_id: str,
        content: Union[str, MessageMedia],
        caption: Optional[str] = None,
    ) -> Dict[str, Any]:
        phone = chat_id.split("@", 1)[0]
        async with self._page_lock:
            # _open_chat only changes under the lock
            if self._open_chat != phone:
                if not await self._open_chat_for(chat_id):
                    raise RuntimeError(f"Chat {chat_id} could not be opened")

            if isinstance(content, MessageMedia):
                await self._send_media(content, caption)
            else:
                await self._send_text(content)
        json_log("wa_message_sent", phone=jid_to_phone(chat_id), media=isinstance(content, MessageMedia))
        return {"chat_id": chat_id, "timestamp": datetime.now(timezone.utc).isoformat()}

    async def _send_text(self, text: str) -> None:
        page = self._require_page()
        selector = await self._first_present(COMPOSER_SELECTORS)
        if not selector:
            raise RuntimeError("Message composer not found")
        composer = page.locator(selector).last
        await composer.click()
        await composer.fill(text)
        await page.keyboard.press("Enter")
        await asyncio.sleep(0.5)

    async def _send_media(self, media: MessageMedia, caption: Optional[str]) -> None:
        page = self._require_page()
        if not await self._click_first(ATTACH_SELECTORS):
            raise RuntimeError("Attach button not found")
        await asyncio.sleep(0.5)

        # Photos & videos have their own input; everything else goes as a document
        inputs = page.locator('input[type="file"]')
        if media.is_visual:
            visual = page.locator('input[type="file"][accept*="image"]')
            if await visual.count() > 0:
                inputs = visual
        if await inputs.count() == 0:
            raise RuntimeError("File input not found")

        with tempfile.TemporaryDirectory(prefix="wa_media_") as tmp:
            path = Path(tmp) / media.suggested_filename()
            path.write_bytes(media.to_bytes())
            await inputs.first.set_input_files(str(path))
            await page.wait_for_selector(", ".join(SEND_SELECTORS))

            if caption:
                selector = await self._first_present(CAPTION_SELECTORS)
                if selector:
                    await page.locator(selector).first.fill(caption)

            if not await self._click_first(SEND_SELECTORS):
                raise RuntimeError("Send button not found")
            # Keep the file around until the upload has been picked up
            await asyncio.sleep(2.0)

    async def logout(self) -> None:
        async with self._page_lock:
            self._open_chat = None
            if not await self._click_first(MENU_SELECTORS):
                raise RuntimeError("Menu button not found")
            await asyncio.sleep(0.3)
            if not await self._click_first(LOGOUT_ITEM_SELECTORS):
                raise RuntimeError("Log out menu item not found")
            await asyncio.sleep(0.3)
            await self._click_first(LOGOUT_CONFIRM_SELECTORS)
            self._logged_out = True
        json_log("wa_logged_out", session_dir=str(self.session_dir))
        await self._emit_disconnected("LOGOUT")
