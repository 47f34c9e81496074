"""Tests for the WhatsApp Web client pieces that don't need a real browser."""

import asyncio
import base64

import httpx
import pytest

from whatsapp_gateway.client import (
    COMPOSER_SELECTORS,
    LOGGED_IN_SELECTORS,
    MessageMedia,
    WhatsAppWebClient,
    render_qr_data_url,
)


class FakeLocator:
    def __init__(self, page: "FakePage", selector: str):
        self.page = page
        self.selector = selector

    async def count(self) -> int:
        return 1 if self.selector in self.page.present else 0

    @property
    def first(self) -> "FakeLocator":
        return self

    async def get_attribute(self, name: str):
        return self.page.present.get(self.selector)


class FakePage:
    """Just enough of a Playwright page for the watcher: selector -> data-ref value."""

    def __init__(self):
        self.present = {}
        self.closed = False

    def locator(self, selector: str) -> FakeLocator:
        return FakeLocator(self, selector)

    def is_closed(self) -> bool:
        return self.closed


@pytest.fixture
def wa(tmp_path):
    client = WhatsAppWebClient(auth_dir=tmp_path)
    client._page = FakePage()
    client.events = []

    for name in ("qr", "authenticated", "ready", "disconnected"):
        client.on(name, lambda *args, _n=name: client.events.append((_n,) + args))
    return client


class TestRenderQr:
    def test_png_data_url(self):
        url = render_qr_data_url("2@abcdef,ghijkl,mnopqr")
        prefix = "data:image/png;base64,"
        assert url.startswith(prefix)
        assert base64.b64decode(url[len(prefix):])[:8] == b"\x89PNG\r\n\x1a\n"


class TestMessageMedia:
    @pytest.mark.asyncio
    async def test_from_url_infers_type_and_name(self):
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, content=b"%PDF-1.4", headers={"content-type": "application/pdf; charset=binary"})

        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as hc:
            media = await MessageMedia.from_url("https://cdn.example.com/files/report.pdf?x=1", http_client=hc)

        assert media.mimetype == "application/pdf"
        assert media.filename == "report.pdf"
        assert media.filesize == 8
        assert media.to_bytes() == b"%PDF-1.4"
        assert media.is_visual is False

    @pytest.mark.asyncio
    async def test_explicit_values_win(self):
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, content=b"\xff\xd8\xff", headers={"content-type": "application/octet-stream"})

        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as hc:
            media = await MessageMedia.from_url(
                "https://cdn.example.com/blob", mimetype="image/jpeg", filename="photo.jpg", http_client=hc
            )

        assert media.mimetype == "image/jpeg"
        assert media.filename == "photo.jpg"
        assert media.is_visual is True

    @pytest.mark.asyncio
    async def test_http_error_raises(self):
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(404)

        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as hc:
            with pytest.raises(httpx.HTTPStatusError):
                await MessageMedia.from_url("https://cdn.example.com/missing.png", http_client=hc)

    def test_suggested_filename(self):
        assert MessageMedia(mimetype="image/png", data="").suggested_filename() == "media.png"
        assert MessageMedia(mimetype="image/png", data="", filename="a.png").suggested_filename() == "a.png"


class TestClientSetup:
    def test_session_dir(self, tmp_path):
        assert WhatsAppWebClient(auth_dir=tmp_path).session_dir == tmp_path / "session"
        assert WhatsAppWebClient(auth_dir=tmp_path, client_id="shop").session_dir == tmp_path / "session-shop"

    def test_unknown_event_rejected(self, tmp_path):
        client = WhatsAppWebClient(auth_dir=tmp_path)
        with pytest.raises(ValueError):
            client.on("message", lambda *a: None)

    @pytest.mark.asyncio
    async def test_handler_errors_do_not_stop_other_handlers(self, tmp_path):
        client = WhatsAppWebClient(auth_dir=tmp_path)
        seen = []

        def broken():
            raise RuntimeError("boom")

        async def ok():
            seen.append("ok")

        client.on("ready", broken)
        client.on("ready", ok)
        await client._emit("ready")
        assert seen == ["ok"]


class TestWatcher:
    @pytest.mark.asyncio
    async def test_qr_emitted_once_per_code(self, wa):
        wa._page.present["div[data-ref]"] = "2@first"
        await wa._poll_once()
        await wa._poll_once()
        wa._page.present["div[data-ref]"] = "2@second"
        await wa._poll_once()
        assert wa.events == [("qr", "2@first"), ("qr", "2@second")]

    @pytest.mark.asyncio
    async def test_login_emits_authenticated_then_ready_once(self, wa):
        wa._page.present[LOGGED_IN_SELECTORS[1]] = None
        await wa._poll_once()
        await wa._poll_once()
        assert wa.events == [("authenticated",), ("ready",)]

    @pytest.mark.asyncio
    async def test_qr_after_ready_is_a_logout(self, wa):
        wa._page.present["#side"] = None
        await wa._poll_once()
        del wa._page.present["#side"]
        wa._page.present["div[data-ref]"] = "2@again"
        await wa._poll_once()
        await wa._poll_once()
        assert wa.events == [("authenticated",), ("ready",), ("disconnected", "LOGOUT")]

    @pytest.mark.asyncio
    async def test_closed_page_disconnects(self, wa):
        wa._page.closed = True
        await wa._poll_once()
        await wa._poll_once()
        assert wa.events == [("disconnected", "CLOSED")]

    @pytest.mark.asyncio
    async def test_page_close_event_is_tracked(self, wa):
        wa._on_page_close(wa._page)
        wa._on_page_close(wa._page)
        assert wa._close_task is not None
        await wa._close_task
        assert wa.events == [("disconnected", "CLOSED")]


class ChatLocator:
    def __init__(self, page: "ChatPage", selector: str):
        self.page = page
        self.selector = selector

    async def count(self) -> int:
        return 1 if self.selector == COMPOSER_SELECTORS[0] and self.page.open_chat else 0

    @property
    def first(self) -> "ChatLocator":
        return self

    @property
    def last(self) -> "ChatLocator":
        return self

    async def click(self):
        await asyncio.sleep(0)

    async def fill(self, text: str):
        await asyncio.sleep(0)
        self.page.typed = (self.page.open_chat, text)


class ChatKeyboard:
    def __init__(self, page: "ChatPage"):
        self.page = page

    async def press(self, key: str):
        await asyncio.sleep(0)
        if key == "Enter" and self.page.typed:
            self.page.delivered.append(self.page.typed)
            self.page.typed = None


class ChatPage:
    """Single tab: goto opens a chat, the composer types into whatever chat is open."""

    def __init__(self):
        self.open_chat = None
        self.typed = None
        self.visited = []
        self.delivered = []
        self.keyboard = ChatKeyboard(self)

    async def goto(self, url: str, wait_until: str = "load"):
        self.open_chat = None
        await asyncio.sleep(0)
        self.open_chat = url.rsplit("phone=", 1)[1]
        self.visited.append(self.open_chat)

    async def wait_for_selector(self, selector: str):
        await asyncio.sleep(0)

    def locator(self, selector: str) -> ChatLocator:
        return ChatLocator(self, selector)

    def is_closed(self) -> bool:
        return False


@pytest.fixture
def chat_client(tmp_path):
    client = WhatsAppWebClient(auth_dir=tmp_path)
    client._page = ChatPage()
    return client


class TestSending:
    @pytest.mark.asyncio
    async def test_concurrent_sends_reach_their_own_chats(self, chat_client):
        async def send(phone, text):
            chat_id = f"{phone}@c.us"
            assert await chat_client.is_registered_user(chat_id)
            await chat_client.send_message(chat_id, text)

        await asyncio.gather(send("111", "for-111"), send("222", "for-222"))

        delivered = chat_client._page.delivered
        assert sorted(delivered) == [("111", "for-111"), ("222", "for-222")]

    @pytest.mark.asyncio
    async def test_send_reopens_chat_other_than_last_checked(self, chat_client):
        assert await chat_client.is_registered_user("111@c.us")
        await chat_client.send_message("222@c.us", "hello")

        page = chat_client._page
        assert page.visited == ["111", "222"]
        assert page.delivered == [("222", "hello")]

    @pytest.mark.asyncio
    async def test_send_reuses_chat_just_checked(self, chat_client):
        assert await chat_client.is_registered_user("111@c.us")
        await chat_client.send_message("111@c.us", "hello")
        assert chat_client._page.visited == ["111"]
