"""
Session manager: the single owner of the WhatsApp Web client.

Holds the session state (ready flag, raw QR, rendered QR), reacts to the
client's lifecycle events and re-creates the client after a disconnect.
All transitions run under one asyncio lock, and every client is tagged with a
generation number so events from a replaced client are dropped.
"""

import asyncio
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Optional

from .client import render_qr_data_url
from .config import Settings
from .errors import NotConnectedError
from .logs import json_log


class SessionPhase(str, Enum):
    UNINITIALIZED = "uninitialized"
    AWAITING_QR = "awaiting_qr"
    AUTHENTICATED = "authenticated"
    READY = "ready"
    DISCONNECTED = "disconnected"


class SessionEvent(str, Enum):
    QR = "qr"
    AUTHENTICATED = "authenticated"
    READY = "ready"
    DISCONNECTED = "disconnected"


@dataclass(frozen=True)
class SessionSnapshot:
    phase: SessionPhase
    ready: bool
    raw_qr: Optional[str]
    qr_image: Optional[str]
    generation: int

    @property
    def has_qr(self) -> bool:
        return bool(self.qr_image)


@dataclass
class ReconnectPolicy:
    """
    Delay before re-creating the client after the n-th consecutive disconnect.
    The defaults give a fixed 5 second delay with no attempt limit.
    """
    delay: float = 5.0
    backoff: float = 1.0
    max_delay: float = 300.0
    max_attempts: Optional[int] = None

    @classmethod
    def from_settings(cls, settings: Settings) -> "ReconnectPolicy":
        return cls(
            delay=settings.reconnect_delay,
            backoff=settings.reconnect_backoff,
            max_delay=settings.reconnect_max_delay,
            max_attempts=settings.reconnect_max_attempts,
        )

    def allows(self, attempt: int) -> bool:
        return self.max_attempts is None or attempt <= self.max_attempts

    def delay_for(self, attempt: int) -> float:
        delay = self.delay * (self.backoff ** max(0, attempt - 1))
        return min(delay, max(self.max_delay, self.delay))


class SessionManager:
    def __init__(
        self,
        client_factory: Callable[[], Any],
        policy: Optional[ReconnectPolicy] = None,
        qr_renderer: Callable[[str], str] = render_qr_data_url,
    ):
        self._client_factory = client_factory
        self.policy = policy or ReconnectPolicy()
        self._qr_renderer = qr_renderer
        self._lock = asyncio.Lock()

        self._client: Optional[Any] = None
        self._generation = 0
        self._phase = SessionPhase.UNINITIALIZED
        self._ready = False
        self._raw_qr: Optional[str] = None
        self._qr_image: Optional[str] = None

        self._attempts = 0
        self._reconnect_task: Optional[asyncio.Task] = None
        self._init_task: Optional[asyncio.Task] = None
        self._stopped = False

    # ------------------------------------------------------------------
    # accessors
    # ------------------------------------------------------------------

    def snapshot(self) -> SessionSnapshot:
        return SessionSnapshot(
            phase=self._phase,
            ready=self._ready,
            raw_qr=self._raw_qr,
            qr_image=self._qr_image,
            generation=self._generation,
        )

    @property
    def phase(self) -> SessionPhase:
        return self._phase

    @property
    def is_ready(self) -> bool:
        return self._ready

    @property
    def has_qr(self) -> bool:
        return bool(self._qr_image)

    @property
    def qr_image(self) -> Optional[str]:
        return None if self._ready else self._qr_image

    @property
    def has_client(self) -> bool:
        return self._client is not None

    @property
    def reconnect_pending(self) -> bool:
        return self._reconnect_task is not None and not self._reconnect_task.done()

    def require_client(self) -> Any:
        """Return the live client, or raise ``NotConnectedError`` unless the session is ready."""
        if not self._ready or self._client is None:
            raise NotConnectedError()
        return self._client

    # ------------------------------------------------------------------
    # lifecycle
    # ------------------------------------------------------------------

    def start(self) -> None:
        """Kick off the first client in the background so the HTTP server can start listening."""
        self._stopped = False
        self._init_task = asyncio.create_task(self.initialize())

    async def stop(self) -> None:
        self._stopped = True
        current = asyncio.current_task()
        pending = [
            t for t in (self._reconnect_task, self._init_task)
            if t is not None and not t.done() and t is not current
        ]
        for t in pending:
            t.cancel()
        await asyncio.gather(*pending, return_exceptions=True)
        self._reconnect_task = None
        async with self._lock:
            client, self._client = self._client, None
            self._generation += 1
            self._reset_state()
            self._phase = SessionPhase.UNINITIALIZED
        if client is not None:
            await self._destroy_quietly(client)
        json_log("session_stopped")

    async def initialize(self) -> None:
        """Replace the current client (if any) with a fresh one and start it."""
        if self._stopped:
            return
        async with self._lock:
            old, self._client = self._client, None
            self._generation += 1
            generation = self._generation
            self._reset_state()
            self._phase = SessionPhase.UNINITIALIZED
        if old is not None:
            await self._destroy_quietly(old)

        json_log("client_initializing", generation=generation)
        try:
            client = self._client_factory()
            for event in SessionEvent:
                client.on(event.value, self._handler_for(event, generation))
        except Exception as e:
            json_log("client_create_failed", level=logging.ERROR, generation=generation, error=str(e))
            await self.dispatch(SessionEvent.DISCONNECTED, "INIT_FAILURE", generation=generation)
            return

        async with self._lock:
            if generation != self._generation or self._stopped:
                superseded = True
            else:
                superseded = False
                self._client = client
                self._phase = SessionPhase.AWAITING_QR
        if superseded:
            await self._destroy_quietly(client)
            return

        try:
            await client.initialize()
        except asyncio.CancelledError:
            raise
        except Exception as e:
            json_log("client_init_failed", level=logging.ERROR, generation=generation, error=str(e))
            await self.dispatch(SessionEvent.DISCONNECTED, "INIT_FAILURE", generation=generation)

    async def logout(self) -> bool:
        """Log the current client out. Returns False when there is no client."""
        client = self._client
        if client is None:
            return False
        await client.logout()
        async with self._lock:
            self._ready = False
            self._raw_qr = None
            self._qr_image = None
            if self._phase in (SessionPhase.READY, SessionPhase.AUTHENTICATED):
                self._phase = SessionPhase.DISCONNECTED
        json_log("logged_out", generation=self._generation)
        return True

    # ------------------------------------------------------------------
    # events
    # ------------------------------------------------------------------

    def _handler_for(self, event: SessionEvent, generation: int):
        async def handler(*args: Any) -> None:
            await self.dispatch(event, *args, generation=generation)
        return handler

    async def dispatch(self, event: SessionEvent, *args: Any, generation: Optional[int] = None) -> None:
        """
        Apply one lifecycle event. ``generation`` identifies the emitting client;
        events from anything but the current client are ignored.
        """
        event = SessionEvent(event)
        render_code: Optional[str] = None

        async with self._lock:
            if generation is not None and generation != self._generation:
                json_log("stale_event_ignored", level=logging.DEBUG, wa_event=event.value, generation=generation)
                return
            current = self._generation

            if event is SessionEvent.QR:
                self._raw_qr = args[0] if args else None
                self._phase = SessionPhase.AWAITING_QR
                render_code = self._raw_qr
                json_log("qr_received", generation=current)

            elif event is SessionEvent.AUTHENTICATED:
                self._raw_qr = None
                self._qr_image = None
                self._phase = SessionPhase.AUTHENTICATED
                json_log("authenticated", generation=current)

            elif event is SessionEvent.READY:
                self._ready = True
                self._raw_qr = None
                self._qr_image = None
                self._phase = SessionPhase.READY
                self._attempts = 0
                json_log("client_ready", generation=current)

            elif event is SessionEvent.DISCONNECTED:
                reason = args[0] if args else None
                self._ready = False
                self._raw_qr = None
                self._qr_image = None
                self._phase = SessionPhase.DISCONNECTED
                json_log("disconnected", level=logging.WARNING, generation=current, reason=reason)
                self._schedule_reconnect(reason)

        if render_code:
            await self._render_qr(render_code, current)

    async def _render_qr(self, code: str, generation: int) -> None:
        try:
            image = await asyncio.to_thread(self._qr_renderer, code)
        except Exception as e:
            json_log("qr_render_failed", level=logging.ERROR, error=str(e))
            return
        async with self._lock:
            # A newer code, a ready event or a new client may have landed meanwhile
            if generation == self._generation and self._raw_qr == code and not self._ready:
                self._qr_image = image

    def _schedule_reconnect(self, reason: Optional[str]) -> None:
        if self._stopped or self.reconnect_pending:
            return
        attempt = self._attempts + 1
        if not self.policy.allows(attempt):
            json_log("reconnect_gave_up", level=logging.ERROR, attempts=self._attempts, reason=reason)
            return
        self._attempts = attempt
        delay = self.policy.delay_for(attempt)
        json_log("reconnect_scheduled", delay=delay, attempt=attempt, reason=reason)
        self._reconnect_task = asyncio.create_task(self._reconnect_after(delay))

    async def _reconnect_after(self, delay: float) -> None:
        await asyncio.sleep(delay)
        # Clear first so a failing initialize can schedule the next attempt
        self._reconnect_task = None
        try:
            await self.initialize()
        except asyncio.CancelledError:
            raise
        except Exception as e:
            json_log("reconnect_failed", level=logging.ERROR, error=str(e))
            await self.dispatch(SessionEvent.DISCONNECTED, "INIT_FAILURE")

    # ------------------------------------------------------------------
    # internals
    # ------------------------------------------------------------------

    def _reset_state(self) -> None:
        self._ready = False
        self._raw_qr = None
        self._qr_image = None

    async def _destroy_quietly(self, client: Any) -> None:
        try:
            await client.destroy()
        except Exception as e:
            json_log("client_destroy_failed", level=logging.WARNING, error=str(e))
