"""Client-side connection session: identity handshake, send watchdog, resync.

:class:`ConnectionSession` holds the visible chat log and reacts to transport
events. It does no I/O of its own beyond ``transport.send``; a driver such as
:class:`WebSocketClient` feeds it ``on_open`` / ``on_frame`` / ``on_close``.

Reconciliation is last-writer-wins: an authoritative state frame replaces the
whole log. Merging optimistic entries into server state is not attempted.
"""
from __future__ import annotations

import asyncio
import json
import logging
import time
import uuid
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, List, Optional, Protocol

from .errors import ConnectionNotReady, SendTimeout
from .protocol import DEFAULT_USER_ID

logger = logging.getLogger(__name__)

IDENTITY_DELAYED_NOTICE = "Connection opened but identity is delayed. Retrying..."
IDENTITY_DELAYED_MARKER = "identity is delayed"
SEND_FAILED_NOTICE = "Failed to send message. Please retry."
RESET_NOT_READY_NOTICE = "Cannot reset yet: connection is not ready."


class ConnectionStatus(str, Enum):
    CONNECTING = "connecting"
    OPEN_UNIDENTIFIED = "open-unidentified"
    IDENTIFIED = "identified"
    CLOSING = "closing"
    CLOSED = "closed"


STATUS_LABELS = {
    ConnectionStatus.CONNECTING: "Connecting",
    ConnectionStatus.OPEN_UNIDENTIFIED: "Connected (identity pending)",
    ConnectionStatus.IDENTIFIED: "Connected",
    ConnectionStatus.CLOSING: "Closing",
    ConnectionStatus.CLOSED: "Disconnected",
}


def _new_id() -> str:
    return f"{int(time.time() * 1000)}-{uuid.uuid4().hex[:12]}"


@dataclass(frozen=True)
class ChatMessage:
    id: str
    role: str  # "user" | "assistant" | "system"
    text: str

    @classmethod
    def create(cls, role: str, text: str) -> "ChatMessage":
        return cls(id=_new_id(), role=role, text=text)


class Transport(Protocol):
    async def send(self, frame: str) -> None: ...


class ConnectionSession:
    def __init__(
        self,
        transport: Optional[Transport] = None,
        *,
        user_id: str = DEFAULT_USER_ID,
        identity_delay_ms: int = 3500,
        ready_timeout_ms: int = 4000,
        watchdog_ms: int = 12000,
    ) -> None:
        self.transport = transport
        self.user_id = user_id
        self.identity_delay_ms = identity_delay_ms
        self.ready_timeout_ms = ready_timeout_ms
        self.watchdog_ms = watchdog_ms

        self.status = ConnectionStatus.CONNECTING
        self.messages: List[ChatMessage] = []
        self.is_sending = False
        self._watchdog: Optional[asyncio.TimerHandle] = None
        self._identity_timer: Optional[asyncio.TimerHandle] = None
        self._ready_waiters: List[asyncio.Future] = []

    # ----------------- derived state -----------------
    @property
    def identified(self) -> bool:
        return self.status is ConnectionStatus.IDENTIFIED

    @property
    def status_label(self) -> str:
        return STATUS_LABELS[self.status]

    def can_send(self, text: str) -> bool:
        return bool((text or "").strip()) and not self.is_sending

    def _notice(self, text: str) -> None:
        self.messages.append(ChatMessage.create("system", text))

    # ----------------- transport events -----------------
    def on_open(self) -> None:
        if self.identified:
            return
        self.status = ConnectionStatus.OPEN_UNIDENTIFIED
        self._cancel_identity_timer()
        loop = asyncio.get_running_loop()
        self._identity_timer = loop.call_later(self.identity_delay_ms / 1000, self.check_identity)

    def check_identity(self) -> None:
        """Append the identity-delayed notice once, if still unidentified."""
        self._identity_timer = None
        if self.status is not ConnectionStatus.OPEN_UNIDENTIFIED:
            return
        exists = any(m.role == "system" and IDENTITY_DELAYED_MARKER in m.text for m in self.messages)
        if not exists:
            logger.warning("Connection open but identity not confirmed after %sms", self.identity_delay_ms)
            self._notice(IDENTITY_DELAYED_NOTICE)

    def on_identified(self) -> None:
        self.status = ConnectionStatus.IDENTIFIED
        self._cancel_identity_timer()
        self._resolve_waiters(True)

    def on_closing(self) -> None:
        self.status = ConnectionStatus.CLOSING

    def on_close(self) -> None:
        self.status = ConnectionStatus.CLOSED
        self._cancel_identity_timer()
        self._clear_watchdog()
        self.is_sending = False
        self._resolve_waiters(False)

    def on_frame(self, data: Any) -> None:
        if isinstance(data, (bytes, bytearray)):
            data = data.decode("utf-8", errors="replace")
        if isinstance(data, str):
            try:
                data = json.loads(data)
            except json.JSONDecodeError:
                logger.debug("Ignoring non-JSON frame")
                return
        if not isinstance(data, dict):
            return

        kind = data.get("type")
        if kind == "identity":
            self.on_identified()
        elif kind == "message":
            text = data.get("text")
            if isinstance(text, str) and text.strip():
                self._clear_watchdog()
                self.messages.append(ChatMessage.create("assistant", text))
                self.is_sending = False
        elif kind == "error":
            logger.warning("Server rejected frame: %s", data.get("error"))
        elif isinstance(data.get("conversation"), list):
            self.apply_state(data["conversation"])

    def apply_state(self, conversation: List[Any]) -> None:
        """Replace the visible log with the authoritative conversation."""
        replaced: List[ChatMessage] = []
        for index, item in enumerate(conversation):
            if not isinstance(item, dict):
                continue
            role, text = item.get("role"), item.get("text")
            if role not in ("user", "assistant") or not isinstance(text, str):
                continue
            replaced.append(ChatMessage(id=f"state-{index}-{role}", role=role, text=text))
        self.messages = replaced
        self._clear_watchdog()
        self.is_sending = False

    # ----------------- readiness -----------------
    async def ensure_ready(self, timeout_ms: Optional[int] = None) -> bool:
        if self.identified:
            return True
        timeout = (self.ready_timeout_ms if timeout_ms is None else timeout_ms) / 1000
        waiter = asyncio.get_running_loop().create_future()
        self._ready_waiters.append(waiter)
        try:
            return await asyncio.wait_for(waiter, timeout)
        except asyncio.TimeoutError:
            return False
        finally:
            if waiter in self._ready_waiters:
                self._ready_waiters.remove(waiter)

    async def _require_ready(self, error: ConnectionNotReady) -> None:
        if not await self.ensure_ready():
            raise error

    def _resolve_waiters(self, ready: bool) -> None:
        waiters, self._ready_waiters = self._ready_waiters, []
        for waiter in waiters:
            if not waiter.done():
                waiter.set_result(ready)

    # ----------------- user actions -----------------
    async def send(self, text: str) -> bool:
        if not self.can_send(text):
            return False

        text = text.strip()
        self.messages.append(ChatMessage.create("user", text))
        self.is_sending = True

        try:
            await self._require_ready(ConnectionNotReady())
        except ConnectionNotReady as e:
            self._notice(str(e))
            self.is_sending = False
            return False

        try:
            await self._transmit({"message": text, "text": text, "userId": self.user_id})
        except Exception as e:
            logger.warning("Send failed: %s", e)
            self._clear_watchdog()
            self._notice(SEND_FAILED_NOTICE)
            self.is_sending = False
            return False

        self._clear_watchdog()
        if self.is_sending:
            # The reply may already have arrived while transmitting.
            loop = asyncio.get_running_loop()
            self._watchdog = loop.call_later(self.watchdog_ms / 1000, self._on_watchdog)
        return True

    async def reset(self) -> bool:
        self._clear_watchdog()
        self.is_sending = False

        try:
            await self._require_ready(ConnectionNotReady(RESET_NOT_READY_NOTICE))
            await self._transmit({"type": "reset"})
        except ConnectionNotReady as e:
            self._notice(str(e))
            return False
        except Exception as e:
            logger.warning("Reset failed: %s", e)
            self._notice(SEND_FAILED_NOTICE)
            return False

        self.messages = []
        return True

    # ----------------- internals -----------------
    async def _transmit(self, frame: dict) -> None:
        if self.transport is None:
            raise ConnectionError("no transport attached")
        await self.transport.send(json.dumps(frame))

    def _on_watchdog(self) -> None:
        self._watchdog = None
        timeout = SendTimeout(waited_ms=self.watchdog_ms)
        logger.warning("%s (waited %sms)", timeout, self.watchdog_ms)
        self._notice(str(timeout))
        self.is_sending = False

    def _clear_watchdog(self) -> None:
        if self._watchdog is not None:
            self._watchdog.cancel()
            self._watchdog = None

    def _cancel_identity_timer(self) -> None:
        if self._identity_timer is not None:
            self._identity_timer.cancel()
            self._identity_timer = None


# -----------------------------
# WebSocket driver
# -----------------------------
class WebSocketClient:
    """Keeps a :class:`ConnectionSession` attached to the server, reconnecting on failure."""

    def __init__(
        self,
        url: str,
        session: ConnectionSession,
        *,
        reconnect_delay: float = 5,
        on_change: Optional[Callable[[ConnectionSession], None]] = None,
    ) -> None:
        self.url = url
        self.session = session
        self.reconnect_delay = reconnect_delay
        self.on_change = on_change
        self._ws = None
        self._running = False
        session.transport = self

    async def send(self, frame: str) -> None:
        if self._ws is None:
            raise ConnectionError("websocket is not connected")
        await self._ws.send(frame)

    def _changed(self) -> None:
        if self.on_change is not None:
            self.on_change(self.session)

    async def run(self) -> None:
        import websockets

        logger.info("Connecting to agent at %s...", self.url)
        self._running = True

        while self._running:
            self.session.status = ConnectionStatus.CONNECTING
            try:
                async with websockets.connect(self.url) as ws:
                    self._ws = ws
                    self.session.on_open()
                    self._changed()
                    logger.info("Connected to agent")

                    async for frame in ws:
                        self.session.on_frame(frame)
                        self._changed()

            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.warning("Agent connection error: %s", e)
            finally:
                self._ws = None
                self.session.on_close()
                self._changed()

            if self._running:
                logger.info("Reconnecting in %s seconds...", self.reconnect_delay)
                await asyncio.sleep(self.reconnect_delay)

    async def stop(self) -> None:
        self._running = False
        if self._ws is not None:
            self.session.on_closing()
            await self._ws.close()
