from __future__ import annotations

import asyncio
import json
from typing import List

import pytest

from edge_agent.client import (
    IDENTITY_DELAYED_NOTICE,
    RESET_NOT_READY_NOTICE,
    SEND_FAILED_NOTICE,
    ConnectionSession,
    ConnectionStatus,
    WebSocketClient,
)
from edge_agent.errors import ConnectionNotReady, SendTimeout


class RecordingTransport:
    def __init__(self, fail: bool = False):
        self.fail = fail
        self.frames: List[dict] = []

    async def send(self, frame: str) -> None:
        if self.fail:
            raise ConnectionError("socket closed")
        self.frames.append(json.loads(frame))


def _system(session: ConnectionSession) -> List[str]:
    return [m.text for m in session.messages if m.role == "system"]


def _ready_session(transport=None, **kwargs) -> ConnectionSession:
    session = ConnectionSession(transport or RecordingTransport(), user_id="guest", **kwargs)
    session.on_frame({"type": "identity", "agent": "EdgeAgent", "name": "default"})
    return session


def test_identity_delay_notice_is_idempotent():
    session = ConnectionSession(identity_delay_ms=10)

    async def run():
        session.on_open()
        await asyncio.sleep(0.05)
        session.check_identity()
        session.check_identity()

    asyncio.run(run())
    assert session.status is ConnectionStatus.OPEN_UNIDENTIFIED
    assert _system(session) == [IDENTITY_DELAYED_NOTICE]


def test_identity_before_delay_suppresses_notice():
    session = ConnectionSession(identity_delay_ms=20)

    async def run():
        session.on_open()
        session.on_frame(json.dumps({"type": "identity", "agent": "EdgeAgent", "name": "default"}))
        await asyncio.sleep(0.05)

    asyncio.run(run())
    assert session.identified
    assert session.status_label == "Connected"
    assert _system(session) == []


def test_ensure_ready_outcomes():
    async def run():
        identified = _ready_session()
        timed_out = ConnectionSession()
        closed = ConnectionSession()

        closing = asyncio.create_task(closed.ensure_ready(timeout_ms=1000))
        await asyncio.sleep(0)
        closed.on_close()

        late = ConnectionSession()
        waiting = asyncio.create_task(late.ensure_ready(timeout_ms=1000))
        await asyncio.sleep(0)
        late.on_identified()

        return (
            await identified.ensure_ready(),
            await timed_out.ensure_ready(timeout_ms=10),
            await closing,
            await waiting,
        )

    assert asyncio.run(run()) == (True, False, False, True)


def test_send_without_identity_notifies_and_transmits_nothing():
    transport = RecordingTransport()
    session = ConnectionSession(transport, ready_timeout_ms=10)

    sent = asyncio.run(session.send("hello"))

    assert sent is False
    assert transport.frames == []
    assert [(m.role, m.text) for m in session.messages] == [
        ("user", "hello"),
        ("system", str(ConnectionNotReady())),
    ]
    assert session.is_sending is False


def test_send_rejects_blank_and_concurrent_sends():
    session = _ready_session()
    session.is_sending = True
    assert session.can_send("hi") is False
    assert asyncio.run(session.send("hi")) is False
    session.is_sending = False
    assert asyncio.run(session.send("   ")) is False
    assert session.messages == []


def test_reply_cancels_watchdog():
    transport = RecordingTransport()
    session = _ready_session(transport, watchdog_ms=30)

    async def run():
        assert await session.send("Why is the sky blue") is True
        assert session.is_sending
        session.on_frame({"type": "message", "text": "Rayleigh scattering..."})
        await asyncio.sleep(0.06)

    asyncio.run(run())
    assert transport.frames == [{"message": "Why is the sky blue", "text": "Why is the sky blue", "userId": "guest"}]
    assert [(m.role, m.text) for m in session.messages] == [
        ("user", "Why is the sky blue"),
        ("assistant", "Rayleigh scattering..."),
    ]
    assert session.is_sending is False


def test_watchdog_fires_once_without_reply():
    session = _ready_session(watchdog_ms=10)

    async def run():
        await session.send("anyone there?")
        await asyncio.sleep(0.05)

    asyncio.run(run())
    assert _system(session) == [str(SendTimeout())]
    assert session.is_sending is False


def test_blank_reply_frame_is_ignored():
    session = _ready_session()
    session.is_sending = True
    session.on_frame({"type": "message", "text": "   "})
    assert session.messages == [] and session.is_sending is True


def test_transport_failure_adds_notice():
    session = _ready_session(RecordingTransport(fail=True))

    assert asyncio.run(session.send("hello")) is False
    assert _system(session) == [SEND_FAILED_NOTICE]
    assert session.is_sending is False


def test_state_frame_replaces_log():
    session = _ready_session()
    session.messages = []
    session.is_sending = True
    session.on_frame(
        {
            "conversation": [
                {"role": "user", "text": "hi"},
                {"role": "system", "text": "dropped"},
                "junk",
                {"role": "assistant", "text": "hello"},
            ]
        }
    )
    assert [(m.id, m.role, m.text) for m in session.messages] == [
        ("state-0-user", "user", "hi"),
        ("state-3-assistant", "assistant", "hello"),
    ]
    assert session.is_sending is False


def test_reset_requires_identity():
    transport = RecordingTransport()
    session = ConnectionSession(transport, ready_timeout_ms=10)
    session.apply_state([{"role": "user", "text": "keep"}])

    assert asyncio.run(session.reset()) is False
    assert transport.frames == []
    assert [m.text for m in session.messages] == ["keep", RESET_NOT_READY_NOTICE]


def test_reset_sends_frame_and_clears_log():
    transport = RecordingTransport()
    session = _ready_session(transport)
    session.apply_state([{"role": "user", "text": "hi"}, {"role": "assistant", "text": "hello"}])

    assert asyncio.run(session.reset()) is True
    assert transport.frames == [{"type": "reset"}]
    assert session.messages == []


# -----------------------------
# WebSocket driver
# -----------------------------
class FakeWebSocket:
    def __init__(self, frames: List[str]):
        self._frames = list(frames)
        self.sent: List[str] = []
        self.closed = False

    async def send(self, frame: str) -> None:
        self.sent.append(frame)

    async def close(self) -> None:
        self.closed = True

    def __aiter__(self):
        return self

    async def __anext__(self):
        if not self._frames:
            raise StopAsyncIteration
        return self._frames.pop(0)


class FakeConnect:
    def __init__(self, ws: FakeWebSocket):
        self.ws = ws

    async def __aenter__(self):
        return self.ws

    async def __aexit__(self, exc_type, exc, tb):
        return False


def test_websocket_client_reconnects_after_failure(monkeypatch: pytest.MonkeyPatch):
    websockets = pytest.importorskip("websockets")
    attempts = {"count": 0}
    sleeps: List[float] = []
    identity = json.dumps({"type": "identity", "agent": "EdgeAgent", "name": "default"})
    state = json.dumps({"conversation": [{"role": "user", "text": "hi"}]})

    session = ConnectionSession(identity_delay_ms=1000)
    client = WebSocketClient("ws://example.test/agents/default/ws", session, reconnect_delay=0.01)

    def fake_connect(url, *args, **kwargs):
        attempts["count"] += 1
        if attempts["count"] == 1:
            raise OSError("connection refused")
        client._running = False
        return FakeConnect(FakeWebSocket([identity, state]))

    real_sleep = asyncio.sleep

    async def fake_sleep(delay, *args, **kwargs):
        sleeps.append(delay)
        await real_sleep(0)

    monkeypatch.setattr(websockets, "connect", fake_connect)
    monkeypatch.setattr("edge_agent.client.asyncio.sleep", fake_sleep)

    asyncio.run(client.run())

    assert attempts["count"] == 2
    assert sleeps == [0.01]
    assert [m.text for m in session.messages] == ["hi"]
    # The stream ended, so the session is closed again.
    assert session.status is ConnectionStatus.CLOSED


def test_websocket_client_send_requires_connection():
    client = WebSocketClient("ws://example.test/agents/default/ws", ConnectionSession())
    with pytest.raises(ConnectionError):
        asyncio.run(client.send("{}"))


def _timeouts(session: ConnectionSession) -> int:
    return _system(session).count(str(SendTimeout()))


def test_close_cancels_pending_watchdog():
    session = _ready_session(watchdog_ms=20)

    async def run():
        await session.send("hello")
        session.on_close()
        await asyncio.sleep(0.06)

    asyncio.run(run())
    assert _timeouts(session) == 0
    assert session.status is ConnectionStatus.CLOSED


def test_state_frame_cancels_pending_watchdog():
    session = _ready_session(watchdog_ms=20)

    async def run():
        await session.send("hello")
        session.on_frame({"conversation": []})
        await asyncio.sleep(0.06)

    asyncio.run(run())
    assert _timeouts(session) == 0
    assert session.messages == []


def test_new_send_replaces_earlier_watchdog():
    session = _ready_session(watchdog_ms=40)

    async def run():
        await session.send("first")
        first = session._watchdog
        session.on_frame({"conversation": [{"role": "user", "text": "first"}]})
        await session.send("second")
        assert first.cancelled()
        assert session._watchdog is not None and session._watchdog is not first
        await asyncio.sleep(0.1)

    asyncio.run(run())
    # Only the second send's watchdog can fire.
    assert _timeouts(session) == 1
