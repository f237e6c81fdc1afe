"""Minimal terminal client for the edge memory chat server.

Lines typed on stdin are sent as chat messages; ``/reset`` clears the
conversation and ``/quit`` exits.
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import os
import sys

SRC_DIR = os.path.abspath(os.path.join(os.path.dirname(__file__), "..", "src"))
if SRC_DIR not in sys.path:
    sys.path.insert(0, SRC_DIR)

from edge_agent.client import ConnectionSession, WebSocketClient  # noqa: E402
from edge_agent.config import load_config  # noqa: E402


def _printer():
    shown = {"count": 0, "status": None}

    def render(session: ConnectionSession) -> None:
        if session.status_label != shown["status"]:
            shown["status"] = session.status_label
            print(f"[status] {session.status_label}")
        # A state resync may shrink the log; re-render from the top then.
        if len(session.messages) < shown["count"]:
            shown["count"] = 0
        for msg in session.messages[shown["count"]:]:
            print(f"{msg.role}> {msg.text}")
        shown["count"] = len(session.messages)

    return render


async def _main(args: argparse.Namespace) -> None:
    cfg = load_config(args.config).get("client", {})
    session = ConnectionSession(
        user_id=cfg.get("user_id", "guest"),
        identity_delay_ms=int(cfg.get("identity_delay_ms", 3500)),
        ready_timeout_ms=int(cfg.get("ready_timeout_ms", 4000)),
        watchdog_ms=int(cfg.get("watchdog_ms", 12000)),
    )
    render = _printer()
    client = WebSocketClient(
        args.url or cfg.get("url", "ws://127.0.0.1:8000/agents/default/ws"),
        session,
        reconnect_delay=float(cfg.get("reconnect_delay_seconds", 5)),
        on_change=render,
    )
    runner = asyncio.create_task(client.run())

    loop = asyncio.get_running_loop()
    try:
        while True:
            line = await loop.run_in_executor(None, sys.stdin.readline)
            if not line or line.strip() == "/quit":
                break
            if line.strip() == "/reset":
                await session.reset()
            else:
                await session.send(line)
            render(session)
    finally:
        await client.stop()
        runner.cancel()


def main() -> None:
    parser = argparse.ArgumentParser(description="Chat with an edge memory agent.")
    parser.add_argument("--url", type=str, default=None, help="Websocket URL of the agent")
    parser.add_argument("--config", type=str, default=None, help="Path to a YAML config")
    args = parser.parse_args()
    logging.basicConfig(level=logging.WARNING)
    asyncio.run(_main(args))


if __name__ == "__main__":
    main()
