"""Fire-and-forget deferred task registration."""
from __future__ import annotations

import asyncio
import logging
from typing import Any, Callable, Dict, Optional, Protocol

from .errors import SchedulingFailure

logger = logging.getLogger(__name__)

REMINDER_TASK = "send_reminder"

TaskHandler = Callable[[Dict[str, Any]], Any]


class TaskRegistrar(Protocol):
    def schedule(self, delay_seconds: float, task_name: str, payload: Dict[str, Any]) -> Any: ...


def send_reminder(payload: Dict[str, Any]) -> None:
    """Acknowledge a reminder. Delivery itself is left to the deployment."""
    logger.info("Reminder task triggered (userId=%s)", payload.get("userId"))


class AsyncioTaskRegistrar:
    """In-process registrar firing named handlers with ``loop.call_later``.

    Pending timers are lost on shutdown; there is no durable queue.
    """

    def __init__(self, handlers: Optional[Dict[str, TaskHandler]] = None) -> None:
        self.handlers: Dict[str, TaskHandler] = dict(handlers or {REMINDER_TASK: send_reminder})
        self._pending: set = set()

    def schedule(self, delay_seconds: float, task_name: str, payload: Dict[str, Any]) -> asyncio.TimerHandle:
        handler = self.handlers.get(task_name)
        if handler is None:
            raise KeyError(f"unknown task {task_name!r}")
        loop = asyncio.get_running_loop()
        handle: asyncio.TimerHandle

        def fire() -> None:
            self._pending.discard(handle)
            try:
                handler(payload)
            except Exception:
                logger.exception("Deferred task %s failed", task_name)

        handle = loop.call_later(max(0.0, float(delay_seconds)), fire)
        self._pending.add(handle)
        return handle

    def cancel_all(self) -> None:
        for handle in list(self._pending):
            handle.cancel()
        self._pending.clear()

    @property
    def pending(self) -> int:
        return len(self._pending)


class ReminderScheduler:
    """Registers deferred tasks; failures are logged and never propagate."""

    def __init__(self, registrar: Optional[TaskRegistrar]) -> None:
        self.registrar = registrar

    def schedule(self, delay_seconds: float, task_name: str, payload: Dict[str, Any]) -> bool:
        try:
            self._register(delay_seconds, task_name, payload)
        except SchedulingFailure as e:
            logger.warning("Workflow scheduling failed: %s", e)
            return False
        logger.debug("Scheduled %s in %ss", task_name, delay_seconds)
        return True

    def _register(self, delay_seconds: float, task_name: str, payload: Dict[str, Any]) -> None:
        if self.registrar is None:
            raise SchedulingFailure("no task registrar configured", task=task_name)
        try:
            self.registrar.schedule(delay_seconds, task_name, payload)
        except Exception as e:
            raise SchedulingFailure(f"registering {task_name!r} failed: {e}", task=task_name) from e
