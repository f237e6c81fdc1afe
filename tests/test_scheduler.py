from __future__ import annotations

import asyncio

from conftest import FakeRegistrar
from edge_agent.scheduler import REMINDER_TASK, AsyncioTaskRegistrar, ReminderScheduler


def test_schedule_delegates_to_registrar():
    registrar = FakeRegistrar()
    assert ReminderScheduler(registrar).schedule(60, REMINDER_TASK, {"userId": "guest"}) is True
    assert registrar.calls == [(60, REMINDER_TASK, {"userId": "guest"})]


def test_registration_failure_is_absorbed():
    assert ReminderScheduler(FakeRegistrar(fail=True)).schedule(60, REMINDER_TASK, {}) is False
    assert ReminderScheduler(None).schedule(60, REMINDER_TASK, {}) is False


def test_asyncio_registrar_fires_handler():
    fired = []
    registrar = AsyncioTaskRegistrar({"ping": fired.append})

    async def run():
        ReminderScheduler(registrar).schedule(0.01, "ping", {"userId": "bob"})
        assert registrar.pending == 1
        await asyncio.sleep(0.05)

    asyncio.run(run())
    assert fired == [{"userId": "bob"}]
    assert registrar.pending == 0


def test_asyncio_registrar_rejects_unknown_task_and_missing_loop():
    scheduler = ReminderScheduler(AsyncioTaskRegistrar())
    # No running loop outside asyncio.run
    assert scheduler.schedule(1, REMINDER_TASK, {}) is False

    async def run():
        return scheduler.schedule(1, "not-registered", {})

    assert asyncio.run(run()) is False


def test_cancel_all_drops_pending_timers():
    fired = []
    registrar = AsyncioTaskRegistrar({REMINDER_TASK: fired.append})

    async def run():
        registrar.schedule(0.01, REMINDER_TASK, {})
        registrar.cancel_all()
        await asyncio.sleep(0.03)

    asyncio.run(run())
    assert fired == [] and registrar.pending == 0
