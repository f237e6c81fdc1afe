"""Per-conversation orchestrator: validate, remember, generate, persist, emit, schedule."""
from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple

from .conversation import ConversationStore
from .errors import ValidationError
from .llm import ReplyGenerator
from .memory import MemoryPipeline
from .protocol import ChatReply, StateSync, parse_inbound
from .scheduler import REMINDER_TASK, ReminderScheduler

logger = logging.getLogger(__name__)

Emit = Callable[[ChatReply], Awaitable[None]]
StateListener = Callable[[StateSync], Awaitable[None]]


class AgentSession:
    """One conversation, processed as a single-writer actor.

    ``handle_message`` runs the pipeline directly; ``submit`` and
    ``submit_reset`` route work through the session mailbox so that items for
    this conversation execute one at a time in arrival order.
    """

    def __init__(
        self,
        agent_id: str,
        *,
        store: ConversationStore,
        memory: MemoryPipeline,
        generator: ReplyGenerator,
        scheduler: ReminderScheduler,
        reminder_delay: float = 60,
    ) -> None:
        self.agent_id = agent_id
        self.store = store
        self.memory = memory
        self.generator = generator
        self.scheduler = scheduler
        self.reminder_delay = reminder_delay
        self._listeners: List[StateListener] = []
        self._mailbox: Optional[asyncio.Queue] = None
        self._worker: Optional[asyncio.Task] = None

    # --------- state sync ----------
    def state(self) -> StateSync:
        return StateSync.model_validate({"conversation": self.store.to_wire()})

    def subscribe(self, listener: StateListener) -> Callable[[], None]:
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    async def _publish_state(self) -> None:
        snapshot = self.state()
        for listener in list(self._listeners):
            try:
                await listener(snapshot)
            except Exception as e:
                logger.warning("[%s] state listener failed: %s", self.agent_id, e)

    # --------- pipeline ----------
    async def handle_message(self, payload: Any, emit: Optional[Emit] = None) -> str:
        request = parse_inbound(payload)
        message = request.resolved_text().strip()
        user_id = request.userId
        logger.info("[%s] message received (userId=%s, has_message=%s)", self.agent_id, user_id, bool(message))
        if not message:
            raise ValidationError("Missing message")

        self.store.append_user(message)
        await self._publish_state()

        context = await asyncio.to_thread(self.memory.retrieve_context, message, user_id)
        reply = await asyncio.to_thread(self.generator.generate, self.store.snapshot(), context, message)

        self.store.append_assistant(reply)
        await self._publish_state()

        if emit is not None:
            try:
                await emit(ChatReply(text=reply))
            except Exception as e:
                logger.warning("[%s] could not deliver reply to connection: %s", self.agent_id, e)

        self.scheduler.schedule(self.reminder_delay, REMINDER_TASK, {"userId": user_id})
        return reply

    async def reset(self) -> None:
        self.store.reset()
        await self._publish_state()

    # --------- actor mailbox ----------
    async def submit(self, payload: Any, emit: Optional[Emit] = None) -> str:
        return await self._enqueue(self.handle_message, payload, emit)

    async def submit_reset(self) -> None:
        await self._enqueue(self.reset)

    async def _enqueue(self, fn: Callable[..., Awaitable[Any]], *args: Any) -> Any:
        loop = asyncio.get_running_loop()
        if (
            self._mailbox is None
            or self._worker is None
            or self._worker.done()
            or self._worker.get_loop() is not loop
        ):
            self._mailbox = asyncio.Queue()
            self._worker = asyncio.create_task(self._drain(self._mailbox))
        future = loop.create_future()
        await self._mailbox.put((fn, args, future))
        return await future

    async def _drain(self, mailbox: asyncio.Queue) -> None:
        while True:
            fn, args, future = await mailbox.get()
            try:
                if future.cancelled():
                    continue
                result = await fn(*args)
            except Exception as e:
                if not future.done():
                    future.set_exception(e)
            else:
                if not future.done():
                    future.set_result(result)
            finally:
                mailbox.task_done()

    async def close(self) -> None:
        if self._worker is not None:
            self._worker.cancel()
            try:
                await self._worker
            except asyncio.CancelledError:
                pass
            self._worker = None
        self._mailbox = None


class AgentRegistry:
    """Lazily creates one :class:`AgentSession` per conversation name."""

    def __init__(self, factory: Callable[[str], AgentSession]) -> None:
        self._factory = factory
        self._sessions: Dict[str, AgentSession] = {}

    def get(self, name: str) -> AgentSession:
        session = self._sessions.get(name)
        if session is None:
            session = self._factory(name)
            self._sessions[name] = session
            logger.info("Agent instance created: %s", name)
        return session

    def items(self) -> List[Tuple[str, AgentSession]]:
        return list(self._sessions.items())

    async def close(self) -> None:
        for _, session in self.items():
            await session.close()
