"""FastAPI application routing websocket and HTTP traffic to agent instances."""
from __future__ import annotations

import json
import logging
import re
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Any, Dict, Optional

from fastapi import FastAPI, Request, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from .agent import AgentRegistry, AgentSession
from .config import load_config
from .conversation import ConversationStore
from .errors import ValidationError
from .llm import CompletionModel, ReplyGenerator, create_from_config
from .memory import Embedder, FaissVectorIndex, MemoryPipeline, SentenceTransformerEmbedder, VectorIndex
from .protocol import ChatReply, ErrorFrame, ErrorResponse, IdentityFrame, ReplyResponse, StateSync
from .scheduler import AsyncioTaskRegistrar, ReminderScheduler, TaskRegistrar

logger = logging.getLogger(__name__)

AGENT_CLASS = "EdgeAgent"
DEFAULT_AGENT = "default"


# -----------------------------
# Utilities
# -----------------------------
def _safe_name(name: str) -> str:
    # Keep it readable but filesystem-safe.
    s = re.sub(r"[^\w.\-@]+", "_", name.strip() or DEFAULT_AGENT)
    return s[:128]


def _make_model(cfg: Dict[str, Any]) -> Optional[CompletionModel]:
    try:
        return create_from_config(cfg)
    except FileNotFoundError as e:
        logger.warning("%s; replies will use the fallback text.", e)
    except Exception as e:  # pragma: no cover - depends on llama.cpp runtime
        logger.exception("Failed to load model: %s", e)
    return None


def _make_session_factory(
    cfg: Dict[str, Any],
    model: Optional[CompletionModel],
    embedder: Optional[Embedder],
    index: Optional[VectorIndex],
    registrar: Optional[TaskRegistrar],
):
    agent_cfg = cfg.get("agent", {})
    mem_cfg = cfg.get("memory", {})
    conv_dir = Path(mem_cfg.get("data_dir", "data")) / "conversations"
    generator = ReplyGenerator(
        model,
        max_tokens=int(agent_cfg.get("max_tokens", 256)),
        system_prompt=str(agent_cfg.get("system_prompt", "You are a helpful assistant.")).strip(),
    )
    scheduler = ReminderScheduler(registrar)

    def factory(name: str) -> AgentSession:
        return AgentSession(
            name,
            store=ConversationStore(conv_dir / f"{_safe_name(name)}.json"),
            memory=MemoryPipeline(embedder, index, owner_id=name, top_k=int(mem_cfg.get("top_k", 3))),
            generator=generator,
            scheduler=scheduler,
            reminder_delay=float(agent_cfg.get("reminder_delay_seconds", 60)),
        )

    return factory


# -----------------------------
# App factory
# -----------------------------
def create_app(
    config_path: Optional[str] = None,
    *,
    model: Optional[CompletionModel] = None,
    embedder: Optional[Embedder] = None,
    index: Optional[VectorIndex] = None,
    registrar: Optional[TaskRegistrar] = None,
) -> FastAPI:
    cfg = load_config(config_path)
    mem_cfg = cfg.get("memory", {})

    # Services
    model = model or _make_model(cfg)
    embedder = embedder or SentenceTransformerEmbedder(mem_cfg.get("embed_model", "BAAI/bge-small-en-v1.5"))
    index = index or FaissVectorIndex(mem_cfg.get("data_dir", "data"))
    registrar = registrar or AsyncioTaskRegistrar()
    registry = AgentRegistry(_make_session_factory(cfg, model, embedder, index, registrar))

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        yield
        await registry.close()
        if isinstance(registrar, AsyncioTaskRegistrar):
            registrar.cancel_all()

    app = FastAPI(title="Edge Memory Chat", version="0.1.0", lifespan=lifespan)
    app.state.registry = registry
    app.state.config = cfg

    cors_origins = cfg.get("server", {}).get("cors_origins", ["*"])
    app.add_middleware(
        CORSMiddleware,
        allow_origins=cors_origins or ["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.get("/health")
    def health() -> Dict[str, Any]:
        return {
            "ok": True,
            "model_loaded": model is not None,
            "agents": [name for name, _ in registry.items()],
        }

    async def _invoke(name: str, request: Request) -> JSONResponse:
        try:
            payload: Any = await request.json()
        except (json.JSONDecodeError, UnicodeDecodeError):
            payload = None
        session = registry.get(name)
        try:
            reply = await session.submit(payload)
        except ValidationError as e:
            return JSONResponse(ErrorResponse(error=str(e)).model_dump(), status_code=400)
        return JSONResponse(ReplyResponse(reply=reply).model_dump())

    @app.post("/agents/{name}")
    async def invoke_agent(name: str, request: Request) -> JSONResponse:
        return await _invoke(name, request)

    @app.post("/chat")
    async def chat(request: Request) -> JSONResponse:
        return await _invoke(DEFAULT_AGENT, request)

    @app.get("/agents/{name}/state")
    def get_state(name: str) -> Dict[str, Any]:
        return registry.get(name).state().model_dump()

    @app.websocket("/agents/{name}/ws")
    async def agent_websocket(websocket: WebSocket, name: str) -> None:
        session = registry.get(name)
        await websocket.accept()

        async def push_state(state: StateSync) -> None:
            await websocket.send_json(state.model_dump())

        async def emit(reply: ChatReply) -> None:
            await websocket.send_json(reply.model_dump())

        await websocket.send_json(IdentityFrame(agent=AGENT_CLASS, name=name).model_dump())
        unsubscribe = session.subscribe(push_state)
        logger.info("WebSocket connected (agent=%s)", name)

        try:
            await push_state(session.state())
            while True:
                raw = await websocket.receive_text()
                try:
                    frame = json.loads(raw)
                except json.JSONDecodeError:
                    frame = None

                if isinstance(frame, dict) and frame.get("type") == "reset":
                    try:
                        await session.submit_reset()
                    except OSError as e:
                        logger.warning("Reset failed (agent=%s): %s", name, e)
                        await websocket.send_json(ErrorFrame(error="Reset failed").model_dump())
                        # The client cleared its log optimistically; resync it.
                        await push_state(session.state())
                    continue

                try:
                    await session.submit(frame, emit)
                except ValidationError as e:
                    await websocket.send_json(ErrorFrame(error=str(e)).model_dump())
        except WebSocketDisconnect:
            logger.info("Client disconnected (agent=%s)", name)
        finally:
            unsubscribe()

    return app
