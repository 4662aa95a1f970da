"""FastAPI application answering portfolio questions through Gemini."""
from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, AsyncIterator, Dict, List, Optional, Set

from fastapi import FastAPI, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, StreamingResponse
from pydantic import BaseModel, Field

from .config import Settings, build_settings, load_config
from .errors import ChatError
from .gateway import ModelGateway
from .memory import ConversationStore
from .orchestrator import ChatOrchestrator, client_identity
from .portfolio import PortfolioEnricher
from .ratelimit import RateLimiter
from .storage import KeyValueStore, create_store

logger = logging.getLogger(__name__)

CHAT_FALLBACK = "I'm sorry, I encountered an error processing your request. Please try again later."


# -----------------------------
# Pydantic request/response
# -----------------------------
class ChatRequest(BaseModel):
    message: str = Field(default="", description="User message, at most 4000 characters.")
    style: Optional[str] = Field(default=None, description="NORMAL | FORMAL | EXPLANATORY | MINIMALIST | HR")


class ChatResponse(BaseModel):
    response: str
    format: str = "text"
    formatData: Any = None


class RemainingResponse(BaseModel):
    remaining: int
    total: int


# -----------------------------
# Utilities
# -----------------------------
def _identity(request: Request) -> str:
    host = request.client.host if request.client else None
    return client_identity(request.headers, host)


def _error(e: ChatError) -> JSONResponse:
    return JSONResponse(status_code=e.http_status, content={"message": e.message, "code": e.code})


def _make_enricher(settings: Settings) -> PortfolioEnricher:
    return PortfolioEnricher(settings.portfolio_path)


# -----------------------------
# App factory
# -----------------------------
def create_app(
    config_path: Optional[str] = None,
    gateway: Optional[ModelGateway] = None,
    store: Optional[KeyValueStore] = None,
    enricher: Optional[PortfolioEnricher] = None,
    settings: Optional[Settings] = None,
) -> FastAPI:
    settings = settings or build_settings(load_config(config_path))
    logging.basicConfig(
        level=getattr(logging, settings.log_level, logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    # Services
    store = store or create_store(settings.storage_backend, settings.redis_url)
    gateway = gateway or ModelGateway(settings.gateway)
    enricher = enricher or _make_enricher(settings)
    limiter = RateLimiter(
        store, max_requests=settings.rate_limit_max, window_seconds=settings.rate_limit_window
    )
    conversations = ConversationStore(
        store, max_turns=settings.history_max_turns, ttl_seconds=settings.history_ttl
    )
    orchestrator = ChatOrchestrator(
        gateway, limiter, conversations, enricher, max_message_length=settings.max_message_length
    )

    # Producer tasks of open streams; the loop only keeps weak references.
    stream_tasks: Set["asyncio.Task[None]"] = set()

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        yield
        logger.info("Shutting down (%d open streams)", len(stream_tasks))
        for task in list(stream_tasks):
            task.cancel()
        await gateway.close()
        await store.close()

    app = FastAPI(title="Portfolio Chat Server", version="0.1.0", lifespan=lifespan)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=list(settings.cors_origins) or ["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.state.orchestrator = orchestrator
    app.state.store = store
    app.state.enricher = enricher
    app.state.stream_tasks = stream_tasks

    @app.get("/api/health")
    async def health() -> Dict[str, Any]:
        ok = await store.ping()
        return {"status": "healthy", "storage": "connected" if ok else "unavailable"}

    @app.get("/api/ping")
    async def ping() -> Dict[str, Any]:
        return {"status": "pong", "timestamp": datetime.now(timezone.utc).isoformat()}

    @app.post("/api/chat", response_model=ChatResponse)
    async def chat(req: ChatRequest, request: Request):
        identity = _identity(request)
        try:
            envelope = await orchestrator.chat(identity, req.message, req.style)
        except ChatError as e:
            return _error(e)
        except Exception as e:
            logger.exception("Unexpected error handling chat from %s: %s", identity, e)
            return ChatResponse(response=CHAT_FALLBACK)
        return ChatResponse(**envelope.to_payload())

    @app.post("/api/chat/stream")
    async def chat_stream(req: ChatRequest, request: Request):
        identity = _identity(request)
        try:
            await orchestrator.check(identity, req.message)
        except ChatError as e:
            return _error(e)

        cancel = asyncio.Event()
        queue: "asyncio.Queue[Optional[str]]" = asyncio.Queue()

        async def on_fragment(fragment: str) -> None:
            await queue.put(fragment)

        async def produce() -> None:
            try:
                await orchestrator.stream(identity, req.message, req.style, on_fragment, cancel)
            except ChatError as e:
                await queue.put(e.message)
            except Exception as e:
                logger.exception("Streaming failed for %s: %s", identity, e)
                await queue.put(CHAT_FALLBACK)
            finally:
                await queue.put(None)

        async def body() -> AsyncIterator[str]:
            task = asyncio.create_task(produce())
            stream_tasks.add(task)
            task.add_done_callback(stream_tasks.discard)
            try:
                while True:
                    fragment = await queue.get()
                    if fragment is None:
                        break
                    yield fragment
            finally:
                # Client went away or stream finished; the producer stops on its own.
                cancel.set()
                if task.done() and not task.cancelled():
                    task.result()

        return StreamingResponse(body(), media_type="text/plain")

    @app.get("/api/remaining", response_model=RemainingResponse)
    async def remaining(request: Request):
        return RemainingResponse(**await orchestrator.remaining(_identity(request)))

    @app.post("/api/clear-session")
    async def clear_session(request: Request):
        if await orchestrator.clear(_identity(request)):
            return {"message": "Session cleared successfully"}
        return JSONResponse(
            status_code=400, content={"message": "Failed to clear session or session does not exist"}
        )

    # -------------------------
    # Portfolio (read-only)
    # -------------------------
    @app.get("/api/portfolio")
    async def portfolio_categories() -> List[str]:
        return enricher.categories()

    @app.get("/api/portfolio/search")
    async def portfolio_search(query: str = Query(default="")):
        if not query.strip():
            return JSONResponse(status_code=400, content={"message": "Search query cannot be empty"})
        return [item.to_dict(i + 1) for i, item in enumerate(enricher.search(query))]

    @app.get("/api/portfolio/enrich")
    async def portfolio_enrich(message: str = Query(default="")) -> Dict[str, str]:
        if not message.strip():
            return {"context": ""}
        return {"context": enricher.enrich(message)}

    @app.get("/api/portfolio/{category}")
    async def portfolio_category(category: str):
        items = enricher.category(category)
        if not items:
            return JSONResponse(status_code=404, content={"message": f"No content found for category: {category}"})
        return [item.to_dict(i + 1) for i, item in enumerate(items)]

    return app
