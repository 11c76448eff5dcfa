"""
FastAPI host for the document Q&A engine.

The sidebar UI connects over a WebSocket and exchanges protocol envelopes as
JSON. The browser shell reports tab lifecycle events over plain HTTP.

Run with:
    uvicorn pdfama.api_server:app --host 127.0.0.1 --port 8000
"""
from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager, suppress
from typing import Any, Awaitable, Callable

from fastapi import FastAPI, HTTPException, WebSocket, WebSocketDisconnect
from pydantic import BaseModel, Field

from .errors import ValidationError
from .observability import get_logger
from .protocol import Component, Message, error, to_wire
from .router import Channel, Router
from .session_store import SessionStore
from .vector_store import VectorStore
from .worker import default_worker_factory

logger = get_logger(__name__)


# ---------------------------------------------------------------------------
# Pydantic request / response models
# ---------------------------------------------------------------------------

class TabLocation(BaseModel):
    url: str | None = Field(default=None, description="Location currently shown in the tab")


class TabResponse(BaseModel):
    tab_id: int
    document_id: str | None


class HealthResponse(BaseModel):
    status: str
    worker_running: bool
    sidebar_connected: bool
    tabs: dict[int, dict[str, Any]]


# ---------------------------------------------------------------------------
# Default wiring
# ---------------------------------------------------------------------------

RouterBuilder = Callable[[], Awaitable[tuple[Router, Callable[[], None]]]]


async def build_default_router() -> tuple[Router, Callable[[], None]]:
    sessions = SessionStore()
    vectors = VectorStore()

    def _release():
        sessions.close()
        vectors.close()

    return Router(default_worker_factory(sessions, vectors)), _release


# ---------------------------------------------------------------------------
# Sidebar channel pumps
# ---------------------------------------------------------------------------

async def _pump_outbound(websocket: WebSocket, channel: Channel):
    async for message in channel:
        await websocket.send_json(to_wire(message))


async def _pump_inbound(websocket: WebSocket, router: Router):
    while True:
        raw = await websocket.receive_json()
        try:
            await router.submit(raw)
        except ValidationError as exc:
            logger.warning("message_rejected", error=str(exc))
            url = raw.get("url") if isinstance(raw, dict) else None
            rejection: Message = error(url, f"Rejected message: {exc.message}")
            await websocket.send_json(to_wire(rejection))


def create_app(build_router: RouterBuilder = build_default_router) -> FastAPI:
    state: dict[str, Any] = {}

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Build the router once at startup; tear everything down on shutdown."""
        router, release = await build_router()
        state["router"] = router
        yield
        await router.close()
        release()
        state.clear()

    app = FastAPI(
        title="pdfAMA API",
        description="Ask questions about PDF documents",
        version="1.0.0",
        lifespan=lifespan,
    )

    def _router() -> Router:
        router = state.get("router")
        if router is None:
            raise HTTPException(status_code=503, detail="Router is not initialized.")
        return router

    @app.websocket("/ws/sidebar")
    async def sidebar_socket(websocket: WebSocket):
        router = _router()
        await websocket.accept()
        channel = router.connect(Component.SIDEBAR)
        outbound = asyncio.create_task(_pump_outbound(websocket, channel))
        try:
            await _pump_inbound(websocket, router)
        except WebSocketDisconnect:
            logger.info("sidebar_socket_closed")
        finally:
            router.disconnect(Component.SIDEBAR, channel)
            outbound.cancel()
            with suppress(asyncio.CancelledError):
                await outbound

    @app.post("/tabs/{tab_id}/activate", response_model=TabResponse)
    async def activate_tab(tab_id: int, location: TabLocation):
        document_id = await _router().activate_tab(tab_id, location.url)
        return TabResponse(tab_id=tab_id, document_id=document_id)

    @app.post("/tabs/{tab_id}/navigate", response_model=TabResponse)
    async def navigate_tab(tab_id: int, location: TabLocation):
        document_id = await _router().update_tab(tab_id, location.url)
        return TabResponse(tab_id=tab_id, document_id=document_id)

    @app.delete("/tabs/{tab_id}", status_code=204)
    async def close_tab(tab_id: int):
        await _router().close_tab(tab_id)

    @app.get("/health", response_model=HealthResponse)
    async def health():
        router = _router()
        return HealthResponse(
            status="ok",
            worker_running=router.worker is not None,
            sidebar_connected=router.is_connected(Component.SIDEBAR),
            tabs=router.documents.snapshot(),
        )

    return app


app = create_app()
