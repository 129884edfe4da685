# streambuild/main.py
"""
StreamBuild Backend - session API and event stream
"""
from contextlib import asynccontextmanager
from typing import Callable, Dict

import uvicorn
from fastapi import FastAPI, WebSocket, WebSocketDisconnect
from starlette.middleware.cors import CORSMiddleware

from streambuild.core.config import settings
from streambuild.core.logging import log
from streambuild.lib.events import SessionEvent
from streambuild.lib.websocket import manager
from streambuild.session import MAIN_TERMINAL, BuildSession, session_manager


# ---------------------------------------------------------------------------
# LIFESPAN
# ---------------------------------------------------------------------------

@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application startup and shutdown."""
    print("🚀 StreamBuild starting...")
    print(f"  Package manager: {settings.runtime.package_manager}")
    print(f"  Sandbox enabled: {settings.sandbox.enabled}")
    yield
    print("🔌 Shutting down...")
    await session_manager.close_all()


# ---------------------------------------------------------------------------
# APP INITIALIZATION
# ---------------------------------------------------------------------------

app = FastAPI(
    title="StreamBuild",
    version="1.0.0",
    lifespan=lifespan,
)
app.state.manager = manager
app.state.sessions = session_manager

if settings.cors_origins == ["*"] and not settings.debug:
    print("⚠️ [CORS] Warning: Using allow_origins=['*'] - consider setting CORS_ORIGINS in production")

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# ---------------------------------------------------------------------------
# WEBSOCKET
# ---------------------------------------------------------------------------

# session_id -> unsubscribe from that session's bus
_bridges: Dict[str, Callable[[], None]] = {}


def _bridge(session: BuildSession) -> None:
    """Forward every bus event of ``session`` to its sockets, once per session."""
    if session.session_id in _bridges:
        return

    async def forward(event: SessionEvent) -> None:
        await manager.send_to_session(session.session_id, event.model_dump())

    _bridges[session.session_id] = session.bus.subscribe(forward)


def _unbridge(session_id: str) -> None:
    if manager.count(session_id) == 0 and session_id in _bridges:
        _bridges.pop(session_id)()


@app.websocket("/ws/{session_id}")
async def websocket_endpoint(websocket: WebSocket, session_id: str):
    session = session_manager.get(session_id)
    if session is None:
        await websocket.close(code=4404)
        return

    await manager.connect(websocket, session_id)
    _bridge(session)
    await websocket.send_json({"type": "terminal_history", "data": session.terminals.history(MAIN_TERMINAL)})

    try:
        while True:
            data = await websocket.receive_json()

            if data.get("type") == "message" and data.get("turn_id"):
                output = session.feed(data["turn_id"], data.get("content", ""))
                await websocket.send_json({"type": "message_output", "turn_id": data["turn_id"], "output": output})
            elif data.get("type") == "abort" and data.get("key"):
                session.abort(data["key"])

    except WebSocketDisconnect:
        await manager.disconnect(websocket, session_id)
    except Exception as e:
        log("WS", f"Error: {e}", session_id=session_id, level="error")
        await manager.disconnect(websocket, session_id)
    finally:
        _unbridge(session_id)


# ---------------------------------------------------------------------------
# API ROUTES
# ---------------------------------------------------------------------------

from streambuild.api import health, sessions

app.include_router(health.router)
app.include_router(sessions.router)


# ---------------------------------------------------------------------------
# RUN
# ---------------------------------------------------------------------------

if __name__ == "__main__":
    uvicorn.run(
        "streambuild.main:app",
        host="0.0.0.0",
        port=settings.port,
        reload=settings.debug,
    )
