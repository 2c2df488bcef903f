"""
server.py — Duplex Voice · FastAPI Control Plane
================================================
Hosts one VoiceSession per session id.  Every browser tab (or mic client)
for the same id attaches to the same session and receives the same event
stream; the session is torn down when its last connection closes.

Endpoints
---------
  GET  /health                 Service liveness
  GET  /config                 Current runtime config
  PUT  /config                 Merge-patch runtime config (applies to new pipelines)
  GET  /sessions/{id}/form     Form snapshot for a live session
  WS   /ws/{session_id}        Control messages (JSON text) + PCM16 audio (binary)
"""

from __future__ import annotations

import asyncio
import logging
import os
from contextlib import asynccontextmanager
from typing import Any

from dotenv import load_dotenv
from fastapi import Body, FastAPI, HTTPException, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import ValidationError

from duplex_voice.config import VoiceEngineConfig
from duplex_voice.session import VoiceSession

load_dotenv()

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------
logging.basicConfig(
    level=logging.DEBUG if os.getenv("VOICE_DEBUG") else logging.INFO,
    format="%(asctime)s.%(msecs)03d [%(levelname)s] %(name)s – %(message)s",
    datefmt="%H:%M:%S",
)
log = logging.getLogger("duplex_voice.server")

# ---------------------------------------------------------------------------
# Config (from environment)
# ---------------------------------------------------------------------------
CONFIG_PATH = os.getenv("VOICE_CONFIG", "voice_config.json")
HOST = os.getenv("VOICE_HOST", "0.0.0.0")
PORT = int(os.getenv("VOICE_PORT", "8000"))


# ---------------------------------------------------------------------------
# Session registry
# ---------------------------------------------------------------------------

class SessionRegistry:
    """session_id → VoiceSession, created on first connection."""

    def __init__(self, config: VoiceEngineConfig, session_factory: Any = VoiceSession):
        self.config = config
        self._factory = session_factory
        self._sessions: dict[str, VoiceSession] = {}
        self._lock = asyncio.Lock()

    def __len__(self) -> int:
        return len(self._sessions)

    def get(self, session_id: str) -> VoiceSession | None:
        return self._sessions.get(session_id)

    async def attach(self, session_id: str, ws: WebSocket) -> VoiceSession:
        async with self._lock:
            session = self._sessions.get(session_id)
            if session is None:
                session = self._factory(
                    session_id,
                    config=self.config,
                    deepgram_api_key=os.getenv("DEEPGRAM_API_KEY"),
                    groq_api_key=os.getenv("GROQ_API_KEY"),
                )
                self._sessions[session_id] = session
                log.info("event=session_created session=%s", session_id)
            session.attach(ws)
            return session

    async def release(self, session_id: str, ws: WebSocket) -> None:
        async with self._lock:
            session = self._sessions.get(session_id)
            if session is None:
                return
            if not session.detach(ws):
                return
            self._sessions.pop(session_id, None)
        # Slow provider shutdowns must not block other sessions
        await session.close()

    async def close_all(self) -> None:
        async with self._lock:
            sessions, self._sessions = list(self._sessions.values()), {}
        if sessions:
            await asyncio.gather(*(s.close() for s in sessions), return_exceptions=True)


# ---------------------------------------------------------------------------
# FastAPI app
# ---------------------------------------------------------------------------

@asynccontextmanager
async def _lifespan(app: FastAPI):
    app.state.registry = SessionRegistry(VoiceEngineConfig.load(CONFIG_PATH))
    log.info("event=server_start config=%s", CONFIG_PATH)
    yield
    log.info("event=server_shutdown active_sessions=%d", len(app.state.registry))
    await app.state.registry.close_all()
    log.info("event=server_stopped")


app = FastAPI(
    title="Duplex Voice",
    version="0.1.0",
    description="Full-duplex voice conversation coordinator",
    lifespan=_lifespan,
)

# Allow file:// and any local origin to reach the API (dev only)
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_methods=["*"],
    allow_headers=["*"],
)


def _registry(request_app: FastAPI) -> SessionRegistry:
    return request_app.state.registry


# ---------------------------------------------------------------------------
# Endpoints
# ---------------------------------------------------------------------------

@app.get("/health")
async def health() -> JSONResponse:
    """Liveness probe."""
    return JSONResponse({
        "status":          "ok",
        "active_sessions": len(_registry(app)),
        "stt_configured":  bool(os.getenv("DEEPGRAM_API_KEY")),
        "llm_configured":  bool(os.getenv("GROQ_API_KEY")),
    })


@app.get("/config")
async def get_config() -> JSONResponse:
    return JSONResponse(_registry(app).config.model_dump())


@app.put("/config")
async def put_config(patch: dict = Body(...)) -> JSONResponse:
    """
    Merge a partial config over the current one and persist it.

    Running pipelines keep the config they started with; the new values
    apply to sessions created afterwards.

    Example:
        {"turn": {"ms_per_char_estimate": 65}}
    """
    registry = _registry(app)
    try:
        updated = registry.config.merge_patch(patch)
    except ValidationError as exc:
        raise HTTPException(status_code=422, detail=exc.errors(include_url=False, include_context=False)) from exc

    registry.config = updated
    try:
        updated.save(CONFIG_PATH)
    except OSError as exc:
        log.error("event=config_save_failed path=%s error=%s", CONFIG_PATH, exc)
        raise HTTPException(status_code=500, detail="Failed to persist config.") from exc
    log.info("event=config_patched keys=%s", ",".join(sorted(patch)))
    return JSONResponse(updated.model_dump())


@app.get("/sessions/{session_id}/form")
async def session_form(session_id: str) -> JSONResponse:
    session = _registry(app).get(session_id)
    if session is None:
        raise HTTPException(status_code=404, detail=f"No active session '{session_id}'.")
    return JSONResponse({
        "session":    session_id,
        "form":       session.form_snapshot(),
        "completed":  session.completed,
        "voice_mode": session.voice_mode,
    })


@app.websocket("/ws/{session_id}")
async def ws_session(ws: WebSocket, session_id: str) -> None:
    """
    Session channel.  Text frames are control messages
    (hello / get_state / update_field / reset_form / stop_voice); binary
    frames are 16 kHz mono PCM16 audio, forwarded only while voice mode is on.
    """
    await ws.accept()
    registry = _registry(app)
    session = await registry.attach(session_id, ws)
    log.info("event=ws_client_connected session=%s remote=%s", session_id, ws.client)
    try:
        while True:
            message = await ws.receive()
            if message["type"] == "websocket.disconnect":
                break
            if message.get("bytes") is not None:
                await session.handle_audio(message["bytes"])
            elif message.get("text") is not None:
                await session.handle_text(ws, message["text"])
    except WebSocketDisconnect:
        pass
    finally:
        await registry.release(session_id, ws)
        log.info("event=ws_client_disconnected session=%s remote=%s", session_id, ws.client)


def main() -> None:
    import uvicorn

    uvicorn.run("duplex_voice.server:app", host=HOST, port=PORT)


if __name__ == "__main__":
    main()
