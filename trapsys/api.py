"""REST + WebSocket bridge: FastAPI single port (8600)."""

from __future__ import annotations

import asyncio
import logging
from typing import TYPE_CHECKING, Any

from fastapi import FastAPI, HTTPException, WebSocket, WebSocketDisconnect
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from trapsys.presentation import Message

if TYPE_CHECKING:
    from trapsys.engine import Engine
    from trapsys.world import Token

log = logging.getLogger(__name__)

app = FastAPI(title="trapsys API", version="0.1.0")

# Engine reference, set by start_api()
_engine: Engine | None = None


def get_engine() -> Engine:
    if _engine is None:
        raise HTTPException(status_code=503, detail="Engine not ready")
    return _engine


def _get_token(engine: Engine, token_id: str) -> Token:
    token = engine.world.get_token(token_id)
    if token is None:
        raise HTTPException(status_code=404, detail="Token not found")
    return token


# ── Request bodies ────────────────────────────────────────────────

class MoveBody(BaseModel):
    left: float
    top: float


class NotesBody(BaseModel):
    notes: str


class MarkersBody(BaseModel):
    status_markers: str


class CommandBody(BaseModel):
    content: str
    player_id: str
    selected: list[str] = []


class RollBody(BaseModel):
    player_id: str
    content: str | dict[str, Any]


class AdvancedRollBody(BaseModel):
    player_id: str
    content: str
    character_id: str | None = None


# ── Inbound events ────────────────────────────────────────────────

@app.post("/api/tokens/{token_id}/move")
async def api_move(token_id: str, body: MoveBody) -> JSONResponse:
    """Move a token and run trap detection on the move."""
    engine = get_engine()
    token = _get_token(engine, token_id)
    triggered = engine.move_token(token_id, body.left, body.top)
    return JSONResponse({
        "triggered": triggered,
        "left": token.left,
        "top": token.top,
        "locked": engine.locks.is_locked(token_id),
    })


@app.post("/api/tokens/{token_id}/notes")
async def api_notes(token_id: str, body: NotesBody) -> JSONResponse:
    engine = get_engine()
    token = _get_token(engine, token_id)
    engine.on_notes_changed(token_id, body.notes)
    return JSONResponse({"id": token.id, "bar_value": token.bar_value,
                         "bar_max": token.bar_max, "aura_color": token.aura_color})


@app.post("/api/tokens/{token_id}/markers")
async def api_markers(token_id: str, body: MarkersBody) -> JSONResponse:
    engine = get_engine()
    token = _get_token(engine, token_id)
    engine.on_markers_changed(token_id, body.status_markers)
    return JSONResponse({"id": token.id, "status_markers": token.status_markers})


@app.post("/api/commands")
async def api_command(body: CommandBody) -> JSONResponse:
    """Run a ``!trapsystem`` chat command on behalf of a player."""
    engine = get_engine()
    handled = engine.on_command(body.content, body.player_id, body.selected)
    return JSONResponse({"handled": handled})


@app.post("/api/rolls")
async def api_roll(body: RollBody) -> JSONResponse:
    engine = get_engine()
    return JSONResponse({"handled": engine.on_roll_result(body.content, body.player_id)})


@app.post("/api/rolls/advanced")
async def api_advanced_roll(body: AdvancedRollBody) -> JSONResponse:
    engine = get_engine()
    handled = engine.on_advanced_roll(body.content, body.player_id, body.character_id)
    return JSONResponse({"handled": handled})


# ── State queries ─────────────────────────────────────────────────

@app.get("/api/traps/{token_id}")
async def api_trap(token_id: str) -> JSONResponse:
    """Parsed descriptor and holding state of one trap."""
    engine = get_engine()
    token = _get_token(engine, token_id)
    d = engine.traps.descriptor(token)
    if d is None:
        raise HTTPException(status_code=404, detail="Token is not a trap")
    return JSONResponse({
        "id": token.id,
        "name": token.display_name,
        "type": d.kind.value,
        "state": engine.traps.state_label(d),
        "current_uses": d.current_uses,
        "max_uses": d.max_uses,
        "is_armed": d.is_armed,
        "movement_trigger_enabled": d.movement_trigger_enabled,
        "primary": d.primary.ref,
        "options": [a.ref for a in d.options],
        "success": d.success,
        "failure": d.failure_ref,
        "checks": [{"skill": c.skill, "dc": c.dc} for c in d.checks],
        "holding": [r.entity_id for r in engine.locks.held_by(token.id)],
    })


@app.get("/api/locks")
async def api_locks() -> JSONResponse:
    engine = get_engine()
    locks = [{
        "entity_id": r.entity_id,
        "trap_id": r.trap_id,
        "anchor": list(r.anchor),
        "rest": list(r.rest),
        "effect_applied": r.effect_applied,
        "settling": r.pending_settle is not None,
    } for r in engine.session.locks.values()]
    return JSONResponse({"locks": locks, "count": len(locks)})


@app.get("/api/checks")
async def api_checks() -> JSONResponse:
    engine = get_engine()
    checks = []
    for p in engine.session.checks.all():
        check = p.check
        checks.append({
            "trap_id": p.trap_id,
            "requester_id": p.requester_id,
            "character_id": p.character_id,
            "character_name": p.character_name,
            "skill": check.skill if check else None,
            "dc": check.dc if check else None,
            "advantage": p.advantage.value if p.advantage else None,
            "first_roll": p.first_roll,
            "stage": p.stage.value,
            "mismatch": p.mismatch is not None,
        })
    return JSONResponse({"checks": checks, "count": len(checks)})


@app.get("/api/stats")
async def api_stats() -> JSONResponse:
    engine = get_engine()
    stats = engine.session.stats()
    stats["traps"] = len(engine.traps.all_traps())
    stats["commands_registered"] = len(engine.commands.handlers)
    return JSONResponse(stats)


# ── WebSocket endpoint ────────────────────────────────────────────

@app.websocket("/ws")
async def websocket_endpoint(ws: WebSocket) -> None:
    """Stream every outbound message as JSON."""
    engine = get_engine()
    await ws.accept()
    queue: asyncio.Queue[Message] = asyncio.Queue()
    unsubscribe = engine.outbox.subscribe(queue.put_nowait)
    log.info("WebSocket subscriber connected")
    try:
        while True:
            message = await queue.get()
            await ws.send_json(message.to_dict())
    except WebSocketDisconnect:
        pass
    except Exception:
        log.debug("WebSocket subscriber error", exc_info=True)
    finally:
        unsubscribe()
        log.info("WebSocket subscriber closed")


# ── Server start/stop ──────────────────────────────────────────────

_server_task: asyncio.Task | None = None


async def start_api(engine: Engine, host: str = "127.0.0.1", port: int = 8600) -> None:
    """Start FastAPI server in background."""
    global _engine, _server_task
    _engine = engine

    import uvicorn

    config = uvicorn.Config(
        app, host=host, port=port,
        log_level="warning",
        access_log=False,
    )
    server = uvicorn.Server(config)
    _server_task = asyncio.create_task(server.serve())
    log.info("API server starting on %s:%d", host, port)


async def stop_api() -> None:
    """Stop FastAPI server."""
    global _engine, _server_task
    if _server_task:
        _server_task.cancel()
        try:
            await _server_task
        except asyncio.CancelledError:
            pass
        _server_task = None
    _engine = None
    log.info("API server stopped")
