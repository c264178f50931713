"""FastAPI endpoints under /api.

  GET   /health          liveness
  GET   /characters      registry contents
  POST  /turns           one live turn → responses + scene
  POST  /idle-scenes     one idle banter scene
  GET   /stats           strategy performance
  GET   /stats/cost      single-call vs multi-call cost projection
  GET   /settings        current runtime settings (API key masked)
  PATCH /settings        partial settings update

Live session (one per app; idle poses and banter run server-side and queue
scenes for the client to drain):

  POST   /session                 start a session for the selected characters
  GET    /session                 history, epoch, idle state and poses
  DELETE /session                 stop idle timers and drop the session
  POST   /session/messages        one turn; 409 when a newer message superseded it
  POST   /session/typing          user is typing; interrupts idle banter
  PUT    /session/characters      change the selection
  POST   /session/idle-complete   client finished playing an idle scene
  GET    /session/scenes          drain queued scenes

Service objects live on app.state (see chorus.app.create_app).
"""

from collections.abc import Awaitable
from typing import Any, TypeVar

from fastapi import APIRouter, HTTPException, Request
from pydantic import BaseModel, Field, ValidationError

from chorus.errors import CharacterNotFound, ChorusError
from chorus.models import ConversationMessage
from chorus.session import Session, build_live_session

T = TypeVar("T")

router = APIRouter()


# ── Request models ───────────────────────────────────────


class TurnBody(BaseModel):
    message: str = Field(min_length=1)
    character_ids: list[str] = Field(min_length=1)
    history: list[ConversationMessage] = Field(default_factory=list)
    config: dict[str, Any] | None = None


class IdleSceneBody(BaseModel):
    character_ids: list[str] = Field(min_length=2)
    cycle_number: int = Field(default=1, ge=1)


class SessionBody(BaseModel):
    character_ids: list[str] = Field(min_length=1)


class MessageBody(BaseModel):
    message: str = Field(min_length=1)
    config: dict[str, Any] | None = None


# ── Helpers ──────────────────────────────────────────────


def _public_settings(request: Request) -> dict:
    data = request.app.state.settings.snapshot().model_dump()
    if data.get("api_key"):
        data["api_key"] = "***"
    return data


def _turn_config(request: Request, overrides: dict[str, Any] | None) -> dict[str, Any]:
    """Router config: runtime settings first, then per-request overrides."""
    settings = request.app.state.settings
    config: dict[str, Any] = {
        "default_mode": settings.get("default_mode"),
        "enable_fallback": settings.get("enable_fallback"),
    }
    if overrides:
        overrides = dict(overrides)
        orchestration = overrides.pop("orchestration", None)
        config.update(overrides)
        if orchestration is not None:
            config["orchestration"] = orchestration
    return config


async def _generate(awaitable: Awaitable[T]) -> T:
    """Map generation errors to HTTP status codes."""
    try:
        return await awaitable
    except CharacterNotFound as e:
        raise HTTPException(404, str(e)) from e
    except ValidationError as e:
        raise HTTPException(422, f"Invalid config: {e.errors()}") from e
    except ChorusError as e:
        raise HTTPException(502, str(e)) from e


def _check_characters(request: Request, character_ids: list[str]) -> None:
    for cid in character_ids:
        if cid not in request.app.state.registry:
            raise HTTPException(404, f"Character not found: {cid}")


def _live_session(request: Request) -> Session:
    session = request.app.state.session
    if session is None:
        raise HTTPException(404, "No active session")
    return session


# ── Endpoints ────────────────────────────────────────────


@router.get("/health")
async def health():
    """Health check."""
    return {"status": "ok"}


@router.get("/characters")
async def list_characters(request: Request):
    """List every character the registry knows."""
    return [p.model_dump() for p in request.app.state.registry.all()]


@router.post("/turns")
async def create_turn(request: Request, body: TurnBody):
    """Generate the characters' answer to one user message."""
    config = _turn_config(request, body.config)
    result = await _generate(
        request.app.state.router.run_turn(body.message, body.character_ids, body.history, config)
    )
    return result.model_dump()


@router.post("/idle-scenes")
async def create_idle_scene(request: Request, body: IdleSceneBody):
    """Generate one idle banter scene between the selected characters."""
    _check_characters(request, body.character_ids)
    scene = await request.app.state.idle.generate_idle_conversation_scene(
        body.character_ids, body.cycle_number,
    )
    return scene.model_dump()


@router.get("/stats")
async def get_stats(request: Request):
    """Rolling single-call / multi-call performance."""
    return request.app.state.router.get_performance_stats().model_dump()


@router.get("/stats/cost")
async def get_cost(request: Request, turns_per_day: float = 100, avg_responses: float | None = None):
    """Projected savings of single-call over multi-call."""
    if turns_per_day < 0 or (avg_responses is not None and avg_responses <= 0):
        raise HTTPException(422, "turns_per_day must be >= 0 and avg_responses > 0")
    return request.app.state.router.get_cost_comparison(turns_per_day, avg_responses).model_dump()


@router.get("/settings")
async def get_settings(request: Request):
    """Get runtime settings."""
    return _public_settings(request)


@router.patch("/settings")
async def update_settings(request: Request, body: dict):
    """Update runtime settings (partial merge)."""
    try:
        request.app.state.settings.update(body)
    except KeyError as e:
        raise HTTPException(400, f"Unknown setting: {e.args[0]}") from e
    except ValidationError as e:
        raise HTTPException(422, str(e)) from e
    return _public_settings(request)


# ── Live session ─────────────────────────────────────────


@router.post("/session")
async def start_session(request: Request, body: SessionBody):
    """Start (or replace) the live session and enter idle."""
    _check_characters(request, body.character_ids)
    state = request.app.state
    if state.session is not None:
        state.session.close()
    state.session, state.feed = build_live_session(
        state.router, state.idle, state.settings, body.character_ids, rng=state.rng,
    )
    state.session.start()
    return state.session.state()


@router.get("/session")
async def get_session(request: Request):
    return _live_session(request).state()


@router.delete("/session")
async def end_session(request: Request):
    """Stop idle timers and forget the session."""
    _live_session(request).close()
    request.app.state.session = None
    request.app.state.feed = None
    return {"ok": True}


@router.post("/session/messages")
async def send_session_message(request: Request, body: MessageBody):
    """Run one turn in the live session."""
    session = _live_session(request)
    config = _turn_config(request, body.config)
    result = await _generate(session.send_message(body.message, config))
    if result is None:
        raise HTTPException(409, "Superseded by a newer message")
    return result.model_dump()


@router.post("/session/typing")
async def session_typing(request: Request):
    """User activity; returns the interruption scene if banter was playing."""
    scene = await _live_session(request).notify_typing()
    return {"scene": scene.model_dump() if scene is not None else None}


@router.put("/session/characters")
async def update_session_characters(request: Request, body: SessionBody):
    _check_characters(request, body.character_ids)
    session = _live_session(request)
    session.select_characters(body.character_ids)
    return session.state()


@router.post("/session/idle-complete")
async def complete_idle_conversation(request: Request):
    session = _live_session(request)
    session.complete_idle_conversation()
    return session.state()


@router.get("/session/scenes")
async def drain_scenes(request: Request):
    """Scenes queued since the last call, oldest first."""
    _live_session(request)
    return request.app.state.feed.drain()
