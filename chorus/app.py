import logging
import os
import random
from contextlib import asynccontextmanager
from pathlib import Path

from fastapi import FastAPI

from chorus.characters import CharacterRegistry
from chorus.llm import LLM, HttpLLM
from chorus.models import HybridConfig
from chorus.pipeline.idle import IdleOrchestrator
from chorus.pipeline.router import OrchestrationRouter
from chorus.routes import router
from chorus.settings import InMemorySettingsStore, Settings, load_settings

logger = logging.getLogger(__name__)

ROOT = Path(__file__).parent.parent


def _registry_for(settings: Settings) -> CharacterRegistry:
    if settings.characters_file:
        path = Path(settings.characters_file)
        logger.info("Loading characters from %s", path)
        return CharacterRegistry.from_json(path)
    return CharacterRegistry.default()


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Cancel the live session's idle timers on shutdown."""
    yield
    session = getattr(app.state, "session", None)
    if session is not None:
        session.close()


def create_app(
    settings: Settings | None = None,
    llm: LLM | None = None,
    registry: CharacterRegistry | None = None,
    rng: random.Random | None = None,
) -> FastAPI:
    resolved = settings or load_settings(ROOT / ".env")
    settings_path = os.getenv("SETTINGS_FILE")
    store = InMemorySettingsStore(resolved, Path(settings_path) if settings_path else None)

    registry = registry or _registry_for(store.snapshot())
    llm = llm or HttpLLM.from_settings(store)
    rng = rng or random.Random()

    app = FastAPI(title="Chorus", lifespan=lifespan)
    app.state.settings = store
    app.state.registry = registry
    app.state.router = OrchestrationRouter(
        llm,
        registry,
        config=HybridConfig(
            default_mode=store.get("default_mode"),
            enable_fallback=store.get("enable_fallback"),
        ),
        rng=rng,
    )
    app.state.idle = IdleOrchestrator(llm, registry, rng=rng)
    app.state.rng = rng
    app.state.session = None
    app.state.feed = None
    app.include_router(router, prefix="/api")
    return app


# Default app instance for uvicorn (reads .env / environment)
app = create_app()
