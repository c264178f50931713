"""Runtime settings: backend connection, generation parameters, router defaults.

Values come from three layers, later wins:
  1. Settings field defaults
  2. environment / .env (load_settings)
  3. runtime updates through a SettingsStore (e.g. PATCH /api/settings)

The store is created once per process and injected wherever a value is needed
(HttpLLM reads temperature and max_tokens from it on every call). Nothing in
the package keeps its own module-level copy of a setting.

A store constructed with a path persists updates as JSON and merges the
stored values over the defaults on load.
"""

from __future__ import annotations

import json
import logging
import os
import threading
from pathlib import Path
from typing import Any, Literal, Protocol

from dotenv import load_dotenv
from pydantic import BaseModel, Field, field_validator

from chorus.grammar import OrchestrationMode

logger = logging.getLogger(__name__)

TEMPERATURE_MIN = 0.0
TEMPERATURE_MAX = 2.0


class Settings(BaseModel):
    provider_url: str = "http://localhost:5001"
    api_key: str = ""
    provider_format: Literal["koboldcpp", "openai"] = "koboldcpp"
    model: str = ""
    timeout: float = 120.0
    temperature: float = 0.1
    max_tokens: int = Field(default=1500, gt=0)
    default_mode: OrchestrationMode = "single-call"
    enable_fallback: bool = True
    idle_inactivity_ms: int = 10_000
    idle_cooldown_ms: int = 120_000
    idle_max_conversations: int = 2
    characters_file: str = ""

    @field_validator("temperature")
    @classmethod
    def _clamp_temperature(cls, v: float) -> float:
        return max(TEMPERATURE_MIN, min(TEMPERATURE_MAX, v))


_ENV_KEYS: dict[str, str] = {
    "provider_url": "LLM_PROVIDER_URL",
    "api_key": "LLM_API_KEY",
    "provider_format": "LLM_PROVIDER_FORMAT",
    "model": "LLM_MODEL",
    "timeout": "LLM_TIMEOUT",
    "temperature": "LLM_TEMPERATURE",
    "max_tokens": "LLM_MAX_TOKENS",
    "default_mode": "ORCHESTRATION_MODE",
    "enable_fallback": "ORCHESTRATION_FALLBACK",
    "characters_file": "CHARACTERS_FILE",
}


def load_settings(env_file: Path | None = None) -> Settings:
    """Build Settings from the environment, loading env_file (or ./.env) first."""
    load_dotenv(env_file or Path.cwd() / ".env")
    values: dict[str, Any] = {}
    for field, env_key in _ENV_KEYS.items():
        raw = os.getenv(env_key)
        if raw is not None and raw != "":
            values[field] = raw
    return Settings.model_validate(values)


class SettingsStore(Protocol):
    def get(self, key: str) -> Any: ...
    def set(self, key: str, value: Any) -> None: ...
    def snapshot(self) -> Settings: ...


class InMemorySettingsStore:
    """Process-scoped settings holder with get/set, optional JSON persistence."""

    def __init__(self, initial: Settings | None = None, path: Path | None = None) -> None:
        self._defaults = initial or Settings()
        self._path = path
        self._lock = threading.Lock()
        self._current = self._load()

    def _load(self) -> Settings:
        if self._path is None or not self._path.is_file():
            return self._defaults
        stored = json.loads(self._path.read_text())
        merged = {**self._defaults.model_dump(), **stored}
        return Settings.model_validate(merged)

    def _persist(self) -> None:
        if self._path is None:
            return
        self._path.parent.mkdir(parents=True, exist_ok=True)
        self._path.write_text(self._current.model_dump_json(indent=2))

    def get(self, key: str) -> Any:
        if key not in Settings.model_fields:
            raise KeyError(key)
        return getattr(self._current, key)

    def set(self, key: str, value: Any) -> None:
        self.update({key: value})

    def update(self, fields: dict[str, Any]) -> Settings:
        """Merge fields into the current settings and persist. Returns the result."""
        unknown = set(fields) - set(Settings.model_fields)
        if unknown:
            raise KeyError(", ".join(sorted(unknown)))
        with self._lock:
            data = self._current.model_dump()
            data.update(fields)
            self._current = Settings.model_validate(data)
            self._persist()
        logger.info("settings updated: %s", ", ".join(sorted(fields)))
        return self._current

    def reset(self) -> Settings:
        with self._lock:
            self._current = self._defaults
            self._persist()
        return self._current

    def snapshot(self) -> Settings:
        return self._current
