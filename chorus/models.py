"""Core domain models.

Every orchestration stage operates on these types. Pydantic is used for
validation and serialisation at every data boundary; the generator's raw
JSON is normalised by the parser before it reaches these constructors.
"""

from __future__ import annotations

import time
import uuid
from collections.abc import Mapping
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, computed_field, model_validator

from chorus.grammar import (
    AnimationState,
    EyebrowState,
    EyeState,
    LookDirection,
    MouthState,
    OrchestrationMode,
    Position,
    StrategyMode,
    Verbosity,
)


def _now_ms() -> float:
    return time.time() * 1000


class CharacterProfile(BaseModel):
    """Static descriptor of a character, owned by the registry."""

    model_config = ConfigDict(frozen=True)

    id: str
    name: str
    description: str = ""
    position_hint: Position = "center"


class ConversationMessage(BaseModel):
    """A single entry in the caller's append-only conversation history."""

    id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    role: Literal["user", "assistant"]
    content: str
    character_id: str | None = None  # present on assistant messages only
    timestamp: float = Field(default_factory=_now_ms)


class Complementary(BaseModel):
    """Facial / gaze state layered on top of a body animation."""

    look_direction: LookDirection | None = None
    eye_state: EyeState | None = None
    mouth_state: MouthState | None = None
    eyebrow_state: EyebrowState | None = None
    speed: float | None = None


class AnimationSegment(BaseModel):
    """One step of a character timeline. Segments play strictly in sequence."""

    animation: AnimationState = "idle"
    duration: int = Field(gt=0)  # ms
    is_talking: bool = False
    text_range: tuple[int, int] | None = None
    complementary: Complementary | None = None


class CharacterTimeline(BaseModel):
    """One character's line and animation segments within a scene."""

    character_id: str
    content: str
    start_delay: int = Field(default=0, ge=0)  # ms from scene start
    segments: list[AnimationSegment]
    interrupts: bool = False
    reacts_to: str | None = None
    gesture: str | None = None

    @computed_field  # type: ignore[prop-decorator]
    @property
    def total_duration(self) -> int:
        return sum(s.duration for s in self.segments)

    @property
    def end(self) -> int:
        return self.start_delay + self.total_duration

    @model_validator(mode="after")
    def _clamp_text_ranges(self) -> "CharacterTimeline":
        length = len(self.content)
        for seg in self.segments:
            if seg.text_range is None:
                continue
            start, end = seg.text_range
            start = max(0, min(start, length))
            end = max(start, min(end, length))
            seg.text_range = (start, end)
        return self


class Scene(BaseModel):
    """Everything the playback layer needs for one turn or idle cycle."""

    timelines: list[CharacterTimeline]
    scene_duration: int = Field(default=0, ge=0)
    non_speaker_behavior: dict[str, list[AnimationSegment]] = Field(default_factory=dict)

    def speakers(self) -> list[str]:
        """Distinct speaking character ids in order of first appearance."""
        seen: list[str] = []
        for t in self.timelines:
            if t.character_id not in seen:
                seen.append(t.character_id)
        return seen


class CharacterResponse(BaseModel):
    """Plain-text result of a turn for one character, appended to history by the caller."""

    character_id: str
    content: str
    is_interruption: bool = False
    is_reaction: bool = False
    reacts_to: str | None = None
    gesture: str | None = None


class StrategyMetric(BaseModel):
    """Outcome of one strategy attempt."""

    mode: StrategyMode
    latency_ms: float
    character_count: int
    response_count: int
    success: bool
    error: str | None = None
    timestamp: float = Field(default_factory=_now_ms)


class ModeStats(BaseModel):
    success_rate: float
    avg_response_time: float
    count: int


class PerformanceStats(BaseModel):
    single_call: ModeStats
    multi_call: ModeStats
    total_calls: int


class CostEstimate(BaseModel):
    """Relative cost of one turn per strategy, in arbitrary units."""

    single_call: float
    multi_call: float
    savings_percent: float


class CostComparison(BaseModel):
    single_call_cost_per_day: float
    multi_call_cost_per_day: float
    savings_per_day: float
    savings_per_month: float
    savings_per_year: float


class OrchestrationConfig(BaseModel):
    """Per-call generation options. Immutable; override with merged()."""

    model_config = ConfigDict(frozen=True)

    max_responders: int = Field(default=3, ge=1, le=3)
    include_gestures: bool = True
    include_interruptions: bool = True
    verbosity: Verbosity = "balanced"

    def merged(self, overrides: Mapping[str, Any] | None) -> "OrchestrationConfig":
        """Shallow merge of overrides over these values, validated."""
        if not overrides:
            return self
        return type(self).model_validate({**self.model_dump(), **dict(overrides)})


class HybridConfig(BaseModel):
    """Router options: which strategy to try first and whether to fall back."""

    model_config = ConfigDict(frozen=True)

    default_mode: OrchestrationMode = "single-call"
    enable_fallback: bool = True
    enable_performance_tracking: bool = True
    orchestration: OrchestrationConfig = Field(default_factory=OrchestrationConfig)

    def merged(self, overrides: Mapping[str, Any] | None) -> "HybridConfig":
        if not overrides:
            return self
        data = dict(overrides)
        orchestration = data.pop("orchestration", None)
        base = self.model_dump()
        base.update(data)
        base["orchestration"] = self.orchestration.merged(
            orchestration.model_dump() if isinstance(orchestration, OrchestrationConfig) else orchestration
        )
        return type(self).model_validate(base)


class IdlePose(BaseModel):
    """Current idle micro-animation of one character."""

    animation: AnimationState = "idle"
    complementary: Complementary = Field(default_factory=Complementary)


class TurnResult(BaseModel):
    """Everything produced by one live turn."""

    scene: Scene
    responses: list[CharacterResponse]
    mode: Literal["single-call", "multi-call", "direct"]
