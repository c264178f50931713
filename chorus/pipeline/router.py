"""OrchestrationRouter — runs one live turn end-to-end.

Turn flow:
  1. Validate the selected characters against the registry.
  2. One selected character → direct path (plain-text reply, default timeline).
  3. ResponderSelector picks 1-3 responders; one responder → direct path.
  4. Choose the primary strategy (config.default_mode; "auto" decides from
     the responder count and the rolling single-call success rate).
  5. Run the primary strategy, timing and recording the attempt.
  6. On any failure of the attempt (re-raised as StrategyError) with
     fallback enabled, run the other strategy once.
     Both failing raises OrchestrationError; with fallback disabled the
     primary error propagates.
  7. Enforce scene invariants over every selected character and derive the
     plain-text CharacterResponse list.

The direct path records no metrics: it is not a strategy attempt.
"""

from __future__ import annotations

import asyncio
import logging
import random
import time
from collections.abc import Callable, Mapping, Sequence
from typing import Any

from chorus.characters import CharacterRegistry, positions_for
from chorus.errors import LLMError, OrchestrationError, StrategyError
from chorus.grammar import StrategyMode
from chorus.llm import LLM
from chorus.models import (
    CharacterResponse,
    ConversationMessage,
    CostComparison,
    HybridConfig,
    PerformanceStats,
    Scene,
    StrategyMetric,
    TurnResult,
)
from chorus.pipeline.enforcer import enforce
from chorus.pipeline.metrics import PerformanceTracker, get_cost_comparison
from chorus.pipeline.parser import fallback_scene, strip_name_prefix
from chorus.pipeline.responders import ResponderSelector
from chorus.pipeline.strategies import (
    MultiCallStrategy,
    SingleCallStrategy,
    Sleep,
    Strategy,
    history_names,
    with_user_message,
)
from chorus.prompts import build_direct_prompt, format_history

logger = logging.getLogger(__name__)

AUTO_WINDOW = 20
AUTO_SUCCESS_THRESHOLD = 0.8

_OTHER: dict[StrategyMode, StrategyMode] = {
    "single-call": "multi-call",
    "multi-call": "single-call",
}


def responses_from_scene(scene: Scene) -> list[CharacterResponse]:
    """Plain-text view of a scene, in playback order."""
    return [
        CharacterResponse(
            character_id=t.character_id,
            content=t.content,
            is_interruption=t.interrupts,
            is_reaction=t.reacts_to is not None,
            reacts_to=t.reacts_to,
            gesture=t.gesture,
        )
        for t in sorted(scene.timelines, key=lambda t: t.start_delay)
    ]


class OrchestrationRouter:
    def __init__(
        self,
        llm: LLM,
        registry: CharacterRegistry,
        *,
        config: HybridConfig | None = None,
        tracker: PerformanceTracker | None = None,
        selector: ResponderSelector | None = None,
        strategies: Mapping[StrategyMode, Strategy] | None = None,
        rng: random.Random | None = None,
        sleep: Sleep = asyncio.sleep,
        clock: Callable[[], float] = time.perf_counter,
    ) -> None:
        self._llm = llm
        self._registry = registry
        self.config = config or HybridConfig()
        self.tracker = tracker or PerformanceTracker()
        self._rng = rng or random.Random()
        self.selector = selector or ResponderSelector(rng=self._rng)
        self._strategies: dict[StrategyMode, Strategy] = dict(strategies or {
            "single-call": SingleCallStrategy(llm, registry),
            "multi-call": MultiCallStrategy(llm, registry, rng=self._rng, sleep=sleep),
        })
        self._clock = clock

    def _resolve_config(self, config: HybridConfig | Mapping[str, Any] | None) -> HybridConfig:
        if isinstance(config, HybridConfig):
            return config
        return self.config.merged(config)

    def choose_mode(self, responder_count: int, config: HybridConfig | None = None) -> StrategyMode:
        config = config or self.config
        if config.default_mode != "auto":
            return config.default_mode
        if responder_count <= 2:
            return "single-call"
        rate = self.tracker.rolling_success_rate("single-call", AUTO_WINDOW)
        mode: StrategyMode = "single-call" if rate > AUTO_SUCCESS_THRESHOLD else "multi-call"
        logger.info("auto mode: single-call success rate %.2f → %s", rate, mode)
        return mode

    async def run_turn(
        self,
        user_message: str,
        selected_ids: Sequence[str],
        history: Sequence[ConversationMessage],
        config: HybridConfig | Mapping[str, Any] | None = None,
    ) -> TurnResult:
        """Produce the scene and responses for one user message."""
        cfg = self._resolve_config(config)
        selected = list(dict.fromkeys(selected_ids))
        if not selected:
            raise ValueError("run_turn() needs at least one selected character")
        for cid in selected:
            self._registry.get(cid)

        if len(selected) == 1:
            return await self._direct(selected[0], user_message, selected, history, cfg)

        responders = self.selector.select(
            selected, history, max_responders=cfg.orchestration.max_responders,
        )
        if len(responders) == 1:
            return await self._direct(responders[0], user_message, selected, history, cfg)

        primary = self.choose_mode(len(responders), cfg)
        mode = primary
        try:
            scene = await self._attempt(primary, user_message, responders, selected, history, cfg)
        except StrategyError as primary_error:
            if not cfg.enable_fallback:
                raise
            mode = _OTHER[primary]
            logger.info("%s failed (%s), falling back to %s", primary, primary_error, mode)
            try:
                scene = await self._attempt(mode, user_message, responders, selected, history, cfg)
            except StrategyError as fallback_error:
                raise OrchestrationError(primary_error, fallback_error) from fallback_error

        scene = self._finish(scene, selected)
        return TurnResult(scene=scene, responses=responses_from_scene(scene), mode=mode)

    async def generate_hybrid_response(
        self,
        user_message: str,
        selected_ids: Sequence[str],
        history: Sequence[ConversationMessage],
        config: HybridConfig | Mapping[str, Any] | None = None,
    ) -> list[CharacterResponse]:
        result = await self.run_turn(user_message, selected_ids, history, config)
        return result.responses

    def get_performance_stats(self) -> PerformanceStats:
        return self.tracker.stats()

    def get_cost_comparison(
        self, turns_per_day: float, avg_responses_per_turn: float | None = None
    ) -> CostComparison:
        """Savings projection; responses per turn default to the tracked average."""
        if avg_responses_per_turn is None:
            avg_responses_per_turn = self.tracker.avg_response_count()
        if avg_responses_per_turn is None:
            return get_cost_comparison(turns_per_day)
        return get_cost_comparison(turns_per_day, avg_responses_per_turn)

    async def _attempt(
        self,
        mode: StrategyMode,
        user_message: str,
        responders: list[str],
        selected: list[str],
        history: Sequence[ConversationMessage],
        cfg: HybridConfig,
    ) -> Scene:
        strategy = self._strategies[mode]
        start = self._clock()
        try:
            scene = await strategy.run(
                user_message, responders, history, cfg.orchestration, selected_ids=selected,
            )
        except StrategyError as e:
            self._record(cfg, mode, start, len(responders), 0, error=str(e))
            raise
        except Exception as e:
            error = StrategyError(mode, str(e) or type(e).__name__)
            self._record(cfg, mode, start, len(responders), 0, error=str(error))
            raise error from e
        self._record(cfg, mode, start, len(responders), len(scene.speakers()))
        return scene

    def _record(
        self,
        cfg: HybridConfig,
        mode: StrategyMode,
        start: float,
        character_count: int,
        response_count: int,
        error: str | None = None,
    ) -> None:
        if not cfg.enable_performance_tracking:
            return
        self.tracker.record(StrategyMetric(
            mode=mode,
            latency_ms=(self._clock() - start) * 1000,
            character_count=character_count,
            response_count=response_count,
            success=error is None,
            error=error,
        ))

    async def _direct(
        self,
        character_id: str,
        user_message: str,
        selected: list[str],
        history: Sequence[ConversationMessage],
        cfg: HybridConfig,
    ) -> TurnResult:
        profile = self._registry.profiles_for([character_id])[0]
        names = history_names(self._registry, selected, history)
        prompt = build_direct_prompt(profile, cfg.orchestration)
        messages = format_history(with_user_message(history, user_message), names)
        try:
            raw = await self._llm(messages, prompt, character_id)
        except LLMError as e:
            raise StrategyError("direct", str(e)) from e

        text = strip_name_prefix(raw.strip(), [character_id], names)
        if not text:
            raise StrategyError("direct", f"empty reply from {character_id}")
        logger.debug("direct reply from %s (%d chars)", character_id, len(text))

        scene = self._finish(fallback_scene([(character_id, text)]), selected)
        return TurnResult(scene=scene, responses=responses_from_scene(scene), mode="direct")

    def _finish(self, scene: Scene, selected: list[str]) -> Scene:
        return enforce(
            scene,
            selected,
            positions_for(selected),
            names=self._registry.names(selected),
            rng=self._rng,
        )
