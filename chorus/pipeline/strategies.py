"""Scene generation strategies.

Both strategies share one protocol:

    async def run(user_message, responder_ids, history, config) -> Scene

and raise StrategyError when they cannot produce a scene. `history` holds the
messages before `user_message`; it is never mutated.

  SingleCallStrategy   one aggregated prompt, the generator scripts the whole
                       scene (caller id "orchestrator").
  MultiCallStrategy    one prompt per responder, called strictly in sequence;
                       every prompt sees the lines generated before it.
"""

from __future__ import annotations

import asyncio
import logging
import random
from collections.abc import Awaitable, Callable, Sequence
from typing import Protocol

from chorus import grammar
from chorus.characters import CharacterRegistry
from chorus.errors import LLMError, SceneParseError, StrategyError
from chorus.grammar import StrategyMode
from chorus.llm import LLM
from chorus.models import CharacterTimeline, ConversationMessage, OrchestrationConfig, Scene
from chorus.pipeline.parser import ResponseParser, default_timeline, strip_name_prefix
from chorus.prompts import build_multi_call_prompt, build_single_call_prompt, format_history

logger = logging.getLogger(__name__)

Sleep = Callable[[float], Awaitable[None]]


class Strategy(Protocol):
    mode: StrategyMode

    async def run(
        self,
        user_message: str,
        responder_ids: Sequence[str],
        history: Sequence[ConversationMessage],
        config: OrchestrationConfig,
        *,
        selected_ids: Sequence[str] | None = None,
    ) -> Scene: ...


def with_user_message(
    history: Sequence[ConversationMessage], user_message: str
) -> list[ConversationMessage]:
    return [*history, ConversationMessage(role="user", content=user_message)]


def looks_like_scene_attempt(text: str) -> bool:
    """True when a reply was meant to be JSON (braces or a code fence)."""
    return "{" in text or "```" in text


def history_names(
    registry: CharacterRegistry, ids: Sequence[str], history: Sequence[ConversationMessage]
) -> dict[str, str]:
    """Display names for `ids` plus every character who spoke in `history`."""
    spoken = [m.character_id for m in history if m.role == "assistant" and m.character_id]
    return registry.names(dict.fromkeys([*ids, *spoken]))


def cap_characters(scene: Scene, limit: int) -> Scene:
    """Keep only timelines of the first `limit` distinct speakers."""
    keep = set(scene.speakers()[:limit])
    if len(keep) == len(scene.speakers()):
        return scene
    logger.info("Scene had %d speakers, capped to %d", len(scene.speakers()), limit)
    timelines = [t for t in scene.timelines if t.character_id in keep]
    return Scene(timelines=timelines, scene_duration=max(t.end for t in timelines))


class SingleCallStrategy:
    mode: StrategyMode = "single-call"

    def __init__(self, llm: LLM, registry: CharacterRegistry) -> None:
        self._llm = llm
        self._registry = registry

    async def run(
        self,
        user_message: str,
        responder_ids: Sequence[str],
        history: Sequence[ConversationMessage],
        config: OrchestrationConfig,
        *,
        selected_ids: Sequence[str] | None = None,
    ) -> Scene:
        responder_ids = list(responder_ids)
        selection = list(selected_ids) if selected_ids is not None else responder_ids
        profiles = self._registry.profiles_for(responder_ids)
        names = history_names(self._registry, [*selection, *responder_ids], history)
        prompt = build_single_call_prompt(
            profiles, list(history), config, names=names, selected_ids=selection,
        )
        messages = format_history(with_user_message(history, user_message), names)

        try:
            raw = await self._llm(messages, prompt, "orchestrator")
        except LLMError as e:
            raise StrategyError(self.mode, str(e)) from e

        scene = ResponseParser(names).parse(raw, responder_ids)
        if scene is None:
            raise SceneParseError(self.mode, "generator output contained no usable scene")

        if not config.include_interruptions:
            for t in scene.timelines:
                t.interrupts = False
        return cap_characters(scene, config.max_responders)


class MultiCallStrategy:
    mode: StrategyMode = "multi-call"

    def __init__(
        self,
        llm: LLM,
        registry: CharacterRegistry,
        rng: random.Random | None = None,
        sleep: Sleep = asyncio.sleep,
        pause_range: tuple[float, float] = (0.5, 2.0),
    ) -> None:
        self._llm = llm
        self._registry = registry
        self._rng = rng or random.Random()
        self._sleep = sleep
        self._pause_range = pause_range

    async def run(
        self,
        user_message: str,
        responder_ids: Sequence[str],
        history: Sequence[ConversationMessage],
        config: OrchestrationConfig,
        *,
        selected_ids: Sequence[str] | None = None,
    ) -> Scene:
        responder_ids = list(responder_ids)[: config.max_responders]
        profiles = self._registry.profiles_for(responder_ids)
        names = history_names(self._registry, responder_ids, history)
        parser = ResponseParser(names)

        local = with_user_message(history, user_message)
        timelines: list[CharacterTimeline] = []
        errors: list[str] = []
        cursor = 0

        for profile in profiles:
            if timelines:
                await self._sleep(self._rng.uniform(*self._pause_range))

            others = [p for p in profiles if p.id != profile.id]
            prompt = build_multi_call_prompt(profile, others, config)
            try:
                raw = await self._llm(format_history(local, names), prompt, profile.id)
            except LLMError as e:
                logger.warning("Multi-call reply for %r failed: %s", profile.id, e)
                errors.append(f"{profile.id}: {e}")
                continue

            timeline = self._to_timeline(parser, raw, profile.id, names, config)
            if timeline is None:
                errors.append(f"{profile.id}: unusable reply")
                continue

            previous = timelines[-1].character_id if timelines else None
            timeline = timeline.model_copy(update={
                "start_delay": cursor,
                "reacts_to": previous,
            })
            timelines.append(timeline)
            cursor = timeline.end + grammar.TURN_GAP_MS
            local.append(ConversationMessage(
                role="assistant", content=timeline.content, character_id=profile.id,
            ))

        if not timelines:
            raise StrategyError(self.mode, "no character produced a reply (" + "; ".join(errors) + ")")
        return Scene(timelines=timelines, scene_duration=max(t.end for t in timelines))

    def _to_timeline(
        self,
        parser: ResponseParser,
        raw: str,
        character_id: str,
        names: dict[str, str],
        config: OrchestrationConfig,
    ) -> CharacterTimeline | None:
        scene = parser.parse(raw, [character_id])
        if scene is not None:
            t = scene.timelines[0]
            return t.model_copy(update={
                "interrupts": t.interrupts and config.include_interruptions,
                "gesture": t.gesture if config.include_gestures else None,
            })

        # Plain-text reply: keep the words, synthesise the animation.
        # A broken scene attempt is never spoken.
        text = strip_name_prefix(raw.strip(), [character_id], names)
        if not text:
            return None
        if looks_like_scene_attempt(text):
            logger.warning("Multi-call reply for %r was malformed scene JSON, skipping", character_id)
            return None
        logger.info("Multi-call reply for %r was not a scene, using default timeline", character_id)
        return CharacterTimeline(
            character_id=character_id,
            content=text,
            segments=default_timeline(text),
        )
