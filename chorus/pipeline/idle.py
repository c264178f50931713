"""Idle-time behaviour: banter scenes, micro-animation timers, and the state
machine deciding when banter may start.

  IdleOrchestrator           one unscripted character-to-character scene per
                             call; never raises (falls back to a scripted
                             two-line exchange).
  IdleAnimationScheduler     per-character asyncio timers that swap idle poses
                             every 8-15 s.
  IdleConversationManager    ACTIVE → IDLE_WAITING → IDLE_CONVERSATION_1 →
                             IDLE_COOLDOWN → IDLE_CONVERSATION_2 → IDLE_DONE,
                             reset to ACTIVE by user activity.

All timers are asyncio tasks and must be created from a running event loop.
Cancellation is synchronous: after stop_cycle() / stop() returns no further
callback fires.
"""

from __future__ import annotations

import asyncio
import logging
import random
from collections.abc import Awaitable, Callable, Sequence
from typing import Literal

from chorus import grammar
from chorus.characters import CharacterRegistry, position_for, positions_for
from chorus.llm import LLM
from chorus.models import AnimationSegment, CharacterTimeline, Complementary, IdlePose, Scene
from chorus.pipeline.enforcer import enforce
from chorus.pipeline.parser import ResponseParser
from chorus.pipeline.strategies import Sleep
from chorus.prompts import IDLE_TRIGGER_MESSAGE, build_idle_prompt

logger = logging.getLogger(__name__)


# ── Idle dialogue ────────────────────────────────────────

STARTERS: dict[str, list[str]] = {
    "gossip": [
        "You will NOT believe who I ran into at the bookshop yesterday...",
        "Okay, I wasn't going to say anything, but I heard something wild about a colleague.",
        "Did you hear what happened at the conference dinner last week?",
        "Promise you won't tell anyone, but I overheard the juiciest conversation...",
        "Guess what I found while clearing out my old office.",
        "So, hypothetically... if someone sent a letter to the wrong person...",
    ],
    "debate": [
        "Settle this for me: is a hot dog a sandwich?",
        "Is it ever acceptable to recline your seat on a long train ride?",
        "Do we have free will or not? Be honest.",
        "Whose theory is actually more useful in everyday life?",
        "Do you believe everything you wrote, or were you just being provocative?",
        "If we swapped theories for a week, could you pull it off?",
    ],
    "personal_story": [
        "I was just remembering that disastrous lecture I gave years ago...",
        "There's a recurring dream I keep having and it's starting to worry me.",
        "I found my old notebook from when I was starting out. So embarrassing.",
        "Remember when we used to argue about everything? I kind of miss it.",
        "Can I confess something? Sometimes I wonder if I got it all wrong.",
    ],
}

FALLBACK_LINES: list[tuple[str, str]] = [
    ("So... nice weather we're having.", "idle"),
    ("Indeed. Very... weather-like.", "nod"),
]


def fallback_idle_scene(selected_ids: Sequence[str]) -> Scene:
    """Scripted two-line exchange used when idle generation fails."""
    timelines: list[CharacterTimeline] = []
    for index, cid in enumerate(list(selected_ids)[:2]):
        text, animation = FALLBACK_LINES[index % len(FALLBACK_LINES)]
        look = "at_right_character" if index == 0 else "at_left_character"
        timelines.append(CharacterTimeline(
            character_id=cid,
            content=text,
            start_delay=index * 4000,
            segments=[
                AnimationSegment(
                    animation=animation,
                    duration=800,
                    complementary=Complementary(look_direction=look),
                ),
                AnimationSegment(
                    animation="talking",
                    duration=2200,
                    is_talking=True,
                    text_range=(0, len(text)),
                    complementary=Complementary(look_direction=look, mouth_state="open"),
                ),
            ],
        ))
    return Scene(timelines=timelines, scene_duration=8000)


class IdleOrchestrator:
    def __init__(
        self,
        llm: LLM,
        registry: CharacterRegistry,
        rng: random.Random | None = None,
    ) -> None:
        self._llm = llm
        self._registry = registry
        self._rng = rng or random.Random()

    def pick_starter(self) -> tuple[str, str]:
        """(category, starter), categories weighted by pool size."""
        categories = list(STARTERS)
        category = self._rng.choices(categories, weights=[len(STARTERS[c]) for c in categories])[0]
        return category, self._rng.choice(STARTERS[category])

    async def generate_idle_conversation_scene(
        self, selected_ids: Sequence[str], cycle_number: int
    ) -> Scene:
        ids = list(dict.fromkeys(selected_ids))
        positions = positions_for(ids)
        names = self._registry.names(ids)

        scene: Scene | None = None
        try:
            category, starter = self.pick_starter()
            prompt = build_idle_prompt(self._registry.profiles_for(ids), starter, category, cycle_number)
            logger.info("Generating idle conversation %d (%s) for %s", cycle_number, category, ids)
            raw = await self._llm(
                [{"role": "user", "content": IDLE_TRIGGER_MESSAGE}], prompt, "orchestrator",
            )
            scene = ResponseParser(names).parse(raw, ids)
        except Exception:
            logger.exception("Idle conversation generation failed")

        if scene is None:
            logger.warning("Using scripted fallback idle scene")
            scene = fallback_idle_scene(ids)
        return enforce(scene, ids, positions, idle=True, names=names, rng=self._rng)


# ── Idle micro-animations ────────────────────────────────

IDLE_COMPLEMENTARY_BASE: list[dict[str, str]] = [
    {"mouth_state": "closed"},
    {"mouth_state": "closed", "eye_state": "blink"},
    {"mouth_state": "smile"},
    {"eye_state": "open"},
    {},
]

_LOOKS_SOLO = ["left", "right", "up", "center", None]
_LOOKS_BY_POSITION: dict[str, list[str]] = {
    "left": ["right", "at_right_character", "center", "up"],
    "right": ["left", "at_left_character", "center", "up"],
    "center": ["left", "right", "at_left_character", "at_right_character", "center", "up"],
}

STAGGER_STEP_MS = 2000
STAGGER_JITTER_MS = 3000
INTERVAL_MS = (8000, 15000)
SETTLE_DELAY_MS = 5000

PoseCallback = Callable[[str, IdlePose], None]


def random_pose(index: int, count: int, rng: random.Random) -> IdlePose:
    """Random idle pose; half the time with a look direction toward the stage."""
    animation = rng.choice(grammar.IDLE_POSES)
    complementary = dict(rng.choice(IDLE_COMPLEMENTARY_BASE))
    if rng.random() < 0.5:
        if count <= 1:
            look = rng.choice(_LOOKS_SOLO)
        else:
            look = rng.choice(_LOOKS_BY_POSITION[position_for(index, count)])
        if look is not None:
            complementary["look_direction"] = look
    return IdlePose(animation=animation, complementary=Complementary(**complementary))


class IdleAnimationScheduler:
    """Per-character idle pose timers.

    Args:
        on_pose:  called with (character_id, pose) on every pose change.
        rng:      random source for delays and poses.
        sleep:    awaitable sleep in seconds; inject a fake in tests.
    """

    def __init__(
        self,
        on_pose: PoseCallback | None = None,
        rng: random.Random | None = None,
        sleep: Sleep = asyncio.sleep,
    ) -> None:
        self._on_pose = on_pose
        self._rng = rng or random.Random()
        self._sleep = sleep
        self._ids: list[str] = []
        self._tasks: dict[str, asyncio.Task] = {}
        self._settle: asyncio.Task | None = None
        self.poses: dict[str, IdlePose] = {}
        self.active = False

    @property
    def timer_ids(self) -> set[str]:
        return set(self._tasks)

    def _set_pose(self, character_id: str) -> None:
        if character_id not in self._ids:
            return
        pose = random_pose(self._ids.index(character_id), len(self._ids), self._rng)
        self.poses[character_id] = pose
        if self._on_pose is not None:
            self._on_pose(character_id, pose)

    async def _cycle(self, character_id: str, first_delay_ms: float) -> None:
        await self._sleep(first_delay_ms / 1000)
        while True:
            self._set_pose(character_id)
            await self._sleep(self._rng.uniform(*INTERVAL_MS) / 1000)

    def _start_timer(self, character_id: str, first_delay_ms: float) -> None:
        self._tasks[character_id] = asyncio.create_task(
            self._cycle(character_id, first_delay_ms), name=f"idle-pose-{character_id}",
        )

    def _cancel_timers(self) -> None:
        for task in self._tasks.values():
            task.cancel()
        self._tasks.clear()

    def start_cycle(self, character_ids: Sequence[str] | None = None) -> None:
        """Pose everyone now, then start staggered per-character timers."""
        if character_ids is not None:
            self._ids = list(dict.fromkeys(character_ids))
        self._cancel_timers()
        self.active = True
        for index, cid in enumerate(self._ids):
            self._set_pose(cid)
            self._start_timer(cid, index * STAGGER_STEP_MS + self._rng.uniform(0, STAGGER_JITTER_MS))
        logger.debug("Idle cycle started for %s", self._ids)

    def stop_cycle(self) -> None:
        self.active = False
        if self._settle is not None:
            self._settle.cancel()
            self._settle = None
        self._cancel_timers()
        self.poses.clear()

    async def _settle_then_start(self) -> None:
        await self._sleep(SETTLE_DELAY_MS / 1000)
        self._settle = None
        self.start_cycle()

    def enter_idle(self, character_ids: Sequence[str] | None = None) -> None:
        """Restart the whole cycle after the settle delay."""
        if character_ids is not None:
            self._ids = list(dict.fromkeys(character_ids))
        if self._settle is not None:
            self._settle.cancel()
        self._settle = asyncio.create_task(self._settle_then_start(), name="idle-settle")

    def enter_active(self) -> None:
        self.stop_cycle()

    def reconcile(self, character_ids: Sequence[str]) -> None:
        """Follow a selection change without resetting unaffected characters."""
        new_ids = list(dict.fromkeys(character_ids))
        self._ids = new_ids
        if not self.active:
            return
        for cid in set(self._tasks) - set(new_ids):
            self._tasks.pop(cid).cancel()
            self.poses.pop(cid, None)
        for cid in new_ids:
            if cid not in self._tasks:
                self._set_pose(cid)
                self._start_timer(cid, self._rng.uniform(0, STAGGER_JITTER_MS))


# ── Idle conversation state machine ──────────────────────

IdleState = Literal[
    "ACTIVE", "IDLE_WAITING", "IDLE_CONVERSATION_1", "IDLE_COOLDOWN",
    "IDLE_CONVERSATION_2", "IDLE_DONE",
]

INTERRUPTION_PHRASES: list[str] = [
    "Shh! The user is back!",
    "Quick, act natural, they're typing!",
    "*whispers* Play it cool, they're here!",
    "Oh! We weren't talking about anything...",
    "Quiet! The human has returned!",
    "*clears throat* Ah, welcome back!",
]

_CONVERSATION_STATES = ("IDLE_CONVERSATION_1", "IDLE_CONVERSATION_2")


class IdleConversationManager:
    """Decides when idle banter starts and interrupts it when the user returns.

    Args:
        orchestrator:              generates the banter scenes.
        character_ids:             current selection (banter needs two or more).
        on_conversation_start:     awaited with each generated scene; the
                                   caller calls on_conversation_complete()
                                   when playback ends.
        on_state_change:           called with every new state.
        inactivity_ms / cooldown_ms / max_conversations:  timing rules.
    """

    def __init__(
        self,
        orchestrator: IdleOrchestrator,
        character_ids: Sequence[str],
        *,
        on_conversation_start: Callable[[Scene], Awaitable[None]] | None = None,
        on_state_change: Callable[[IdleState], None] | None = None,
        inactivity_ms: int = 10_000,
        cooldown_ms: int = 120_000,
        max_conversations: int = 2,
        rng: random.Random | None = None,
        sleep: Sleep = asyncio.sleep,
    ) -> None:
        self._orchestrator = orchestrator
        self._ids = list(dict.fromkeys(character_ids))
        self._on_start = on_conversation_start
        self._on_state_change = on_state_change
        self.inactivity_ms = inactivity_ms
        self.cooldown_ms = cooldown_ms
        self.max_conversations = max_conversations
        self._rng = rng or random.Random()
        self._sleep = sleep

        self.state: IdleState = "ACTIVE"
        self.conversation_count = 0
        self._started = False
        self._in_progress = False
        self._timer: asyncio.Task | None = None

    @property
    def is_conversation_playing(self) -> bool:
        return self._in_progress

    def _transition(self, new_state: IdleState) -> None:
        if new_state == self.state:
            return
        logger.info("Idle state %s → %s", self.state, new_state)
        self.state = new_state
        if self._on_state_change is not None:
            self._on_state_change(new_state)

    def _clear_timer(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None

    def _schedule(self, delay_ms: int) -> None:
        self._clear_timer()

        async def fire() -> None:
            await self._sleep(delay_ms / 1000)
            self._timer = None
            if self._started and self.conversation_count < self.max_conversations:
                await self.trigger_idle_conversation()

        self._timer = asyncio.create_task(fire(), name="idle-conversation-timer")

    def _start_inactivity_timer(self) -> None:
        self._transition("IDLE_WAITING")
        self._schedule(self.inactivity_ms)

    def start(self) -> None:
        if self._started:
            return
        self._started = True
        if len(self._ids) < 2:
            logger.debug("Idle conversations need at least 2 characters")
            return
        if self.conversation_count < self.max_conversations:
            self._start_inactivity_timer()

    def stop(self) -> None:
        self._started = False
        self._clear_timer()
        self._in_progress = False
        if self.state in _CONVERSATION_STATES:
            self._transition("ACTIVE")

    def reset(self) -> None:
        self.stop()
        self.conversation_count = 0
        self._transition("ACTIVE")

    def record_user_activity(self) -> None:
        """Any user interaction: restart the inactivity countdown."""
        if self.state in ("IDLE_WAITING", "IDLE_COOLDOWN"):
            self._transition("ACTIVE")
        if (
            self._started
            and len(self._ids) >= 2
            and self.conversation_count < self.max_conversations
            and self.state not in _CONVERSATION_STATES
        ):
            self._start_inactivity_timer()

    def handle_user_typing(self) -> Scene | None:
        """Return an interruption scene if banter is playing, else record activity."""
        if self.state in _CONVERSATION_STATES:
            logger.info("User returned during idle conversation, interrupting")
            scene = self.interruption_scene()
            self._in_progress = False
            self._transition("ACTIVE")
            return scene
        self.record_user_activity()
        return None

    def update_characters(self, character_ids: Sequence[str]) -> None:
        had_enough = len(self._ids) >= 2
        self._ids = list(dict.fromkeys(character_ids))
        has_enough = len(self._ids) >= 2
        if had_enough and not has_enough:
            self._clear_timer()
            self._in_progress = False
            self._transition("ACTIVE")
        elif has_enough and not had_enough and self._started:
            self.conversation_count = 0
            self._transition("ACTIVE")
            self._start_inactivity_timer()

    def on_conversation_complete(self) -> None:
        if not self._in_progress:
            return
        self._in_progress = False
        self.conversation_count += 1
        logger.info("Idle conversation %d complete", self.conversation_count)
        if self.conversation_count < self.max_conversations:
            self._transition("IDLE_COOLDOWN")
            self._schedule(self.cooldown_ms)
        else:
            self._transition("IDLE_DONE")

    async def trigger_idle_conversation(self) -> Scene | None:
        """Generate and start one banter scene. Returns it, or None if dropped."""
        if self._in_progress or len(self._ids) < 2:
            return None
        number = self.conversation_count + 1
        expected: IdleState = "IDLE_CONVERSATION_1" if number == 1 else "IDLE_CONVERSATION_2"
        self._transition(expected)
        self._in_progress = True

        scene = await self._orchestrator.generate_idle_conversation_scene(self._ids, number)
        if self.state != expected or not self._in_progress:
            logger.info("Idle conversation %d superseded by user activity, dropped", number)
            return None

        if self._on_start is not None:
            try:
                await self._on_start(scene)
            except Exception:
                logger.exception("Idle conversation playback failed")
                self._in_progress = False
                self._transition("ACTIVE")
                return None
        return scene

    def interruption_scene(self) -> Scene:
        """Scripted "the user is back!" reaction, no generation call."""
        speaker = self._rng.choice(self._ids)
        phrase = self._rng.choice(INTERRUPTION_PHRASES)
        timeline = CharacterTimeline(
            character_id=speaker,
            content=phrase,
            segments=[
                AnimationSegment(
                    animation="surprise_jump",
                    duration=500,
                    complementary=Complementary(look_direction="center"),
                ),
                AnimationSegment(
                    animation="talking",
                    duration=2000,
                    is_talking=True,
                    text_range=(0, len(phrase)),
                    complementary=Complementary(
                        look_direction="center", mouth_state="open", eye_state="open",
                    ),
                ),
            ],
        )
        others = {
            cid: [AnimationSegment(
                animation="nervous",
                duration=2500,
                complementary=Complementary(
                    look_direction="center", eye_state="open", eyebrow_state="raised",
                ),
            )]
            for cid in self._ids if cid != speaker
        }
        return Scene(timelines=[timeline], scene_duration=2500, non_speaker_behavior=others)
