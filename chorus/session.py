"""Session — one user's conversation with a group of characters.

Owns the conversation history and sits between the user and the router:

  send_message()
    1. synchronously stops idle pose timers and idle banter (before the first
       await, so no idle callback can fire once generation has started),
    2. bumps the generation epoch,
    3. awaits the router,
    4. drops the result if a newer message was sent meanwhile (a stale scene
       is never played and its responses are never added to history),
    5. hands the fresh scene to the playback callable, then re-arms idle.

Only one scene plays at a time: the epoch check guarantees that a superseded
turn never reaches playback.

build_live_session() wires a Session, its idle scheduler and banter manager
to a SceneFeed for clients that poll over HTTP (see chorus.routes).
"""

from __future__ import annotations

import asyncio
import logging
import random
from collections import deque
from collections.abc import Awaitable, Callable, Sequence
from typing import Any, Literal

from chorus.models import ConversationMessage, Scene, TurnResult
from chorus.pipeline.idle import IdleAnimationScheduler, IdleConversationManager, IdleOrchestrator
from chorus.pipeline.router import OrchestrationRouter
from chorus.pipeline.strategies import Sleep
from chorus.settings import SettingsStore

logger = logging.getLogger(__name__)

Playback = Callable[[Scene], Awaitable[None]]


class Session:
    def __init__(
        self,
        router: OrchestrationRouter,
        character_ids: Sequence[str],
        *,
        playback: Playback | None = None,
        scheduler: IdleAnimationScheduler | None = None,
        idle_manager: IdleConversationManager | None = None,
        history: Sequence[ConversationMessage] = (),
    ) -> None:
        self._router = router
        self.character_ids = list(dict.fromkeys(character_ids))
        self._playback = playback
        self.scheduler = scheduler
        self.idle_manager = idle_manager
        self.history: list[ConversationMessage] = list(history)
        self._epoch = 0

    @property
    def epoch(self) -> int:
        return self._epoch

    def _stop_idle(self) -> None:
        if self.scheduler is not None:
            self.scheduler.enter_active()
        if self.idle_manager is not None:
            self.idle_manager.stop()

    def _resume_idle(self) -> None:
        if self.scheduler is not None:
            self.scheduler.enter_idle(self.character_ids)
        if self.idle_manager is not None:
            self.idle_manager.start()
            self.idle_manager.record_user_activity()

    async def _play(self, scene: Scene) -> None:
        if self._playback is not None:
            await self._playback(scene)

    async def send_message(
        self, text: str, config: dict[str, Any] | None = None
    ) -> TurnResult | None:
        """Run one turn. Returns None when a newer message superseded this one."""
        self._stop_idle()
        self._epoch += 1
        epoch = self._epoch

        prior = list(self.history)
        self.history.append(ConversationMessage(role="user", content=text))

        try:
            result = await self._router.run_turn(text, self.character_ids, prior, config)
        except Exception:
            if epoch == self._epoch:
                self._resume_idle()
            raise

        if epoch != self._epoch:
            logger.info("Dropping stale scene from turn %d (current %d)", epoch, self._epoch)
            return None

        for r in result.responses:
            self.history.append(ConversationMessage(
                role="assistant", content=r.content, character_id=r.character_id,
            ))
        await self._play(result.scene)
        if epoch == self._epoch:
            self._resume_idle()
        return result

    async def notify_typing(self) -> Scene | None:
        """User started typing: interrupt banter if it is playing."""
        if self.idle_manager is None:
            return None
        scene = self.idle_manager.handle_user_typing()
        if scene is not None:
            await self._play(scene)
        return scene

    def select_characters(self, character_ids: Sequence[str]) -> None:
        self.character_ids = list(dict.fromkeys(character_ids))
        if self.scheduler is not None:
            self.scheduler.reconcile(self.character_ids)
        if self.idle_manager is not None:
            self.idle_manager.update_characters(self.character_ids)

    def start(self) -> None:
        """Enter idle: pose timers after the settle delay, banter after inactivity."""
        self._resume_idle()

    def close(self) -> None:
        """Cancel every idle timer; the session stays usable for new messages."""
        self._stop_idle()

    def complete_idle_conversation(self) -> None:
        """The client finished playing an idle banter scene."""
        if self.idle_manager is not None:
            self.idle_manager.on_conversation_complete()

    def state(self) -> dict[str, Any]:
        return {
            "character_ids": list(self.character_ids),
            "epoch": self._epoch,
            "history": [m.model_dump() for m in self.history],
            "idle_state": self.idle_manager.state if self.idle_manager is not None else "ACTIVE",
            "poses": {
                cid: pose.model_dump()
                for cid, pose in (self.scheduler.poses.items() if self.scheduler is not None else ())
            },
        }


# ── Server-hosted sessions ───────────────────────────────

SceneKind = Literal["turn", "idle"]


class SceneFeed:
    """Playback target for a session hosted behind HTTP.

    Scenes queue here until the client drains them. The queue is bounded;
    a client that never polls loses the oldest scenes first.
    """

    def __init__(self, capacity: int = 50) -> None:
        self._items: deque[dict[str, Any]] = deque(maxlen=capacity)

    def __len__(self) -> int:
        return len(self._items)

    def push(self, kind: SceneKind, scene: Scene) -> None:
        self._items.append({"kind": kind, "scene": scene.model_dump()})

    def playback(self, kind: SceneKind) -> Playback:
        async def play(scene: Scene) -> None:
            self.push(kind, scene)

        return play

    def drain(self) -> list[dict[str, Any]]:
        items = list(self._items)
        self._items.clear()
        return items


def build_live_session(
    router: OrchestrationRouter,
    idle: IdleOrchestrator,
    settings: SettingsStore,
    character_ids: Sequence[str],
    *,
    rng: random.Random | None = None,
    sleep: Sleep = asyncio.sleep,
) -> tuple[Session, SceneFeed]:
    """Session with idle poses and banter wired to a SceneFeed.

    Idle timing comes from the settings store at creation time.
    """
    feed = SceneFeed()
    ids = list(dict.fromkeys(character_ids))
    scheduler = IdleAnimationScheduler(rng=rng, sleep=sleep)
    manager = IdleConversationManager(
        idle,
        ids,
        on_conversation_start=feed.playback("idle"),
        inactivity_ms=settings.get("idle_inactivity_ms"),
        cooldown_ms=settings.get("idle_cooldown_ms"),
        max_conversations=settings.get("idle_max_conversations"),
        rng=rng,
        sleep=sleep,
    )
    session = Session(router, ids, playback=feed.playback("turn"), scheduler=scheduler, idle_manager=manager)
    logger.info(
        "Live session for %s (inactivity %dms, cooldown %dms)",
        ids, manager.inactivity_ms, manager.cooldown_ms,
    )
    return session, feed
