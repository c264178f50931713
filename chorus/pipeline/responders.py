"""ResponderSelector — decides which selected characters answer a message."""

from __future__ import annotations

import logging
import random
from collections.abc import Sequence

from chorus.models import ConversationMessage

logger = logging.getLogger(__name__)

MAX_RESPONDERS = 3
DEFAULT_CHANCES: dict[str, float] = {
    "continuation": 0.1,  # last speaker talks again
    "interruption": 0.3,  # once the conversation is going
    "reaction": 0.5,      # early in the conversation
}


class ResponderSelector:
    """Probabilistic responder choice.

    Args:
        rng:      random source; inject a seeded random.Random in tests.
        chances:  overrides for DEFAULT_CHANCES.
        min_messages_before_interrupt:  assistant messages needed before the
                  interruption chance replaces the reaction chance.
    """

    def __init__(
        self,
        rng: random.Random | None = None,
        chances: dict[str, float] | None = None,
        min_messages_before_interrupt: int = 2,
    ) -> None:
        self.rng = rng or random.Random()
        self.chances = {**DEFAULT_CHANCES, **(chances or {})}
        self.min_messages_before_interrupt = min_messages_before_interrupt

    def select(
        self,
        selected: Sequence[str],
        history: Sequence[ConversationMessage],
        last_speaker: str | None = None,
        max_responders: int = MAX_RESPONDERS,
    ) -> list[str]:
        """Return 1..min(3, max_responders) ids, a subset of selected."""
        selected = list(dict.fromkeys(selected))
        if not selected:
            raise ValueError("select() needs at least one selected character")
        if len(selected) == 1:
            return selected

        limit = max(1, min(MAX_RESPONDERS, max_responders))
        assistant = [m for m in history if m.role == "assistant"]
        if not assistant:
            return [self.rng.choice(selected)]

        if last_speaker is None:
            last_speaker = assistant[-1].character_id

        established = len(assistant) >= self.min_messages_before_interrupt
        responders: list[str] = []
        for cid in selected:
            if cid == last_speaker:
                chance = self.chances["continuation"]
            elif established:
                chance = self.chances["interruption"]
            else:
                chance = self.chances["reaction"]
            if self.rng.random() < chance:
                responders.append(cid)

        if not responders:
            recent = {m.character_id for m in assistant[-3:]}
            quiet = [cid for cid in selected if cid not in recent]
            responders = [self.rng.choice(quiet or selected)]
            logger.debug("No responder rolled, forced %r", responders[0])

        return responders[:limit]
