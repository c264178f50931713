"""Character registry and stage positions.

The registry is the single source of CharacterProfile objects. Orchestration
only reads it: ids coming back from the generator are resolved by the parser
before any lookup, so get() seeing an unknown id is a caller bug and raises
CharacterNotFound.

Stage positions follow selection order:
  1 character     → center
  first           → left
  last            → right
  anything else   → center
"""

from __future__ import annotations

import json
import logging
from collections.abc import Iterable
from pathlib import Path

from chorus.errors import CharacterNotFound
from chorus.grammar import Position
from chorus.models import CharacterProfile

logger = logging.getLogger(__name__)

DEFAULT_CAST: list[dict] = [
    {
        "id": "freud",
        "name": "Sigmund Freud",
        "description": "Founder of psychoanalysis. Probing, ironic, fond of cigars and dreams.",
    },
    {
        "id": "jung",
        "name": "Carl Jung",
        "description": "Analytical psychologist. Warm, mystical, sees archetypes everywhere.",
    },
    {
        "id": "socrates",
        "name": "Socrates",
        "description": "Athenian philosopher. Answers questions with better questions.",
    },
    {
        "id": "adler",
        "name": "Alfred Adler",
        "description": "Individual psychologist. Practical, encouraging, talks about courage.",
    },
]


def position_for(index: int, count: int) -> Position:
    """Stage position of the index-th of count selected characters."""
    if count <= 1:
        return "center"
    if index == 0:
        return "left"
    if index == count - 1:
        return "right"
    return "center"


def positions_for(character_ids: list[str]) -> dict[str, Position]:
    return {cid: position_for(i, len(character_ids)) for i, cid in enumerate(character_ids)}


class CharacterRegistry:
    def __init__(self, profiles: Iterable[CharacterProfile] = ()) -> None:
        self._profiles: dict[str, CharacterProfile] = {}
        for p in profiles:
            self.add(p)

    @classmethod
    def from_dicts(cls, items: Iterable[dict]) -> "CharacterRegistry":
        return cls(CharacterProfile.model_validate(item) for item in items)

    @classmethod
    def from_json(cls, path: Path) -> "CharacterRegistry":
        """Load a JSON list of {id, name, description} objects."""
        return cls.from_dicts(json.loads(path.read_text()))

    @classmethod
    def default(cls) -> "CharacterRegistry":
        return cls.from_dicts(DEFAULT_CAST)

    def add(self, profile: CharacterProfile) -> None:
        """Upsert a profile by id."""
        self._profiles[profile.id] = profile

    def __contains__(self, character_id: object) -> bool:
        return character_id in self._profiles

    def __len__(self) -> int:
        return len(self._profiles)

    def all(self) -> list[CharacterProfile]:
        return list(self._profiles.values())

    def get(self, character_id: str) -> CharacterProfile:
        try:
            return self._profiles[character_id]
        except KeyError:
            raise CharacterNotFound(character_id) from None

    def get_or_default(self, character_id: str) -> CharacterProfile:
        """Profile for character_id, or a bare placeholder named after the id."""
        profile = self._profiles.get(character_id)
        if profile is None:
            logger.warning("Character %r not in registry, using placeholder profile", character_id)
            return CharacterProfile(id=character_id, name=character_id.replace("_", " ").title())
        return profile

    def names(self, character_ids: Iterable[str] | None = None) -> dict[str, str]:
        """Map id → display name, for the given ids or the whole registry."""
        ids = list(character_ids) if character_ids is not None else list(self._profiles)
        return {cid: self.get_or_default(cid).name for cid in ids}

    def profiles_for(self, character_ids: list[str]) -> list[CharacterProfile]:
        """Profiles in selection order with position hints assigned."""
        count = len(character_ids)
        return [
            self.get_or_default(cid).model_copy(update={"position_hint": position_for(i, count)})
            for i, cid in enumerate(character_ids)
        ]
