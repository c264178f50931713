"""ResponseParser — generator text → validated Scene.

Parsing steps:
  1. Repair the text (strip fences, trim prose around the outermost object).
  2. json.loads; anything that is not an object is rejected.
  3. Expand compact idle keys and accept top-level "characters" / "responses"
     lists as aliases for scene.characters.
  4. Resolve every character reference to a known id
     (exact → normalised id/name → substring → first available id).
  5. Split content that embeds several "[Name]: " turns into separate
     timelines; strip a single leading name prefix.
  6. Validate vocabularies (unknown values fall back to safe defaults) and
     clamp durations to [MIN_SEGMENT_MS, MAX_SEGMENT_MS].

Generator-supplied totals (totalDuration, dur) are ignored: a timeline's
duration is always the sum of its segments.

parse() never raises. It returns None only when no usable
(character, content) pair exists.
"""

from __future__ import annotations

import json
import logging
import math
import re
from collections.abc import Iterable, Mapping, Sequence
from typing import Any

from chorus import grammar
from chorus.models import AnimationSegment, CharacterTimeline, Complementary, Scene
from chorus.pipeline.repair import DEFAULT_PASSES, RepairPass, repair

logger = logging.getLogger(__name__)

# Shorter tokens are not fuzzy-matched against the animation vocabulary
MIN_FUZZY_TOKEN = 3

_COMPACT_ENTRY_KEYS = {
    "c": "character",
    "t": "content",
    "d": "startDelay",
    "tl": "timeline",
}
_COMPACT_SEGMENT_KEYS = {
    "a": "animation",
    "ms": "duration",
    "lk": "look",
    "ey": "eyes",
    "eb": "eyebrows",
    "m": "mouth",
    "sp": "speed",
}

_BRACKET_PREFIX_RE = re.compile(r"\[([^\]\n]+)\]:\s*")
_LEADING_BRACKET_RE = re.compile(r"^\s*\[([^\]\n]+)\]:\s*")
_LEADING_NAME_RE = re.compile(r"^\s*([\w][\w .'-]{0,40}):\s+")


# ── Default timelines ────────────────────────────────────


def default_timeline(content: str) -> list[AnimationSegment]:
    """think → talk (whole text) → settle with a smile."""
    talking_ms = max(grammar.MIN_TALKING_MS, len(content) * grammar.TALKING_MS_PER_CHAR)
    return [
        AnimationSegment(
            animation="thinking",
            duration=grammar.DEFAULT_SEGMENT_MS,
            complementary=Complementary(look_direction="up"),
        ),
        AnimationSegment(
            animation="talking",
            duration=talking_ms,
            is_talking=True,
            text_range=(0, len(content)),
        ),
        AnimationSegment(
            animation="idle",
            duration=1000,
            complementary=Complementary(mouth_state="smile"),
        ),
    ]


def fallback_scene(responses: Iterable[tuple[str, str]]) -> Scene:
    """Scene from plain (character_id, content) pairs, played back to back."""
    timelines: list[CharacterTimeline] = []
    cursor = 0
    previous: str | None = None
    for character_id, content in responses:
        timeline = CharacterTimeline(
            character_id=character_id,
            content=content,
            start_delay=cursor,
            segments=default_timeline(content),
            reacts_to=previous,
        )
        timelines.append(timeline)
        cursor = timeline.end + grammar.TURN_GAP_MS
        previous = character_id
    return Scene(
        timelines=timelines,
        scene_duration=max((t.end for t in timelines), default=0),
    )


# ── Character resolution ─────────────────────────────────


def _norm(value: str) -> str:
    return re.sub(r"[\s\-]+", "_", value.strip().lower())


def resolve_character(
    ref: str, available_ids: Sequence[str], names: Mapping[str, str] | None = None
) -> str | None:
    """Map a generator-supplied character token to one of available_ids.

    Never fails while available_ids is non-empty: an unmatched token is
    coerced to the first id and logged.
    """
    if not available_ids:
        return None
    names = names or {}
    if ref in available_ids:
        return ref

    ref_n = _norm(ref)
    if ref_n:
        for cid in available_ids:
            if ref_n == _norm(cid) or ref_n == _norm(names.get(cid, "")):
                return cid
        for cid in available_ids:
            cid_n = _norm(cid)
            name_n = _norm(names.get(cid, ""))
            if cid_n in ref_n or ref_n in cid_n:
                return cid
            if name_n and (name_n in ref_n or ref_n in name_n):
                return cid

    logger.warning(
        "Could not resolve character %r among %s, coercing to %r",
        ref, list(available_ids), available_ids[0],
    )
    return available_ids[0]


def _is_known_name(token: str, available_ids: Sequence[str], names: Mapping[str, str]) -> bool:
    token_n = _norm(token)
    return any(token_n in (_norm(cid), _norm(names.get(cid, ""))) for cid in available_ids)


def strip_name_prefix(
    content: str, available_ids: Sequence[str] = (), names: Mapping[str, str] | None = None
) -> str:
    """Remove one leading "[Name]: " (or bare "Name: " for a known character)."""
    names = names or {}
    cleaned = _LEADING_BRACKET_RE.sub("", content, count=1)
    if cleaned == content:
        match = _LEADING_NAME_RE.match(content)
        if match and _is_known_name(match.group(1), available_ids, names):
            cleaned = content[match.end():]
    return cleaned.strip()


def split_combined(
    content: str,
    available_ids: Sequence[str],
    names: Mapping[str, str] | None = None,
    speaker: str | None = None,
) -> list[tuple[str, str]] | None:
    """Split "[A]: ... [B]: ..." into [(id_a, text), (id_b, text)].

    Text before the first prefix belongs to `speaker` (the entry's own
    character). Returns None when the content holds fewer than two prefixed
    turns.
    """
    matches = list(_BRACKET_PREFIX_RE.finditer(content))
    if len(matches) <= 1:
        return None

    parts: list[tuple[str, str]] = []
    prelude = content[:matches[0].start()].strip()
    if prelude and speaker is not None:
        cid = resolve_character(speaker, available_ids, names)
        if cid is not None:
            parts.append((cid, prelude))
    for i, match in enumerate(matches):
        end = matches[i + 1].start() if i + 1 < len(matches) else len(content)
        text = content[match.end():end].strip()
        if not text:
            continue
        cid = resolve_character(match.group(1), available_ids, names)
        if cid is not None:
            parts.append((cid, text))
    return parts if len(parts) > 1 else None


# ── Field validation ─────────────────────────────────────


def _as_number(value: Any) -> float | None:
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        number = float(value)
    elif isinstance(value, str):
        try:
            number = float(value.strip())
        except ValueError:
            return None
    else:
        return None
    if math.isnan(number) or math.isinf(number):
        return None
    return number


def clamp_duration(value: Any) -> int:
    number = _as_number(value)
    if number is None:
        return grammar.DEFAULT_SEGMENT_MS
    return int(round(max(grammar.MIN_SEGMENT_MS, min(grammar.MAX_SEGMENT_MS, number))))


def _enum_token(value: Any) -> str | None:
    if not isinstance(value, str) or not value.strip():
        return None
    return re.sub(r"\s+", "_", value.strip().lower())


def validate_animation(value: Any) -> str:
    token = _enum_token(value)
    if token is None:
        return grammar.SAFE_DEFAULTS["animation"]
    if token in grammar.ANIMATIONS:
        return token
    if len(token) < MIN_FUZZY_TOKEN:
        logger.warning("Unknown animation %r, defaulting to idle", value)
        return grammar.SAFE_DEFAULTS["animation"]
    for candidate in grammar.ANIMATIONS:
        if candidate in token or token in candidate:
            logger.warning("Mapped unknown animation %r to %r", value, candidate)
            return candidate
    logger.warning("Unknown animation %r, defaulting to idle", value)
    return grammar.SAFE_DEFAULTS["animation"]


def _validate_enum(value: Any, allowed: tuple[str, ...], field: str) -> str | None:
    """Closed-vocabulary check; None when absent, safe default when unknown."""
    if value is None:
        return None
    token = _enum_token(value)
    if field == "look" and token in grammar.LOOK_ALIASES:
        return grammar.LOOK_ALIASES[token]
    if token in allowed:
        return token
    logger.warning("Unknown %s value %r, using %r", field, value, grammar.SAFE_DEFAULTS[field])
    return grammar.SAFE_DEFAULTS[field]


def _validate_speed(value: Any) -> float | None:
    if isinstance(value, str) and value.strip().lower() in grammar.SPEED_NAMES:
        return grammar.SPEED_NAMES[value.strip().lower()]
    number = _as_number(value)
    if number is None or number <= 0:
        return None
    return number


def _parse_text_range(value: Any) -> tuple[int, int] | None:
    if not isinstance(value, (list, tuple)) or len(value) != 2:
        return None
    start, end = (_as_number(v) for v in value)
    if start is None or end is None:
        return None
    return int(start), int(end)


def parse_segment(raw: Mapping[str, Any]) -> AnimationSegment:
    """One generator segment object (canonical keys) → AnimationSegment."""
    complementary = Complementary(
        look_direction=_validate_enum(raw.get("look"), grammar.LOOK_DIRECTIONS, "look"),
        eye_state=_validate_enum(raw.get("eyes"), grammar.EYE_STATES, "eyes"),
        mouth_state=_validate_enum(raw.get("mouth"), grammar.MOUTH_STATES, "mouth"),
        eyebrow_state=_validate_enum(raw.get("eyebrows"), grammar.EYEBROW_STATES, "eyebrows"),
        speed=_validate_speed(raw.get("speed")),
    )
    has_complementary = any(v is not None for v in complementary.model_dump().values())
    return AnimationSegment(
        animation=validate_animation(raw.get("animation")),
        duration=clamp_duration(raw.get("duration")),
        is_talking=raw.get("talking") is True,
        text_range=_parse_text_range(raw.get("textRange")),
        complementary=complementary if has_complementary else None,
    )


def fix_text_ranges(segments: list[AnimationSegment], length: int) -> None:
    """Make talking segments reveal the whole text, in order, without gaps."""
    talking = [s for s in segments if s.is_talking]
    if not talking:
        return
    if not any(s.text_range for s in talking):
        per_segment = math.ceil(length / len(talking)) if length else 0
        cursor = 0
        for seg in talking:
            end = min(cursor + per_segment, length)
            seg.text_range = (cursor, end)
            cursor = end
        return
    last_end = 0
    for seg in talking:
        if seg.text_range is None:
            continue
        start, end = seg.text_range
        if start > last_end:
            start = last_end
        seg.text_range = (start, max(start, end))
        last_end = seg.text_range[1]
    ranged = [s for s in talking if s.text_range is not None]
    start, end = ranged[-1].text_range
    if end < length:
        ranged[-1].text_range = (start, length)


# ── Structure normalisation ──────────────────────────────


def expand_compact(data: dict[str, Any]) -> dict[str, Any]:
    """{"s": {"ch": [...]}} compact idle format → canonical schema."""
    compact = data.get("s")
    if not isinstance(compact, dict) or not isinstance(compact.get("ch"), list):
        return data
    logger.debug("Expanding compact scene format (%d entries)", len(compact["ch"]))
    entries = []
    for item in compact["ch"]:
        if not isinstance(item, dict):
            continue
        entry = {_COMPACT_ENTRY_KEYS.get(k, k): v for k, v in item.items()}
        timeline = entry.get("timeline")
        if isinstance(timeline, list):
            entry["timeline"] = [
                {_COMPACT_SEGMENT_KEYS.get(k, k): v for k, v in seg.items()}
                for seg in timeline if isinstance(seg, dict)
            ]
        entries.append(entry)
    expanded = {"scene": {"characters": entries}}
    if "reasoning" in data:
        expanded["reasoning"] = data["reasoning"]
    return expanded


def _scene_entries(data: dict[str, Any]) -> list[dict[str, Any]] | None:
    scene = data.get("scene")
    if isinstance(scene, dict) and isinstance(scene.get("characters"), list):
        entries = scene["characters"]
    elif isinstance(data.get("characters"), list):
        entries = data["characters"]
    elif isinstance(data.get("responses"), list):
        entries = data["responses"]
    else:
        return None
    return [e for e in entries if isinstance(e, dict)]


def _ordered(entries: list[dict[str, Any]]) -> list[dict[str, Any]]:
    def key(item: tuple[int, dict[str, Any]]) -> tuple[float, int]:
        index, entry = item
        order = _as_number(entry.get("ord"))
        return (order if order is not None else math.inf, index)

    return [e for _, e in sorted(enumerate(entries), key=key)]


# ── Parser ───────────────────────────────────────────────


class ResponseParser:
    """Parses generator output into a Scene.

    Args:
        names:  id → display name, used to resolve display names the
                generator writes instead of ids.
        passes: text repair passes, applied in order before json.loads.
    """

    def __init__(
        self,
        names: Mapping[str, str] | None = None,
        passes: Sequence[RepairPass] = DEFAULT_PASSES,
    ) -> None:
        self._names = dict(names or {})
        self._passes = passes

    def parse(self, raw: str, available_ids: Sequence[str]) -> Scene | None:
        available_ids = list(available_ids)
        if not raw or not raw.strip() or not available_ids:
            logger.warning("Nothing to parse (empty output or no characters)")
            return None

        text = repair(raw, self._passes)
        try:
            data = json.loads(text)
        except json.JSONDecodeError as e:
            logger.warning("Generator output is not valid JSON: %s", e)
            return None
        if not isinstance(data, dict):
            logger.warning("Generator output is %s, expected an object", type(data).__name__)
            return None

        data = expand_compact(data)
        if "reasoning" in data:
            logger.debug("Generator reasoning: %s", json.dumps(data["reasoning"])[:500])

        entries = _scene_entries(data)
        if entries is None:
            logger.warning("Generator output has no scene.characters list")
            return None

        timelines = self._build_timelines(entries, available_ids)
        if not timelines:
            logger.warning("No usable character lines in generator output")
            return None

        _diagnose(timelines, available_ids)
        return Scene(
            timelines=timelines,
            scene_duration=max(t.end for t in timelines),
        )

    def _build_timelines(
        self, entries: list[dict[str, Any]], available_ids: list[str]
    ) -> list[CharacterTimeline]:
        sequential = not any(_as_number(e.get("startDelay")) is not None for e in entries)
        if sequential:
            entries = _ordered(entries)

        timelines: list[CharacterTimeline] = []
        cursor = 0
        for entry in entries:
            ref = entry.get("character")
            content = entry.get("content")
            if not isinstance(ref, str) or not isinstance(content, str) or not content.strip():
                logger.warning("Skipping scene entry without character/content: %r", entry)
                continue

            delay = None if sequential else _as_number(entry.get("startDelay"))
            start = cursor if delay is None else max(0, int(delay))

            parts = split_combined(content, available_ids, self._names, speaker=ref)
            if parts:
                logger.info("Splitting combined content into %d timelines", len(parts))
                previous: str | None = None
                for cid, part in parts:
                    timeline = CharacterTimeline(
                        character_id=cid,
                        content=part,
                        start_delay=start,
                        segments=default_timeline(part),
                        interrupts=previous is not None,
                        reacts_to=previous,
                    )
                    timelines.append(timeline)
                    start = timeline.end + grammar.TURN_GAP_MS
                    previous = cid
                cursor = start
                continue

            timeline = self._build_timeline(entry, ref, content, start, available_ids)
            if timeline is None:
                continue
            timelines.append(timeline)
            cursor = timeline.end + grammar.TURN_GAP_MS
        return timelines

    def _build_timeline(
        self,
        entry: dict[str, Any],
        ref: str,
        content: str,
        start: int,
        available_ids: list[str],
    ) -> CharacterTimeline | None:
        character_id = resolve_character(ref, available_ids, self._names)
        if character_id is None:
            return None
        content = strip_name_prefix(content, available_ids, self._names)
        if not content:
            logger.warning("Content for %r was only a name prefix, skipped", character_id)
            return None

        raw_segments = entry.get("timeline")
        if isinstance(raw_segments, list) and any(isinstance(s, dict) for s in raw_segments):
            segments = [parse_segment(s) for s in raw_segments if isinstance(s, dict)]
            fix_text_ranges(segments, len(content))
        else:
            segments = default_timeline(content)

        reacts_to = entry.get("reactsTo")
        if isinstance(reacts_to, str) and reacts_to.strip():
            reacts_to = resolve_character(reacts_to, available_ids, self._names)
        else:
            reacts_to = None

        gesture = entry.get("gesture")
        if gesture is not None and gesture not in grammar.GESTURES:
            logger.debug("Dropping unknown gesture %r for %r", gesture, character_id)
            gesture = None

        return CharacterTimeline(
            character_id=character_id,
            content=content,
            start_delay=start,
            segments=segments,
            interrupts=entry.get("interrupts") is True,
            reacts_to=reacts_to,
            gesture=gesture,
        )


def _diagnose(timelines: list[CharacterTimeline], available_ids: list[str]) -> None:
    """Log format problems that parsing tolerated."""
    seen: set[str] = set()
    for t in timelines:
        if t.character_id in seen:
            logger.warning("Character %r has several timelines in one scene", t.character_id)
        seen.add(t.character_id)
        if _BRACKET_PREFIX_RE.search(t.content):
            logger.warning("Content for %r still contains a [Name]: prefix", t.character_id)
        if t.character_id not in available_ids:
            logger.warning("Character %r is not among the available characters", t.character_id)
