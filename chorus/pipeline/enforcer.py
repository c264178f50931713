"""InvariantEnforcer — makes a parsed Scene safe to play.

enforce() is a pure transform (the input Scene is never mutated):

  Timing      a character's timelines never overlap (a later one is pushed
              to the end of the earlier one); the earliest timeline starts
              at 0; scene_duration = max(start_delay + total_duration).
  Coverage    every selected character whose own timelines leave any gap in
              [0, scene_duration] gets a non_speaker_behavior track tiling
              exactly that interval: listening chunks that glance toward the
              active speaker, the occasional nod, lean_forward + smile when
              the speaker names the listener. During gaps the playback
              layer plays the track; while the character speaks its
              timeline wins. Tracks that already tile the interval are kept,
              which makes enforce() idempotent.
  Facing      idle scenes only: every look direction becomes
              at_right_character (left and center positions) or
              at_left_character (right position).
"""

from __future__ import annotations

import logging
import random
from collections.abc import Mapping, Sequence

from chorus.characters import positions_for
from chorus.grammar import Position
from chorus.models import AnimationSegment, CharacterTimeline, Complementary, Scene

logger = logging.getLogger(__name__)

LISTEN_CHUNK_MS = (2000, 4000)
NOD_CHANCE = 0.2
BLINK_CHANCE = 0.15

Interval = tuple[int, int]


def _merge(intervals: list[Interval]) -> list[Interval]:
    merged: list[Interval] = []
    for start, end in sorted(intervals):
        if merged and start <= merged[-1][1]:
            merged[-1] = (merged[-1][0], max(merged[-1][1], end))
        else:
            merged.append((start, end))
    return merged


def _gaps(covered: list[Interval], duration: int) -> list[Interval]:
    gaps: list[Interval] = []
    cursor = 0
    for start, end in _merge(covered):
        start, end = max(0, start), min(duration, end)
        if start > cursor:
            gaps.append((cursor, start))
        cursor = max(cursor, end)
    if cursor < duration:
        gaps.append((cursor, duration))
    return gaps


def _timeline_intervals(scene: Scene, character_id: str) -> list[Interval]:
    return [(t.start_delay, t.end) for t in scene.timelines if t.character_id == character_id]


def coverage_gaps(scene: Scene, character_id: str) -> list[Interval]:
    """Intervals of [0, scene_duration] where character_id has nothing to play."""
    covered = _timeline_intervals(scene, character_id)
    track = scene.non_speaker_behavior.get(character_id)
    if track:
        covered.append((0, sum(s.duration for s in track)))
    return _gaps(covered, scene.scene_duration)


def _clamp_timing(timelines: list[CharacterTimeline]) -> list[CharacterTimeline]:
    ordered = sorted(timelines, key=lambda t: t.start_delay)
    busy_until: dict[str, int] = {}
    clamped: list[CharacterTimeline] = []
    for t in ordered:
        start = max(t.start_delay, busy_until.get(t.character_id, 0))
        if start != t.start_delay:
            logger.debug("Pushed overlapping timeline of %r from %d to %d", t.character_id, t.start_delay, start)
        t = t.model_copy(update={"start_delay": start}, deep=True)
        busy_until[t.character_id] = t.end
        clamped.append(t)

    if clamped:
        offset = min(t.start_delay for t in clamped)
        if offset:
            clamped = [t.model_copy(update={"start_delay": t.start_delay - offset}) for t in clamped]
    return clamped


def _is_mentioned(listener_id: str, content: str, names: Mapping[str, str]) -> bool:
    text = content.lower()
    if listener_id.lower() in text:
        return True
    name = names.get(listener_id, "").lower()
    if not name:
        return False
    if name in text:
        return True
    first = name.split()[0]
    return len(first) > 2 and first in text


def _look_toward(speaker_id: str, listener_id: str, order: Sequence[str]) -> str:
    if speaker_id == listener_id or speaker_id not in order or listener_id not in order:
        return "center"
    if order.index(speaker_id) < order.index(listener_id):
        return "at_left_character"
    return "at_right_character"


def listening_track(
    scene: Scene,
    listener_id: str,
    order: Sequence[str],
    names: Mapping[str, str],
    rng: random.Random,
) -> list[AnimationSegment]:
    """Segments tiling [0, scene_duration] for a character while others talk."""
    segments: list[AnimationSegment] = []
    cursor = 0
    for t in sorted(scene.timelines, key=lambda t: t.start_delay):
        if t.end <= cursor:
            continue
        if t.start_delay > cursor:
            segments.append(AnimationSegment(
                animation="idle",
                duration=t.start_delay - cursor,
                complementary=Complementary(eye_state="blink" if rng.random() < 0.3 else "open"),
            ))
            cursor = t.start_delay

        look = _look_toward(t.character_id, listener_id, order)
        own = t.character_id == listener_id
        mentioned = not own and _is_mentioned(listener_id, t.content, names)
        first_chunk = True
        while cursor < t.end:
            chunk = min(t.end - cursor, rng.randint(*LISTEN_CHUNK_MS))
            animation = "idle"
            mouth = None
            if mentioned and first_chunk:
                animation, mouth = "lean_forward", "smile"
            elif not own and rng.random() < NOD_CHANCE:
                animation = "nod"
            segments.append(AnimationSegment(
                animation=animation,
                duration=chunk,
                complementary=Complementary(
                    look_direction=look,
                    mouth_state=mouth,
                    eye_state="blink" if rng.random() < BLINK_CHANCE else "open",
                ),
            ))
            cursor += chunk
            first_chunk = False

    if cursor < scene.scene_duration:
        segments.append(AnimationSegment(animation="idle", duration=scene.scene_duration - cursor))
    return segments


def _facing(position: Position) -> str:
    return "at_left_character" if position == "right" else "at_right_character"


def _face(segments: list[AnimationSegment], look: str) -> list[AnimationSegment]:
    faced = []
    for seg in segments:
        comp = seg.complementary or Complementary()
        faced.append(seg.model_copy(update={"complementary": comp.model_copy(update={"look_direction": look})}))
    return faced


def enforce(
    scene: Scene,
    all_ids: Sequence[str],
    positions: Mapping[str, Position] | None = None,
    *,
    idle: bool = False,
    names: Mapping[str, str] | None = None,
    rng: random.Random | None = None,
) -> Scene:
    """Return a copy of scene satisfying the timing, coverage and facing rules."""
    all_ids = list(all_ids)
    positions = dict(positions or positions_for(all_ids))
    names = names or {}
    rng = rng or random.Random()

    timelines = _clamp_timing(scene.timelines)
    duration = max((t.end for t in timelines), default=0)
    result = Scene(timelines=timelines, scene_duration=duration)

    tracks: dict[str, list[AnimationSegment]] = {}
    for cid in all_ids:
        existing = scene.non_speaker_behavior.get(cid)
        if existing is not None and sum(s.duration for s in existing) == duration:
            tracks[cid] = [s.model_copy(deep=True) for s in existing]
            continue
        if not _gaps(_timeline_intervals(result, cid), duration):
            continue
        tracks[cid] = listening_track(result, cid, all_ids, names, rng)
    result.non_speaker_behavior = tracks

    if idle:
        result.timelines = [
            t.model_copy(update={"segments": _face(t.segments, _facing(positions.get(t.character_id, "center")))})
            for t in result.timelines
        ]
        result.non_speaker_behavior = {
            cid: _face(track, _facing(positions.get(cid, "center")))
            for cid, track in result.non_speaker_behavior.items()
        }

    logger.debug(
        "Enforced scene: %d timelines, %d tracks, duration=%dms",
        len(result.timelines), len(result.non_speaker_behavior), duration,
    )
    return result
