"""Scene vocabulary — the closed sets the generator may use, and timing rules.

Every enum-like field of the JSON contract is defined here once. Prompt
builders list these values verbatim; the parser rejects anything outside them
(replacing it with the matching SAFE_DEFAULTS entry).

Timing (milliseconds):
  MIN_SEGMENT_MS / MAX_SEGMENT_MS   clamp for generator-supplied durations
  DEFAULT_SEGMENT_MS                used when a duration is missing or garbage
  TALKING_MS_PER_CHAR               default talking speed for synthetic timelines
  TURN_GAP_MS                       pause inserted between sequential speakers
"""

from __future__ import annotations

from typing import Literal, get_args

AnimationState = Literal[
    "idle", "thinking", "talking", "confused", "happy", "excited",
    "winning", "walking", "jump", "surprise_jump", "surprise_happy",
    "lean_back", "lean_forward", "cross_arms", "nod", "shake_head",
    "shrug", "wave", "point", "clap", "bow",
    "facepalm", "dance", "laugh", "cry", "angry", "nervous",
    "celebrate", "peek", "doze", "stretch",
    # idle poses
    "kick_ground", "meh", "foot_tap", "look_around", "yawn",
    "fidget", "rub_eyes", "weight_shift",
]

LookDirection = Literal[
    "center", "left", "right", "up", "down",
    "at_left_character", "at_right_character",
]

EyeState = Literal["open", "closed", "wink_left", "wink_right", "blink"]

EyebrowState = Literal[
    "normal", "raised", "furrowed", "sad", "worried", "one_raised", "wiggle",
]

MouthState = Literal["closed", "open", "smile", "wide_smile", "surprised"]

Position = Literal["left", "center", "right"]

Verbosity = Literal["brief", "balanced", "detailed"]

StrategyMode = Literal["single-call", "multi-call"]

OrchestrationMode = Literal["single-call", "multi-call", "auto"]

ANIMATIONS: tuple[str, ...] = get_args(AnimationState)
LOOK_DIRECTIONS: tuple[str, ...] = get_args(LookDirection)
EYE_STATES: tuple[str, ...] = get_args(EyeState)
EYEBROW_STATES: tuple[str, ...] = get_args(EyebrowState)
MOUTH_STATES: tuple[str, ...] = get_args(MouthState)

# Animations offered to the generator for scripted dialogue. Idle poses are
# valid on parse but only the scheduler picks them.
IDLE_POSES: tuple[str, ...] = (
    "idle", "kick_ground", "meh", "foot_tap",
    "look_around", "yawn", "fidget", "rub_eyes", "weight_shift",
)
SCENE_ANIMATIONS: tuple[str, ...] = tuple(
    a for a in ANIMATIONS if a not in IDLE_POSES or a == "idle"
)

GESTURES: tuple[str, ...] = (
    "thinking_hand_on_chin", "nodding_slowly", "leaning_in", "open_palms",
    "crossed_arms", "raised_eyebrow", "gentle_smile", "pointing_up",
    "shrugging", "hand_on_heart", "waving_off", "counting_on_fingers",
)

SAFE_DEFAULTS: dict[str, str] = {
    "animation": "idle",
    "look": "center",
    "eyes": "open",
    "mouth": "closed",
    "eyebrows": "normal",
}

# Loose look-direction spellings the generator likes to invent
LOOK_ALIASES: dict[str, str] = {
    "at_other": "at_left_character",
    "at_speaker": "at_left_character",
    "at_left": "at_left_character",
    "at_right": "at_right_character",
    "straight": "center",
    "forward": "center",
}

# Named speeds used by the compact idle format ("sp")
SPEED_NAMES: dict[str, float] = {
    "slow": 0.75,
    "normal": 1.0,
    "fast": 1.3,
    "explosive": 1.6,
}

MIN_SEGMENT_MS = 300
MAX_SEGMENT_MS = 10_000
DEFAULT_SEGMENT_MS = 1500
TALKING_MS_PER_CHAR = 65
MIN_TALKING_MS = 2000
TURN_GAP_MS = 500

VERBOSITY_GUIDE: dict[str, str] = {
    "brief": "1-2 sentences per response",
    "balanced": "2-4 sentences per response",
    "detailed": "3-5 sentences per response",
}


def timing_guidelines() -> str:
    """Timing rules block shared by every scene prompt."""
    return (
        f"- Minimum segment duration: {MIN_SEGMENT_MS}ms\n"
        f"- Maximum segment duration: {MAX_SEGMENT_MS}ms\n"
        f"- Talking speed: approximately {TALKING_MS_PER_CHAR}ms per character of text\n"
        f"- Default thinking duration: {DEFAULT_SEGMENT_MS}ms\n"
        "- All timing fields are integers in milliseconds\n"
        "- The first character's startDelay must be 0"
    )
