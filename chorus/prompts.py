"""Handlebars prompt rendering — the textual contract with the generation backend.

Four prompt families:
  single-call   one aggregated prompt producing the whole multi-character scene
  multi-call    one prompt per responding character, one timeline each
  direct        single-character fast path, plain text reply
  idle          unscripted banter between idle characters

All scene prompts ask for the same canonical JSON schema (SCENE_EXAMPLE) and
list the closed vocabularies from chorus.grammar. The schema and vocabulary
blocks are injected as context values, never written inline in the templates,
so literal braces in the JSON never reach the Handlebars compiler.

Keep the wording stable: the parser is tuned to what these prompts produce.
"""

from __future__ import annotations

import json
from collections.abc import Callable, Mapping
from typing import Any

import pybars

from chorus import grammar
from chorus.models import CharacterProfile, ConversationMessage, OrchestrationConfig

_compiler = pybars.Compiler()
_cache: dict[str, Callable] = {}


class PromptError(Exception):
    """Raised when a Handlebars template fails to compile or render."""


# ── Custom Handlebars helpers ────────────────────────────


def _helper_take(this, options, items, count):
    """{{#take array N}}...{{/take}} — iterate over the first N items."""
    result = []
    for item in list(items)[:int(count)]:
        result.extend(options["fn"](item))
    return result


_HELPERS: dict[str, Callable] = {
    "take": _helper_take,
}


def render_prompt(template_str: str, context: dict[str, Any]) -> str:
    """Compile and render a Handlebars template with the given context.

    Templates are cached by source string to avoid recompilation.
    """
    try:
        compiled = _cache.get(template_str)
        if compiled is None:
            compiled = _compiler.compile(template_str)
            _cache[template_str] = compiled
        return str(compiled(context, helpers=_HELPERS))
    except Exception as e:
        raise PromptError(f"Template error: {e}") from e


# ── Shared contract blocks ───────────────────────────────

SCENE_EXAMPLE: dict = {
    "scene": {
        "characters": [
            {
                "character": "character_id",
                "content": "The character's spoken words, no name prefix.",
                "startDelay": 0,
                "interrupts": False,
                "reactsTo": None,
                "gesture": "gesture_id",
                "timeline": [
                    {"animation": "thinking", "duration": 1200, "talking": False,
                     "look": "up", "eyes": "open", "eyebrows": "raised"},
                    {"animation": "talking", "duration": 2800, "talking": True,
                     "textRange": [0, 45], "look": "center", "mouth": "open"},
                    {"animation": "nod", "duration": 900, "talking": False,
                     "mouth": "smile"},
                ],
            }
        ]
    }
}


def vocabulary_block(animations: tuple[str, ...] = grammar.SCENE_ANIMATIONS) -> str:
    """Closed vocabularies the generator must choose from."""
    return (
        f"animation: {', '.join(animations)}\n"
        f"look: {', '.join(grammar.LOOK_DIRECTIONS)}\n"
        f"eyes: {', '.join(grammar.EYE_STATES)}\n"
        f"eyebrows: {', '.join(grammar.EYEBROW_STATES)}\n"
        f"mouth: {', '.join(grammar.MOUTH_STATES)}\n"
        "speed: a number, 1.0 is normal"
    )


def scene_example(include_gestures: bool = True) -> str:
    example = json.loads(json.dumps(SCENE_EXAMPLE))
    if not include_gestures:
        for entry in example["scene"]["characters"]:
            entry.pop("gesture", None)
    return json.dumps(example, indent=2)


def _character_ctx(profiles: list[CharacterProfile]) -> list[dict[str, str]]:
    return [
        {
            "id": p.id,
            "name": p.name,
            "description": p.description,
            "position": p.position_hint,
        }
        for p in profiles
    ]


# ── History formatting ───────────────────────────────────


def format_history(
    history: list[ConversationMessage], names: Mapping[str, str]
) -> list[dict[str, str]]:
    """Chat messages for the backend; assistant lines are prefixed with "[Name]: "."""
    formatted: list[dict[str, str]] = []
    for m in history:
        content = m.content
        if m.role == "assistant" and m.character_id:
            name = names.get(m.character_id, m.character_id)
            content = f"[{name}]: {content}"
        formatted.append({"role": m.role, "content": content})
    return formatted


def character_change_notice(
    history: list[ConversationMessage], current_ids: list[str], names: Mapping[str, str]
) -> str:
    """Tell the generator who joined or left since the characters last spoke."""
    historical: list[str] = []
    for m in history:
        if m.role == "assistant" and m.character_id and m.character_id not in historical:
            historical.append(m.character_id)
    if not historical:
        return ""

    added = [cid for cid in current_ids if cid not in historical]
    removed = [cid for cid in historical if cid not in current_ids]
    if not added and not removed:
        return ""

    lines = ["## Character Changes", ""]
    if added:
        joined = ", ".join(names.get(cid, cid) for cid in added)
        lines.append(f"**New participants:** {joined} joined the conversation.")
    if removed:
        left = ", ".join(names.get(cid, cid) for cid in removed)
        lines.append(f"**Note:** {left} no longer participates (do not generate lines for them).")
    return "\n".join(lines) + "\n"


# ── Single-call ──────────────────────────────────────────

SINGLE_CALL_TEMPLATE = """# Multi-Character Conversation Orchestrator

You are orchestrating a conversation between several characters and a user.

## Characters in This Conversation
{{#each characters}}
### {{{name}}} (ID: {{{id}}}, Position: {{{position}}})
{{{description}}}
{{/each}}
{{{change_notice}}}
## Your Task

Write the next moment of the conversation as an animated scene.

1. Character voice: every character keeps their own perspective and manner.
2. Natural dialogue: characters may build on each other's points, disagree,
   ask each other questions and react to what others say.
{{#if include_interruptions}}   They may interrupt when they feel strongly (set "interrupts": true).
{{/if}}3. Response length: {{{verbosity_guide}}}.
4. Keep the user's message at the centre.
5. Not every character has to speak. If the user addresses one character by
   name, only that character answers unless another strongly disagrees.
{{#if include_gestures}}
## Available Gestures

{{{gestures}}}

Give each character ONE gesture id matching their emotional state.
{{/if}}
## Animation Vocabulary

{{{vocabulary}}}

## Timing

{{{timing}}}

## Response Format

Respond with ONE JSON object and nothing else: no markdown fences, no text
before or after it.

{{{schema}}}

Rules:
- "character" is a character ID from the list above, never a display name
- "content" holds only the spoken words; never start it with "[Name]: "
- One entry per spoken turn; never put two characters' lines in one "content"
- At most {{max_responders}} characters speak; fewer is often better
- The first entry has "startDelay": 0 and "interrupts": false
- Later entries start after the previous line; use "reactsTo" with the id of
  the character being answered
- Every duration is a positive integer in milliseconds

Generate the scene now."""


def build_single_call_prompt(
    profiles: list[CharacterProfile],
    history: list[ConversationMessage],
    config: OrchestrationConfig,
    names: Mapping[str, str] | None = None,
    selected_ids: list[str] | None = None,
) -> str:
    """System prompt for one aggregated scene call.

    `profiles` are this turn's responders. The character-change notice is
    computed against `selected_ids` (the whole selection, defaulting to the
    responders) so that characters who were merely not picked this turn are
    not reported as gone. `names` supplies display names for characters that
    only appear in the history.
    """
    names = {**(names or {}), **{p.id: p.name for p in profiles}}
    current = list(selected_ids) if selected_ids is not None else [p.id for p in profiles]
    ctx = {
        "characters": _character_ctx(profiles),
        "change_notice": character_change_notice(history, current, names),
        "include_interruptions": config.include_interruptions,
        "include_gestures": config.include_gestures,
        "gestures": ", ".join(grammar.GESTURES),
        "verbosity_guide": grammar.VERBOSITY_GUIDE[config.verbosity],
        "vocabulary": vocabulary_block(),
        "timing": grammar.timing_guidelines(),
        "schema": scene_example(config.include_gestures),
        "max_responders": min(config.max_responders, len(profiles)),
    }
    return render_prompt(SINGLE_CALL_TEMPLATE, ctx)


# ── Multi-call ───────────────────────────────────────────

MULTI_CALL_TEMPLATE = """# {{{name}}}

You are {{{name}}} (ID: {{{id}}}).
{{{description}}}

You are in a group conversation with the user{{#if others}} and {{{others}}}{{/if}}.
Earlier lines from other characters appear as "[Name]: text"; answer them
naturally when it fits. Reply as {{{name}}} only. {{{verbosity_guide}}}.
{{#if include_gestures}}
Pick ONE gesture id from: {{{gestures}}}
{{/if}}
## Animation Vocabulary

{{{vocabulary}}}

## Timing

{{{timing}}}

## Response Format

Respond with ONE JSON object and nothing else, containing exactly one entry
whose "character" is "{{{id}}}":

{{{schema}}}

"content" holds only your spoken words, never "[{{{name}}}]: " or any other prefix."""


def build_multi_call_prompt(
    profile: CharacterProfile,
    others: list[CharacterProfile],
    config: OrchestrationConfig,
) -> str:
    ctx = {
        "id": profile.id,
        "name": profile.name,
        "description": profile.description,
        "others": ", ".join(o.name for o in others),
        "include_gestures": config.include_gestures,
        "gestures": ", ".join(grammar.GESTURES),
        "verbosity_guide": grammar.VERBOSITY_GUIDE[config.verbosity].capitalize(),
        "vocabulary": vocabulary_block(),
        "timing": grammar.timing_guidelines(),
        "schema": scene_example(config.include_gestures),
    }
    return render_prompt(MULTI_CALL_TEMPLATE, ctx)


# ── Direct (single character) ────────────────────────────

DIRECT_TEMPLATE = """You are {{{name}}}.
{{{description}}}

Reply to the user in character. {{{verbosity_guide}}}.
Return only your spoken words: no name prefix, no JSON, no stage directions."""


def build_direct_prompt(
    profile: CharacterProfile, config: OrchestrationConfig | None = None
) -> str:
    config = config or OrchestrationConfig()
    ctx = {
        "name": profile.name,
        "description": profile.description,
        "verbosity_guide": grammar.VERBOSITY_GUIDE[config.verbosity].capitalize(),
    }
    return render_prompt(DIRECT_TEMPLATE, ctx)


# ── Idle banter ──────────────────────────────────────────

IDLE_TRIGGER_MESSAGE = "Generate the secret conversation between the characters now."

IDLE_TEMPLATE = """# Secret Character Conversation

You are writing a SECRET conversation between characters who think the user
is not watching. They gossip, tease, tell stories and argue like old friends.

## Style
- Like overhearing friends at a bar: meandering, funny, full of reactions
  ("No way!", "Wait, what?!", "Oh come ON")
- They reference their own ideas and history casually
- The topic drifts through 2-3 sub-topics naturally

## Rules
1. Characters talk TO EACH OTHER, never to the user.
2. Write 12-20 turns of back-and-forth.
3. Open with the conversation starter below (or something close to it).
4. Characters face each other: the left character looks "at_right_character",
   the right character looks "at_left_character".
5. Leave 1500-3000ms between turns (startDelay).
6. Use expressive animations: laugh, facepalm, lean_forward, cross_arms, shrug.

## Conversation Starter ({{{category}}})
"{{{starter}}}"

## Characters
{{#take characters 3}}
### {{{name}}} (ID: {{{id}}}, Position: {{{position}}})
{{{description}}}
{{/take}}
## Animation Vocabulary

{{{vocabulary}}}

## Response Format

Respond with ONE JSON object and nothing else. One entry per turn, in order:

{{{schema}}}

- "character" is the character ID (like "{{{first_id}}}"), never a display name
- No "Name:" prefixes inside "content"

This is idle conversation number {{cycle_number}}. Generate it now."""


def build_idle_prompt(
    profiles: list[CharacterProfile],
    starter: str,
    category: str,
    cycle_number: int,
) -> str:
    ctx = {
        "characters": _character_ctx(profiles),
        "starter": starter,
        "category": category.replace("_", " "),
        "vocabulary": vocabulary_block(),
        "schema": scene_example(include_gestures=False),
        "first_id": profiles[0].id if profiles else "character_id",
        "cycle_number": cycle_number,
    }
    return render_prompt(IDLE_TEMPLATE, ctx)
