"""Tests for SingleCallStrategy and MultiCallStrategy."""

import json
import random

import pytest

from chorus.errors import LLMError, SceneParseError, StrategyError
from chorus.models import ConversationMessage, OrchestrationConfig
from chorus.pipeline.strategies import MultiCallStrategy, SingleCallStrategy, cap_characters


def build_scene_json(*entries):
    return json.dumps({"scene": {"characters": list(entries)}})


HISTORY = [
    ConversationMessage(role="user", content="Hello"),
    ConversationMessage(role="assistant", content="Welcome.", character_id="freud"),
]


def _entry(cid, content, **kw):
    return {"character": cid, "content": content, **kw}


# ── SingleCallStrategy ───────────────────────────────────────


class TestSingleCallStrategy:
    async def test_scene_from_one_call(self, stub_llm, registry):
        llm = stub_llm(build_scene_json(
            _entry("freud", "The id wants.", startDelay=0),
            _entry("jung", "The self integrates.", startDelay=4000, interrupts=True),
        ))
        strategy = SingleCallStrategy(llm, registry)
        scene = await strategy.run("What drives us?", ["freud", "jung"], HISTORY, OrchestrationConfig())

        assert [t.character_id for t in scene.timelines] == ["freud", "jung"]
        assert scene.timelines[1].interrupts is True
        call = llm.calls[0]
        assert call["caller_id"] == "orchestrator"
        assert "Sigmund Freud (ID: freud" in call["system_prompt"]
        assert call["messages"][-1] == {"role": "user", "content": "What drives us?"}
        assert call["messages"][1]["content"] == "[Sigmund Freud]: Welcome."

    async def test_history_not_mutated(self, stub_llm, registry):
        history = list(HISTORY)
        llm = stub_llm(build_scene_json(_entry("freud", "Yes."), _entry("jung", "No.")))
        await SingleCallStrategy(llm, registry).run("Q", ["freud", "jung"], history, OrchestrationConfig())
        assert history == HISTORY

    async def test_selection_and_history_names_in_prompt(self, stub_llm, registry):
        history = [
            ConversationMessage(role="assistant", content="Courage!", character_id="adler"),
            ConversationMessage(role="assistant", content="Hm.", character_id="socrates"),
        ]
        llm = stub_llm(build_scene_json(_entry("freud", "A."), _entry("jung", "B.")))
        await SingleCallStrategy(llm, registry).run(
            "Q", ["freud", "jung"], history, OrchestrationConfig(),
            selected_ids=["freud", "jung", "socrates"],
        )
        call = llm.calls[0]
        assert "Alfred Adler no longer participates" in call["system_prompt"]
        assert "Socrates no longer participates" not in call["system_prompt"]
        assert call["messages"][0]["content"] == "[Alfred Adler]: Courage!"

    async def test_llm_error_becomes_strategy_error(self, stub_llm, registry):
        strategy = SingleCallStrategy(stub_llm(LLMError("connection refused")), registry)
        with pytest.raises(StrategyError) as exc:
            await strategy.run("Q", ["freud", "jung"], [], OrchestrationConfig())
        assert exc.value.mode == "single-call"
        assert "connection refused" in str(exc.value)

    async def test_unparseable_output(self, stub_llm, registry):
        strategy = SingleCallStrategy(stub_llm("I would rather not."), registry)
        with pytest.raises(SceneParseError):
            await strategy.run("Q", ["freud", "jung"], [], OrchestrationConfig())

    async def test_interruptions_disabled(self, stub_llm, registry):
        llm = stub_llm(build_scene_json(
            _entry("freud", "A."), _entry("jung", "B.", interrupts=True),
        ))
        scene = await SingleCallStrategy(llm, registry).run(
            "Q", ["freud", "jung"], [], OrchestrationConfig(include_interruptions=False),
        )
        assert not any(t.interrupts for t in scene.timelines)

    async def test_capped_to_max_responders(self, stub_llm, registry):
        llm = stub_llm(build_scene_json(
            _entry("freud", "A."), _entry("jung", "B."), _entry("socrates", "C."),
        ))
        scene = await SingleCallStrategy(llm, registry).run(
            "Q", ["freud", "jung", "socrates"], [], OrchestrationConfig(max_responders=2),
        )
        assert scene.speakers() == ["freud", "jung"]


class TestCapCharacters:
    async def test_under_limit_returns_same_scene(self, stub_llm, registry):
        llm = stub_llm(build_scene_json(_entry("freud", "A."), _entry("jung", "B.")))
        scene = await SingleCallStrategy(llm, registry).run("Q", ["freud", "jung"], [], OrchestrationConfig())
        assert cap_characters(scene, 3) is scene


# ── MultiCallStrategy ────────────────────────────────────────


def _single(cid, content):
    return build_scene_json(_entry(cid, content, timeline=[
        {"animation": "talking", "duration": 1200, "talking": True},
    ]))


class TestMultiCallStrategy:
    async def test_sequential_calls_see_previous_lines(self, stub_llm, registry, fake_sleep):
        llm = stub_llm(_single("freud", "First."), _single("jung", "Second."))
        strategy = MultiCallStrategy(llm, registry, rng=random.Random(0), sleep=fake_sleep)
        scene = await strategy.run("Q", ["freud", "jung"], HISTORY, OrchestrationConfig())

        assert llm.caller_ids == ["freud", "jung"]
        assert llm.calls[1]["messages"][-1] == {"role": "assistant", "content": "[Sigmund Freud]: First."}
        assert "You are Carl Jung (ID: jung)" in llm.calls[1]["system_prompt"]

        freud, jung = scene.timelines
        assert freud.start_delay == 0
        assert jung.start_delay == freud.end + 500
        assert jung.reacts_to == "freud"
        assert scene.scene_duration == jung.end

    async def test_pauses_between_replies(self, stub_llm, registry, fake_sleep):
        llm = stub_llm(_single("freud", "A."), _single("jung", "B."), _single("socrates", "C."))
        strategy = MultiCallStrategy(llm, registry, rng=random.Random(0), sleep=fake_sleep)
        await strategy.run("Q", ["freud", "jung", "socrates"], [], OrchestrationConfig())
        assert len(fake_sleep.delays) == 2
        assert all(0.5 <= d <= 2.0 for d in fake_sleep.delays)

    async def test_plain_text_reply_gets_default_timeline(self, stub_llm, registry, fake_sleep):
        llm = stub_llm("[Sigmund Freud]: Just words.", _single("jung", "B."))
        scene = await MultiCallStrategy(llm, registry, sleep=fake_sleep).run(
            "Q", ["freud", "jung"], [], OrchestrationConfig(),
        )
        freud = scene.timelines[0]
        assert freud.content == "Just words."
        assert [s.animation for s in freud.segments] == ["thinking", "talking", "idle"]

    async def test_truncated_json_never_spoken(self, stub_llm, registry, fake_sleep):
        llm = stub_llm(
            '{"scene": {"characters": [{"character": "freud", "content": "Hel',
            "Jung here.",
        )
        scene = await MultiCallStrategy(llm, registry, sleep=fake_sleep).run(
            "Q", ["freud", "jung"], [], OrchestrationConfig(),
        )
        assert scene.speakers() == ["jung"]
        assert scene.timelines[0].content == "Jung here."
        assert not any("{" in t.content for t in scene.timelines)

    async def test_only_broken_json_raises(self, stub_llm, registry, fake_sleep):
        llm = stub_llm("```json\n{\"scene\": ", '{"character": "jung"')
        with pytest.raises(StrategyError) as exc:
            await MultiCallStrategy(llm, registry, sleep=fake_sleep).run(
                "Q", ["freud", "jung"], [], OrchestrationConfig(),
            )
        assert "freud: unusable reply" in str(exc.value)

    async def test_failed_character_skipped(self, stub_llm, registry, fake_sleep):
        llm = stub_llm(LLMError("timeout"), _single("jung", "Still here."))
        scene = await MultiCallStrategy(llm, registry, sleep=fake_sleep).run(
            "Q", ["freud", "jung"], [], OrchestrationConfig(),
        )
        assert scene.speakers() == ["jung"]
        assert scene.timelines[0].start_delay == 0
        assert scene.timelines[0].reacts_to is None
        assert fake_sleep.delays == []

    async def test_all_failed_raises(self, stub_llm, registry, fake_sleep):
        llm = stub_llm(LLMError("down"), "   ")
        with pytest.raises(StrategyError) as exc:
            await MultiCallStrategy(llm, registry, sleep=fake_sleep).run(
                "Q", ["freud", "jung"], [], OrchestrationConfig(),
            )
        assert exc.value.mode == "multi-call"
        assert "freud: " in str(exc.value)

    async def test_respects_max_responders(self, stub_llm, registry, fake_sleep):
        llm = stub_llm(_single("freud", "A."))
        scene = await MultiCallStrategy(llm, registry, sleep=fake_sleep).run(
            "Q", ["freud", "jung", "socrates"], [], OrchestrationConfig(max_responders=1),
        )
        assert llm.caller_ids == ["freud"]
        assert scene.speakers() == ["freud"]

    async def test_gestures_dropped_when_disabled(self, stub_llm, registry, fake_sleep):
        llm = stub_llm(
            build_scene_json(_entry("freud", "A.", gesture="open_palms")),
            build_scene_json(_entry("jung", "B.", gesture="gentle_smile")),
        )
        scene = await MultiCallStrategy(llm, registry, sleep=fake_sleep).run(
            "Q", ["freud", "jung"], [], OrchestrationConfig(include_gestures=False),
        )
        assert [t.gesture for t in scene.timelines] == [None, None]
