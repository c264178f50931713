"""Tests for chorus.models."""

import pytest
from pydantic import ValidationError

from chorus.models import (
    AnimationSegment,
    CharacterProfile,
    CharacterTimeline,
    ConversationMessage,
    HybridConfig,
    OrchestrationConfig,
    Scene,
)


def _seg(duration: int, **kw) -> AnimationSegment:
    return AnimationSegment(duration=duration, **kw)


class TestCharacterProfile:
    def test_defaults(self) -> None:
        p = CharacterProfile(id="jung", name="Carl Jung")
        assert p.position_hint == "center"
        assert p.description == ""

    def test_frozen(self) -> None:
        p = CharacterProfile(id="jung", name="Carl Jung")
        with pytest.raises(ValidationError):
            p.name = "Someone else"

    def test_invalid_position_rejected(self) -> None:
        with pytest.raises(ValidationError):
            CharacterProfile(id="x", name="X", position_hint="top")


class TestConversationMessage:
    def test_ids_are_unique(self) -> None:
        a = ConversationMessage(role="user", content="hi")
        b = ConversationMessage(role="user", content="hi")
        assert a.id != b.id

    def test_invalid_role_rejected(self) -> None:
        with pytest.raises(ValidationError):
            ConversationMessage(role="narrator", content="x")

    def test_serialise_roundtrip(self) -> None:
        m = ConversationMessage(role="assistant", content="Hm.", character_id="freud")
        restored = ConversationMessage.model_validate(m.model_dump())
        assert restored == m


class TestAnimationSegment:
    def test_duration_must_be_positive(self) -> None:
        with pytest.raises(ValidationError):
            _seg(0)

    def test_unknown_animation_rejected(self) -> None:
        with pytest.raises(ValidationError):
            AnimationSegment(animation="moonwalk", duration=500)


class TestCharacterTimeline:
    def test_total_duration_is_sum_of_segments(self) -> None:
        t = CharacterTimeline(
            character_id="jung", content="Hello", segments=[_seg(500), _seg(1200), _seg(300)],
        )
        assert t.total_duration == 2000
        assert t.end == 2000

    def test_end_includes_start_delay(self) -> None:
        t = CharacterTimeline(character_id="jung", content="x", start_delay=700, segments=[_seg(300)])
        assert t.end == 1000

    def test_total_duration_serialised(self) -> None:
        t = CharacterTimeline(character_id="jung", content="x", segments=[_seg(300), _seg(400)])
        assert t.model_dump()["total_duration"] == 700

    def test_text_range_clamped_to_content(self) -> None:
        t = CharacterTimeline(
            character_id="jung",
            content="Short",
            segments=[_seg(500, is_talking=True, text_range=(2, 99))],
        )
        assert t.segments[0].text_range == (2, 5)

    def test_negative_start_delay_rejected(self) -> None:
        with pytest.raises(ValidationError):
            CharacterTimeline(character_id="jung", content="x", start_delay=-1, segments=[_seg(300)])


class TestScene:
    def test_speakers_in_order_of_first_appearance(self) -> None:
        scene = Scene(timelines=[
            CharacterTimeline(character_id="jung", content="a", segments=[_seg(300)]),
            CharacterTimeline(character_id="freud", content="b", segments=[_seg(300)]),
            CharacterTimeline(character_id="jung", content="c", segments=[_seg(300)]),
        ])
        assert scene.speakers() == ["jung", "freud"]


class TestOrchestrationConfig:
    def test_defaults(self) -> None:
        c = OrchestrationConfig()
        assert c.max_responders == 3
        assert c.include_gestures is True
        assert c.include_interruptions is True
        assert c.verbosity == "balanced"

    def test_merged_is_shallow_override(self) -> None:
        c = OrchestrationConfig().merged({"verbosity": "brief"})
        assert c.verbosity == "brief"
        assert c.max_responders == 3

    def test_merged_validates(self) -> None:
        with pytest.raises(ValidationError):
            OrchestrationConfig().merged({"max_responders": 7})

    def test_merged_without_overrides_returns_self(self) -> None:
        c = OrchestrationConfig()
        assert c.merged(None) is c


class TestHybridConfig:
    def test_defaults(self) -> None:
        c = HybridConfig()
        assert c.default_mode == "single-call"
        assert c.enable_fallback is True
        assert c.enable_performance_tracking is True

    def test_merged_nested_orchestration(self) -> None:
        c = HybridConfig().merged({"default_mode": "auto", "orchestration": {"max_responders": 2}})
        assert c.default_mode == "auto"
        assert c.orchestration.max_responders == 2
        assert c.orchestration.verbosity == "balanced"

    def test_invalid_mode_rejected(self) -> None:
        with pytest.raises(ValidationError):
            HybridConfig().merged({"default_mode": "parallel"})
