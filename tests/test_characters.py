"""Tests for chorus.characters — registry lookups and stage positions."""

import json

import pytest

from chorus.characters import CharacterRegistry, position_for, positions_for
from chorus.errors import CharacterNotFound, ChorusError


class TestPositions:
    def test_single_character_is_center(self) -> None:
        assert position_for(0, 1) == "center"

    def test_two_characters(self) -> None:
        assert positions_for(["a", "b"]) == {"a": "left", "b": "right"}

    def test_middle_characters_are_center(self) -> None:
        assert positions_for(["a", "b", "c", "d"]) == {
            "a": "left", "b": "center", "c": "center", "d": "right",
        }


class TestCharacterRegistry:
    def test_default_cast(self, registry: CharacterRegistry) -> None:
        assert "freud" in registry
        assert "jung" in registry
        assert registry.get("jung").name == "Carl Jung"

    def test_get_unknown_raises(self, registry: CharacterRegistry) -> None:
        with pytest.raises(CharacterNotFound) as exc:
            registry.get("nietzsche")
        assert exc.value.character_id == "nietzsche"
        assert "nietzsche" in str(exc.value)

    def test_not_found_is_key_error_and_chorus_error(self, registry: CharacterRegistry) -> None:
        with pytest.raises(KeyError):
            registry.get("nobody")
        with pytest.raises(ChorusError):
            registry.get("nobody")

    def test_get_or_default_placeholder(self, registry: CharacterRegistry) -> None:
        p = registry.get_or_default("marie_curie")
        assert p.id == "marie_curie"
        assert p.name == "Marie Curie"

    def test_names(self, registry: CharacterRegistry) -> None:
        assert registry.names(["freud", "jung"]) == {"freud": "Sigmund Freud", "jung": "Carl Jung"}

    def test_profiles_for_assigns_positions(self, registry: CharacterRegistry) -> None:
        profiles = registry.profiles_for(["jung", "socrates", "freud"])
        assert [p.position_hint for p in profiles] == ["left", "center", "right"]
        # registry entries stay untouched
        assert registry.get("jung").position_hint == "center"

    def test_add_upserts(self) -> None:
        reg = CharacterRegistry.from_dicts([{"id": "a", "name": "A"}])
        reg.add(reg.get("a").model_copy(update={"name": "Alpha"}))
        assert len(reg) == 1
        assert reg.get("a").name == "Alpha"

    def test_from_json(self, tmp_path) -> None:
        path = tmp_path / "cast.json"
        path.write_text(json.dumps([
            {"id": "ada", "name": "Ada Lovelace", "description": "Poetical scientist."},
        ]))
        reg = CharacterRegistry.from_json(path)
        assert [p.id for p in reg.all()] == ["ada"]
