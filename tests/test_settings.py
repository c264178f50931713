"""Tests for chorus.settings — env loading and the settings store."""

import json
import os

import pytest
from pydantic import ValidationError

from chorus.settings import InMemorySettingsStore, Settings, load_settings


class TestSettings:
    def test_temperature_default(self) -> None:
        assert Settings().temperature == 0.1

    @pytest.mark.parametrize("value,expected", [(-1.0, 0.0), (0.5, 0.5), (5.0, 2.0)])
    def test_temperature_clamped(self, value: float, expected: float) -> None:
        assert Settings(temperature=value).temperature == expected

    def test_invalid_mode_rejected(self) -> None:
        with pytest.raises(ValidationError):
            Settings(default_mode="sometimes")


class TestLoadSettings:
    def test_reads_environment(self, monkeypatch, tmp_path) -> None:
        monkeypatch.setenv("LLM_PROVIDER_URL", "http://gen:7000")
        monkeypatch.setenv("LLM_TEMPERATURE", "0.9")
        monkeypatch.setenv("ORCHESTRATION_MODE", "auto")
        monkeypatch.setenv("ORCHESTRATION_FALLBACK", "false")
        s = load_settings(tmp_path / "missing.env")
        assert s.provider_url == "http://gen:7000"
        assert s.temperature == 0.9
        assert s.default_mode == "auto"
        assert s.enable_fallback is False

    def test_reads_env_file(self, monkeypatch, tmp_path) -> None:
        monkeypatch.delenv("LLM_MODEL", raising=False)
        env = tmp_path / ".env"
        env.write_text("LLM_MODEL=tiny-llama\n")
        try:
            assert load_settings(env).model == "tiny-llama"
        finally:
            os.environ.pop("LLM_MODEL", None)

    def test_empty_values_ignored(self, monkeypatch, tmp_path) -> None:
        monkeypatch.setenv("LLM_MAX_TOKENS", "")
        assert load_settings(tmp_path / "missing.env").max_tokens == 1500


class TestInMemorySettingsStore:
    def test_get_and_set(self) -> None:
        store = InMemorySettingsStore()
        store.set("temperature", 0.4)
        assert store.get("temperature") == 0.4

    def test_set_clamps_temperature(self) -> None:
        store = InMemorySettingsStore()
        store.set("temperature", 3.5)
        assert store.get("temperature") == 2.0

    def test_unknown_key_raises(self) -> None:
        store = InMemorySettingsStore()
        with pytest.raises(KeyError):
            store.get("colour")
        with pytest.raises(KeyError):
            store.update({"colour": "red"})

    def test_invalid_value_rejected_and_state_kept(self) -> None:
        store = InMemorySettingsStore()
        with pytest.raises(ValidationError):
            store.set("default_mode", "sometimes")
        assert store.get("default_mode") == "single-call"

    def test_reset_restores_initial(self) -> None:
        store = InMemorySettingsStore(Settings(model="a"))
        store.set("model", "b")
        store.reset()
        assert store.get("model") == "a"

    def test_persists_to_json(self, tmp_path) -> None:
        path = tmp_path / "settings.json"
        store = InMemorySettingsStore(path=path)
        store.update({"temperature": 0.8, "default_mode": "auto"})
        stored = json.loads(path.read_text())
        assert stored["temperature"] == 0.8
        assert stored["default_mode"] == "auto"

    def test_loads_persisted_values_over_defaults(self, tmp_path) -> None:
        path = tmp_path / "settings.json"
        path.write_text(json.dumps({"temperature": 1.5}))
        store = InMemorySettingsStore(Settings(model="m"), path=path)
        assert store.get("temperature") == 1.5
        assert store.get("model") == "m"
