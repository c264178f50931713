import asyncio
import json
import random

import pytest

from chorus.characters import CharacterRegistry


class StubLLM:
    """Scripted LLM: returns queued replies in order, records every call.

    A queued item may be a string (returned), an exception (raised) or a
    callable (messages, system_prompt, caller_id) -> str.
    """

    def __init__(self, *responses, default: str = ""):
        self.responses = list(responses)
        self.default = default
        self.calls: list[dict] = []

    async def __call__(self, messages, system_prompt=None, caller_id=None):
        self.calls.append({
            "messages": [dict(m) for m in messages],
            "system_prompt": system_prompt,
            "caller_id": caller_id,
        })
        if not self.responses:
            return self.default
        item = self.responses.pop(0)
        if isinstance(item, BaseException):
            raise item
        if callable(item):
            return item(messages, system_prompt, caller_id)
        return item

    @property
    def caller_ids(self) -> list[str | None]:
        return [c["caller_id"] for c in self.calls]


def build_scene_json(*entries: dict, **extra) -> str:
    """Canonical scene JSON with the given character entries."""
    return json.dumps({"scene": {"characters": list(entries)}, **extra})


@pytest.fixture
def stub_llm():
    """Factory: stub_llm("reply 1", LLMError("x"), ...) → StubLLM."""
    return StubLLM


@pytest.fixture
def scene_json():
    return build_scene_json


@pytest.fixture
def registry() -> CharacterRegistry:
    return CharacterRegistry.default()


@pytest.fixture
def rng() -> random.Random:
    return random.Random(1234)


@pytest.fixture
def fake_sleep():
    """Sleep replacement that records requested delays and only yields."""
    delays: list[float] = []

    async def sleep(seconds: float) -> None:
        delays.append(seconds)
        await asyncio.sleep(0)

    sleep.delays = delays
    return sleep


@pytest.fixture
def frozen_sleep():
    """Sleep that records the delay and never returns (until cancelled)."""
    delays: list[float] = []

    async def sleep(seconds: float) -> None:
        delays.append(seconds)
        await asyncio.Event().wait()

    sleep.delays = delays
    return sleep
