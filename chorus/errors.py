"""Exception hierarchy.

Lower layers (parser, enforcer) never raise for data-quality problems; they
log and degrade. Only exhaustion surfaces as an exception:

    ChorusError
      LLMError            — backend unreachable or returned garbage
      StrategyError       — one strategy attempt failed
        SceneParseError   — generator output had no usable scene
      OrchestrationError  — primary and fallback strategies both failed
      CharacterNotFound   — registry lookup for an unknown id
"""

from __future__ import annotations


class ChorusError(Exception):
    """Base class for every error raised by this package."""


class LLMError(ChorusError, RuntimeError):
    """Raised when the generation backend cannot be reached or returns an error."""


class StrategyError(ChorusError):
    """Raised when a single strategy attempt cannot produce a scene."""

    def __init__(self, mode: str, message: str) -> None:
        super().__init__(f"{mode} orchestration failed: {message}")
        self.mode = mode


class SceneParseError(StrategyError):
    """Raised when generator output could not be parsed into a scene."""


class OrchestrationError(ChorusError):
    """Raised when both the primary and the fallback strategy failed."""

    def __init__(self, primary_error: Exception, fallback_error: Exception) -> None:
        super().__init__(
            "Both strategies failed. "
            f"Primary: {primary_error}. Fallback: {fallback_error}"
        )
        self.primary_error = primary_error
        self.fallback_error = fallback_error


class CharacterNotFound(ChorusError, KeyError):
    """Raised by the character registry for an unknown id."""

    def __init__(self, character_id: str) -> None:
        super().__init__(character_id)
        self.character_id = character_id

    def __str__(self) -> str:
        return f"Unknown character: {self.character_id!r}"
