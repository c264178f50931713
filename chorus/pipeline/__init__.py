"""Scene orchestration pipeline.

Live turn:
  1. ResponderSelector picks who answers (1-3 of the selected characters).
  2. OrchestrationRouter picks a strategy (single-call, multi-call or auto).
  3. The strategy builds prompt(s) and calls the generation backend.
  4. ResponseParser turns the raw text into a Scene (repair → JSON → resolve
     characters → validate vocabularies → clamp durations).
  5. The InvariantEnforcer fills gaps so every character is animated for the
     whole scene.
  6. On strategy failure the router retries once with the other strategy;
     only a double failure surfaces (OrchestrationError).

Idle time:
  IdleOrchestrator generates character-to-character banter scenes,
  IdleAnimationScheduler runs per-character micro-animation timers and
  IdleConversationManager decides when banter may start.
"""

from .enforcer import coverage_gaps, enforce  # noqa: F401
from .idle import (  # noqa: F401
    IdleAnimationScheduler,
    IdleConversationManager,
    IdleOrchestrator,
)
from .metrics import PerformanceTracker  # noqa: F401
from .parser import ResponseParser, default_timeline, fallback_scene  # noqa: F401
from .responders import ResponderSelector  # noqa: F401
from .router import OrchestrationRouter  # noqa: F401
from .strategies import MultiCallStrategy, SingleCallStrategy, Strategy  # noqa: F401
