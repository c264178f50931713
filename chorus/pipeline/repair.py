"""Text repair passes applied to raw generator output before JSON decoding.

Each pass is `str -> str | None`; None means "nothing to change". Passes are
independent and composed left to right by repair().
"""

from __future__ import annotations

import logging
import re
from collections.abc import Callable, Sequence

logger = logging.getLogger(__name__)

RepairPass = Callable[[str], "str | None"]

_FENCE_RE = re.compile(r"```[a-zA-Z0-9_-]*\s*\n?(.*?)```", re.DOTALL)


def strip_fences(text: str) -> str | None:
    """Return the body of the first markdown code fence, if any."""
    match = _FENCE_RE.search(text)
    if match:
        return match.group(1).strip()
    # Unterminated fence: drop the opening line
    stripped = text.lstrip()
    if stripped.startswith("```"):
        _, _, rest = stripped.partition("\n")
        return rest.strip()
    return None


def trim_to_object(text: str) -> str | None:
    """Cut leading and trailing prose: keep first '{' through last '}'."""
    start = text.find("{")
    end = text.rfind("}")
    if start == -1 or end <= start:
        return None
    if start == 0 and end == len(text) - 1:
        return None
    return text[start:end + 1]


DEFAULT_PASSES: tuple[RepairPass, ...] = (strip_fences, trim_to_object)


def repair(text: str, passes: Sequence[RepairPass] = DEFAULT_PASSES) -> str:
    """Run every pass in order, feeding each the previous result."""
    current = text.strip()
    for p in passes:
        changed = p(current)
        if changed is not None:
            logger.debug("repair pass %s applied (len %d → %d)", p.__name__, len(current), len(changed))
            current = changed
    return current
