from __future__ import annotations

from oroboreo.models import Tier
from oroboreo.tasks import Task

CHEAP_MARKER = "[simple]"
STANDARD_MARKERS = ("[complex]", "[critical]")
COMPLEX_KEYWORDS = (
    "architecture",
    "refactor",
    "database",
    "migration",
    "schema",
    "design",
    "plan",
    "implement",
    "build",
    "api",
    "security",
    "critical",
)


def select_tier_for_text(text: str) -> Tier:
    """Pick a tier for free text. Absent any signal the cheapest tier wins.

    Premium is never chosen here; it is reserved for planning flows.
    """
    lowered = text.lower()
    if CHEAP_MARKER in lowered:
        return Tier.CHEAP
    if any(marker in lowered for marker in STANDARD_MARKERS):
        return Tier.STANDARD
    if any(keyword in lowered for keyword in COMPLEX_KEYWORDS):
        return Tier.STANDARD
    return Tier.CHEAP


def select_tier(task: Task) -> Tier:
    return select_tier_for_text(task.text)
