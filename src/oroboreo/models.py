from __future__ import annotations

from dataclasses import dataclass
from enum import StrEnum


class Tier(StrEnum):
    CHEAP = "cheap"
    STANDARD = "standard"
    PREMIUM = "premium"


@dataclass(frozen=True, slots=True)
class ModelSpec:
    tier: Tier
    id: str
    name: str
    input_cost: float
    output_cost: float
    max_output: int
    max_thinking: int = 0


BEDROCK_MODELS: dict[Tier, ModelSpec] = {
    Tier.PREMIUM: ModelSpec(
        tier=Tier.PREMIUM,
        id="us.anthropic.claude-opus-4-5-20251101-v1:0",
        name="Claude Opus 4.5",
        input_cost=5.0,
        output_cost=25.0,
        max_output=100000,
        max_thinking=32000,
    ),
    Tier.STANDARD: ModelSpec(
        tier=Tier.STANDARD,
        id="us.anthropic.claude-sonnet-4-5-20250929-v1:0",
        name="Claude Sonnet 4.5",
        input_cost=3.0,
        output_cost=15.0,
        max_output=20000,
    ),
    Tier.CHEAP: ModelSpec(
        tier=Tier.CHEAP,
        id="us.anthropic.claude-haiku-4-5-20251001-v1:0",
        name="Claude Haiku 4.5",
        input_cost=1.0,
        output_cost=5.0,
        max_output=8192,
    ),
}

# Aliases resolve to the latest model on the Anthropic API and subscriptions.
ALIAS_MODELS: dict[Tier, ModelSpec] = {
    Tier.PREMIUM: ModelSpec(
        tier=Tier.PREMIUM,
        id="opus-4-5",
        name="Claude Opus 4.5",
        input_cost=5.0,
        output_cost=25.0,
        max_output=100000,
        max_thinking=32000,
    ),
    Tier.STANDARD: ModelSpec(
        tier=Tier.STANDARD,
        id="sonnet-4-5",
        name="Claude Sonnet 4.5",
        input_cost=3.0,
        output_cost=15.0,
        max_output=20000,
    ),
    Tier.CHEAP: ModelSpec(
        tier=Tier.CHEAP,
        id="haiku-4-5",
        name="Claude Haiku 4.5",
        input_cost=1.0,
        output_cost=5.0,
        max_output=8192,
    ),
}
