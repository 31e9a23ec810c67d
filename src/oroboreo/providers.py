"""Provider configuration resolver.

Exactly one credential mode is active per invocation. Every component that
spawns the agent goes through :func:`build_agent_env`, which strips all
provider variables before setting the active mode's ones.
"""

from __future__ import annotations

import os
from collections.abc import Mapping
from dataclasses import dataclass

from oroboreo.config import PreconditionError
from oroboreo.models import ALIAS_MODELS, BEDROCK_MODELS, ModelSpec, Tier

PROVIDER_ENV_VARS = (
    "CLAUDE_CODE_USE_BEDROCK",
    "AWS_ACCESS_KEY_ID",
    "AWS_SECRET_ACCESS_KEY",
    "AWS_REGION",
    "ANTHROPIC_API_KEY",
    "ANTHROPIC_MODEL",
)
DEFAULT_REGION = "us-east-1"


class ProviderConfigError(PreconditionError):
    """Raised when the selected provider is unknown or lacks credentials."""


@dataclass(frozen=True, slots=True)
class BedrockProvider:
    access_key_id: str
    secret_access_key: str
    region: str = DEFAULT_REGION
    name: str = "bedrock"

    def __repr__(self) -> str:
        return f"BedrockProvider(region={self.region!r})"


@dataclass(frozen=True, slots=True)
class AnthropicProvider:
    api_key: str
    name: str = "anthropic"

    def __repr__(self) -> str:
        return "AnthropicProvider()"


@dataclass(frozen=True, slots=True)
class SubscriptionProvider:
    name: str = "subscription"


ProviderConfig = BedrockProvider | AnthropicProvider | SubscriptionProvider


def resolve_provider(environ: Mapping[str, str] | None = None) -> ProviderConfig:
    env = os.environ if environ is None else environ
    provider = (env.get("AI_PROVIDER") or "subscription").strip().lower()
    if provider == "bedrock":
        access_key = env.get("AWS_ACCESS_KEY_ID", "").strip()
        if not access_key:
            raise ProviderConfigError("AWS_ACCESS_KEY_ID not set! Please configure oroboreo/.env")
        return BedrockProvider(
            access_key_id=access_key,
            secret_access_key=env.get("AWS_SECRET_ACCESS_KEY", ""),
            region=env.get("AWS_REGION", "").strip() or DEFAULT_REGION,
        )
    if provider == "anthropic":
        api_key = env.get("ANTHROPIC_API_KEY", "").strip()
        if not api_key:
            raise ProviderConfigError("ANTHROPIC_API_KEY not set! Please configure oroboreo/.env")
        return AnthropicProvider(api_key=api_key)
    if provider == "subscription":
        return SubscriptionProvider()
    raise ProviderConfigError(
        f"Invalid AI_PROVIDER: {provider}. Valid options: bedrock, anthropic, subscription"
    )


def model_catalog(provider: ProviderConfig) -> dict[Tier, ModelSpec]:
    if isinstance(provider, BedrockProvider):
        return BEDROCK_MODELS
    return ALIAS_MODELS


def model_for(provider: ProviderConfig, tier: Tier) -> ModelSpec:
    return model_catalog(provider)[tier]


def build_agent_env(
    base: Mapping[str, str],
    provider: ProviderConfig,
    model: ModelSpec,
) -> dict[str, str]:
    env = dict(base)
    for name in PROVIDER_ENV_VARS:
        env.pop(name, None)

    env["CLAUDE_CODE_MAX_OUTPUT_TOKENS"] = str(model.max_output or 20000)
    env["CLAUDE_CODE_MAX_THINKING_TOKENS"] = str(model.max_thinking or 0)
    env["OREO_AGENT_MODEL"] = model.id
    env["FORCE_COLOR"] = "1"

    if isinstance(provider, BedrockProvider):
        env["CLAUDE_CODE_USE_BEDROCK"] = "1"
        env["ANTHROPIC_MODEL"] = model.id
        env["AWS_REGION"] = provider.region
        env["AWS_ACCESS_KEY_ID"] = provider.access_key_id
        env["AWS_SECRET_ACCESS_KEY"] = provider.secret_access_key
    elif isinstance(provider, AnthropicProvider):
        env["ANTHROPIC_API_KEY"] = provider.api_key
    return env
