from __future__ import annotations

from dataclasses import dataclass

from chat.llm_client import ReasoningConfig

THINKING_LEVELS = ("low", "medium", "high", "xhigh")

# Anthropic models take an explicit reasoning token budget instead of an effort level.
BUDGET_MODEL_PREFIX = "anthropic/"
THINKING_BUDGETS: dict[str, int] = {
    "low": 8192,
    "medium": 16384,
    "high": 32768,
    "xhigh": 65536,
}
BUDGET_HEADROOM_TOKENS = 1024


@dataclass(frozen=True)
class ThinkingConfig:
    reasoning: ReasoningConfig | None = None
    max_output_tokens: int | None = None


def resolve_thinking_config(
    *,
    model_id: str,
    supports_thinking_levels: bool,
    thinking_level: str | None,
) -> ThinkingConfig:
    if not thinking_level or not supports_thinking_levels:
        return ThinkingConfig()

    if model_id.startswith(BUDGET_MODEL_PREFIX):
        budget = THINKING_BUDGETS.get(thinking_level)
        if budget is None:
            return ThinkingConfig()
        return ThinkingConfig(
            reasoning=ReasoningConfig(max_tokens=budget),
            max_output_tokens=budget + BUDGET_HEADROOM_TOKENS,
        )

    return ThinkingConfig(reasoning=ReasoningConfig(effort=thinking_level))
