"""
Model catalogue seeded into the meta database at startup.
"""

from __future__ import annotations

import logging

from chat.message_store import ModelRecord, list_models, upsert_models

logger = logging.getLogger(__name__)

MODEL_SEED: list[ModelRecord] = [
    ModelRecord(
        id="openai/gpt-5.2",
        label="GPT-5.2",
        input_cost_per_token=0.00000175,
        output_cost_per_token=0.000014,
        supports_vision=True,
        supports_thinking_levels=True,
    ),
    ModelRecord(
        id="google/gemini-3-pro-preview",
        label="Gemini 3 Pro",
        input_cost_per_token=0.000002,
        output_cost_per_token=0.000012,
        supports_vision=True,
        supports_thinking_levels=False,
    ),
    ModelRecord(
        id="anthropic/claude-opus-4.5",
        label="Claude Opus 4.5",
        input_cost_per_token=0.000005,
        output_cost_per_token=0.000025,
        supports_vision=True,
        supports_thinking_levels=True,
    ),
    ModelRecord(
        id="anthropic/claude-sonnet-4.5",
        label="Claude Sonnet 4.5",
        input_cost_per_token=0.000003,
        output_cost_per_token=0.000015,
        supports_vision=True,
        supports_thinking_levels=True,
    ),
    ModelRecord(
        id="x-ai/grok-4.1-fast",
        label="Grok 4.1 Fast",
        input_cost_per_token=0.0000002,
        output_cost_per_token=0.0000005,
        supports_vision=True,
        supports_thinking_levels=True,
    ),
    ModelRecord(
        id="anthropic/claude-haiku-4.5",
        label="Claude Haiku 4.5",
        input_cost_per_token=0.0000008,
        output_cost_per_token=0.000004,
        supports_vision=True,
        supports_thinking_levels=False,
    ),
]


def seed_models(models: list[ModelRecord] | None = None) -> int:
    """Upsert the model catalogue; returns the number of models now stored."""
    upsert_models(list(models if models is not None else MODEL_SEED))
    count = len(list_models())
    logger.info("Model catalogue holds %d models", count)
    return count
