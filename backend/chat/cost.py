from __future__ import annotations

import math

COST_DECIMALS = 8


def calculate_cost(
    prompt_tokens: int | None,
    completion_tokens: int | None,
    input_cost_per_token: float,
    output_cost_per_token: float,
) -> float:
    cost = (prompt_tokens or 0) * input_cost_per_token + (
        completion_tokens or 0
    ) * output_cost_per_token
    if not math.isfinite(cost):
        return 0.0
    return round(cost, COST_DECIMALS)
