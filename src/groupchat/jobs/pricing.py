"""Coin pricing for text model calls."""

from __future__ import annotations

import math
import os
from collections.abc import Mapping
from dataclasses import dataclass

from groupchat.jobs.models import ChatModel

PRICING_ENV = "GROUPCHAT_COIN_PRICING"


@dataclass(slots=True)
class ModelCoinPricing:
    """Per-model input/output price in coins per 1K tokens."""

    input_per_1k: float
    output_per_1k: float


def text_model_coins(
    model: ChatModel,
    input_tokens: int,
    output_tokens: int,
    *,
    overrides: Mapping[str, ModelCoinPricing] | None = None,
) -> int:
    """Return whole coins charged for one call, rounded up.

    Override prices (``overrides``, or ``GROUPCHAT_COIN_PRICING`` when not given)
    take precedence over the prices stored on the registry entry.
    """

    pricing = _lookup_pricing(model, overrides)
    raw = (
        max(0, input_tokens) * pricing.input_per_1k
        + max(0, output_tokens) * pricing.output_per_1k
    ) / 1000
    if raw <= 0:
        return 0
    return math.ceil(raw)


def _lookup_pricing(
    model: ChatModel,
    overrides: Mapping[str, ModelCoinPricing] | None,
) -> ModelCoinPricing:
    mapping = overrides
    if mapping is None:
        mapping = parse_pricing_mapping(os.getenv(PRICING_ENV, ""))
    direct = mapping.get(model.model_id.strip())
    if direct is not None:
        return direct

    wildcard = mapping.get("*")
    if wildcard is not None:
        return wildcard
    return ModelCoinPricing(
        input_per_1k=model.input_price_per_1k,
        output_per_1k=model.output_price_per_1k,
    )


def parse_pricing_mapping(raw: str) -> dict[str, ModelCoinPricing]:
    """Parse `GROUPCHAT_COIN_PRICING` mapping.

    Format:
    - `model:input_per_1k:output_per_1k`
    - multiple entries separated by `,`
    - `*` as model matches any model without its own entry
    """

    parsed: dict[str, ModelCoinPricing] = {}
    if not raw.strip():
        return parsed

    for entry in raw.split(","):
        value = entry.strip()
        if not value:
            continue
        parts = [part.strip() for part in value.rsplit(":", 2)]
        if len(parts) != 3 or not parts[0]:
            continue
        model, input_price, output_price = parts
        try:
            input_per_1k = float(input_price)
            output_per_1k = float(output_price)
        except ValueError:
            continue
        if input_per_1k < 0 or output_per_1k < 0:
            continue
        parsed[model] = ModelCoinPricing(
            input_per_1k=input_per_1k,
            output_per_1k=output_per_1k,
        )
    return parsed
