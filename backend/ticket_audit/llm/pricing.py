"""Per-model token pricing."""
import logging
from dataclasses import dataclass
from typing import Dict

logger = logging.getLogger(__name__)

PER_MILLION = 1_000_000


@dataclass(frozen=True)
class ModelRates:
    """USD per token for each usage bucket."""

    input: float
    cached_input: float
    output: float


MODEL_RATES: Dict[str, ModelRates] = {
    "gpt-5-mini-2025-08-07": ModelRates(
        input=0.15 / PER_MILLION,
        cached_input=0.015 / PER_MILLION,
        output=1.20 / PER_MILLION,
    ),
    "gpt-5-mini": ModelRates(
        input=0.15 / PER_MILLION,
        cached_input=0.015 / PER_MILLION,
        output=1.20 / PER_MILLION,
    ),
}

DEFAULT_MODEL = "gpt-5-mini-2025-08-07"


def rates_for(model: str) -> ModelRates:
    rates = MODEL_RATES.get(model)
    if rates is None:
        logger.warning("No pricing for model, using default rates", extra={"model": model})
        return MODEL_RATES[DEFAULT_MODEL]
    return rates


def calculate_cost(
    model: str,
    prompt_tokens: int,
    cached_tokens: int,
    completion_tokens: int,
) -> float:
    """Estimate the USD cost of a usage record.

    ``prompt_tokens`` includes the cached portion, so only the remainder is
    billed at the regular input rate.
    """
    rates = rates_for(model)
    cached = min(max(cached_tokens, 0), max(prompt_tokens, 0))
    regular_input = max(prompt_tokens, 0) - cached
    return (
        regular_input * rates.input
        + cached * rates.cached_input
        + max(completion_tokens, 0) * rates.output
    )
