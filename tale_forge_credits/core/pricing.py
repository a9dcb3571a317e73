"""
Pricing calculations.

Single source of truth for how many credits each generation operation costs.
"""

from dataclasses import dataclass, field
from typing import Any, Dict, Mapping, Optional, Union

from tale_forge_credits.config.loader import PricingConfig
from tale_forge_credits.storage.models import FIXED_OPERATION_KINDS, OperationKind


@dataclass(frozen=True)
class CostQuote:
    """Ephemeral cost of one operation. Never persisted."""
    operation_kind: OperationKind
    computed_cost: int
    inputs: Dict[str, Any] = field(default_factory=dict)


def word_count(text: str) -> int:
    """Count whitespace-separated words, ignoring empty tokens."""
    return len(text.split())


def _ceil_div(numerator: int, denominator: int) -> int:
    return -(-numerator // denominator)


class PricingTable:
    """Credit prices backed by the pricing section of the credit config."""

    def __init__(self, config: PricingConfig):
        self.config = config

    def cost_of(self, kind: Union[OperationKind, str]) -> int:
        """Get the cost of a fixed-price operation.

        Args:
            kind: Fixed operation kind

        Returns:
            Cost in credits

        Raises:
            ValueError: If kind is unknown or variable-priced
        """
        kind = OperationKind(kind)
        if kind not in FIXED_OPERATION_KINDS:
            raise ValueError(f"'{kind.value}' is priced by its inputs, use quote()")
        return self.config.fixed_costs.get(kind, 0)

    def audio_cost(self, text: str) -> int:
        """Cost of narrating ``text``.

        Empty or whitespace-only text costs nothing; anything else costs at
        least one credit, then one more per started block of words.
        """
        words = word_count(text)
        if words == 0:
            return 0
        return max(1, _ceil_div(words, self.config.audio_words_per_credit))

    def video_cost(self, duration_seconds: float) -> int:
        """Cost of a video clip, stepped by duration tier.

        Raises:
            ValueError: If duration is negative
        """
        if duration_seconds < 0:
            raise ValueError("duration_seconds cannot be negative")
        for tier in self.config.video_tiers:
            if duration_seconds <= tier.max_seconds:
                return tier.credits
        return self.config.video_above_max_credits

    def quote(
        self,
        kind: Union[OperationKind, str],
        inputs: Optional[Mapping[str, Any]] = None
    ) -> CostQuote:
        """Compute the cost of an operation from its inputs.

        Args:
            kind: Operation kind
            inputs: ``text`` for audio, ``duration_seconds`` for video;
                ignored by fixed-price operations

        Returns:
            CostQuote for the operation

        Raises:
            ValueError: If kind is unknown or required inputs are missing
        """
        kind = OperationKind(kind)
        inputs = dict(inputs or {})

        if kind is OperationKind.AUDIO:
            text = inputs.get("text")
            if text is None:
                raise ValueError("Text required for audio credit calculation")
            cost = self.audio_cost(text)
        elif kind is OperationKind.VIDEO:
            duration = inputs.get("duration_seconds")
            if duration is None:
                raise ValueError("duration_seconds required for video credit calculation")
            cost = self.video_cost(float(duration))
        else:
            cost = self.cost_of(kind)

        return CostQuote(operation_kind=kind, computed_cost=cost, inputs=inputs)
