"""Token estimation and budget classification.

A deterministic chars-per-token heuristic, not a tokenizer. The ratio is
conservative (4 chars per token by default) so estimates lean high, which is
the safe direction for a budget check.
"""

from __future__ import annotations

import math
from collections.abc import Iterable

from parley.config import Settings
from parley.context.errors import ConfigurationError
from parley.context.schemas import BudgetState, ConversationTurn

CHARS_PER_TOKEN = 4
CONTEXT_SOFT_LIMIT = 120000
CONTEXT_HARD_LIMIT = 180000
TURN_OVERHEAD_TOKENS = 10


class TokenEstimator:
    """Estimates token counts and classifies totals against two thresholds.

    Pure over its constants: no calibration, no side effects. Soft limit
    triggers compaction; hard limit is the usage ceiling. Both thresholds
    are inclusive (a total equal to the limit counts as reaching it).
    """

    def __init__(
        self,
        chars_per_token: int = CHARS_PER_TOKEN,
        soft_limit: int = CONTEXT_SOFT_LIMIT,
        hard_limit: int = CONTEXT_HARD_LIMIT,
        turn_overhead: int = TURN_OVERHEAD_TOKENS,
    ) -> None:
        if chars_per_token <= 0:
            raise ConfigurationError("chars_per_token must be > 0")
        if soft_limit >= hard_limit:
            raise ConfigurationError(
                f"soft_limit ({soft_limit}) must be < hard_limit ({hard_limit})"
            )
        self._chars_per_token = chars_per_token
        self._soft_limit = soft_limit
        self._hard_limit = hard_limit
        self._turn_overhead = turn_overhead

    @classmethod
    def from_settings(cls, settings: Settings) -> TokenEstimator:
        return cls(
            chars_per_token=settings.chars_per_token,
            soft_limit=settings.context_soft_limit,
            hard_limit=settings.context_hard_limit,
            turn_overhead=settings.turn_overhead_tokens,
        )

    @property
    def soft_limit(self) -> int:
        return self._soft_limit

    @property
    def hard_limit(self) -> int:
        return self._hard_limit

    def estimate(self, text: str | None) -> int:
        """Estimate token count for text: ceil(len / chars_per_token)."""
        if not text:
            return 0
        return math.ceil(len(text) / self._chars_per_token)

    def estimate_turns(self, turns: Iterable[ConversationTurn]) -> int:
        """Estimate a transcript, adding per-turn role/formatting overhead."""
        return sum(self.estimate(t.content) + self._turn_overhead for t in turns)

    def combined_estimate(self, prior_estimate: int, new_text: str) -> int:
        return prior_estimate + self.estimate(new_text)

    def classify(self, total_estimate: int) -> BudgetState:
        if total_estimate >= self._hard_limit:
            return BudgetState.AT_OR_ABOVE_HARD
        if total_estimate >= self._soft_limit:
            return BudgetState.AT_OR_ABOVE_SOFT
        return BudgetState.BELOW_SOFT

    def needs_compaction(self, total_estimate: int) -> bool:
        return self.classify(total_estimate) is not BudgetState.BELOW_SOFT

    def usage_percentage(self, total_estimate: int) -> int:
        """Percentage of the hard limit used (0-100+), for monitoring."""
        return round(total_estimate / self._hard_limit * 100)
