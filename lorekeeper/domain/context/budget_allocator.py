from typing import List
from pydantic import BaseModel, Field

from lorekeeper.domain.models.activation import Candidate, ExclusionReason


class Allocation(BaseModel):
    """Result of walking the ranked candidates against a budget"""
    budget: int
    decisions: List[Candidate] = Field(default_factory=list, description="Every candidate, in rank order")
    tokens_used: int = 0
    remaining: int = 0

    @property
    def admitted(self) -> List[Candidate]:
        return [candidate for candidate in self.decisions if candidate.was_included]

    @property
    def excluded(self) -> List[Candidate]:
        return [candidate for candidate in self.decisions if not candidate.was_included]


class BudgetAllocator:
    """Greedy admission of ranked candidates into the token budget"""

    def allocate(self, ranked: List[Candidate], budget: int) -> Allocation:
        """Walk the ranked list top-down.

        Entries with ``ignore_budget`` are always admitted and their cost is
        still subtracted, so the remaining budget may go negative. Every other
        entry must fit under its own ``max_tokens`` cap and under the remaining
        budget, otherwise it is skipped with a recorded reason. Later, smaller
        entries may still fit after a skip.
        """

        remaining = budget
        tokens_used = 0
        decisions: List[Candidate] = []

        for candidate in ranked:
            cost = candidate.token_cost
            control = candidate.entry.budget

            if not control.ignore_budget:
                if cost > control.max_tokens:
                    decisions.append(candidate.exclude(ExclusionReason.EXCEEDS_ENTRY_CAP))
                    continue
                if cost > remaining:
                    decisions.append(candidate.exclude(ExclusionReason.BUDGET_EXHAUSTED))
                    continue

            remaining -= cost
            tokens_used += cost
            decisions.append(candidate.model_copy(update={"was_included": True, "exclusion_reason": None}))

        return Allocation(
            budget=budget,
            decisions=decisions,
            tokens_used=tokens_used,
            remaining=remaining,
        )
