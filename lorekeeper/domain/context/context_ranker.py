from typing import Dict, List, Optional, Tuple

from lorekeeper.domain.models.activation import ActivationMethod, Candidate, ExclusionReason, MatchResult


class ContextRanker:
    """Turns match signals into comparable scores and a strict total order"""

    def __init__(
        self,
        similarity_weight: float = 100.0,
        primary_keyword_weight: float = 2.0,
        secondary_keyword_weight: float = 1.0,
        constant_score: float = 100.0
    ):
        self.similarity_weight = similarity_weight
        self.primary_keyword_weight = primary_keyword_weight
        self.secondary_keyword_weight = secondary_keyword_weight
        self.constant_score = constant_score

    def score(self, match: MatchResult, carried_score: Optional[float] = None) -> float:
        """Score one match signal; sticky turns without a match reuse the carried score"""

        if not match.matched:
            return carried_score or 0.0

        if match.method == ActivationMethod.CONSTANT:
            return self.constant_score

        score = 0.0
        # Similarity is the primary term
        if match.similarity is not None and match.method in (ActivationMethod.VECTOR, ActivationMethod.HYBRID):
            score += self.similarity_weight * match.similarity

        score += self.primary_keyword_weight * len(match.primary_matches)
        score += self.secondary_keyword_weight * len(match.secondary_matches)

        return score

    @staticmethod
    def sort_key(candidate: Candidate) -> Tuple[float, int, int, str]:
        return (
            -candidate.score,
            -candidate.importance,
            candidate.entry.positioning.order,
            candidate.entry_id,
        )

    def rank(self, candidates: List[Candidate]) -> List[Candidate]:
        """Highest score first; importance, configured order and id break ties"""

        return sorted(candidates, key=self.sort_key)

    def apply_group_scoring(self, candidates: List[Candidate]) -> Tuple[List[Candidate], List[Candidate]]:
        """Keep the best weighted candidate of each scoring group; returns (kept, lost)"""

        groups: Dict[str, List[Candidate]] = {}
        for candidate in candidates:
            settings = candidate.entry.group_settings
            if settings.competes:
                groups.setdefault(settings.group_name, []).append(candidate)

        losers = set()
        for members in groups.values():
            if len(members) <= 1:
                continue
            members.sort(key=lambda c: (-c.score * c.entry.group_settings.group_weight,) + self.sort_key(c))
            losers.update(c.entry_id for c in members[1:])

        kept = [c for c in candidates if c.entry_id not in losers]
        lost = [c.exclude(ExclusionReason.GROUP_SCORING_LOST) for c in candidates if c.entry_id in losers]
        return kept, lost
