from typing import Dict, List, Mapping, Optional, Tuple
from functools import lru_cache
import random
import re
import structlog

from langchain_core.messages import BaseMessage

from lorekeeper.domain.models.entry import (
    ActivationMode, ActivationSettings, KeywordsLogic, KnowledgeEntry
)
from lorekeeper.domain.models.activation import (
    ActivationMethod, MatchResult, TurnContext, VectorHit
)

logger = structlog.get_logger(__name__)

_ROLE_FLAGS = {
    "human": "match_in_user_messages",
    "ai": "match_in_bot_messages",
    "system": "match_in_system_prompts",
}


@lru_cache(maxsize=1024)
def _compile(pattern: str, flags: int) -> Optional["re.Pattern[str]"]:
    try:
        return re.compile(pattern, flags)
    except re.error as e:
        logger.warning("Invalid keyword pattern", pattern=pattern, error=str(e))
        return None


class Matcher:
    """Evaluates one entry against one conversation turn"""

    def __init__(self, rng: Optional[random.Random] = None):
        self.rng = rng or random.Random()

    def match(
        self,
        entry: KnowledgeEntry,
        turn: TurnContext,
        vector_hits: Optional[Mapping[str, VectorHit]] = None,
        degraded: bool = False
    ) -> MatchResult:
        """Produce the match signal of an entry for this turn"""

        settings = self.coerce_settings(entry)
        mode = settings.mode

        if mode == ActivationMode.DISABLED:
            return MatchResult()
        if mode == ActivationMode.CONSTANT:
            return MatchResult(matched=True, method=ActivationMethod.CONSTANT)

        keyword_hit = False
        primary: List[str] = []
        secondary: List[str] = []
        if settings.uses_keywords:
            text = self.build_scan_text(entry, settings, turn)
            primary, secondary, keyword_hit = self.match_keywords(settings, text)

        similarity = None
        vector_hit = False
        if settings.uses_vectors and not degraded:
            hit = (vector_hits or {}).get(entry.id)
            if hit is not None:
                similarity = hit.similarity
                vector_hit = (
                    hit.similarity >= settings.vector_similarity_threshold
                    and hit.rank < settings.max_vector_results
                )

        if keyword_hit and vector_hit:
            method = ActivationMethod.HYBRID
        elif keyword_hit:
            method = ActivationMethod.KEYWORD
        elif vector_hit:
            method = ActivationMethod.VECTOR
        else:
            method = None

        return MatchResult(
            matched=method is not None,
            method=method,
            similarity=similarity,
            matched_keywords=primary + secondary,
            primary_matches=primary,
            secondary_matches=secondary,
            degraded=degraded and settings.uses_vectors,
        )

    @staticmethod
    def coerce_settings(entry: KnowledgeEntry) -> ActivationSettings:
        """Missing or malformed settings mean keyword mode with no keywords"""

        settings = entry.activation
        if isinstance(settings, ActivationSettings):
            return settings

        logger.warning("Entry has no usable activation settings", entry_id=entry.id)
        return ActivationSettings(mode=ActivationMode.KEYWORD)

    def build_scan_text(self, entry: KnowledgeEntry, settings: ActivationSettings, turn: TurnContext) -> str:
        """Join the scanned messages and any opted-in bot/persona text"""

        parts = [
            self.message_text(message)
            for message in turn.messages[-settings.scan_depth:]
            if getattr(settings, _ROLE_FLAGS.get(message.type, ""), False)
        ]

        filtering = entry.filtering
        if turn.bot is not None:
            if filtering.match_bot_description and turn.bot.description:
                parts.append(turn.bot.description)
            if filtering.match_bot_personality and turn.bot.personality:
                parts.append(turn.bot.personality)
        if turn.persona is not None and filtering.match_persona_description and turn.persona.description:
            parts.append(turn.persona.description)

        return "\n".join(part for part in parts if part)

    def match_keywords(self, settings: ActivationSettings, text: str) -> Tuple[List[str], List[str], bool]:
        """Find matching keywords and apply the entry's combination rule"""

        primary_keys = settings.primary_keys
        secondary_keys = settings.secondary_keys
        if not primary_keys and not secondary_keys:
            return [], [], False

        primary = [key for key in primary_keys if self._keyword_in(text, key, settings)]
        secondary = [key for key in secondary_keys if self._keyword_in(text, key, settings)]

        logic = settings.keywords_logic
        all_primary = len(primary) == len(primary_keys)
        all_secondary = len(secondary) == len(secondary_keys)

        if logic == KeywordsLogic.AND_ANY:
            matched = all_primary and (not secondary_keys or len(secondary) > 0)
        elif logic == KeywordsLogic.AND_ALL:
            matched = all_primary and all_secondary
        elif logic == KeywordsLogic.NOT_ALL:
            matched = not (all_primary and all_secondary)
        elif logic == KeywordsLogic.NOT_ANY:
            matched = not primary and not secondary
        else:
            matched = False

        return primary, secondary, matched

    def roll_probability(self, settings: Optional[ActivationSettings]) -> bool:
        """Decide once per match event whether a probabilistic entry fires"""

        if settings is None or not settings.use_probability or settings.probability >= 100:
            return True
        return self.rng.random() * 100 < settings.probability

    def _keyword_in(self, text: str, keyword: str, settings: ActivationSettings) -> bool:
        flags = 0 if settings.case_sensitive else re.IGNORECASE

        if settings.use_regex:
            pattern = _compile(keyword, flags)
            return bool(pattern and pattern.search(text))

        if settings.match_whole_words:
            pattern = _compile(rf"(?<!\w){re.escape(keyword)}(?!\w)", flags)
            return bool(pattern and pattern.search(text))

        if settings.case_sensitive:
            return keyword in text
        return keyword.casefold() in text.casefold()

    @staticmethod
    def message_text(message: BaseMessage) -> str:
        content = message.content
        if isinstance(content, str):
            return content
        # Multi-part content: keep the text parts
        texts = [part.get("text", "") for part in content if isinstance(part, dict)]
        texts += [part for part in content if isinstance(part, str)]
        return " ".join(texts)


def rank_vector_hits(results: List[Tuple[str, float]]) -> Dict[str, VectorHit]:
    """Order raw similarity results best-first and index them by entry id"""

    ordered = sorted(results, key=lambda item: (-item[1], str(item[0])))
    hits: Dict[str, VectorHit] = {}
    for entry_id, similarity in ordered:
        key = str(entry_id)
        if key in hits:
            continue
        hits[key] = VectorHit(
            entry_id=key,
            similarity=max(0.0, min(1.0, float(similarity))),
            rank=len(hits),
        )
    return hits
