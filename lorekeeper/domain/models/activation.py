from typing import Dict, List, Optional
from pydantic import BaseModel, ConfigDict, Field
from datetime import datetime
from enum import Enum
import math

from langchain_core.messages import BaseMessage

from .entry import KnowledgeEntry, MessageRole, Position, utcnow


class ActivationMethod(str, Enum):
    """Signal that caused an entry to be considered"""
    KEYWORD = "keyword"
    VECTOR = "vector"
    HYBRID = "hybrid"
    CONSTANT = "constant"
    STICKY = "sticky"


class ExclusionReason(str, Enum):
    """Why a candidate was not admitted into the context"""
    BUDGET_EXHAUSTED = "budget_exhausted"
    EXCEEDS_ENTRY_CAP = "exceeds_entry_cap"
    COOLDOWN_ACTIVE = "cooldown_active"
    DELAY_NOT_MET = "delay_not_met"
    PROBABILITY_FAILED = "probability_failed"
    FILTER_EXCLUDED = "filter_excluded"
    GROUP_SCORING_LOST = "group_scoring_lost"


class EntryKind(str, Enum):
    KNOWLEDGE = "knowledge"
    MEMORY = "memory"


class BotProfile(BaseModel):
    """Bot text that entries may opt into scanning"""
    id: str
    description: str = ""
    personality: str = ""


class PersonaProfile(BaseModel):
    """Persona text that entries may opt into scanning"""
    id: str
    description: str = ""


class TurnContext(BaseModel):
    """Everything the engine needs to know about one conversation turn"""
    model_config = ConfigDict(arbitrary_types_allowed=True)

    conversation_id: str
    user_id: str
    message_index: int = Field(ge=0)
    messages: List[BaseMessage] = Field(default_factory=list, description="Turn history, oldest first")
    bot: Optional[BotProfile] = None
    persona: Optional[PersonaProfile] = None
    turn_tokens: Optional[int] = Field(None, ge=0, description="Tokens this turn adds to the conversation")
    budget: Optional[int] = Field(None, ge=0, description="Explicit token budget for this turn")

    @property
    def current_text(self) -> str:
        if not self.messages:
            return ""
        content = self.messages[-1].content
        return content if isinstance(content, str) else str(content)


class VectorHit(BaseModel):
    """One similarity result; rank 0 is the best hit of the turn"""
    entry_id: str
    similarity: float = Field(ge=0.0, le=1.0)
    rank: int = Field(default=0, ge=0)


class MatchResult(BaseModel):
    """Outcome of evaluating one entry against one turn"""
    matched: bool = False
    method: Optional[ActivationMethod] = None
    similarity: Optional[float] = None
    matched_keywords: List[str] = Field(default_factory=list)
    primary_matches: List[str] = Field(default_factory=list)
    secondary_matches: List[str] = Field(default_factory=list)
    degraded: bool = False


class Candidate(BaseModel):
    """An entry under consideration for the current turn"""
    entry: KnowledgeEntry
    kind: EntryKind = EntryKind.KNOWLEDGE
    match: MatchResult = Field(default_factory=MatchResult)
    method: ActivationMethod = ActivationMethod.KEYWORD
    importance: int = 0
    score: float = 0.0
    token_cost: int = 0
    was_included: bool = True
    exclusion_reason: Optional[ExclusionReason] = None

    @property
    def entry_id(self) -> str:
        return self.entry.id

    @property
    def position(self) -> Position:
        return self.entry.positioning.position

    @property
    def position_label(self) -> str:
        return f"{self.entry.positioning.position.value}:{self.entry.positioning.depth}"

    def exclude(self, reason: ExclusionReason) -> "Candidate":
        return self.model_copy(update={"was_included": False, "exclusion_reason": reason})


class ActivationLogEntry(BaseModel):
    """Audit record of one activation decision; never mutated"""
    model_config = ConfigDict(frozen=True)

    conversation_id: str
    message_index: int
    entry_id: str
    entry_kind: EntryKind = EntryKind.KNOWLEDGE
    activation_method: ActivationMethod
    activation_score: float
    matched_keywords: List[str] = Field(default_factory=list)
    vector_similarity: Optional[float] = None
    position_inserted: str
    tokens_used: int
    was_included: bool
    exclusion_reason: Optional[ExclusionReason] = None
    timestamp: datetime = Field(default_factory=utcnow)

    @classmethod
    def from_candidate(cls, conversation_id: str, message_index: int, candidate: Candidate) -> "ActivationLogEntry":
        return cls(
            conversation_id=conversation_id,
            message_index=message_index,
            entry_id=candidate.entry_id,
            entry_kind=candidate.kind,
            activation_method=candidate.method,
            activation_score=candidate.score,
            matched_keywords=list(candidate.match.matched_keywords),
            vector_similarity=candidate.match.similarity,
            position_inserted=candidate.position_label,
            tokens_used=candidate.token_cost,
            was_included=candidate.was_included,
            exclusion_reason=candidate.exclusion_reason,
        )


class BudgetConfig(BaseModel):
    """How the knowledge budget is derived from the model's context window"""
    max_context_tokens: int = Field(default=8000, ge=0)
    budget_percentage: float = Field(default=25.0, ge=0.0, le=100.0)
    budget_cap_tokens: int = Field(default=2000, ge=0)
    reserved_for_conversation: int = Field(default=0, ge=0)

    def total_budget(self) -> int:
        """Tokens available for admitted entries in one turn"""
        percentage_budget = self.max_context_tokens * (self.budget_percentage / 100)
        capped = min(percentage_budget, self.budget_cap_tokens)
        return max(0, math.floor(capped - self.reserved_for_conversation))


class ContextBlock(BaseModel):
    """A rendered group of co-positioned entries"""
    position: Position
    role: MessageRole
    order: int
    depth: int = 0
    rendered_text: str
    token_cost: int
    entry_ids: List[str] = Field(default_factory=list)


class ContextAssembly(BaseModel):
    """What the prompt-assembly caller splices into the model request"""
    conversation_id: str
    message_index: int
    blocks: List[ContextBlock] = Field(default_factory=list)
    total_tokens: int = 0
    budget: int = 0
    budget_remaining: int = 0
    decisions: List[Candidate] = Field(default_factory=list)
    degraded: bool = False

    def exclusion_counts(self) -> Dict[str, int]:
        counts: Dict[str, int] = {}
        for candidate in self.decisions:
            if candidate.exclusion_reason is not None:
                key = candidate.exclusion_reason.value
                counts[key] = counts.get(key, 0) + 1
        return counts
