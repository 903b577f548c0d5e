from typing import List, Optional, Set
from pydantic import BaseModel, Field, field_validator
from datetime import datetime, timezone
from enum import Enum


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ActivationMode(str, Enum):
    """How an entry decides it is relevant to a turn"""
    KEYWORD = "keyword"
    VECTOR = "vector"
    HYBRID = "hybrid"
    CONSTANT = "constant"
    DISABLED = "disabled"


class KeywordsLogic(str, Enum):
    """Combination rule for primary/secondary keywords"""
    AND_ANY = "AND_ANY"
    AND_ALL = "AND_ALL"
    NOT_ALL = "NOT_ALL"
    NOT_ANY = "NOT_ANY"


class Position(str, Enum):
    """Where an admitted entry is inserted relative to the system preamble"""
    SYSTEM_TOP = "system_top"
    BEFORE_CHARACTER = "before_character"
    AFTER_CHARACTER = "after_character"
    BEFORE_EXAMPLES = "before_examples"
    AFTER_EXAMPLES = "after_examples"
    SYSTEM_BOTTOM = "system_bottom"
    AT_DEPTH = "at_depth"


class MessageRole(str, Enum):
    """Role a context block is presented under"""
    SYSTEM = "system"
    USER = "user"
    ASSISTANT = "assistant"


class ActivationSettings(BaseModel):
    """Matching configuration of an entry"""
    mode: ActivationMode = Field(default=ActivationMode.KEYWORD)
    primary_keys: List[str] = Field(default_factory=list)
    secondary_keys: List[str] = Field(default_factory=list)
    keywords_logic: KeywordsLogic = Field(default=KeywordsLogic.AND_ANY)
    case_sensitive: bool = False
    match_whole_words: bool = False
    use_regex: bool = False
    vector_similarity_threshold: float = Field(default=0.4, ge=0.0, le=1.0)
    max_vector_results: int = Field(default=5, ge=1)
    probability: int = Field(default=100, ge=0, le=100)
    use_probability: bool = False
    scan_depth: int = Field(default=2, ge=1, description="Trailing messages scanned for keywords")
    match_in_user_messages: bool = True
    match_in_bot_messages: bool = True
    match_in_system_prompts: bool = False

    @field_validator("primary_keys", "secondary_keys")
    @classmethod
    def _drop_blank_keys(cls, keys: List[str]) -> List[str]:
        return [key for key in keys if isinstance(key, str) and key.strip()]

    @property
    def uses_keywords(self) -> bool:
        return self.mode in (ActivationMode.KEYWORD, ActivationMode.HYBRID)

    @property
    def uses_vectors(self) -> bool:
        return self.mode in (ActivationMode.VECTOR, ActivationMode.HYBRID)


class Positioning(BaseModel):
    """Placement of an entry inside the assembled context"""
    position: Position = Field(default=Position.BEFORE_CHARACTER)
    depth: int = Field(default=0, ge=0, description="Turns back from the current turn")
    role: MessageRole = Field(default=MessageRole.SYSTEM)
    order: int = Field(default=100, description="Tie-break rank among co-positioned blocks")


class AdvancedActivation(BaseModel):
    """Timed effects: sticky, cooldown and delay, all counted in turns"""
    sticky: int = Field(default=0, ge=0)
    cooldown: int = Field(default=0, ge=0)
    delay: int = Field(default=0, ge=0)

    @property
    def is_stateless(self) -> bool:
        return self.sticky == 0 and self.cooldown == 0 and self.delay == 0


class Filtering(BaseModel):
    """Bot/persona restrictions and extra scan sources"""
    filter_by_bots: bool = False
    allowed_bot_ids: List[str] = Field(default_factory=list)
    excluded_bot_ids: List[str] = Field(default_factory=list)
    filter_by_personas: bool = False
    allowed_persona_ids: List[str] = Field(default_factory=list)
    excluded_persona_ids: List[str] = Field(default_factory=list)
    match_bot_description: bool = False
    match_bot_personality: bool = False
    match_persona_description: bool = False

    def allows(self, bot_id: Optional[str], persona_id: Optional[str]) -> bool:
        """Check the bot and persona allow/deny lists"""

        if self.filter_by_bots and bot_id:
            if self.allowed_bot_ids and bot_id not in self.allowed_bot_ids:
                return False
            if bot_id in self.excluded_bot_ids:
                return False

        if self.filter_by_personas and persona_id:
            if self.allowed_persona_ids and persona_id not in self.allowed_persona_ids:
                return False
            if persona_id in self.excluded_persona_ids:
                return False

        return True


class BudgetControl(BaseModel):
    """Per-entry budget overrides"""
    ignore_budget: bool = False
    token_cost: int = Field(default=0, ge=0, description="Explicit cost, 0 means use the entry's tokens")
    max_tokens: int = Field(default=1000, ge=0, description="Cap on this entry's own contribution")


class GroupSettings(BaseModel):
    """Inclusion group: with group scoring on, only the best weighted entry of the group is kept"""
    group_name: Optional[str] = None
    group_weight: float = Field(default=1.0, ge=0.0)
    use_group_scoring: bool = False

    @property
    def competes(self) -> bool:
        return self.use_group_scoring and bool(self.group_name)


class KnowledgeEntry(BaseModel):
    """A lore entry that can be injected into the context window"""
    id: str = Field(description="Unique entry identifier")
    user_id: str = Field(description="Owning user/tenant")
    content: str = Field(default="")
    token_count: int = Field(default=0, ge=0)
    tags: Set[str] = Field(default_factory=set)
    vector_chunk_ids: List[str] = Field(default_factory=list)
    is_vectorized: bool = False
    source_memory_id: Optional[str] = Field(None, description="Memory this entry was converted from")
    activation: Optional[ActivationSettings] = Field(default_factory=ActivationSettings)
    positioning: Positioning = Field(default_factory=Positioning)
    advanced: AdvancedActivation = Field(default_factory=AdvancedActivation)
    filtering: Filtering = Field(default_factory=Filtering)
    budget: BudgetControl = Field(default_factory=BudgetControl)
    group_settings: GroupSettings = Field(default_factory=GroupSettings)
    created_at: datetime = Field(default_factory=utcnow)
