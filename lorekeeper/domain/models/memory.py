from typing import List, Optional
from pydantic import BaseModel, Field, model_validator
from datetime import datetime
from enum import Enum

from .entry import (
    ActivationMode, ActivationSettings, AdvancedActivation,
    BudgetControl, Filtering, KnowledgeEntry, Positioning, utcnow
)


class MemoryType(str, Enum):
    """Memory lifecycle stage"""
    SHORT_TERM = "short_term"
    LONG_TERM = "long_term"
    CONSOLIDATED = "consolidated"


class Memory(BaseModel):
    """A memory distilled from conversation turns"""
    id: str = Field(description="Unique memory identifier")
    user_id: str
    bot_ids: List[str] = Field(default_factory=list)
    persona_ids: List[str] = Field(default_factory=list)
    conversation_id: Optional[str] = None
    content: str = ""
    token_count: int = Field(default=0, ge=0)
    type: MemoryType = Field(default=MemoryType.SHORT_TERM)
    importance: int = Field(default=5, ge=1, le=10)
    emotional_context: Optional[str] = None
    message_index: int = Field(default=0, ge=0, description="Turn the memory was derived from")
    is_vectorized: bool = False
    converted_to_lore: bool = False
    lore_entry_id: Optional[str] = None
    converted_at: Optional[datetime] = None
    consolidated_into: Optional[str] = Field(None, description="Consolidated memory that absorbed this one")
    activation: Optional[ActivationSettings] = Field(
        default_factory=lambda: ActivationSettings(mode=ActivationMode.VECTOR)
    )
    positioning: Positioning = Field(default_factory=Positioning)
    advanced: AdvancedActivation = Field(default_factory=AdvancedActivation)
    budget: BudgetControl = Field(default_factory=BudgetControl)
    created_at: datetime = Field(default_factory=utcnow)

    @model_validator(mode="after")
    def _check_conversion_fields(self) -> "Memory":
        if self.converted_to_lore and (self.lore_entry_id is None or self.converted_at is None):
            raise ValueError("converted memory requires lore_entry_id and converted_at")
        return self

    def as_entry(self) -> KnowledgeEntry:
        """View this memory as a knowledge entry for activation"""

        filtering = Filtering(
            filter_by_bots=bool(self.bot_ids),
            allowed_bot_ids=list(self.bot_ids),
        )
        return KnowledgeEntry(
            id=self.id,
            user_id=self.user_id,
            content=self.content,
            token_count=self.token_count,
            tags={self.emotional_context} if self.emotional_context else set(),
            is_vectorized=self.is_vectorized,
            activation=self.activation,
            positioning=self.positioning,
            advanced=self.advanced,
            filtering=filtering,
            budget=self.budget,
            created_at=self.created_at,
        )


class PersonaChange(BaseModel):
    """A persona switch inside a conversation"""
    persona_id: str
    message_index: int = Field(ge=0)


class Participants(BaseModel):
    """Typed participant set of a conversation"""
    bot_ids: List[str] = Field(default_factory=list)
    persona_ids: List[str] = Field(default_factory=list)
    persona_changes: List[PersonaChange] = Field(default_factory=list)


class Conversation(BaseModel):
    """Conversation state owned by the memory lifecycle"""
    id: str
    user_id: str
    total_tokens: int = Field(default=0, ge=0)
    last_summarized_at: Optional[datetime] = None
    last_summarized_message_index: int = Field(default=-1, ge=-1)
    tokens_at_last_summary: int = Field(default=0, ge=0)
    requires_summarization: bool = False
    participants: Participants = Field(default_factory=Participants)
    closed: bool = False

    @property
    def unsummarized_tokens(self) -> int:
        return self.total_tokens - self.tokens_at_last_summary

    def persona_at(self, message_index: int) -> Optional[str]:
        """Resolve the persona active at a message index"""

        persona_id = self.participants.persona_ids[0] if self.participants.persona_ids else None
        for change in sorted(self.participants.persona_changes, key=lambda c: c.message_index):
            if change.message_index > message_index:
                break
            persona_id = change.persona_id
        return persona_id

    def switch_persona(self, persona_id: str, message_index: int):
        """Record a persona switch"""
        self.participants.persona_changes.append(
            PersonaChange(persona_id=persona_id, message_index=message_index)
        )
        if persona_id not in self.participants.persona_ids:
            self.participants.persona_ids.append(persona_id)
