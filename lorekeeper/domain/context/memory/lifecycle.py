from typing import Awaitable, Callable, List, Optional, Set
from pydantic import BaseModel
import uuid
import structlog

from lorekeeper.domain.errors import MemoryNotFoundError
from lorekeeper.domain.models.entry import ActivationMode, ActivationSettings, Filtering, KnowledgeEntry, utcnow
from lorekeeper.domain.models.memory import Conversation, Memory, MemoryType
from lorekeeper.domain.context.state.state_manager import KeyedLocks
from lorekeeper.domain.context.tokens import estimate_tokens
from lorekeeper.infrastructure.config.settings import EngineSettings
from lorekeeper.infrastructure.observability.logging import engine_logger
from .entry_store import EntryStore
from .conversation_store import ConversationStore

logger = structlog.get_logger(__name__)

Summarizer = Callable[[List[Memory]], Awaitable[str]]


class LoreConversion(BaseModel):
    """Outcome of converting a memory into a knowledge entry"""
    memory: Memory
    entry_id: str
    entry: Optional[KnowledgeEntry] = None
    created: bool = False


async def join_memories(memories: List[Memory]) -> str:
    """Default consolidation text: the folded memories in turn order"""
    return "\n".join(m.content for m in memories if m.content)


def _new_id(prefix: str) -> str:
    return f"{prefix}_{uuid.uuid4().hex}"


class MemoryLifecycleManager:
    """Tracks conversation tokens, consolidates short-term memories, converts memories to lore.

    Callers that share a conversation with the activation engine must hold
    that conversation's lock around ``record_turn``/``consolidate``; the
    engine does this itself during a turn.
    """

    def __init__(
        self,
        entry_store: EntryStore,
        conversation_store: ConversationStore,
        settings: Optional[EngineSettings] = None,
        summarizer: Optional[Summarizer] = None
    ):
        self.entry_store = entry_store
        self.conversation_store = conversation_store
        self.settings = settings or EngineSettings()
        self.summarizer = summarizer or join_memories
        self.memory_locks = KeyedLocks()

    def record_turn(self, conversation: Conversation, message_index: int, tokens: int) -> Conversation:
        """Add a turn's tokens and raise the summarization flag at the threshold"""

        conversation.total_tokens += max(0, tokens)
        if conversation.unsummarized_tokens >= self.settings.summarization_token_threshold:
            if not conversation.requires_summarization:
                logger.info(
                    "Conversation requires summarization",
                    conversation_id=conversation.id,
                    message_index=message_index,
                    unsummarized_tokens=conversation.unsummarized_tokens,
                )
            conversation.requires_summarization = True
        return conversation

    async def remember_turn(
        self,
        conversation: Conversation,
        content: str,
        message_index: int,
        importance: int = 5,
        emotional_context: Optional[str] = None
    ) -> Memory:
        """Capture a raw conversation turn as a short-term memory"""

        memory = Memory(
            id=_new_id("mem"),
            user_id=conversation.user_id,
            bot_ids=list(conversation.participants.bot_ids),
            persona_ids=[p for p in [conversation.persona_at(message_index)] if p],
            conversation_id=conversation.id,
            content=content,
            token_count=estimate_tokens(content, self.settings.chars_per_token),
            type=MemoryType.SHORT_TERM,
            importance=importance,
            emotional_context=emotional_context,
            message_index=message_index,
        )
        return await self.entry_store.add_memory(memory)

    async def eligible_for_consolidation(self, conversation: Conversation) -> List[Memory]:
        memories = await self.entry_store.list_memories(conversation.user_id, conversation.id)
        eligible = [
            m for m in memories
            if m.type == MemoryType.SHORT_TERM
            and m.message_index > conversation.last_summarized_message_index
            and m.consolidated_into is None
            and not m.converted_to_lore
        ]
        return sorted(eligible, key=lambda m: (m.message_index, m.id))

    async def consolidate(self, conversation: Conversation, message_index: int) -> Optional[Memory]:
        """Fold short-term memories since the last summary into one consolidated memory"""

        folded = await self.eligible_for_consolidation(conversation)

        consolidated = None
        if folded:
            content = await self.summarizer(folded)
            consolidated = Memory(
                id=_new_id("mem"),
                user_id=conversation.user_id,
                bot_ids=sorted({b for m in folded for b in m.bot_ids}),
                persona_ids=sorted({p for m in folded for p in m.persona_ids}),
                conversation_id=conversation.id,
                content=content,
                token_count=estimate_tokens(content, self.settings.chars_per_token),
                type=MemoryType.CONSOLIDATED,
                importance=max(m.importance for m in folded),
                emotional_context=folded[-1].emotional_context,
                message_index=folded[-1].message_index,
            )
            await self.entry_store.add_memory(consolidated)
            for memory in folded:
                await self.entry_store.update_memory(
                    memory.model_copy(update={"consolidated_into": consolidated.id})
                )
            conversation.last_summarized_message_index = folded[-1].message_index
        else:
            conversation.last_summarized_message_index = max(
                conversation.last_summarized_message_index, message_index
            )

        conversation.last_summarized_at = utcnow()
        conversation.tokens_at_last_summary = conversation.total_tokens
        conversation.requires_summarization = False
        await self.conversation_store.save(conversation)

        engine_logger.log_consolidation(
            conversation.id,
            consolidated.id if consolidated else None,
            [m.id for m in folded],
            conversation.last_summarized_message_index,
        )
        return consolidated

    async def promote(self, memory_id: str) -> Memory:
        """short_term -> long_term; the promotion policy belongs to the caller"""

        memory = await self._require_memory(memory_id)
        if memory.type != MemoryType.SHORT_TERM:
            return memory
        return await self.entry_store.update_memory(memory.model_copy(update={"type": MemoryType.LONG_TERM}))

    async def mark_vectorized(self, memory_id: str) -> Memory:
        memory = await self._require_memory(memory_id)
        return await self.entry_store.update_memory(memory.model_copy(update={"is_vectorized": True}))

    async def convert_to_lore(self, memory_id: str, tags: Optional[Set[str]] = None) -> LoreConversion:
        """Create one knowledge entry from a memory; repeated calls return the same entry"""

        async with self.memory_locks.hold(memory_id):
            memory = await self._require_memory(memory_id)

            if memory.converted_to_lore:
                existing = await self.entry_store.get_entry(memory.lore_entry_id)
                engine_logger.log_conversion(memory.id, memory.lore_entry_id, created=False)
                return LoreConversion(memory=memory, entry_id=memory.lore_entry_id, entry=existing)

            entry = KnowledgeEntry(
                id=_new_id("lore"),
                user_id=memory.user_id,
                content=memory.content,
                token_count=memory.token_count,
                tags=set(tags or ()),
                source_memory_id=memory.id,
                activation=ActivationSettings(mode=ActivationMode.VECTOR),
                filtering=Filtering(
                    filter_by_bots=bool(memory.bot_ids),
                    allowed_bot_ids=list(memory.bot_ids),
                ),
            )
            await self.entry_store.add_entry(entry)

            # Flag, reference and timestamp land in a single validated update
            converted = Memory.model_validate({
                **memory.model_dump(),
                "converted_to_lore": True,
                "lore_entry_id": entry.id,
                "converted_at": utcnow(),
            })
            converted = await self.entry_store.update_memory(converted)

            engine_logger.log_conversion(memory.id, entry.id, created=True)
            return LoreConversion(memory=converted, entry_id=entry.id, entry=entry, created=True)

    async def eligible_memories(self, conversation: Conversation) -> List[Memory]:
        """Memories that may be activated as entries in this conversation"""

        memories = await self.entry_store.list_memories(conversation.user_id)
        return [
            m for m in memories
            if not m.converted_to_lore and m.consolidated_into is None
        ]

    async def _require_memory(self, memory_id: str) -> Memory:
        memory = await self.entry_store.get_memory(memory_id)
        if memory is None:
            raise MemoryNotFoundError(f"Memory {memory_id} not found", {"memory_id": memory_id})
        return memory
