from typing import Any, Dict, List, Optional, Set, Tuple
import random
import time
import structlog

from lorekeeper.domain.errors import ActivationError
from lorekeeper.domain.models.activation import (
    Candidate, ContextAssembly, EntryKind, TurnContext, VectorHit
)
from lorekeeper.domain.models.memory import Conversation, Participants
from lorekeeper.infrastructure.config.settings import EngineSettings, get_settings
from lorekeeper.infrastructure.embedding.similarity_client import SimilarityClient, SimilarityService
from lorekeeper.infrastructure.observability.activation_log import ActivationLogger, InMemoryLogSink, LogSink
from lorekeeper.infrastructure.observability.logging import metrics
from lorekeeper.domain.orchestration.turn_pipeline import TurnPipeline
from .memory.entry_store import EntryStore
from .memory.conversation_store import ConversationStore
from .memory.lifecycle import LoreConversion, MemoryLifecycleManager, Summarizer
from .state.state_manager import ActivationStateTracker, KeyedLocks
from .matcher import Matcher
from .context_ranker import ContextRanker
from .budget_allocator import BudgetAllocator
from .positioning import PositioningAssembler
from .tokens import entry_token_cost

logger = structlog.get_logger(__name__)


class ActivationEngine:
    """Decides, per conversation turn, which knowledge enters the model's context"""

    def __init__(
        self,
        entry_store: EntryStore,
        conversation_store: ConversationStore,
        similarity_service: Optional[SimilarityService] = None,
        log_sink: Optional[LogSink] = None,
        settings: Optional[EngineSettings] = None,
        summarizer: Optional[Summarizer] = None,
        rng: Optional[random.Random] = None
    ):
        self.settings = settings or get_settings()
        self.entry_store = entry_store
        self.conversation_store = conversation_store

        self.similarity_client = SimilarityClient(similarity_service, self.settings.similarity_timeout_seconds)
        self.activation_logger = ActivationLogger(log_sink or InMemoryLogSink(), self.settings)
        self.lifecycle = MemoryLifecycleManager(entry_store, conversation_store, self.settings, summarizer)
        self.state_tracker = ActivationStateTracker()
        self.locks = KeyedLocks()

        self.matcher = Matcher(rng or random.Random(self.settings.probability_seed))
        self.context_ranker = ContextRanker(
            similarity_weight=self.settings.similarity_weight,
            primary_keyword_weight=self.settings.primary_keyword_weight,
            secondary_keyword_weight=self.settings.secondary_keyword_weight,
            constant_score=self.settings.constant_score,
        )
        self.pipeline = TurnPipeline(
            matcher=self.matcher,
            tracker=self.state_tracker,
            ranker=self.context_ranker,
            allocator=BudgetAllocator(),
            assembler=PositioningAssembler(),
            lifecycle=self.lifecycle,
            activation_logger=self.activation_logger,
            chars_per_token=self.settings.chars_per_token,
        )

    async def process_turn(self, turn: TurnContext) -> ContextAssembly:
        """Build the context assembly for one turn"""

        start_time = time.time()
        structlog.contextvars.bind_contextvars(conversation_id=turn.conversation_id)
        try:
            # Read-only preparation runs outside the conversation lock
            snapshot = await self._load_conversation(turn)
            candidates = await self.load_candidates(turn, snapshot)
            vector_hits, degraded = await self._vector_lookup(turn, candidates)

            async with self.locks.get(turn.conversation_id):
                conversation = await self._load_conversation(turn)
                if conversation.closed:
                    raise ActivationError(
                        f"Conversation {conversation.id} is closed",
                        {"conversation_id": conversation.id},
                    )
                assembly = await self.pipeline.run(
                    turn,
                    conversation,
                    candidates,
                    vector_hits,
                    degraded,
                    self.turn_budget(turn),
                )
        finally:
            structlog.contextvars.unbind_contextvars("conversation_id")

        metrics.record_latency("process_turn", (time.time() - start_time) * 1000)
        metrics.increment_counter("turns.processed")
        if assembly.degraded:
            metrics.increment_counter("turns.degraded")

        return assembly

    def turn_budget(self, turn: TurnContext) -> int:
        if turn.budget is not None:
            return turn.budget
        return self.settings.budget_config().total_budget()

    async def load_candidates(self, turn: TurnContext, conversation: Conversation) -> List[Candidate]:
        """Knowledge entries of the user plus memories still eligible for activation"""

        candidates = [
            Candidate(
                entry=entry,
                kind=EntryKind.KNOWLEDGE,
                token_cost=entry_token_cost(entry, self.settings.chars_per_token),
            )
            for entry in await self.entry_store.list_entries(turn.user_id)
        ]

        if self.settings.include_memories:
            seen: Set[str] = {candidate.entry_id for candidate in candidates}
            for memory in await self.lifecycle.eligible_memories(conversation):
                if memory.id in seen:
                    continue
                entry = memory.as_entry()
                candidates.append(Candidate(
                    entry=entry,
                    kind=EntryKind.MEMORY,
                    importance=memory.importance,
                    token_cost=entry_token_cost(entry, self.settings.chars_per_token),
                ))

        return candidates

    async def _vector_lookup(
        self,
        turn: TurnContext,
        candidates: List[Candidate]
    ) -> Tuple[Dict[str, VectorHit], bool]:
        """One similarity query for every vector/hybrid candidate of the turn"""

        vector_settings = {}
        for candidate in candidates:
            settings = candidate.entry.activation
            if settings is not None and settings.uses_vectors:
                vector_settings[candidate.entry_id] = settings

        if not vector_settings:
            return {}, False

        query = "\n".join(
            self.matcher.message_text(message)
            for message in turn.messages[-self.settings.vector_query_depth:]
        )
        threshold = min(s.vector_similarity_threshold for s in vector_settings.values())
        max_results = max(s.max_vector_results for s in vector_settings.values())

        return await self.similarity_client.lookup(query, list(vector_settings.keys()), threshold, max_results)

    async def _load_conversation(self, turn: TurnContext) -> Conversation:
        conversation = await self.conversation_store.get(turn.conversation_id)
        if conversation is not None:
            return conversation

        participants = Participants(
            bot_ids=[turn.bot.id] if turn.bot else [],
            persona_ids=[turn.persona.id] if turn.persona else [],
        )
        return Conversation(id=turn.conversation_id, user_id=turn.user_id, participants=participants)

    async def convert_memory_to_lore(self, memory_id: str, tags: Optional[Set[str]] = None) -> LoreConversion:
        return await self.lifecycle.convert_to_lore(memory_id, tags)

    async def close_conversation(self, conversation_id: str) -> int:
        """Drop the conversation's activation state and mark it closed"""

        async with self.locks.get(conversation_id):
            cleared = self.state_tracker.clear_conversation(conversation_id)
            conversation = await self.conversation_store.get(conversation_id)
            if conversation is not None and not conversation.closed:
                conversation.closed = True
                await self.conversation_store.save(conversation)
        self.locks.discard(conversation_id)

        logger.info("Conversation closed", conversation_id=conversation_id, cleared_entries=cleared)
        return cleared

    def evict_idle(self) -> int:
        """Drop activation state of conversations idle past the configured TTL"""

        before = set(self.state_tracker.active_conversations())
        cleared = self.state_tracker.evict_idle(self.settings.state_idle_ttl_seconds)
        evicted = before - set(self.state_tracker.active_conversations())
        for conversation_id in evicted:
            self.locks.discard(conversation_id)

        if evicted:
            logger.info("Evicted idle conversations", conversations=len(evicted), cleared_entries=cleared)
        return len(evicted)

    def metrics_snapshot(self) -> Dict[str, Any]:
        return metrics.snapshot()

    async def start(self):
        self.activation_logger.start()

    async def flush_logs(self):
        await self.activation_logger.flush()

    async def close(self):
        await self.activation_logger.close()
