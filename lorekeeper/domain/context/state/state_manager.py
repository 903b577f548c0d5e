from typing import Callable, Dict, Iterable, Mapping, Optional, Tuple
from pydantic import BaseModel, Field
from datetime import datetime, timedelta
from enum import Enum
from contextlib import asynccontextmanager
import asyncio

from lorekeeper.domain.errors import TurnOrderError
from lorekeeper.domain.models.entry import AdvancedActivation, utcnow
from lorekeeper.domain.models.activation import ActivationMethod, ExclusionReason
from lorekeeper.infrastructure.observability.logging import engine_logger


class ActivationPhase(str, Enum):
    """Per (conversation, entry) activation phase"""
    IDLE = "idle"
    PENDING = "pending"
    ACTIVE = "active"
    COOLING = "cooling"


class EntryActivationState(BaseModel):
    """Timed-effect state of one entry inside one conversation"""
    conversation_id: str
    entry_id: str
    phase: ActivationPhase = ActivationPhase.IDLE
    timing: AdvancedActivation = Field(default_factory=AdvancedActivation)
    pending_since: Optional[int] = None
    last_matched_turn: Optional[int] = None
    activated_at: Optional[int] = None
    cooling_since: Optional[int] = None
    last_score: float = 0.0
    last_method: Optional[ActivationMethod] = None
    updated_at: datetime = Field(default_factory=utcnow)


class ConversationTurnState(BaseModel):
    """Turn counter of a conversation; all timing is counted in these turns"""
    conversation_id: str
    turn: int = 0
    last_message_index: int = -1
    last_activity: datetime = Field(default_factory=utcnow)


class GateDecision(BaseModel):
    """Whether a fresh match (or a held activation) is honored this turn"""
    entry_id: str
    phase: ActivationPhase
    eligible: bool = False
    held_by_sticky: bool = False
    exclusion_reason: Optional[ExclusionReason] = None


class ActivationStateTracker:
    """Sticky/cooldown/delay state machine keyed by (conversation_id, entry_id)"""

    def __init__(self):
        self.entries: Dict[Tuple[str, str], EntryActivationState] = {}
        self.conversations: Dict[str, ConversationTurnState] = {}

    def ensure_order(self, conversation_id: str, message_index: int):
        conversation = self.conversations.get(conversation_id)
        if conversation is not None and message_index <= conversation.last_message_index:
            raise TurnOrderError(
                "Turn processed out of order",
                {
                    "conversation_id": conversation_id,
                    "message_index": message_index,
                    "last_message_index": conversation.last_message_index,
                },
            )

    def begin_turn(self, conversation_id: str, message_index: int) -> int:
        """Advance the conversation's turn counter; turns must arrive in order"""

        self.ensure_order(conversation_id, message_index)

        conversation = self.conversations.get(conversation_id)
        if conversation is None:
            conversation = ConversationTurnState(conversation_id=conversation_id)
            self.conversations[conversation_id] = conversation

        conversation.turn += 1
        conversation.last_message_index = message_index
        conversation.last_activity = utcnow()
        return conversation.turn

    def advance(
        self,
        conversation_id: str,
        message_index: int,
        signals: Mapping[str, Tuple[bool, AdvancedActivation]],
        admit: Optional[Callable[[str], bool]] = None
    ) -> Dict[str, GateDecision]:
        """Run one turn for every signalled entry plus every entry still holding state"""

        turn = self.begin_turn(conversation_id, message_index)
        decisions: Dict[str, GateDecision] = {}

        for entry_id, (matched, timing) in signals.items():
            decisions[entry_id] = self.evaluate(conversation_id, entry_id, timing, matched, turn, admit)

        # Tracked entries that were not evaluated this turn still age
        for (conv_id, entry_id), state in list(self.entries.items()):
            if conv_id == conversation_id and entry_id not in decisions:
                decisions[entry_id] = self.evaluate(conversation_id, entry_id, state.timing, False, turn, admit)

        return decisions

    def evaluate(
        self,
        conversation_id: str,
        entry_id: str,
        timing: AdvancedActivation,
        matched: bool,
        turn: int,
        admit: Optional[Callable[[str], bool]] = None
    ) -> GateDecision:
        """Apply one turn to one entry and decide its eligibility"""

        key = (conversation_id, entry_id)
        state = self.entries.get(key) or EntryActivationState(
            conversation_id=conversation_id,
            entry_id=entry_id,
        )
        state.timing = timing
        previous = state.phase

        self._expire(state, matched, turn)

        decision = GateDecision(entry_id=entry_id, phase=state.phase)

        if state.phase == ActivationPhase.ACTIVE:
            if matched:
                state.last_matched_turn = turn
            decision.eligible = True
            decision.held_by_sticky = not matched

        elif state.phase == ActivationPhase.COOLING:
            decision.exclusion_reason = ExclusionReason.COOLDOWN_ACTIVE

        elif state.phase == ActivationPhase.PENDING:
            state.last_matched_turn = turn
            if turn - state.pending_since >= timing.delay:
                state.phase = ActivationPhase.ACTIVE
                state.activated_at = turn
                decision.eligible = True
            else:
                decision.exclusion_reason = ExclusionReason.DELAY_NOT_MET

        elif matched:
            if admit is not None and not admit(entry_id):
                decision.exclusion_reason = ExclusionReason.PROBABILITY_FAILED
            elif timing.delay > 0:
                state.phase = ActivationPhase.PENDING
                state.pending_since = turn
                state.last_matched_turn = turn
                decision.exclusion_reason = ExclusionReason.DELAY_NOT_MET
            else:
                state.phase = ActivationPhase.ACTIVE
                state.activated_at = turn
                state.last_matched_turn = turn
                decision.eligible = True

        decision.phase = state.phase
        if state.phase != previous:
            engine_logger.log_state_transition(
                conversation_id, entry_id, previous.value, state.phase.value, turn
            )

        if state.phase == ActivationPhase.IDLE:
            # State exists only while an entry is doing something
            self.entries.pop(key, None)
        else:
            state.updated_at = utcnow()
            self.entries[key] = state

        return decision

    def _expire(self, state: EntryActivationState, matched: bool, turn: int):
        """Resolve time-based transitions before looking at this turn's match"""

        timing = state.timing

        if state.phase == ActivationPhase.PENDING:
            consecutive = state.last_matched_turn == turn - 1
            if not (matched and consecutive):
                state.phase = ActivationPhase.IDLE
                state.pending_since = None

        if state.phase == ActivationPhase.ACTIVE and not matched:
            last = state.last_matched_turn if state.last_matched_turn is not None else turn
            if turn - last > timing.sticky:
                if timing.cooldown > 0:
                    state.phase = ActivationPhase.COOLING
                    state.cooling_since = last + timing.sticky + 1
                else:
                    state.phase = ActivationPhase.IDLE

        if state.phase == ActivationPhase.COOLING and turn - state.cooling_since > timing.cooldown:
            state.phase = ActivationPhase.IDLE
            state.cooling_since = None

    def remember_score(self, conversation_id: str, entry_id: str, score: float, method: ActivationMethod):
        """Keep the last fresh score so sticky turns rank the entry consistently"""

        state = self.entries.get((conversation_id, entry_id))
        if state is not None:
            state.last_score = score
            state.last_method = method

    def get_state(self, conversation_id: str, entry_id: str) -> EntryActivationState:
        state = self.entries.get((conversation_id, entry_id))
        if state is None:
            return EntryActivationState(conversation_id=conversation_id, entry_id=entry_id)
        return state

    def get_phase(self, conversation_id: str, entry_id: str) -> ActivationPhase:
        return self.get_state(conversation_id, entry_id).phase

    def clear_conversation(self, conversation_id: str) -> int:
        """Drop all state of a closed conversation"""

        keys = [key for key in self.entries if key[0] == conversation_id]
        for key in keys:
            del self.entries[key]
        self.conversations.pop(conversation_id, None)
        return len(keys)

    def evict_idle(self, ttl_seconds: int, now: Optional[datetime] = None) -> int:
        """Drop conversations with no turn for longer than the TTL"""

        now = now or utcnow()
        cutoff = now - timedelta(seconds=ttl_seconds)
        stale = [
            conversation_id
            for conversation_id, conversation in self.conversations.items()
            if conversation.last_activity < cutoff
        ]
        return sum(self.clear_conversation(conversation_id) for conversation_id in stale)

    def active_conversations(self) -> Iterable[str]:
        return list(self.conversations.keys())


class KeyedLocks:
    """One asyncio lock per key (conversation or memory id); keys never wait on each other"""

    def __init__(self):
        self._locks: Dict[str, asyncio.Lock] = {}
        self._holders: Dict[str, int] = {}

    def get(self, key: str) -> asyncio.Lock:
        lock = self._locks.get(key)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[key] = lock
        return lock

    @asynccontextmanager
    async def hold(self, key: str):
        """Hold the key's lock; the lock is dropped once no task holds or awaits it"""

        lock = self.get(key)
        self._holders[key] = self._holders.get(key, 0) + 1
        try:
            async with lock:
                yield lock
        finally:
            self._holders[key] -= 1
            if self._holders[key] == 0:
                del self._holders[key]
                if self._locks.get(key) is lock:
                    del self._locks[key]

    def discard(self, key: str):
        lock = self._locks.get(key)
        if lock is not None and not lock.locked() and key not in self._holders:
            del self._locks[key]

    def __len__(self) -> int:
        return len(self._locks)
