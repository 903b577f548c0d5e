from typing import TypedDict, List, Dict, Any, Optional
from langgraph.graph import StateGraph, END
import structlog

from lorekeeper.domain.models.activation import (
    ActivationLogEntry, ActivationMethod, Candidate, ContextAssembly,
    ContextBlock, ExclusionReason, MatchResult, TurnContext, VectorHit
)
from lorekeeper.domain.models.memory import Conversation, Memory
from lorekeeper.domain.context.matcher import Matcher
from lorekeeper.domain.context.state.state_manager import ActivationStateTracker, GateDecision
from lorekeeper.domain.context.context_ranker import ContextRanker
from lorekeeper.domain.context.budget_allocator import Allocation, BudgetAllocator
from lorekeeper.domain.context.positioning import PositioningAssembler
from lorekeeper.domain.context.memory.lifecycle import MemoryLifecycleManager
from lorekeeper.domain.context.tokens import estimate_messages_tokens
from lorekeeper.infrastructure.observability.activation_log import ActivationLogger
from lorekeeper.infrastructure.observability.logging import engine_logger, metrics

logger = structlog.get_logger(__name__)


class TurnState(TypedDict):
    """State for the per-turn graph"""
    turn: TurnContext
    conversation: Conversation
    candidates: List[Candidate]
    vector_hits: Dict[str, VectorHit]
    degraded: bool
    budget: int
    consolidated: Optional[Memory]
    matches: Dict[str, MatchResult]
    eligible: List[Candidate]
    blocked: List[Candidate]
    allocation: Optional[Allocation]
    blocks: List[ContextBlock]
    assembly: Optional[ContextAssembly]


class TurnPipeline:
    """
    The activation pipeline of one turn, as a LangGraph workflow:

        lifecycle -> [consolidate] -> match -> gate -> group_scoring
            -> rank_and_allocate -> assemble -> log

    The graph mutates per-conversation state (turn counter, timed effects,
    token totals), so it must run under that conversation's lock.
    """

    def __init__(
        self,
        matcher: Matcher,
        tracker: ActivationStateTracker,
        ranker: ContextRanker,
        allocator: BudgetAllocator,
        assembler: PositioningAssembler,
        lifecycle: MemoryLifecycleManager,
        activation_logger: ActivationLogger,
        chars_per_token: float = 4.0
    ):
        self.matcher = matcher
        self.tracker = tracker
        self.ranker = ranker
        self.allocator = allocator
        self.assembler = assembler
        self.lifecycle = lifecycle
        self.activation_logger = activation_logger
        self.chars_per_token = chars_per_token
        self.workflow = self._create_workflow()

    def _create_workflow(self):
        workflow = StateGraph(TurnState)

        workflow.add_node("lifecycle", self.lifecycle_node)
        workflow.add_node("consolidate", self.consolidation_node)
        workflow.add_node("match", self.match_node)
        workflow.add_node("gate", self.gate_node)
        workflow.add_node("group_scoring", self.group_scoring_node)
        workflow.add_node("rank_and_allocate", self.allocation_node)
        workflow.add_node("assemble", self.assembly_node)
        workflow.add_node("log", self.log_node)

        workflow.set_entry_point("lifecycle")

        workflow.add_conditional_edges(
            "lifecycle",
            self.route_after_lifecycle,
            {
                "consolidate": "consolidate",
                "skip": "match"
            }
        )

        workflow.add_edge("consolidate", "match")
        workflow.add_edge("match", "gate")
        workflow.add_edge("gate", "group_scoring")
        workflow.add_edge("group_scoring", "rank_and_allocate")
        workflow.add_edge("rank_and_allocate", "assemble")
        workflow.add_edge("assemble", "log")
        workflow.add_edge("log", END)

        return workflow.compile()

    async def run(
        self,
        turn: TurnContext,
        conversation: Conversation,
        candidates: List[Candidate],
        vector_hits: Dict[str, VectorHit],
        degraded: bool,
        budget: int
    ) -> ContextAssembly:
        initial_state: TurnState = {
            "turn": turn,
            "conversation": conversation,
            "candidates": candidates,
            "vector_hits": vector_hits,
            "degraded": degraded,
            "budget": budget,
            "consolidated": None,
            "matches": {},
            "eligible": [],
            "blocked": [],
            "allocation": None,
            "blocks": [],
            "assembly": None,
        }
        final_state = await self.workflow.ainvoke(initial_state)
        return final_state["assembly"]

    async def lifecycle_node(self, state: TurnState) -> Dict[str, Any]:
        """Reject out-of-order turns, then account the turn's tokens"""

        turn = state["turn"]
        conversation = state["conversation"]
        self.tracker.ensure_order(turn.conversation_id, turn.message_index)

        tokens = turn.turn_tokens
        if tokens is None:
            tokens = estimate_messages_tokens(turn.messages[-1:], self.chars_per_token)
        self.lifecycle.record_turn(conversation, turn.message_index, tokens)
        await self.lifecycle.conversation_store.save(conversation)

        return {"conversation": conversation}

    def route_after_lifecycle(self, state: TurnState) -> str:
        if state["conversation"].requires_summarization:
            return "consolidate"
        return "skip"

    async def consolidation_node(self, state: TurnState) -> Dict[str, Any]:
        conversation = state["conversation"]
        logger.info(
            "Consolidating memories",
            conversation_id=conversation.id,
            unsummarized_tokens=conversation.unsummarized_tokens,
        )
        try:
            consolidated = await self.lifecycle.consolidate(conversation, state["turn"].message_index)
        except Exception as e:
            # The flag stays set, so the next turn retries
            logger.error(
                "Consolidation failed",
                conversation_id=conversation.id,
                error=str(e),
                error_type=type(e).__name__,
            )
            metrics.increment_counter("consolidation.error")
            return {"conversation": conversation, "consolidated": None}
        return {"conversation": conversation, "consolidated": consolidated}

    async def match_node(self, state: TurnState) -> Dict[str, Any]:
        turn = state["turn"]
        matches = {
            candidate.entry_id: self.matcher.match(
                candidate.entry, turn, state["vector_hits"], state["degraded"]
            )
            for candidate in state["candidates"]
        }
        return {"matches": matches}

    async def gate_node(self, state: TurnState) -> Dict[str, Any]:
        """Run the timed-effect state machine and split candidates into eligible and blocked"""

        turn = state["turn"]
        matches = state["matches"]
        by_id = {candidate.entry_id: candidate for candidate in state["candidates"]}

        allowed = {
            entry_id: candidate.entry.filtering.allows(
                turn.bot.id if turn.bot else None,
                turn.persona.id if turn.persona else None,
            )
            for entry_id, candidate in by_id.items()
        }

        signals = {
            entry_id: (matches[entry_id].matched and allowed[entry_id], candidate.entry.advanced)
            for entry_id, candidate in by_id.items()
        }

        def admit(entry_id: str) -> bool:
            candidate = by_id.get(entry_id)
            if candidate is None:
                return True
            return self.matcher.roll_probability(candidate.entry.activation)

        decisions = self.tracker.advance(turn.conversation_id, turn.message_index, signals, admit)

        eligible: List[Candidate] = []
        blocked: List[Candidate] = []
        for entry_id, candidate in by_id.items():
            match = matches[entry_id]
            decision: Optional[GateDecision] = decisions.get(entry_id)
            held = decision is not None and decision.eligible

            if not allowed[entry_id]:
                if match.matched or held:
                    blocked.append(self._scored(turn, candidate, match, held).exclude(ExclusionReason.FILTER_EXCLUDED))
                continue

            if held:
                eligible.append(self._scored(turn, candidate, match, True))
            elif match.matched and decision is not None and decision.exclusion_reason is not None:
                blocked.append(self._scored(turn, candidate, match, False).exclude(decision.exclusion_reason))

        return {"eligible": eligible, "blocked": self.ranker.rank(blocked)}

    def _scored(self, turn: TurnContext, candidate: Candidate, match: MatchResult, eligible: bool) -> Candidate:
        if match.matched:
            method = match.method
            score = self.ranker.score(match)
            if eligible:
                self.tracker.remember_score(turn.conversation_id, candidate.entry_id, score, method)
        else:
            # Held by sticky: keep the score of the match that activated it
            state = self.tracker.get_state(turn.conversation_id, candidate.entry_id)
            method = ActivationMethod.STICKY
            score = self.ranker.score(match, carried_score=state.last_score)

        return candidate.model_copy(update={"match": match, "method": method, "score": score})

    async def group_scoring_node(self, state: TurnState) -> Dict[str, Any]:
        kept, lost = self.ranker.apply_group_scoring(state["eligible"])
        if not lost:
            return {}
        return {"eligible": kept, "blocked": self.ranker.rank(state["blocked"] + lost)}

    async def allocation_node(self, state: TurnState) -> Dict[str, Any]:
        ranked = self.ranker.rank(state["eligible"])
        allocation = self.allocator.allocate(ranked, state["budget"])
        return {"allocation": allocation}

    async def assembly_node(self, state: TurnState) -> Dict[str, Any]:
        turn = state["turn"]
        allocation = state["allocation"]

        blocks = self.assembler.assemble(allocation.admitted)
        assembly = ContextAssembly(
            conversation_id=turn.conversation_id,
            message_index=turn.message_index,
            blocks=blocks,
            total_tokens=allocation.tokens_used,
            budget=allocation.budget,
            budget_remaining=allocation.remaining,
            decisions=allocation.decisions + state["blocked"],
            degraded=state["degraded"],
        )
        return {"blocks": blocks, "assembly": assembly}

    async def log_node(self, state: TurnState) -> Dict[str, Any]:
        """Enqueue one audit record per decision; the write happens in the background"""

        assembly = state["assembly"]
        records = [
            ActivationLogEntry.from_candidate(assembly.conversation_id, assembly.message_index, candidate)
            for candidate in assembly.decisions
        ]
        self.activation_logger.enqueue(records)

        engine_logger.log_turn_assembled(
            assembly.conversation_id,
            assembly.message_index,
            admitted=sum(1 for c in assembly.decisions if c.was_included),
            excluded=sum(1 for c in assembly.decisions if not c.was_included),
            total_tokens=assembly.total_tokens,
            degraded=assembly.degraded,
        )
        return {}
