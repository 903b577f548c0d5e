"""
End-to-end tests for ActivationEngine.process_turn over the in-memory
collaborators.
"""

import asyncio
from unittest.mock import AsyncMock

import pytest

from lorekeeper.domain.errors import ActivationError, SimilarityServiceError, TurnOrderError
from lorekeeper.domain.models.entry import (
    ActivationMode, ActivationSettings, BudgetControl, Filtering, GroupSettings, Position, Positioning
)
from lorekeeper.domain.models.activation import ActivationMethod, BotProfile, EntryKind, ExclusionReason
from lorekeeper.domain.models.memory import Memory
from lorekeeper.domain.context.context_manager import ActivationEngine
from lorekeeper.domain.context.positioning import splice_depth_blocks
from lorekeeper.domain.context.memory.conversation_store import InMemoryConversationStore
from lorekeeper.infrastructure.config.settings import EngineSettings
from factories import make_entry, make_turn


def decision_for(assembly, entry_id):
    return next((c for c in assembly.decisions if c.entry_id == entry_id), None)


def admitted_ids(assembly):
    return [c.entry_id for c in assembly.decisions if c.was_included]


class TestTurnScenarios:
    @pytest.mark.asyncio
    async def test_dragon_scenario(self, engine, entry_store):
        await entry_store.add_entry(make_entry("dragon", keys=["dragon"], sticky=2, cooldown=1))
        texts = ["a dragon appears", "we run", "we hide", "quiet now", "the dragon returns", "dragon!"]

        assemblies = [await engine.process_turn(make_turn(i, text)) for i, text in enumerate(texts, start=1)]

        assert admitted_ids(assemblies[0]) == ["dragon"]
        assert decision_for(assemblies[0], "dragon").method == ActivationMethod.KEYWORD
        for held in assemblies[1:3]:
            assert admitted_ids(held) == ["dragon"]
            assert decision_for(held, "dragon").method == ActivationMethod.STICKY
            assert decision_for(held, "dragon").score == decision_for(assemblies[0], "dragon").score
        assert assemblies[3].decisions == []
        assert assemblies[3].blocks == []
        assert decision_for(assemblies[4], "dragon").exclusion_reason == ExclusionReason.COOLDOWN_ACTIVE
        assert admitted_ids(assemblies[5]) == ["dragon"]
        await engine.close()

    @pytest.mark.asyncio
    async def test_budget_scenario(self, engine, entry_store):
        await entry_store.add_entry(make_entry(
            "high", keys=["alpha", "beta", "gamma", "delta"], token_count=600,
        ))
        await entry_store.add_entry(make_entry(
            "low",
            token_count=500,
            activation=ActivationSettings(primary_keys=["alpha", "beta"], secondary_keys=["xray"]),
        ))

        assembly = await engine.process_turn(make_turn(0, "alpha beta gamma delta xray", budget=1000))

        assert decision_for(assembly, "high").score == 8.0
        assert decision_for(assembly, "low").score == 5.0
        assert admitted_ids(assembly) == ["high"]
        assert decision_for(assembly, "low").exclusion_reason == ExclusionReason.BUDGET_EXHAUSTED
        assert assembly.total_tokens == 600
        assert assembly.budget_remaining == 400
        await engine.close()

    @pytest.mark.asyncio
    async def test_budget_bound_holds(self, engine, entry_store):
        for i in range(12):
            await entry_store.add_entry(make_entry(f"e{i}", keys=["storm"], token_count=150 + 37 * i))

        assembly = await engine.process_turn(make_turn(0, "storm", budget=700))

        assert assembly.total_tokens <= 700
        assert assembly.total_tokens == sum(b.token_cost for b in assembly.blocks)
        assert len(assembly.decisions) == 12
        await engine.close()

    @pytest.mark.asyncio
    async def test_vector_entry_activates(self, engine, entry_store, similarity_service):
        await entry_store.add_entry(make_entry("vec", mode=ActivationMode.VECTOR))
        similarity_service.scores["vec"] = 0.8

        assembly = await engine.process_turn(make_turn(0, "tell me about the old kingdom"))

        decision = decision_for(assembly, "vec")
        assert decision.was_included is True
        assert decision.method == ActivationMethod.VECTOR
        assert decision.score == pytest.approx(80.0)
        assert assembly.degraded is False
        await engine.close()

    @pytest.mark.asyncio
    async def test_constant_entry_and_depth_block(self, engine, entry_store):
        await entry_store.add_entry(make_entry(
            "rules",
            mode=ActivationMode.CONSTANT,
            content="Magic has a price.",
            positioning=Positioning(position=Position.AT_DEPTH, depth=1),
        ))

        turn = make_turn(0, "hello")
        assembly = await engine.process_turn(turn)

        assert admitted_ids(assembly) == ["rules"]
        spliced = splice_depth_blocks(turn.messages, assembly.blocks)
        assert [m.content for m in spliced] == ["Magic has a price.", "hello"]
        await engine.close()

    @pytest.mark.asyncio
    async def test_ignore_budget_entry_always_included(self, engine, entry_store):
        await entry_store.add_entry(make_entry(
            "pinned", keys=["dragon"], token_count=300, budget=BudgetControl(ignore_budget=True),
        ))
        assembly = await engine.process_turn(make_turn(0, "dragon", budget=100))
        assert admitted_ids(assembly) == ["pinned"]
        assert assembly.budget_remaining == -200
        await engine.close()

    @pytest.mark.asyncio
    async def test_group_scoring_keeps_best_entry(self, engine, entry_store, log_sink):
        weather = GroupSettings(group_name="weather", use_group_scoring=True)
        await entry_store.add_entry(make_entry("rain", keys=["storm", "rain"], group_settings=weather))
        await entry_store.add_entry(make_entry("snow", keys=["storm"], group_settings=weather))

        assembly = await engine.process_turn(make_turn(0, "a storm brings rain"))
        await engine.flush_logs()

        assert admitted_ids(assembly) == ["rain"]
        assert decision_for(assembly, "snow").exclusion_reason == ExclusionReason.GROUP_SCORING_LOST
        records = {r.entry_id: r for r in log_sink.for_conversation("conv-1")}
        assert records["snow"].exclusion_reason == ExclusionReason.GROUP_SCORING_LOST
        await engine.close()


class TestFilteringAndMemories:
    @pytest.mark.asyncio
    async def test_filtered_entry_is_logged_as_excluded(self, engine, entry_store):
        await entry_store.add_entry(make_entry(
            "secret", keys=["dragon"], filtering=Filtering(filter_by_bots=True, allowed_bot_ids=["bot-2"]),
        ))

        assembly = await engine.process_turn(make_turn(0, "dragon", bot=BotProfile(id="bot-1")))

        assert decision_for(assembly, "secret").exclusion_reason == ExclusionReason.FILTER_EXCLUDED
        assert assembly.blocks == []
        await engine.close()

    @pytest.mark.asyncio
    async def test_memory_competes_as_candidate(self, engine, entry_store):
        await entry_store.add_memory(Memory(
            id="mem-1",
            user_id="user-1",
            bot_ids=["bot-1"],
            content="We drank at the Prancing Pony.",
            token_count=12,
            importance=9,
            activation=ActivationSettings(mode=ActivationMode.KEYWORD, primary_keys=["tavern"]),
        ))

        assembly = await engine.process_turn(make_turn(0, "back to the tavern", bot=BotProfile(id="bot-1")))

        decision = decision_for(assembly, "mem-1")
        assert decision.kind == EntryKind.MEMORY
        assert decision.importance == 9
        assert decision.was_included is True
        await engine.close()

    @pytest.mark.asyncio
    async def test_converted_memory_activates_as_lore_only(self, engine, entry_store, similarity_service):
        await entry_store.add_memory(Memory(id="mem-1", user_id="user-1", content="The king is dead."))
        conversion = await engine.convert_memory_to_lore("mem-1")
        similarity_service.scores[conversion.entry_id] = 0.9
        similarity_service.scores["mem-1"] = 0.9

        assembly = await engine.process_turn(make_turn(0, "who rules now?"))

        assert admitted_ids(assembly) == [conversion.entry_id]
        await engine.close()


class TestDegradation:
    @pytest.mark.asyncio
    async def test_similarity_failure_falls_back_to_keywords(self, entry_store, conversation_store, log_sink, settings):
        service = AsyncMock()
        service.similar = AsyncMock(side_effect=SimilarityServiceError("index offline"))
        engine = ActivationEngine(entry_store, conversation_store, service, log_sink, settings)
        await entry_store.add_entry(make_entry("vec", mode=ActivationMode.VECTOR))
        await entry_store.add_entry(make_entry(
            "hyb", activation=ActivationSettings(mode=ActivationMode.HYBRID, primary_keys=["castle"]),
        ))

        assembly = await engine.process_turn(make_turn(0, "the castle gates"))

        assert assembly.degraded is True
        assert admitted_ids(assembly) == ["hyb"]
        assert decision_for(assembly, "hyb").method == ActivationMethod.KEYWORD
        assert decision_for(assembly, "vec") is None
        await engine.close()

    @pytest.mark.asyncio
    async def test_unreachable_index_falls_back_to_keywords(self, entry_store, conversation_store, log_sink, settings):
        service = AsyncMock()
        service.similar = AsyncMock(side_effect=ConnectionError("vector index unreachable"))
        engine = ActivationEngine(entry_store, conversation_store, service, log_sink, settings)
        await entry_store.add_entry(make_entry(
            "dragon", activation=ActivationSettings(mode=ActivationMode.HYBRID, primary_keys=["dragon"]),
        ))
        errors_before = engine.metrics_snapshot()["counters"].get("similarity.error", 0)

        assembly = await engine.process_turn(make_turn(0, "a dragon lands"))

        assert assembly.degraded is True
        assert admitted_ids(assembly) == ["dragon"]
        assert engine.metrics_snapshot()["counters"]["similarity.error"] == errors_before + 1
        await engine.close()


class TestConversationHandling:
    @pytest.mark.asyncio
    async def test_out_of_order_turn_rejected(self, engine, conversation_store):
        await engine.process_turn(make_turn(3, "first", turn_tokens=10))

        with pytest.raises(TurnOrderError):
            await engine.process_turn(make_turn(2, "late", turn_tokens=10))

        conversation = await conversation_store.get("conv-1")
        assert conversation.total_tokens == 10
        await engine.close()

    @pytest.mark.asyncio
    async def test_turn_tokens_accumulate(self, engine, conversation_store):
        await engine.process_turn(make_turn(0, "one", turn_tokens=30))
        await engine.process_turn(make_turn(1, "two", turn_tokens=12))
        assert (await conversation_store.get("conv-1")).total_tokens == 42
        await engine.close()

    @pytest.mark.asyncio
    async def test_threshold_triggers_consolidation(self, entry_store, conversation_store, log_sink):
        settings = EngineSettings(summarization_token_threshold=50, log_retry_delay=0.0)
        engine = ActivationEngine(entry_store, conversation_store, log_sink=log_sink, settings=settings)
        await entry_store.add_memory(Memory(
            id="m1", user_id="user-1", conversation_id="conv-1", content="We met Aria.", message_index=0,
        ))

        await engine.process_turn(make_turn(0, "hello", turn_tokens=20))
        assert (await conversation_store.get("conv-1")).requires_summarization is False

        await engine.process_turn(make_turn(1, "again", turn_tokens=40))

        conversation = await conversation_store.get("conv-1")
        assert conversation.requires_summarization is False
        assert conversation.last_summarized_message_index == 0
        assert (await entry_store.get_memory("m1")).consolidated_into is not None
        await engine.close()

    @pytest.mark.asyncio
    async def test_summarizer_failure_keeps_turn_and_tokens(self, entry_store, conversation_store, log_sink):
        settings = EngineSettings(summarization_token_threshold=5, log_retry_delay=0.0)
        summarizer = AsyncMock(side_effect=RuntimeError("llm down"))
        engine = ActivationEngine(
            entry_store, conversation_store, log_sink=log_sink, settings=settings, summarizer=summarizer,
        )
        await entry_store.add_entry(make_entry("dragon", keys=["dragon"]))
        await entry_store.add_memory(Memory(
            id="m1", user_id="user-1", conversation_id="conv-1", content="We met Aria.", message_index=0,
            activation=ActivationSettings(mode=ActivationMode.DISABLED),
        ))

        assembly = await engine.process_turn(make_turn(1, "dragon", turn_tokens=10))

        assert admitted_ids(assembly) == ["dragon"]
        conversation = await conversation_store.get("conv-1")
        assert conversation.total_tokens == 10
        assert conversation.requires_summarization is True
        assert (await entry_store.get_memory("m1")).consolidated_into is None

        summarizer.side_effect = None
        summarizer.return_value = "Aria joined the party."
        await engine.process_turn(make_turn(2, "dragon", turn_tokens=1))

        conversation = await conversation_store.get("conv-1")
        assert conversation.requires_summarization is False
        assert conversation.total_tokens == 11
        assert (await entry_store.get_memory("m1")).consolidated_into is not None
        await engine.close()

    @pytest.mark.asyncio
    async def test_closed_conversation_rejects_turns(self, engine, entry_store):
        await entry_store.add_entry(make_entry("dragon", keys=["dragon"], sticky=5))
        await engine.process_turn(make_turn(0, "dragon"))

        assert await engine.close_conversation("conv-1") == 1
        with pytest.raises(ActivationError):
            await engine.process_turn(make_turn(1, "dragon"))
        await engine.close()

    @pytest.mark.asyncio
    async def test_conversations_are_independent(self, engine, entry_store):
        await entry_store.add_entry(make_entry("dragon", keys=["dragon"], sticky=3))

        first, second = await asyncio.gather(
            engine.process_turn(make_turn(0, "dragon", conversation_id="a")),
            engine.process_turn(make_turn(0, "nothing here", conversation_id="b")),
        )

        assert admitted_ids(first) == ["dragon"]
        assert admitted_ids(second) == []
        await engine.close()


class TestLoggingAndDeterminism:
    @pytest.mark.asyncio
    async def test_every_decision_is_logged(self, engine, entry_store, log_sink):
        await entry_store.add_entry(make_entry("a", keys=["storm"], token_count=600))
        await entry_store.add_entry(make_entry("b", keys=["storm"], token_count=600))

        assembly = await engine.process_turn(make_turn(0, "storm", budget=1000))
        await engine.flush_logs()

        records = log_sink.for_conversation("conv-1")
        assert [r.entry_id for r in records] == ["a", "b"]
        assert [r.was_included for r in records] == [True, False]
        assert records[1].exclusion_reason == ExclusionReason.BUDGET_EXHAUSTED
        assert records[0].tokens_used == 600
        assert records[0].position_inserted == "before_character:0"
        assert len(records) == len(assembly.decisions)
        await engine.close()

    @pytest.mark.asyncio
    async def test_same_inputs_same_assembly(self, entry_store, settings):
        for i in range(6):
            await entry_store.add_entry(make_entry(f"e{i}", keys=["storm"], token_count=100 * (i + 1)))

        results = []
        for _ in range(2):
            engine = ActivationEngine(entry_store, InMemoryConversationStore(), settings=settings)
            assembly = await engine.process_turn(make_turn(0, "storm", budget=900))
            results.append([(c.entry_id, c.was_included, c.exclusion_reason) for c in assembly.decisions])
            await engine.close()

        assert results[0] == results[1]
