"""
Context layer assembly and the two memory stores behind it.
"""

from datetime import datetime, timedelta, timezone

import pytest

from vision_agent.domain.context.context_manager import ContextManager
from vision_agent.domain.context.memory.runtime_memory import RuntimeMemory
from vision_agent.domain.context.memory.user_memory_store import UserMemoryStore
from vision_agent.domain.models.vision_state import LayerType, VisionRecord


class FakeClock:
    def __init__(self):
        self.now = datetime(2024, 1, 1, tzinfo=timezone.utc)

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += timedelta(seconds=seconds)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def runtime_memory():
    return RuntimeMemory(max_turns=5)


@pytest.fixture
def user_memory(clock):
    return UserMemoryStore(default_ttl=60, clock=clock)


@pytest.fixture
def context_manager(optimizer, runtime_memory, user_memory, metrics):
    return ContextManager(optimizer, runtime_memory, user_memory, recent_turns=3, metrics=metrics)


class TestRuntimeMemory:

    @pytest.mark.asyncio
    async def test_keeps_newest_turns(self, runtime_memory):
        for i in range(7):
            await runtime_memory.add_turn("s1", "user", f"message {i}")

        turns = await runtime_memory.get_turns("s1")
        assert [t["content"] for t in turns] == [f"message {i}" for i in range(2, 7)]
        assert turns[0]["source"] == "conversation:s1"

    @pytest.mark.asyncio
    async def test_recent_messages_and_format(self, runtime_memory):
        await runtime_memory.add_turn("s1", "user", "We make bikes")
        await runtime_memory.add_turn("s1", "assistant", "Who buys them?")

        assert await runtime_memory.recent_messages("s1", 1) == ["Who buys them?"]
        assert await runtime_memory.format_recent("s1") == "[user]: We make bikes\n[assistant]: Who buys them?"

    @pytest.mark.asyncio
    async def test_sessions_are_isolated(self, runtime_memory):
        await runtime_memory.add_turn("s1", "user", "hello")
        await runtime_memory.clear_session("s1")

        assert await runtime_memory.get_turns("s1") == []
        assert await runtime_memory.format_recent("s2") == ""


class TestUserMemoryStore:

    @pytest.mark.asyncio
    async def test_recall_in_insertion_order(self, user_memory):
        await user_memory.remember("u1", "tone", "Prefers short answers")
        await user_memory.remember("u1", "role", "Chief strategy officer")

        facts = await user_memory.recall("u1")
        assert [f["fact"] for f in facts] == ["Prefers short answers", "Chief strategy officer"]
        assert facts[0]["source"] == "user_memory:u1:tone"

    @pytest.mark.asyncio
    async def test_expired_facts_are_evicted(self, user_memory, clock):
        await user_memory.remember("u1", "tone", "Prefers short answers")
        await user_memory.remember("u1", "role", "Founder", ttl=600)
        clock.advance(120)

        assert [f["key"] for f in await user_memory.recall("u1")] == ["role"]
        stats = await user_memory.get_stats()
        assert stats == {"users": 1, "total_keys": 1, "active_keys": 1}

    @pytest.mark.asyncio
    async def test_clear_expired_counts_entries(self, user_memory, clock):
        await user_memory.remember("u1", "a", "one")
        await user_memory.remember("u2", "b", "two")
        clock.advance(61)

        assert await user_memory.clear_expired() == 2
        assert await user_memory.forget("u1", "a") is False


class TestContextManager:

    @pytest.mark.asyncio
    async def test_builds_all_four_layers(self, context_manager, runtime_memory, user_memory, metrics):
        record = VisionRecord(id="v1", business_state={
            "company_name": "Acme",
            "key_themes": ["Growth", "Trust"],
            "metadata": {"focus_stage": "strategy"},
            "custom_fields": {"founding_year": 1999},
        })
        await runtime_memory.add_turn("s1", "user", "We sell tools")
        await user_memory.remember("u1", "tone", "Prefers short answers")

        result = await context_manager.build_context(
            "s1", 1000, user_id="u1", record=record,
            rag_snippets=["Tool market grows 4% a year", {"content": "Acme founded 1999", "source": "doc:7"}]
        )

        assert result.content.startswith(
            "=== CRITICAL CONTEXT ===\nCompany Name: Acme\nStrategic Themes: Growth, Trust\nFounding Year: 1999"
        )
        assert "=== RECENT CONTEXT ===\n[user]: We sell tools" in result.content
        assert "=== USER_MEMORY CONTEXT ===\n- Prefers short answers" in result.content
        assert result.content.endswith("=== RAG CONTEXT ===\nTool market grows 4% a year\nAcme founded 1999")
        assert result.sources == ["vision:v1", "conversation:s1", "user_memory:u1:tone", "doc:7"]
        assert metrics.get_metrics_summary()["gauges"]["context_tokens"] == result.token_count

    @pytest.mark.asyncio
    async def test_missing_inputs_give_empty_layers(self, context_manager):
        result = await context_manager.build_context("new-session", 100)
        assert result.content == ""
        assert result.token_count == 0

    @pytest.mark.asyncio
    async def test_only_recent_turns_window_is_used(self, context_manager, runtime_memory):
        for i in range(5):
            await runtime_memory.add_turn("s1", "user", f"turn {i}")

        layer = await context_manager.recent_layer("s1")
        assert layer.layer == LayerType.RECENT
        assert layer.content == "[user]: turn 2\n[user]: turn 3\n[user]: turn 4"

    @pytest.mark.asyncio
    async def test_tight_budget_is_respected(self, context_manager, runtime_memory):
        record = VisionRecord(id="v1", business_state={"vision_statement": "Be the most trusted tool maker. " * 10})
        for i in range(3):
            await runtime_memory.add_turn("s1", "user", "A long message about supply chains. " * 5)

        result = await context_manager.build_context("s1", 60, record=record)
        assert result.token_count <= 60
        assert result.applied_strategies
