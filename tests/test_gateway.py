"""
Persistence gateway tests - compare-and-swap commits, conflicts, side effects and
conflict resolution, run against both store backends.
"""

import asyncio
from unittest.mock import patch

import pytest

from vision_agent.domain.models.vision_state import ResolutionStrategy
from vision_agent.domain.persistence.errors import DuplicateRecordError, RecordNotFoundError, StoreUnavailableError


async def make_record(gateway, state=None, record_id="v1"):
    return await gateway.create_record(initial_state=state or {"company_name": "Acme"}, record_id=record_id)


class TestCreate:

    @pytest.mark.asyncio
    async def test_create_and_get(self, gateway, scorer):
        record = await make_record(gateway, {"company_name": "Acme", "industry": "Retail"})

        assert record.version == 1
        assert record.title == "Acme"
        assert record.completeness_score == scorer.completeness({"company_name": "Acme", "industry": "Retail"})

        loaded = await gateway.get_record("v1")
        assert loaded.business_state == {"company_name": "Acme", "industry": "Retail"}

    @pytest.mark.asyncio
    async def test_untitled_without_identity(self, gateway):
        record = await gateway.create_record(initial_state={"industry": "Retail"}, record_id="v2")
        assert record.title == "Untitled vision"

    @pytest.mark.asyncio
    async def test_duplicate_id_is_rejected(self, gateway):
        await make_record(gateway)
        with pytest.raises(DuplicateRecordError):
            await make_record(gateway)

    @pytest.mark.asyncio
    async def test_missing_record(self, gateway):
        with pytest.raises(RecordNotFoundError):
            await gateway.get_record("nope")
        with pytest.raises(RecordNotFoundError):
            await gateway.list_changes("nope")


class TestCommit:

    @pytest.mark.asyncio
    async def test_commit_bumps_version_and_derives_score(self, gateway, scorer, metrics):
        await make_record(gateway)
        state = {"company_name": "Acme", "industry": "Healthcare", "key_themes": ["Access"]}

        result = await gateway.commit("v1", state, expected_version=1)

        assert result.status == "ok"
        assert result.ok.new_version == 2
        assert result.ok.completeness_score == scorer.completeness(state)
        stored = await gateway.get_record("v1")
        assert stored.version == 2
        assert stored.business_state == state
        assert metrics.get_counter("commits") == 1

    @pytest.mark.asyncio
    async def test_commit_without_expected_version_uses_loaded_version(self, gateway):
        await make_record(gateway)
        result = await gateway.commit("v1", {"company_name": "Acme", "industry": "Retail"})
        assert result.ok.new_version == 2

    @pytest.mark.asyncio
    async def test_stale_version_leaves_storage_untouched(self, gateway, metrics):
        await make_record(gateway)
        await gateway.commit("v1", {"company_name": "Acme", "industry": "Retail"}, expected_version=1)

        result = await gateway.commit("v1", {"company_name": "Other"}, expected_version=1)

        assert result.status == "conflict"
        assert result.conflict.current_version == 2
        assert result.conflict.expected_version == 1
        assert result.conflict.current_state == {"company_name": "Acme", "industry": "Retail"}
        stored = await gateway.get_record("v1")
        assert stored.version == 2
        assert stored.business_state == {"company_name": "Acme", "industry": "Retail"}
        assert metrics.get_counter("version_conflicts") == 1

    @pytest.mark.asyncio
    async def test_writer_with_stale_snapshot_sees_winner_state(self, gateway):
        await make_record(gateway)
        await gateway.commit("v1", {"company_name": "Acme", "industry": "Retail"})
        await gateway.commit("v1", {"company_name": "Acme", "industry": "Retail", "timeline": "2030"})
        assert (await gateway.get_record("v1")).version == 3

        state_b = {"company_name": "Acme", "industry": "Logistics", "timeline": "2030"}
        result_b = await gateway.commit("v1", state_b, expected_version=3)
        result_a = await gateway.commit("v1", {"company_name": "Acme A"}, expected_version=3)

        assert result_b.ok.new_version == 4
        assert result_a.status == "conflict"
        assert result_a.conflict.current_version == 4
        assert result_a.conflict.expected_version == 3
        assert result_a.conflict.current_state == state_b

    @pytest.mark.asyncio
    async def test_concurrent_commits_have_one_winner(self, gateway):
        await make_record(gateway)
        states = [{"company_name": "Acme", "industry": f"Industry {i}"} for i in range(2)]

        results = await asyncio.gather(*[gateway.commit("v1", s, expected_version=1) for s in states])

        winners = [r for r in results if r.status == "ok"]
        losers = [r for r in results if r.status == "conflict"]
        assert len(winners) == 1
        assert len(losers) == 1
        stored = await gateway.get_record("v1")
        assert stored.version == 2
        assert losers[0].conflict.current_state == stored.business_state

    @pytest.mark.asyncio
    async def test_transport_metadata_is_stripped(self, gateway):
        await make_record(gateway)
        state = {
            "company_name": "Acme",
            "metadata": {"session_id": "s1", "version": 7, "focus_stage": "strategy"},
        }
        await gateway.commit("v1", state)

        stored = await gateway.get_record("v1")
        assert stored.business_state["metadata"] == {"focus_stage": "strategy"}

    @pytest.mark.asyncio
    async def test_empty_metadata_is_dropped(self, gateway):
        await make_record(gateway)
        await gateway.commit("v1", {"company_name": "Acme", "metadata": {"user_id": "u1"}})
        assert "metadata" not in (await gateway.get_record("v1")).business_state

    @pytest.mark.asyncio
    async def test_identity_change_renames_record(self, gateway):
        await make_record(gateway)
        await gateway.commit("v1", {"company_name": "Acme Health"})
        assert (await gateway.get_record("v1")).title == "Acme Health"

    @pytest.mark.asyncio
    async def test_rename_skipped_when_newer_commit_landed(self, gateway, store):
        await make_record(gateway)
        original_rename = store.rename

        async def rename_after_competing_commit(record_id, title, expected_version=None):
            await store.compare_and_swap("v1", {"company_name": "Beta"}, 10.0, 2)
            return await original_rename(record_id, title, expected_version=expected_version)

        with patch.object(store, "rename", side_effect=rename_after_competing_commit):
            result = await gateway.commit("v1", {"company_name": "Alpha"})

        assert result.status == "ok"
        assert result.ok.new_version == 2
        stored = await gateway.get_record("v1")
        assert stored.version == 3
        assert stored.business_state == {"company_name": "Beta"}
        assert stored.title == "Acme"

    @pytest.mark.asyncio
    async def test_store_rename_checks_version(self, gateway, store):
        await make_record(gateway)
        await store.compare_and_swap("v1", {"company_name": "Acme"}, 10.0, 1)

        assert await store.rename("v1", "Stale", expected_version=1) is False
        assert await store.rename("v1", "Fresh", expected_version=2) is True
        assert (await store.get("v1")).title == "Fresh"
        with pytest.raises(RecordNotFoundError):
            await store.rename("nope", "Ghost", expected_version=1)

    @pytest.mark.asyncio
    async def test_audit_trail(self, gateway):
        await make_record(gateway)
        await gateway.commit(
            "v1", {"company_name": "Acme", "metadata": {"session_id": "s1"}},
            user_id="u1", change_type="manual_update"
        )

        changes = await gateway.list_changes("v1")
        assert [(c.old_version, c.new_version, c.change_type) for c in changes] == [
            (0, 1, "created"),
            (1, 2, "manual_update"),
        ]
        assert changes[1].user_id == "u1"
        assert changes[1].metadata == {"extraction_metadata": {"session_id": "s1"}}


class TestFailures:

    @pytest.mark.asyncio
    async def test_audit_failure_does_not_fail_commit(self, gateway, store, metrics):
        await make_record(gateway)

        with patch.object(store, "append_audit", side_effect=RuntimeError("disk full")):
            result = await gateway.commit("v1", {"company_name": "Acme", "industry": "Retail"})

        assert result.status == "ok"
        assert (await gateway.get_record("v1")).version == 2
        assert metrics.get_counter("side_effect_failures") == 1
        assert metrics.get_counter("side_effect_failures", {"side_effect": "audit"}) == 1

    @pytest.mark.asyncio
    async def test_rename_failure_does_not_fail_commit(self, gateway, store, metrics):
        await make_record(gateway)

        with patch.object(store, "rename", side_effect=StoreUnavailableError("locked")):
            result = await gateway.commit("v1", {"company_name": "Acme Health"})

        assert result.status == "ok"
        assert (await gateway.get_record("v1")).title == "Acme"
        assert metrics.get_counter("side_effect_failures") == 1

    @pytest.mark.asyncio
    async def test_missing_record_is_an_error_result(self, gateway):
        result = await gateway.commit("nope", {"company_name": "Acme"})
        assert result.status == "error"
        assert result.error.kind == "not_found"

    @pytest.mark.asyncio
    async def test_unreachable_store(self, gateway, store, metrics):
        await make_record(gateway)

        with patch.object(store, "load_for_update", side_effect=StoreUnavailableError("down")):
            result = await gateway.commit("v1", {"company_name": "Acme"})

        assert result.error.kind == "unavailable"
        assert metrics.get_counter("commit_errors") == 1

    @pytest.mark.asyncio
    async def test_failed_write(self, gateway, store):
        await make_record(gateway)

        with patch.object(store, "compare_and_swap", side_effect=StoreUnavailableError("locked")):
            result = await gateway.commit("v1", {"company_name": "Acme"})

        assert result.error.kind == "write_failed"
        assert (await gateway.get_record("v1")).version == 1


class TestResolveConflict:

    SERVER = {"company_name": "Acme", "industry": "Retail", "key_themes": ["Growth"]}
    CLIENT = {"industry": "E-commerce", "key_themes": ["Trust"], "timeline": "  "}

    @pytest.mark.asyncio
    @pytest.mark.parametrize("strategy,expected", [
        (ResolutionStrategy.CLIENT_WINS,
         {"company_name": "Acme", "industry": "E-commerce", "key_themes": ["Trust"], "timeline": "  "}),
        (ResolutionStrategy.SERVER_WINS, SERVER),
        (ResolutionStrategy.MERGE,
         {"company_name": "Acme", "industry": "E-commerce", "key_themes": ["Growth", "Trust"]}),
    ])
    async def test_strategies(self, gateway, strategy, expected):
        await make_record(gateway, self.SERVER)

        result = await gateway.resolve_conflict("v1", self.CLIENT, strategy)

        assert result.ok.new_version == 2
        stored = await gateway.get_record("v1")
        assert stored.business_state == expected
        changes = await gateway.list_changes("v1")
        assert changes[-1].change_type == f"conflict_resolution:{strategy.value}"
        assert changes[-1].user_id == "system"

    @pytest.mark.asyncio
    async def test_accepts_strategy_name(self, gateway):
        await make_record(gateway, self.SERVER)
        result = await gateway.resolve_conflict("v1", self.CLIENT, "merge")
        assert result.status == "ok"

    @pytest.mark.asyncio
    async def test_missing_record(self, gateway):
        result = await gateway.resolve_conflict("nope", self.CLIENT, ResolutionStrategy.MERGE)
        assert result.error.kind == "not_found"
