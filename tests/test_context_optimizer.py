"""
Context optimizer tests - budget satisfaction, strategy order and assembly.
"""

import pytest

from vision_agent.domain.context.context_optimizer import split_turns
from vision_agent.domain.context.token_budget import estimate_tokens, truncate_text
from vision_agent.domain.models.vision_state import ContextLayer, LayerType


def layer(kind, content, sources=None, token_count=None):
    return ContextLayer(layer=kind, content=content, sources=sources or [], token_count=token_count)


def four_layers():
    """1000 estimated tokens: critical 100, recent 300, user memory 200, rag 400"""
    return [
        layer(LayerType.CRITICAL, "abc. " * 80, ["vision:1"]),
        layer(LayerType.RECENT, "def. " * 240, ["conversation:s1"]),
        layer(LayerType.USER_MEMORY, "ghi. " * 160, ["user_memory:u1"]),
        layer(LayerType.RAG, "jkl. " * 320, ["doc:1"]),
    ]


class TestTokenBudget:
    """Token estimate and boundary-aware truncation."""

    def test_estimate_rounds_up(self):
        assert estimate_tokens("") == 0
        assert estimate_tokens("abcd") == 1
        assert estimate_tokens("abcde") == 2

    def test_short_text_is_untouched(self):
        assert truncate_text("Short.", 100) == "Short."

    def test_cuts_at_last_sentence_boundary(self):
        assert truncate_text("Hello world. Second sentence here.", 20) == "Hello world."

    def test_falls_back_to_word_boundary(self):
        assert truncate_text("alpha beta gamma", 12) == "alpha beta"
        assert truncate_text("alpha beta gamma", 10) == "alpha beta"

    def test_decimal_point_is_not_a_sentence_end(self):
        assert truncate_text("Version 2.5 is out", 9) == "Version"

    def test_never_cuts_mid_word(self):
        assert truncate_text("supercalifragilistic", 5) == ""

    def test_zero_limit(self):
        assert truncate_text("anything", 0) == ""


class TestWithinBudget:

    def test_layers_assembled_as_given(self, optimizer):
        layers = [
            layer(LayerType.RAG, "A snippet", ["doc:1", "doc:2"]),
            layer(LayerType.CRITICAL, "A fact", ["vision:1", "doc:1"]),
        ]
        result = optimizer.optimize(layers, 100)

        assert result.content == "=== CRITICAL CONTEXT ===\nA fact\n\n=== RAG CONTEXT ===\nA snippet"
        assert result.sources == ["vision:1", "doc:1", "doc:2"]
        assert result.token_count == estimate_tokens("A fact") + estimate_tokens("A snippet")
        assert result.applied_strategies == []
        assert result.layer_tokens == {"critical": 2, "recent": 0, "user_memory": 0, "rag": 3}

    def test_accepts_mapping_of_layers(self, optimizer):
        result = optimizer.optimize({"recent": layer(LayerType.RECENT, "[user]: hi")}, 10)
        assert result.content == "=== RECENT CONTEXT ===\n[user]: hi"

    def test_duplicate_layer_is_rejected(self, optimizer):
        with pytest.raises(ValueError):
            optimizer.optimize([layer(LayerType.RAG, "a"), layer(LayerType.RAG, "b")], 10)

    def test_negative_budget_is_rejected(self, optimizer):
        with pytest.raises(ValueError):
            optimizer.optimize([], -1)


class TestStrategies:
    """Each strategy runs only while the total is over budget."""

    def test_critical_preserved_and_rest_split_proportionally(self, optimizer):
        layers = four_layers()
        result = optimizer.optimize(layers, 400)

        assert result.applied_strategies == ["prioritize_critical"]
        assert result.layer_tokens["critical"] == 100
        assert layers[0].content.strip() in result.content
        assert result.layer_tokens["recent"] <= 100
        assert result.layer_tokens["user_memory"] <= 66
        assert result.layer_tokens["rag"] <= 133
        others = result.token_count - result.layer_tokens["critical"]
        assert 280 <= others <= 300

    def test_empty_layers_dropped_first(self, optimizer):
        layers = [
            layer(LayerType.CRITICAL, "   ", token_count=50),
            layer(LayerType.RECENT, "[user]: hello there"),
        ]
        result = optimizer.optimize(layers, 10)
        assert result.applied_strategies == ["drop_empty_layers"]
        assert result.content == "=== RECENT CONTEXT ===\n[user]: hello there"

    def test_rag_keeps_first_half_of_lines(self, optimizer):
        lines = [f"Snippet {i} " + "x" * 29 for i in range(6)]
        result = optimizer.optimize([layer(LayerType.RAG, "\n".join(lines))], 40)

        assert result.applied_strategies == ["compress_rag"]
        assert result.content == "=== RAG CONTEXT ===\n" + "\n".join(lines[:3])

    def test_recent_keeps_first_and_last_two_turns(self, optimizer):
        turns = [f"[user]: message {i} " + "y" * 80 for i in range(8)]
        result = optimizer.optimize([layer(LayerType.RECENT, "\n".join(turns))], 150)

        assert result.applied_strategies == ["compress_recent"]
        body = result.content.split("\n", 1)[1].split("\n")
        assert body == turns[:2] + ["[Summary: 4 earlier turns omitted]"] + turns[-2:]

    def test_deduplicate_keeps_higher_priority_copy(self, optimizer):
        layers = [
            layer(LayerType.RECENT, "[user]: We sell running shoes online\n[assistant]: Tell me more"),
            layer(LayerType.USER_MEMORY, "Prefers short answers\n[user]: We sell running shoes online"),
        ]
        result = optimizer.optimize(layers, 25)

        assert result.applied_strategies == ["deduplicate"]
        assert result.content.count("We sell running shoes online") == 1
        assert result.content.endswith("=== USER_MEMORY CONTEXT ===\nPrefers short answers")

    def test_proportional_truncation_is_last_resort(self, optimizer):
        layers = [
            layer(LayerType.RECENT, "[user]: " + "Words flow on. " * 60),
            layer(LayerType.USER_MEMORY, "Likes detail. " * 40),
        ]
        result = optimizer.optimize(layers, 60)

        assert result.applied_strategies[-1] == "proportional_truncation"
        assert result.token_count <= 60
        assert result.layer_tokens["recent"] > 0
        assert result.layer_tokens["user_memory"] > 0


class TestBudgetSatisfaction:
    """Output fits the budget; critical goes only once everything else is gone, or when it cannot be cut at all."""

    @pytest.mark.parametrize("budget", [0, 1, 5, 37, 120, 250, 399, 999])
    def test_output_fits_budget(self, optimizer, budget):
        result = optimizer.optimize(four_layers(), budget)

        assert result.token_count <= budget
        if result.layer_tokens["critical"] == 0:
            assert result.layer_tokens["recent"] == 0
            assert result.layer_tokens["user_memory"] == 0
            assert result.layer_tokens["rag"] == 0

    def test_critical_alone_over_budget_is_truncated(self, optimizer):
        critical = layer(LayerType.CRITICAL, "Acme builds tools. " * 30)
        result = optimizer.optimize([critical, layer(LayerType.RAG, "doc line")], 20)

        assert result.token_count <= 20
        assert result.layer_tokens["critical"] > 0
        assert result.layer_tokens["rag"] == 0
        assert result.content.startswith("=== CRITICAL CONTEXT ===\nAcme builds tools.")

    def test_unbreakable_critical_gives_budget_to_other_layers(self, optimizer):
        critical = layer(LayerType.CRITICAL, "https://acme.example/" + "a" * 400)
        rag = layer(LayerType.RAG, "Retail margins are thin.\nShoes sell well.", ["doc:1"])

        result = optimizer.optimize([critical, rag], 60)

        assert result.content == "=== RAG CONTEXT ===\nRetail margins are thin.\nShoes sell well."
        assert result.layer_tokens["critical"] == 0
        assert result.layer_tokens["rag"] == estimate_tokens(rag.content)
        assert result.sources == ["doc:1"]
        assert "drop_critical" in result.applied_strategies

    def test_understated_token_count_is_not_trusted(self, optimizer):
        result = optimizer.optimize([layer(LayerType.RAG, "word " * 400, token_count=5)], 10)

        assert 0 < result.token_count <= 10
        assert result.applied_strategies == ["proportional_truncation"]


class TestReporting:

    def test_split_turns_keeps_continuation_lines(self):
        content = "[user]: first\nstill first\n[assistant]: second"
        assert split_turns(content) == ["[user]: first\nstill first", "[assistant]: second"]

    def test_distribution_and_summary(self, optimizer):
        result = optimizer.optimize([
            layer(LayerType.CRITICAL, "c" * 40),
            layer(LayerType.RAG, "r" * 160),
        ], 1000)

        analysis = optimizer.analyze_distribution(result)
        assert analysis["percentages"]["critical"] == 20.0
        assert analysis["percentages"]["rag"] == 80.0
        assert "High RAG usage - consider improving search relevance" in analysis["recommendations"]
        assert "No user memory included - missing personalization" in analysis["recommendations"]

        summary = optimizer.summarize(result)
        assert summary.startswith("Context Summary (50 tokens):")
        assert "- Optimizations: None" in summary
