from typing import Dict, Any, Iterable, List, Mapping, Optional, Union
import math
import structlog

from vision_agent.domain.models.vision_state import ContextLayer, LayerType, OptimizationResult
from .token_budget import estimate_tokens, truncate_to_tokens

logger = structlog.get_logger(__name__)

LAYER_ORDER: List[LayerType] = [LayerType.CRITICAL, LayerType.RECENT, LayerType.USER_MEMORY, LayerType.RAG]

CRITICAL_RESERVE_RATIO = 0.2
RECENT_KEEP_HEAD = 2
RECENT_KEEP_TAIL = 2

LayerInput = Union[Mapping[Any, ContextLayer], Iterable[ContextLayer]]


def _total(layers: Dict[LayerType, ContextLayer]) -> int:
    return sum(layer.token_count for layer in layers.values())


def _with_content(layer: ContextLayer, content: str) -> ContextLayer:
    return layer.model_copy(update={"content": content, "token_count": estimate_tokens(content)})


def split_turns(content: str) -> List[str]:
    """Split a recent-conversation blob into turns; a turn starts with a '[speaker]' line"""
    turns: List[str] = []
    for line in content.split("\n"):
        if not line.strip():
            continue
        if line.startswith("[") or not turns:
            turns.append(line)
        else:
            turns[-1] = f"{turns[-1]}\n{line}"
    return turns


class ContextOptimizer:
    """Fits four prioritized context layers into a token budget"""

    def __init__(self, critical_reserve_ratio: float = CRITICAL_RESERVE_RATIO):
        self.critical_reserve_ratio = critical_reserve_ratio

    def optimize(self, layers: LayerInput, budget: int) -> OptimizationResult:
        """Produce a bounded context blob; strategies run only while over budget"""

        if budget < 0:
            raise ValueError("budget must be non-negative")

        indexed = self._index(layers)
        initial_total = _total(indexed)

        if initial_total <= budget:
            return self.assemble(indexed, [])

        current, applied = self._run_stages(indexed, budget)

        critical = indexed.get(LayerType.CRITICAL)
        kept = current.get(LayerType.CRITICAL)
        if critical is not None and critical.content.strip() and (kept is None or not kept.content.strip()):
            # critical has no boundary to cut at within budget; fit the rest without it
            logger.warning("Critical context cannot be truncated to fit, dropping it", budget=budget)
            rest = {t: layer for t, layer in indexed.items() if t != LayerType.CRITICAL}
            current, fallback_applied = self._run_stages(rest, budget)
            applied = applied + ["drop_critical"] + fallback_applied

        result = self.assemble(current, applied)
        logger.info(
            "Optimized context window",
            budget=budget,
            input_tokens=initial_total,
            output_tokens=result.token_count,
            strategies=applied
        )
        return result

    def _run_stages(self, current: Dict[LayerType, ContextLayer], budget: int):
        applied: List[str] = []
        stages = (
            ("drop_empty_layers", self._drop_empty_layers),
            ("prioritize_critical", self._prioritize_critical),
            ("compress_rag", self._compress_rag),
            ("compress_recent", self._compress_recent),
            ("deduplicate", self._deduplicate),
            ("proportional_truncation", self._proportional_truncation),
        )
        for name, stage in stages:
            if _total(current) <= budget:
                break
            updated = stage(current, budget)
            if updated is not None:
                current = updated
                applied.append(name)
        return current, applied

    def _index(self, layers: LayerInput) -> Dict[LayerType, ContextLayer]:
        values = layers.values() if isinstance(layers, Mapping) else layers
        indexed: Dict[LayerType, ContextLayer] = {}
        for layer in values:
            if layer is None:
                continue
            if layer.layer in indexed:
                raise ValueError(f"Duplicate context layer: {layer.layer.value}")
            # never trust a caller-supplied count below the content estimate
            estimated = estimate_tokens(layer.content)
            if layer.token_count < estimated:
                layer = layer.model_copy(update={"token_count": estimated})
            indexed[layer.layer] = layer
        return {layer_type: indexed[layer_type] for layer_type in LAYER_ORDER if layer_type in indexed}

    def _drop_empty_layers(self, layers: Dict[LayerType, ContextLayer], budget: int):
        kept = {t: layer for t, layer in layers.items() if layer.content.strip()}
        return kept if len(kept) < len(layers) else None

    def _prioritize_critical(self, layers: Dict[LayerType, ContextLayer], budget: int):
        # critical stays whole; the other layers share what it leaves
        critical = layers.get(LayerType.CRITICAL)
        if critical is None or not critical.token_count:
            return None
        critical_tokens = min(critical.token_count, budget)
        remaining = budget - critical_tokens

        others = {t: layer for t, layer in layers.items() if t != LayerType.CRITICAL}
        others_total = _total(others)
        if not others_total or others_total <= remaining:
            return None

        ratio = remaining / others_total
        adjusted = dict(layers)
        for layer_type, layer in others.items():
            target = math.floor(layer.token_count * ratio)
            adjusted[layer_type] = _with_content(layer, truncate_to_tokens(layer.content, target))

        logger.debug("Prioritized critical context", critical_tokens=critical_tokens, remaining=remaining)
        return adjusted

    def _compress_rag(self, layers: Dict[LayerType, ContextLayer], budget: int):
        rag = layers.get(LayerType.RAG)
        if rag is None or not rag.content.strip():
            return None

        lines = [line for line in rag.content.split("\n") if line.strip()]
        compressed = "\n".join(lines[:math.ceil(len(lines) / 2)])
        if estimate_tokens(compressed) >= rag.token_count:
            return None

        updated = dict(layers)
        updated[LayerType.RAG] = _with_content(rag, compressed)
        return updated

    def _compress_recent(self, layers: Dict[LayerType, ContextLayer], budget: int):
        recent = layers.get(LayerType.RECENT)
        if recent is None:
            return None

        turns = split_turns(recent.content)
        if len(turns) <= RECENT_KEEP_HEAD + RECENT_KEEP_TAIL:
            return None

        omitted = len(turns) - RECENT_KEEP_HEAD - RECENT_KEEP_TAIL
        kept = turns[:RECENT_KEEP_HEAD] + [f"[Summary: {omitted} earlier turns omitted]"] + turns[-RECENT_KEEP_TAIL:]
        compressed = "\n".join(kept)
        if estimate_tokens(compressed) >= recent.token_count:
            return None

        updated = dict(layers)
        updated[LayerType.RECENT] = _with_content(recent, compressed)
        return updated

    def _deduplicate(self, layers: Dict[LayerType, ContextLayer], budget: int):
        seen = set()
        updated = dict(layers)
        changed = False

        for layer_type, layer in layers.items():
            lines = [line for line in layer.content.split("\n") if line.strip()]
            unique = []
            for line in lines:
                key = line.strip().lower()
                if key in seen:
                    continue
                seen.add(key)
                unique.append(line)
            if len(unique) < len(lines):
                updated[layer_type] = _with_content(layer, "\n".join(unique))
                changed = True

        return updated if changed else None

    def _proportional_truncation(self, layers: Dict[LayerType, ContextLayer], budget: int):
        total = _total(layers)
        ratio = budget / total if total else 0.0

        critical = layers.get(LayerType.CRITICAL)
        targets: Dict[LayerType, int] = {}
        if critical is not None:
            reserve = math.floor(min(critical.token_count, budget * self.critical_reserve_ratio))
            targets[LayerType.CRITICAL] = max(math.floor(critical.token_count * ratio), reserve)
        others = {t: layer for t, layer in layers.items() if t != LayerType.CRITICAL}
        others_total = _total(others)
        others_budget = budget - targets.get(LayerType.CRITICAL, 0)
        for layer_type, layer in others.items():
            share = others_budget / others_total if others_total else 0.0
            targets[layer_type] = math.floor(layer.token_count * min(share, 1.0))

        truncated = {
            t: _with_content(layer, truncate_to_tokens(layer.content, targets[t]))
            for t, layer in layers.items()
        }

        # hand tokens lost to boundary snapping back out, highest priority first
        leftover = budget - _total(truncated)
        for layer_type, layer in layers.items():
            if leftover <= 0:
                break
            current = truncated[layer_type]
            if current.content == layer.content:
                continue
            widened = _with_content(layer, truncate_to_tokens(layer.content, current.token_count + leftover))
            leftover -= widened.token_count - current.token_count
            truncated[layer_type] = widened

        if critical is not None and critical.content.strip() and not truncated[LayerType.CRITICAL].content.strip():
            logger.warning("Critical context does not fit alongside other layers, dropping them", budget=budget)
            return {LayerType.CRITICAL: _with_content(critical, truncate_to_tokens(critical.content, budget))}

        return {t: layer for t, layer in truncated.items() if layer.content.strip()}

    def assemble(self, layers: Dict[LayerType, ContextLayer], applied: Optional[List[str]] = None) -> OptimizationResult:
        """Join layers in priority order under '=== <LAYER> CONTEXT ===' labels"""

        sections: List[str] = []
        sources: List[str] = []
        layer_tokens = {layer_type.value: 0 for layer_type in LAYER_ORDER}

        for layer_type in LAYER_ORDER:
            layer = layers.get(layer_type)
            if layer is None or not layer.content:
                continue
            sections.append(f"=== {layer_type.value.upper()} CONTEXT ===\n{layer.content}")
            for source in layer.sources:
                if source not in sources:
                    sources.append(source)
            layer_tokens[layer_type.value] = layer.token_count

        return OptimizationResult(
            content="\n\n".join(sections),
            sources=sources,
            token_count=sum(layer_tokens.values()),
            layer_tokens=layer_tokens,
            applied_strategies=list(applied or []),
        )

    def analyze_distribution(self, result: OptimizationResult) -> Dict[str, Any]:
        """Share of the assembled context per layer plus balance hints"""

        total = result.token_count
        percentages = {
            layer_type.value: (result.layer_tokens.get(layer_type.value, 0) / total * 100) if total else 0.0
            for layer_type in LAYER_ORDER
        }

        recommendations = []
        if percentages[LayerType.CRITICAL.value] > 30:
            recommendations.append("High critical info usage - consider reviewing importance scoring")
        if percentages[LayerType.RECENT.value] < 15:
            recommendations.append("Low recent context - may lose conversation flow")
        if percentages[LayerType.RAG.value] > 50:
            recommendations.append("High RAG usage - consider improving search relevance")
        if percentages[LayerType.USER_MEMORY.value] == 0:
            recommendations.append("No user memory included - missing personalization")

        return {"percentages": percentages, "recommendations": recommendations}

    def summarize(self, result: OptimizationResult) -> str:
        total = result.token_count

        def share(tokens: int) -> str:
            return f"{(tokens / total * 100) if total else 0.0:.1f}%"

        lines = [f"Context Summary ({total} tokens):"]
        for layer_type in LAYER_ORDER:
            tokens = result.layer_tokens.get(layer_type.value, 0)
            label = layer_type.value.replace("_", " ").title()
            lines.append(f"- {label}: {tokens} tokens ({share(tokens)})")
        lines.append(f"- Sources: {len(result.sources)}")
        lines.append(f"- Optimizations: {', '.join(result.applied_strategies) or 'None'}")
        return "\n".join(lines)
