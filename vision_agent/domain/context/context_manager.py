from typing import Dict, Any, List, Mapping, Optional, Sequence, Union
import structlog
import time

from vision_agent.domain.models.vision_state import (
    ContextLayer, FieldCatalogEntry, LayerType, OptimizationResult, VisionRecord
)
from vision_agent.domain.vision.field_catalog import DEFAULT_FIELD_CATALOG
from vision_agent.infrastructure.observability.logging import VisionLogger, vision_logger
from .context_optimizer import ContextOptimizer
from .memory.runtime_memory import RuntimeMemory
from .memory.user_memory_store import UserMemoryStore

logger = structlog.get_logger(__name__)

LAYER_PRIORITIES: Dict[LayerType, float] = {
    LayerType.CRITICAL: 0.9,
    LayerType.RAG: 0.8,
    LayerType.RECENT: 0.7,
    LayerType.USER_MEMORY: 0.6,
}

Snippet = Union[str, Mapping[str, Any]]


def format_value(value: Any) -> str:
    if isinstance(value, (list, tuple)):
        return ", ".join(str(item) for item in value if item is not None and str(item).strip())
    return str(value).strip()


class ContextManager:
    """Assembles the four context layers for a turn and fits them to a budget"""

    def __init__(
        self,
        optimizer: ContextOptimizer,
        runtime_memory: RuntimeMemory,
        user_memory: UserMemoryStore,
        catalog: Sequence[FieldCatalogEntry] = DEFAULT_FIELD_CATALOG,
        recent_turns: int = 10,
        metrics=None,
        event_logger: Optional[VisionLogger] = None
    ):
        self.optimizer = optimizer
        self.runtime_memory = runtime_memory
        self.user_memory = user_memory
        self.catalog = tuple(catalog)
        self.recent_turns = recent_turns
        self.metrics = metrics
        self.events = event_logger or vision_logger

    async def build_context(
        self,
        session_id: str,
        budget: int,
        user_id: Optional[str] = None,
        record: Optional[VisionRecord] = None,
        rag_snippets: Sequence[Snippet] = ()
    ) -> OptimizationResult:
        """Build and optimize the layered context for one model call"""

        start_time = time.time()
        logger.info("Building context", session_id=session_id, budget=budget)

        layers = [
            self.critical_layer(record),
            await self.recent_layer(session_id),
            await self.user_memory_layer(user_id),
            self.rag_layer(rag_snippets),
        ]
        result = self.optimizer.optimize(layers, budget)
        if result.applied_strategies:
            self.events.log_context_optimized(session_id, budget, result.token_count, result.applied_strategies)

        if self.metrics is not None:
            self.metrics.record_latency("context_build", (time.time() - start_time) * 1000)
            self.metrics.set_gauge("context_tokens", result.token_count)
            if result.applied_strategies:
                self.metrics.increment_counter("context_optimized")

        return result

    def critical_layer(self, record: Optional[VisionRecord]) -> ContextLayer:
        """Known vision facts, one 'Label: value' line per populated catalog field"""

        if record is None:
            return ContextLayer(content="", layer=LayerType.CRITICAL, priority=LAYER_PRIORITIES[LayerType.CRITICAL])

        lines = []
        for entry in self.catalog:
            value = record.business_state.get(entry.field_name)
            if value is None:
                continue
            text = format_value(value)
            if text:
                lines.append(f"{entry.label or entry.field_name}: {text}")

        custom = record.business_state.get("custom_fields")
        if isinstance(custom, dict):
            for name, value in custom.items():
                text = format_value(value) if value is not None else ""
                if text:
                    lines.append(f"{name.replace('_', ' ').title()}: {text}")

        return ContextLayer(
            content="\n".join(lines),
            sources=[f"vision:{record.id}"] if lines else [],
            priority=LAYER_PRIORITIES[LayerType.CRITICAL],
            layer=LayerType.CRITICAL,
        )

    async def recent_layer(self, session_id: str) -> ContextLayer:
        content = await self.runtime_memory.format_recent(session_id, self.recent_turns)
        return ContextLayer(
            content=content,
            sources=[f"conversation:{session_id}"] if content else [],
            priority=LAYER_PRIORITIES[LayerType.RECENT],
            layer=LayerType.RECENT,
        )

    async def user_memory_layer(self, user_id: Optional[str]) -> ContextLayer:
        facts = await self.user_memory.recall(user_id) if user_id else []
        return ContextLayer(
            content="\n".join(f"- {fact['fact']}" for fact in facts),
            sources=[fact["source"] for fact in facts],
            priority=LAYER_PRIORITIES[LayerType.USER_MEMORY],
            layer=LayerType.USER_MEMORY,
        )

    def rag_layer(self, snippets: Sequence[Snippet]) -> ContextLayer:
        """Snippets arrive pre-ranked; order is kept"""

        lines: List[str] = []
        sources: List[str] = []
        for snippet in snippets:
            if isinstance(snippet, Mapping):
                text = str(snippet.get("content") or "").strip()
                source = snippet.get("source")
            else:
                text, source = str(snippet).strip(), None
            if not text:
                continue
            lines.append(text)
            if source:
                sources.append(str(source))

        return ContextLayer(
            content="\n".join(lines),
            sources=sources,
            priority=LAYER_PRIORITIES[LayerType.RAG],
            layer=LayerType.RAG,
        )
