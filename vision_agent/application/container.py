"""Composition root: builds the pipeline components and wires them explicitly"""

from dataclasses import dataclass
from typing import Optional, Tuple
import structlog
from langchain_core.language_models import BaseChatModel

from vision_agent.domain.context.context_manager import ContextManager
from vision_agent.domain.context.context_optimizer import ContextOptimizer
from vision_agent.domain.context.memory.runtime_memory import RuntimeMemory
from vision_agent.domain.context.memory.user_memory_store import UserMemoryStore
from vision_agent.domain.models.vision_state import FieldCatalogEntry
from vision_agent.domain.orchestration.extractor import InformationExtractor
from vision_agent.domain.orchestration.vision_turn import VisionTurnWorkflow
from vision_agent.domain.persistence.gateway import PersistenceGateway
from vision_agent.domain.persistence.sqlite_store import SQLiteVisionStore
from vision_agent.domain.persistence.vision_store import InMemoryVisionStore, VisionStore
from vision_agent.domain.vision.extraction_parser import ExtractionParser
from vision_agent.domain.vision.field_catalog import DEFAULT_FIELD_CATALOG
from vision_agent.domain.vision.gap_scorer import GapScorer
from vision_agent.domain.vision.merge_engine import MergeEngine
from vision_agent.infrastructure.config.settings import Settings
from vision_agent.infrastructure.observability.logging import MetricsCollector

logger = structlog.get_logger(__name__)


@dataclass
class VisionServices:
    settings: Settings
    catalog: Tuple[FieldCatalogEntry, ...]
    merge_engine: MergeEngine
    scorer: GapScorer
    optimizer: ContextOptimizer
    parser: ExtractionParser
    store: VisionStore
    gateway: PersistenceGateway
    runtime_memory: RuntimeMemory
    user_memory: UserMemoryStore
    context_manager: ContextManager
    metrics: MetricsCollector
    turn_workflow: Optional[VisionTurnWorkflow] = None


def build_store(settings: Settings) -> VisionStore:
    if settings.store_backend == "sqlite":
        logger.info("Using SQLite vision store", path=settings.sqlite_path)
        return SQLiteVisionStore(settings.sqlite_path)
    return InMemoryVisionStore()


def build_services(
    settings: Settings,
    store: Optional[VisionStore] = None,
    llm: Optional[BaseChatModel] = None,
    catalog: Tuple[FieldCatalogEntry, ...] = DEFAULT_FIELD_CATALOG
) -> VisionServices:
    """Construct every component once; the chat workflow needs an extraction model"""

    metrics = MetricsCollector()
    merge_engine = MergeEngine()
    scorer = GapScorer(catalog)
    optimizer = ContextOptimizer()
    parser = ExtractionParser(tuple(entry.field_name for entry in catalog))
    store = store or build_store(settings)

    gateway = PersistenceGateway(
        store=store,
        scorer=scorer,
        merge_engine=merge_engine,
        metrics=metrics,
        title_field=settings.title_field
    )

    runtime_memory = RuntimeMemory()
    user_memory = UserMemoryStore(default_ttl=settings.user_memory_ttl)
    context_manager = ContextManager(
        optimizer=optimizer,
        runtime_memory=runtime_memory,
        user_memory=user_memory,
        catalog=catalog,
        recent_turns=settings.recent_turns,
        metrics=metrics
    )

    turn_workflow = None
    if llm is not None:
        turn_workflow = VisionTurnWorkflow(
            gateway=gateway,
            merge_engine=merge_engine,
            scorer=scorer,
            extractor=InformationExtractor(llm, parser),
            runtime_memory=runtime_memory
        )

    return VisionServices(
        settings=settings,
        catalog=tuple(catalog),
        merge_engine=merge_engine,
        scorer=scorer,
        optimizer=optimizer,
        parser=parser,
        store=store,
        gateway=gateway,
        runtime_memory=runtime_memory,
        user_memory=user_memory,
        context_manager=context_manager,
        metrics=metrics,
        turn_workflow=turn_workflow
    )
