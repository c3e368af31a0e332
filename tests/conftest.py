import pytest

from vision_agent.domain.context.context_optimizer import ContextOptimizer
from vision_agent.domain.persistence.gateway import PersistenceGateway
from vision_agent.domain.persistence.sqlite_store import SQLiteVisionStore
from vision_agent.domain.persistence.vision_store import InMemoryVisionStore
from vision_agent.domain.vision.extraction_parser import ExtractionParser
from vision_agent.domain.vision.gap_scorer import GapScorer
from vision_agent.domain.vision.merge_engine import MergeEngine
from vision_agent.infrastructure.config.settings import Settings
from vision_agent.infrastructure.observability.logging import MetricsCollector


@pytest.fixture
def merge_engine():
    return MergeEngine()


@pytest.fixture
def scorer():
    return GapScorer()


@pytest.fixture
def optimizer():
    return ContextOptimizer()


@pytest.fixture
def parser():
    return ExtractionParser()


@pytest.fixture
def metrics():
    return MetricsCollector()


@pytest.fixture
def memory_store():
    return InMemoryVisionStore()


@pytest.fixture
def sqlite_store(tmp_path):
    return SQLiteVisionStore(str(tmp_path / "vision.db"))


@pytest.fixture(params=["memory", "sqlite"])
def store(request, tmp_path):
    """Each gateway test runs against both store backends."""
    if request.param == "sqlite":
        return SQLiteVisionStore(str(tmp_path / "vision.db"))
    return InMemoryVisionStore()


@pytest.fixture
def gateway(store, scorer, merge_engine, metrics):
    return PersistenceGateway(store=store, scorer=scorer, merge_engine=merge_engine, metrics=metrics)


@pytest.fixture
def settings(tmp_path):
    return Settings(
        _env_file=None,
        store_backend="memory",
        sqlite_path=str(tmp_path / "vision.db"),
        log_format="console",
        log_level="WARNING"
    )
