"""
Persistence gateway: the only component of the pipeline that touches storage.

A commit is one compare-and-swap over a single record:

    load_for_update -> version check -> strip transport metadata
        -> recompute completeness -> CAS on (id, loaded version)
        -> best-effort title rename + audit append

Conflicts and store failures come back as CommitResult data. Side-effect
failures after a successful write are logged and counted, never raised.
"""

from typing import Dict, Any, List, Mapping, Optional, Union
import copy
import time
import uuid
import structlog

from vision_agent.domain.models.vision_state import (
    AuditEntry, CommitError, CommitResult, CommitSuccess, Conflict, ResolutionStrategy, VisionRecord
)
from vision_agent.domain.vision.gap_scorer import GapScorer
from vision_agent.domain.vision.merge_engine import MergeEngine
from vision_agent.infrastructure.observability.logging import MetricsCollector, VisionLogger, vision_logger
from .errors import RecordNotFoundError, VisionStoreError
from .vision_store import VisionStore

logger = structlog.get_logger(__name__)

# Metadata keys that duplicate storage columns or describe the transport
TRANSPORT_METADATA_KEYS = frozenset({
    "session_id", "workspace_id", "user_id", "created_at", "updated_at",
    "vision_id", "vision_title", "vision_category", "vision_impact", "version",
})

DEFAULT_TITLE = "Untitled vision"


def strip_transport_metadata(state: Mapping[str, Any]) -> Dict[str, Any]:
    """Copy of state with transport-only keys removed from its metadata map"""

    clean = copy.deepcopy(dict(state or {}))
    metadata = clean.pop("metadata", None)
    if isinstance(metadata, dict):
        business_metadata = {k: v for k, v in metadata.items() if k not in TRANSPORT_METADATA_KEYS}
        if business_metadata:
            clean["metadata"] = business_metadata
    return clean


class PersistenceGateway:
    """Versioned commits of vision records with conflict detection"""

    def __init__(
        self,
        store: VisionStore,
        scorer: GapScorer,
        merge_engine: MergeEngine,
        metrics: Optional[MetricsCollector] = None,
        event_logger: Optional[VisionLogger] = None,
        title_field: str = "company_name"
    ):
        self.store = store
        self.scorer = scorer
        self.merge_engine = merge_engine
        self.metrics = metrics or MetricsCollector()
        self.events = event_logger or vision_logger
        self.title_field = title_field

    async def commit(
        self,
        record_id: str,
        new_business_state: Mapping[str, Any],
        expected_version: Optional[int] = None,
        *,
        user_id: str = "system",
        change_type: str = "extraction_update"
    ) -> CommitResult:
        """Compare-and-swap new_business_state onto the stored record"""

        start_time = time.time()

        try:
            current = await self.store.load_for_update(record_id)
        except VisionStoreError as e:
            return self._error(record_id, e, "load")

        if expected_version is not None and expected_version != current.version:
            return self._conflict(record_id, current, expected_version)

        state = strip_transport_metadata(new_business_state)
        score = self.scorer.completeness(state)

        try:
            swap = await self.store.compare_and_swap(record_id, state, score, current.version)
        except VisionStoreError as e:
            return self._error(record_id, e, "write")

        if not swap.swapped:
            return self._conflict(record_id, swap.record, current.version)

        new_version = swap.record.version
        duration_ms = (time.time() - start_time) * 1000
        self.metrics.increment_counter("commits")
        self.metrics.record_latency("commit", duration_ms)
        self.events.log_commit(record_id, current.version, new_version, score, change_type, duration_ms)

        await self._rename_if_identity_changed(record_id, current.business_state, state, new_version)
        incoming_metadata = new_business_state.get("metadata")
        await self._append_audit(AuditEntry(
            record_id=record_id,
            user_id=user_id,
            old_version=current.version,
            new_version=new_version,
            change_type=change_type,
            metadata={"extraction_metadata": dict(incoming_metadata) if isinstance(incoming_metadata, dict) else {}}
        ))

        return CommitResult(
            record_id=record_id,
            ok=CommitSuccess(new_version=new_version, completeness_score=score)
        )

    async def resolve_conflict(
        self,
        record_id: str,
        client_changes: Mapping[str, Any],
        strategy: Union[ResolutionStrategy, str]
    ) -> CommitResult:
        """Re-read the record, resolve client changes against it and commit on the read version"""

        strategy = ResolutionStrategy(strategy)

        try:
            current = await self.store.load_for_update(record_id)
        except VisionStoreError as e:
            return self._error(record_id, e, "load")

        if strategy == ResolutionStrategy.CLIENT_WINS:
            resolved = {**current.business_state, **copy.deepcopy(dict(client_changes))}
        elif strategy == ResolutionStrategy.SERVER_WINS:
            resolved = current.business_state
        else:
            resolved = self.merge_engine.merge_states(current.business_state, client_changes)

        logger.info("Resolving conflict", record_id=record_id, strategy=strategy.value, version=current.version)

        return await self.commit(
            record_id,
            resolved,
            expected_version=current.version,
            user_id="system",
            change_type=f"conflict_resolution:{strategy.value}"
        )

    async def create_record(
        self,
        title: Optional[str] = None,
        initial_state: Optional[Mapping[str, Any]] = None,
        user_id: str = "system",
        record_id: Optional[str] = None
    ) -> VisionRecord:
        """Create a record at version 1 with a derived completeness score"""

        state = strip_transport_metadata(initial_state or {})
        identity = state.get(self.title_field)
        if not title:
            title = identity.strip() if isinstance(identity, str) and identity.strip() else DEFAULT_TITLE

        record = await self.store.create(VisionRecord(
            id=record_id or str(uuid.uuid4()),
            title=title,
            version=1,
            business_state=state,
            completeness_score=self.scorer.completeness(state)
        ))

        self.metrics.increment_counter("records_created")
        await self._append_audit(AuditEntry(
            record_id=record.id,
            user_id=user_id,
            old_version=0,
            new_version=record.version,
            change_type="created",
            metadata={"title": record.title}
        ))
        logger.info("Created vision record", record_id=record.id, completeness_score=record.completeness_score)
        return record

    async def get_record(self, record_id: str) -> VisionRecord:
        return await self.store.get(record_id)

    async def list_changes(self, record_id: str) -> List[AuditEntry]:
        # confirms the record exists before reading its change log
        await self.store.get(record_id)
        return await self.store.list_audit(record_id)

    async def _rename_if_identity_changed(
        self,
        record_id: str,
        old_state: Mapping[str, Any],
        new_state: Mapping[str, Any],
        new_version: int
    ) -> None:
        new_identity = new_state.get(self.title_field)
        if not isinstance(new_identity, str) or not new_identity.strip():
            return
        if new_identity == old_state.get(self.title_field):
            return

        try:
            renamed = await self.store.rename(record_id, new_identity.strip(), expected_version=new_version)
        except Exception as e:
            self._side_effect_failed(record_id, "rename", e)
            return
        if not renamed:
            logger.debug("Skipped rename, a newer commit landed", record_id=record_id, version=new_version)

    async def _append_audit(self, entry: AuditEntry) -> None:
        try:
            await self.store.append_audit(entry)
        except Exception as e:
            self._side_effect_failed(entry.record_id, "audit", e)

    def _side_effect_failed(self, record_id: str, side_effect: str, error: Exception) -> None:
        self.events.log_side_effect_failed(record_id, side_effect, str(error))
        self.metrics.increment_counter("side_effect_failures", tags={"side_effect": side_effect})

    def _conflict(self, record_id: str, current: VisionRecord, expected_version: int) -> CommitResult:
        self.metrics.increment_counter("version_conflicts")
        self.events.log_version_conflict(record_id, expected_version, current.version)
        return CommitResult(
            record_id=record_id,
            conflict=Conflict(
                current_version=current.version,
                expected_version=expected_version,
                current_state=current.business_state
            )
        )

    def _error(self, record_id: str, error: VisionStoreError, phase: str) -> CommitResult:
        if isinstance(error, RecordNotFoundError):
            kind = "not_found"
        elif phase == "write":
            kind = "write_failed"
        else:
            kind = "unavailable"

        logger.error("Commit failed", record_id=record_id, phase=phase, kind=kind, error=str(error))
        self.metrics.increment_counter("commit_errors", tags={"kind": kind})
        return CommitResult(record_id=record_id, error=CommitError(kind=kind, message=str(error)))
