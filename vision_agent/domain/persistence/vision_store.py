from typing import Dict, Any, List, NamedTuple, Optional
from abc import ABC, abstractmethod
import asyncio
import copy

from vision_agent.domain.models.vision_state import AuditEntry, VisionRecord, utcnow
from .errors import DuplicateRecordError, RecordNotFoundError


class SwapResult(NamedTuple):
    """Outcome of compare_and_swap; on a lost race `record` is the current winner"""
    swapped: bool
    record: VisionRecord


class VisionStore(ABC):
    """Durable record store boundary"""

    @abstractmethod
    async def create(self, record: VisionRecord) -> VisionRecord:
        pass

    @abstractmethod
    async def get(self, record_id: str) -> VisionRecord:
        """Raise RecordNotFoundError when absent"""
        pass

    @abstractmethod
    async def load_for_update(self, record_id: str) -> VisionRecord:
        """Snapshot of {state, version} taken as the base of a commit"""
        pass

    @abstractmethod
    async def compare_and_swap(
        self,
        record_id: str,
        business_state: Dict[str, Any],
        completeness_score: float,
        expected_version: int
    ) -> SwapResult:
        """Write and bump the version only if the stored version still equals expected_version"""
        pass

    @abstractmethod
    async def rename(self, record_id: str, title: str, expected_version: Optional[int] = None) -> bool:
        """Set the title; with expected_version, only while the stored version still matches"""
        pass

    @abstractmethod
    async def append_audit(self, entry: AuditEntry) -> None:
        pass

    @abstractmethod
    async def list_audit(self, record_id: str) -> List[AuditEntry]:
        pass


class InMemoryVisionStore(VisionStore):
    """Process-local store; every read hands out a deep copy"""

    def __init__(self):
        self.records: Dict[str, VisionRecord] = {}
        self.audit_log: Dict[str, List[AuditEntry]] = {}
        self._lock = asyncio.Lock()

    async def create(self, record: VisionRecord) -> VisionRecord:
        async with self._lock:
            if record.id in self.records:
                raise DuplicateRecordError(f"Vision {record.id} already exists", record.id)
            self.records[record.id] = record.model_copy(deep=True)
            return record.model_copy(deep=True)

    async def get(self, record_id: str) -> VisionRecord:
        async with self._lock:
            return self._require(record_id).model_copy(deep=True)

    async def load_for_update(self, record_id: str) -> VisionRecord:
        return await self.get(record_id)

    async def compare_and_swap(
        self,
        record_id: str,
        business_state: Dict[str, Any],
        completeness_score: float,
        expected_version: int
    ) -> SwapResult:
        async with self._lock:
            current = self._require(record_id)
            if current.version != expected_version:
                return SwapResult(False, current.model_copy(deep=True))

            updated = current.model_copy(update={
                "business_state": copy.deepcopy(business_state),
                "completeness_score": completeness_score,
                "version": current.version + 1,
                "updated_at": utcnow()
            })
            self.records[record_id] = updated
            return SwapResult(True, updated.model_copy(deep=True))

    async def rename(self, record_id: str, title: str, expected_version: Optional[int] = None) -> bool:
        async with self._lock:
            current = self._require(record_id)
            if expected_version is not None and current.version != expected_version:
                return False
            self.records[record_id] = current.model_copy(update={"title": title})
            return True

    async def append_audit(self, entry: AuditEntry) -> None:
        async with self._lock:
            self.audit_log.setdefault(entry.record_id, []).append(entry.model_copy(deep=True))

    async def list_audit(self, record_id: str) -> List[AuditEntry]:
        async with self._lock:
            return [entry.model_copy(deep=True) for entry in self.audit_log.get(record_id, [])]

    def _require(self, record_id: str) -> VisionRecord:
        record = self.records.get(record_id)
        if record is None:
            raise RecordNotFoundError(f"Vision {record_id} not found", record_id)
        return record
