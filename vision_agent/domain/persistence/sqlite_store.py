from typing import Dict, Any, Generator, List, Optional
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path
import asyncio
import json
import sqlite3
import structlog

from vision_agent.domain.models.vision_state import AuditEntry, VisionRecord, utcnow
from .errors import DuplicateRecordError, RecordNotFoundError, StoreUnavailableError
from .vision_store import SwapResult, VisionStore

logger = structlog.get_logger(__name__)

SCHEMA = (
    '''
    CREATE TABLE IF NOT EXISTS visions (
        id TEXT PRIMARY KEY,
        title TEXT NOT NULL,
        version INTEGER NOT NULL DEFAULT 1,
        business_state TEXT NOT NULL,
        completeness_score REAL NOT NULL DEFAULT 0,
        created_at TEXT NOT NULL,
        updated_at TEXT NOT NULL
    )
    ''',
    '''
    CREATE TABLE IF NOT EXISTS vision_change_log (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        vision_id TEXT NOT NULL,
        user_id TEXT NOT NULL,
        old_version INTEGER NOT NULL,
        new_version INTEGER NOT NULL,
        change_type TEXT NOT NULL,
        metadata TEXT,
        created_at TEXT NOT NULL
    )
    ''',
    'CREATE INDEX IF NOT EXISTS idx_change_log_vision_id ON vision_change_log(vision_id, id)',
)


class SQLiteVisionStore(VisionStore):
    """SQLite-backed store; blocking calls run in a worker thread"""

    def __init__(self, db_path: str, timeout: float = 10.0):
        self.db_path = db_path
        self.timeout = timeout
        Path(db_path).parent.mkdir(parents=True, exist_ok=True)
        self.init_db()

    @contextmanager
    def get_db(self) -> Generator[sqlite3.Connection, None, None]:
        """Get a SQLite database connection."""
        try:
            conn = sqlite3.connect(self.db_path, timeout=self.timeout)
        except sqlite3.Error as e:
            raise StoreUnavailableError(f"Cannot open vision database: {e}") from e
        conn.row_factory = sqlite3.Row
        try:
            yield conn
        except sqlite3.OperationalError as e:
            conn.rollback()
            raise StoreUnavailableError(f"Vision database unavailable: {e}") from e
        finally:
            conn.close()

    def init_db(self):
        """Initialize the database with required tables."""
        with self.get_db() as conn:
            for statement in SCHEMA:
                conn.execute(statement)
            conn.commit()

    async def create(self, record: VisionRecord) -> VisionRecord:
        return await asyncio.to_thread(self._create, record)

    async def get(self, record_id: str) -> VisionRecord:
        return await asyncio.to_thread(self._get, record_id)

    async def load_for_update(self, record_id: str) -> VisionRecord:
        return await asyncio.to_thread(self._get, record_id)

    async def compare_and_swap(
        self,
        record_id: str,
        business_state: Dict[str, Any],
        completeness_score: float,
        expected_version: int
    ) -> SwapResult:
        return await asyncio.to_thread(
            self._compare_and_swap, record_id, business_state, completeness_score, expected_version
        )

    async def rename(self, record_id: str, title: str, expected_version: Optional[int] = None) -> bool:
        return await asyncio.to_thread(self._rename, record_id, title, expected_version)

    async def append_audit(self, entry: AuditEntry) -> None:
        await asyncio.to_thread(self._append_audit, entry)

    async def list_audit(self, record_id: str) -> List[AuditEntry]:
        return await asyncio.to_thread(self._list_audit, record_id)

    def _create(self, record: VisionRecord) -> VisionRecord:
        with self.get_db() as conn:
            try:
                conn.execute(
                    '''
                    INSERT INTO visions (id, title, version, business_state, completeness_score, created_at, updated_at)
                    VALUES (?, ?, ?, ?, ?, ?, ?)
                    ''',
                    (
                        record.id, record.title, record.version, json.dumps(record.business_state),
                        record.completeness_score, record.created_at.isoformat(), record.updated_at.isoformat()
                    )
                )
                conn.commit()
            except sqlite3.IntegrityError as e:
                raise DuplicateRecordError(f"Vision {record.id} already exists", record.id) from e
        return record.model_copy(deep=True)

    def _get(self, record_id: str) -> VisionRecord:
        with self.get_db() as conn:
            record = self._fetch(conn, record_id)
        if record is None:
            raise RecordNotFoundError(f"Vision {record_id} not found", record_id)
        return record

    def _compare_and_swap(
        self,
        record_id: str,
        business_state: Dict[str, Any],
        completeness_score: float,
        expected_version: int
    ) -> SwapResult:
        with self.get_db() as conn:
            cursor = conn.execute(
                '''
                UPDATE visions
                SET business_state = ?, completeness_score = ?, version = version + 1, updated_at = ?
                WHERE id = ? AND version = ?
                ''',
                (json.dumps(business_state), completeness_score, utcnow().isoformat(), record_id, expected_version)
            )
            swapped = cursor.rowcount == 1
            record = self._fetch(conn, record_id)
            conn.commit()

        if record is None:
            raise RecordNotFoundError(f"Vision {record_id} not found", record_id)
        if not swapped:
            logger.debug("Compare-and-swap lost", record_id=record_id, expected_version=expected_version,
                         current_version=record.version)
        return SwapResult(swapped, record)

    def _rename(self, record_id: str, title: str, expected_version: Optional[int]) -> bool:
        with self.get_db() as conn:
            if expected_version is None:
                cursor = conn.execute('UPDATE visions SET title = ? WHERE id = ?', (title, record_id))
            else:
                cursor = conn.execute(
                    'UPDATE visions SET title = ? WHERE id = ? AND version = ?',
                    (title, record_id, expected_version)
                )
            conn.commit()
            if cursor.rowcount:
                return True
            exists = conn.execute('SELECT 1 FROM visions WHERE id = ?', (record_id,)).fetchone()
        if exists is None:
            raise RecordNotFoundError(f"Vision {record_id} not found", record_id)
        return False

    def _append_audit(self, entry: AuditEntry) -> None:
        with self.get_db() as conn:
            conn.execute(
                '''
                INSERT INTO vision_change_log
                    (vision_id, user_id, old_version, new_version, change_type, metadata, created_at)
                VALUES (?, ?, ?, ?, ?, ?, ?)
                ''',
                (
                    entry.record_id, entry.user_id, entry.old_version, entry.new_version,
                    entry.change_type, json.dumps(entry.metadata, default=str), entry.created_at.isoformat()
                )
            )
            conn.commit()

    def _list_audit(self, record_id: str) -> List[AuditEntry]:
        with self.get_db() as conn:
            rows = conn.execute(
                'SELECT * FROM vision_change_log WHERE vision_id = ? ORDER BY id',
                (record_id,)
            ).fetchall()

        return [
            AuditEntry(
                record_id=row["vision_id"],
                user_id=row["user_id"],
                old_version=row["old_version"],
                new_version=row["new_version"],
                change_type=row["change_type"],
                metadata=json.loads(row["metadata"]) if row["metadata"] else {},
                created_at=datetime.fromisoformat(row["created_at"])
            )
            for row in rows
        ]

    def _fetch(self, conn: sqlite3.Connection, record_id: str) -> Optional[VisionRecord]:
        row = conn.execute('SELECT * FROM visions WHERE id = ?', (record_id,)).fetchone()
        if row is None:
            return None
        return VisionRecord(
            id=row["id"],
            title=row["title"],
            version=row["version"],
            business_state=json.loads(row["business_state"]),
            completeness_score=row["completeness_score"],
            created_at=datetime.fromisoformat(row["created_at"]),
            updated_at=datetime.fromisoformat(row["updated_at"])
        )
