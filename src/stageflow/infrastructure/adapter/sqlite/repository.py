import logging
import sqlite3
import threading
from contextlib import contextmanager
from decimal import Decimal
from typing import Any, ClassVar

import msgspec

from stageflow.application.port import (
    ActivityRepository,
    ActivityTemplateRepository,
    Repository,
    StageRepository,
    StageTemplateRepository,
    TransactionService,
    WorkflowRepository,
    WorkflowTemplateRepository,
)
from stageflow.domain.entity import (
    Activity,
    ActivityTemplate,
    RepositoryResult,
    Stage,
    StageTemplate,
    Workflow,
    WorkflowTemplate,
)
from stageflow.domain.error import PersistenceError
from stageflow.domain.value_object import RequestContext

logger = logging.getLogger(__name__)

_encoder = msgspec.json.Encoder(decimal_format="number")


class SQLiteDatabase:
    """Shared SQLite connection holding every record kind in one table.

    Writes commit immediately unless they run inside :meth:`transaction`.
    """

    def __init__(self, db_path: str = ":memory:"):
        """
        Initialize the SQLite database.

        :param db_path: Path to SQLite database file (defaults to in-memory)
        :type db_path: str
        """
        self.db_path = db_path
        self._conn = None
        self._lock = threading.RLock()
        self._depth = 0
        self._init_database()

    def _get_connection(self) -> sqlite3.Connection:
        """Get or create database connection."""
        if self._conn is None:
            try:
                self._conn = sqlite3.connect(self.db_path, check_same_thread=False, isolation_level=None)
            except sqlite3.Error as e:
                raise PersistenceError(f"Cannot open SQLite database '{self.db_path}': {e}") from e
        return self._conn

    def _init_database(self):
        """Initialize the database schema."""
        self.execute("""
            CREATE TABLE IF NOT EXISTS records (
                kind TEXT NOT NULL,
                id TEXT NOT NULL,
                body TEXT NOT NULL,
                PRIMARY KEY (kind, id)
            )
        """)

    def execute(self, sql: str, params: tuple = ()) -> tuple[list[tuple], int]:
        """
        Run one statement.

        :returns: The result rows and the number of rows changed
        :rtype: tuple[list[tuple], int]
        :raises PersistenceError: If SQLite reports an error
        """
        with self._lock:
            conn = self._get_connection()
            try:
                cursor = conn.execute(sql, params)
                return cursor.fetchall(), cursor.rowcount
            except sqlite3.IntegrityError as e:
                raise PersistenceError(f"Record already exists: {e}") from e
            except sqlite3.Error as e:
                raise PersistenceError(f"SQLite error: {e}") from e

    @contextmanager
    def transaction(self):
        """Run the enclosed writes atomically. Nested scopes join the outer one."""
        with self._lock:
            conn = self._get_connection()
            outermost = self._depth == 0
            if outermost:
                try:
                    conn.execute("BEGIN")
                except sqlite3.Error as e:
                    raise PersistenceError(f"Cannot begin transaction: {e}") from e
            self._depth += 1
            try:
                yield
            except BaseException:
                self._depth -= 1
                if outermost:
                    conn.execute("ROLLBACK")
                    logger.debug("Transaction rolled back")
                raise
            self._depth -= 1
            if outermost:
                try:
                    conn.execute("COMMIT")
                except sqlite3.Error as e:
                    raise PersistenceError(f"Cannot commit transaction: {e}") from e

    def close(self):
        with self._lock:
            if self._conn is not None:
                self._conn.close()
                self._conn = None


class SQLiteRepository(Repository):
    """Stores records of one kind as JSON documents in the shared records table."""

    kind: ClassVar[str]
    record_type: ClassVar[type]

    def __init__(self, database: SQLiteDatabase):
        self.database = database
        self._decoder = msgspec.json.Decoder(type=self.record_type, float_hook=Decimal)

    def create(self, ctx: RequestContext, record: Any) -> RepositoryResult:
        body = _encoder.encode(record).decode()
        self.database.execute("INSERT INTO records (kind, id, body) VALUES (?, ?, ?)", (self.kind, record.id, body))
        return RepositoryResult(data=[self._decode(body)])

    def read(self, ctx: RequestContext, record_id: str) -> RepositoryResult:
        rows, _ = self.database.execute("SELECT body FROM records WHERE kind = ? AND id = ?", (self.kind, record_id))
        return RepositoryResult(data=[self._decode(row[0]) for row in rows])

    def update(self, ctx: RequestContext, record: Any) -> RepositoryResult:
        body = _encoder.encode(record).decode()
        _, changed = self.database.execute(
            "UPDATE records SET body = ? WHERE kind = ? AND id = ?", (body, self.kind, record.id)
        )
        if changed == 0:
            return RepositoryResult(data=[])
        return RepositoryResult(data=[self._decode(body)])

    def list(self, ctx: RequestContext, **filters: Any) -> RepositoryResult:
        rows, _ = self.database.execute("SELECT body FROM records WHERE kind = ? ORDER BY rowid", (self.kind,))
        records = [self._decode(row[0]) for row in rows]
        return RepositoryResult(
            data=[r for r in records if all(getattr(r, key, None) == value for key, value in filters.items())]
        )

    def _decode(self, body: str) -> Any:
        try:
            return self._decoder.decode(body)
        except msgspec.DecodeError as e:
            raise PersistenceError(f"Corrupt {self.kind} record: {e}") from e


class SQLiteWorkflowTemplateRepository(SQLiteRepository, WorkflowTemplateRepository):
    kind = "workflow_template"
    record_type = WorkflowTemplate


class SQLiteStageTemplateRepository(SQLiteRepository, StageTemplateRepository):
    kind = "stage_template"
    record_type = StageTemplate


class SQLiteActivityTemplateRepository(SQLiteRepository, ActivityTemplateRepository):
    kind = "activity_template"
    record_type = ActivityTemplate


class SQLiteWorkflowRepository(SQLiteRepository, WorkflowRepository):
    kind = "workflow"
    record_type = Workflow


class SQLiteStageRepository(SQLiteRepository, StageRepository):
    kind = "stage"
    record_type = Stage


class SQLiteActivityRepository(SQLiteRepository, ActivityRepository):
    kind = "activity"
    record_type = Activity


class SQLiteTransactionService(TransactionService):
    def __init__(self, database: SQLiteDatabase):
        self.database = database

    def supports_transactions(self) -> bool:
        return True

    def transaction(self, ctx: RequestContext):
        return self.database.transaction()
