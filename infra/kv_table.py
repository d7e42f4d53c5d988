"""
Key-Value Table
---------------
SQLite-backed keyed table used as the durable memory backend.

Design:
- One namespace, one string primary key, whole-value JSON blobs
- Schema version table for migrations, hard fail on downgrade
- Startup-only pruning of records whose ttl has passed
- Explicit transaction boundaries; a failed batch is rolled back whole
- Every sqlite error surfaces as UnavailableError; the table never retries
- Calls pass through a circuit breaker so a failing table fails fast

Usage:
    from infra.kv_table import KeyValueTable, TableRecord

    table = KeyValueTable("agentmem-memory", endpoint="memory.db")
    table.initialize()

    table.write_batch(puts=[TableRecord(key="ITEM#a", kind="item", value={...})])
    page = table.scan("ITEM#", limit=50)
"""

import json
import re
import sqlite3
import threading
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Dict, Generator, Iterable, List, Optional, Tuple, TypeVar

from core.circuit_breaker import CircuitBreaker
from core.errors import ConfigurationError, UnavailableError
from infra.logging import get_logger

T = TypeVar("T")

# (puts, deletes) computed from the current value of a record
WritePlan = Tuple[Iterable["TableRecord"], Iterable[str]]

# Current schema version - increment on any schema change
SCHEMA_VERSION = 1

DEFAULT_TABLE_NAME = "agentmem-memory"
DEFAULT_PAGE_SIZE = 100

_TABLE_NAME_RE = re.compile(r"^[A-Za-z0-9_.\-]{1,255}$")


def _utc_now() -> str:
    return datetime.now(timezone.utc).isoformat()


@dataclass
class TableRecord:
    """A single keyed record."""
    key: str
    kind: str
    value: Any = None
    ttl: Optional[int] = None  # Epoch seconds
    created_at: str = field(default_factory=_utc_now)
    updated_at: str = field(default_factory=_utc_now)


@dataclass
class ScanPage:
    """One page of a prefix scan. `last_key` is None on the final page."""
    records: List[TableRecord]
    last_key: Optional[str] = None


class SchemaMismatchError(ConfigurationError):
    """Schema version mismatch (downgrade attempted)."""


class MigrationFailedError(UnavailableError):
    """Migration failed mid-way."""


class KeyValueTable:
    """
    SQLite keyed table.

    Thread-safe: one connection guarded by a re-entrant lock, shared by
    caller threads and the hybrid sync thread.
    """

    def __init__(
        self,
        table_name: str = DEFAULT_TABLE_NAME,
        endpoint: Optional[str] = None,
        region: Optional[str] = None,
        breaker: Optional[CircuitBreaker] = None,
    ):
        if not table_name or not _TABLE_NAME_RE.match(table_name):
            raise ConfigurationError(f"Invalid table name: {table_name!r}")

        self.table_name = table_name
        self.region = region
        self._db_path = self._resolve_endpoint(endpoint)
        self._conn: Optional[sqlite3.Connection] = None
        self._lock = threading.RLock()
        self._in_transaction = False
        self._initialized = False
        self._breaker = breaker or CircuitBreaker(name=f"table.{table_name}")
        self._logger = get_logger("infra.kv_table")

    @staticmethod
    def _resolve_endpoint(endpoint: Optional[str]) -> str:
        if not endpoint:
            return ":memory:"
        if endpoint.startswith("sqlite:///"):
            return endpoint[len("sqlite:///"):] or ":memory:"
        return endpoint

    @property
    def db_path(self) -> str:
        """Return the database location."""
        return self._db_path

    @property
    def breaker(self) -> CircuitBreaker:
        return self._breaker

    @property
    def is_initialized(self) -> bool:
        return self._initialized

    @property
    def _quoted(self) -> str:
        return '"' + self.table_name.replace('"', '""') + '"'

    def initialize(self) -> None:
        """
        Initialize the table.

        - Creates database and table if not exists
        - Checks schema version, migrates forward, hard fails on downgrade
        - Runs startup pruning of expired records
        """
        if self._initialized:
            return

        self._logger.info(
            f"Initializing table {self.table_name} at {self._db_path} "
            f"(region={self.region or 'default'})"
        )

        try:
            if self._db_path != ":memory:":
                Path(self._db_path).parent.mkdir(parents=True, exist_ok=True)
            self._conn = sqlite3.connect(self._db_path, check_same_thread=False)
            self._conn.row_factory = sqlite3.Row

            with self._lock:
                db_version = self._get_schema_version()

                if db_version is None:
                    self._logger.info(f"Creating schema for table {self.table_name}")
                    self._create_schema()
                    self._set_schema_version(SCHEMA_VERSION)
                elif db_version < SCHEMA_VERSION:
                    self._logger.info(f"Migrating table from v{db_version} to v{SCHEMA_VERSION}")
                    self._migrate(db_version, SCHEMA_VERSION)
                elif db_version > SCHEMA_VERSION:
                    raise SchemaMismatchError(
                        f"Table schema version ({db_version}) is newer than code version ({SCHEMA_VERSION}). "
                        f"Downgrade is not supported."
                    )

                self._prune_on_startup()
        except sqlite3.Error as e:
            self.close()
            raise UnavailableError(
                f"Could not open table {self.table_name}: {e}",
                details={"table": self.table_name, "endpoint": self._db_path},
            ) from e
        except SchemaMismatchError:
            self.close()
            raise

        self._initialized = True
        self._logger.info(f"Table {self.table_name} initialized")

    def close(self) -> None:
        """Close the database connection."""
        with self._lock:
            if self._conn:
                self._conn.close()
                self._conn = None
            self._initialized = False

    def _get_schema_version(self) -> Optional[int]:
        try:
            cursor = self._conn.execute(
                "SELECT version FROM schema_version WHERE table_name = ? ORDER BY id DESC LIMIT 1",
                (self.table_name,)
            )
            row = cursor.fetchone()
            return row["version"] if row else None
        except sqlite3.OperationalError:
            # Table doesn't exist
            return None

    def _set_schema_version(self, version: int) -> None:
        self._conn.execute(
            "INSERT INTO schema_version (table_name, version, applied_at) VALUES (?, ?, ?)",
            (self.table_name, version, _utc_now())
        )
        self._conn.commit()

    def _create_schema(self) -> None:
        """Create the initial schema (v1)."""
        self._conn.executescript(f"""
        CREATE TABLE IF NOT EXISTS schema_version (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            table_name TEXT NOT NULL,
            version INTEGER NOT NULL,
            applied_at TEXT NOT NULL
        );

        CREATE TABLE IF NOT EXISTS {self._quoted} (
            key TEXT PRIMARY KEY,
            kind TEXT NOT NULL CHECK(kind IN ('conversation', 'item', 'tag')),
            value TEXT,
            ttl INTEGER,
            created_at TEXT NOT NULL,
            updated_at TEXT NOT NULL
        );
        """)
        self._conn.commit()

    def _migrate(self, from_version: int, to_version: int) -> None:
        """Run forward migrations. Each is atomic."""
        migrations: Dict[int, str] = {}

        for version in range(from_version + 1, to_version + 1):
            if version in migrations:
                self._logger.info(f"Applying migration to v{version}")
                try:
                    self._conn.executescript(migrations[version])
                    self._set_schema_version(version)
                except sqlite3.Error as e:
                    raise MigrationFailedError(
                        f"Migration to v{version} failed: {e}. "
                        f"Table is at v{from_version}. Manual intervention required."
                    ) from e
            else:
                self._set_schema_version(version)

    def _prune_on_startup(self) -> None:
        """Drop records whose ttl has passed."""
        now = int(datetime.now(timezone.utc).timestamp())
        cursor = self._conn.execute(
            f"DELETE FROM {self._quoted} WHERE ttl IS NOT NULL AND ttl < ?",
            (now,)
        )
        if cursor.rowcount:
            self._logger.info(f"Pruned {cursor.rowcount} expired records from {self.table_name}")
        self._conn.commit()

    # ===== Guarded execution =====

    def _guarded(self, operation: str, func: Callable[[], T]) -> T:
        """Run func under the lock and breaker, mapping sqlite errors to UnavailableError."""
        def run() -> T:
            if not self._initialized or self._conn is None:
                raise UnavailableError(
                    f"Table {self.table_name} is not initialized",
                    details={"table": self.table_name, "operation": operation},
                )
            try:
                with self._lock:
                    return func()
            except sqlite3.Error as e:
                raise UnavailableError(
                    f"Table {self.table_name} {operation} failed: {e}",
                    details={"table": self.table_name, "operation": operation},
                ) from e

        return self._breaker.call(run)

    @contextmanager
    def transaction(self) -> Generator[None, None, None]:
        """
        Context manager for explicit transactions.

        Inner transactions are no-ops if already in a transaction.
        """
        with self._lock:
            if self._in_transaction:
                yield
                return

            self._in_transaction = True
            try:
                yield
                self._conn.commit()
            except Exception as e:
                self._conn.rollback()
                self._logger.error(f"Transaction rolled back on {self.table_name}: {e}")
                raise
            finally:
                self._in_transaction = False

    def _row_to_record(self, row: sqlite3.Row) -> TableRecord:
        return TableRecord(
            key=row["key"],
            kind=row["kind"],
            value=json.loads(row["value"]) if row["value"] is not None else None,
            ttl=row["ttl"],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )

    def _put(self, record: TableRecord) -> None:
        self._conn.execute(f"""
            INSERT OR REPLACE INTO {self._quoted} (key, kind, value, ttl, created_at, updated_at)
            VALUES (?, ?, ?, ?, ?, ?)
        """, (
            record.key,
            record.kind,
            json.dumps(record.value) if record.value is not None else None,
            record.ttl,
            record.created_at,
            record.updated_at,
        ))

    def _delete(self, key: str) -> bool:
        cursor = self._conn.execute(f"DELETE FROM {self._quoted} WHERE key = ?", (key,))
        return cursor.rowcount > 0

    # ===== Record Operations =====

    def get(self, key: str) -> Optional[TableRecord]:
        """Get a record by key."""
        def run() -> Optional[TableRecord]:
            row = self._conn.execute(
                f"SELECT * FROM {self._quoted} WHERE key = ?", (key,)
            ).fetchone()
            return self._row_to_record(row) if row else None

        return self._guarded("get", run)

    def put(self, record: TableRecord) -> None:
        """Insert or replace a single record."""
        self.write_batch(puts=[record])

    def delete(self, key: str) -> bool:
        """Delete a record by key. Returns True if it existed."""
        return self.write_batch(deletes=[key]) > 0

    def write_batch(
        self,
        puts: Iterable[TableRecord] = (),
        deletes: Iterable[str] = (),
    ) -> int:
        """
        Apply puts and deletes atomically.

        Returns the number of records deleted. Nothing is visible if any
        statement fails.
        """
        puts = list(puts)
        deletes = list(deletes)

        def run() -> int:
            deleted = 0
            with self.transaction():
                for key in deletes:
                    if self._delete(key):
                        deleted += 1
                for record in puts:
                    self._put(record)
            return deleted

        return self._guarded("write_batch", run)

    def update(self, key: str, planner: Callable[[Optional[TableRecord]], WritePlan]) -> int:
        """
        Read a record and apply the writes planned from it, atomically.

        `planner` gets the current record (or None) and returns
        (puts, deletes). An exception raised by the planner rolls the
        transaction back and propagates unchanged.
        """
        def run() -> int:
            deleted = 0
            with self.transaction():
                row = self._conn.execute(
                    f"SELECT * FROM {self._quoted} WHERE key = ?", (key,)
                ).fetchone()
                puts, deletes = planner(self._row_to_record(row) if row else None)
                for delete_key in deletes:
                    if self._delete(delete_key):
                        deleted += 1
                for record in puts:
                    self._put(record)
            return deleted

        return self._guarded("update", run)

    def query_prefix(self, prefix: str, limit: Optional[int] = None) -> List[TableRecord]:
        """Get every record whose key starts with prefix (key order)."""
        records: List[TableRecord] = []
        last_key: Optional[str] = None
        while True:
            page = self.scan(prefix, limit=DEFAULT_PAGE_SIZE, start_after=last_key)
            records.extend(page.records)
            if limit is not None and len(records) >= limit:
                return records[:limit]
            if page.last_key is None:
                return records
            last_key = page.last_key

    def scan(
        self,
        prefix: str = "",
        limit: int = DEFAULT_PAGE_SIZE,
        start_after: Optional[str] = None,
    ) -> ScanPage:
        """
        One page of a prefix scan.

        Pass the returned `last_key` as `start_after` to fetch the next page.
        """
        limit = max(1, int(limit))

        def run() -> ScanPage:
            params: List[Any] = [len(prefix), prefix]
            sql = f"SELECT * FROM {self._quoted} WHERE substr(key, 1, ?) = ?"
            if start_after is not None:
                sql += " AND key > ?"
                params.append(start_after)
            sql += " ORDER BY key ASC LIMIT ?"
            params.append(limit + 1)

            rows = self._conn.execute(sql, params).fetchall()
            records = [self._row_to_record(row) for row in rows[:limit]]
            last_key = records[-1].key if len(rows) > limit else None
            return ScanPage(records=records, last_key=last_key)

        return self._guarded("scan", run)

    def count(self, prefix: str = "") -> int:
        """Count records whose key starts with prefix."""
        def run() -> int:
            row = self._conn.execute(
                f"SELECT COUNT(*) AS count FROM {self._quoted} WHERE substr(key, 1, ?) = ?",
                (len(prefix), prefix)
            ).fetchone()
            return row["count"]

        return self._guarded("count", run)
