"""
paigent-orchestrator — durable state store

File: src/paigent_orchestrator/persistence/state_db.py
Last updated: 2026-10-16

Purpose
- SQLite schema management, migrations and connection lifecycle for runs, steps,
  events, tools, budget reservations, payment receipts and workspace members.

What should be included in this file
- Schema version table and checksummed migration runner.
- Short-lived connections, WAL mode, BEGIN IMMEDIATE write transactions with savepoints.
- Bounded busy retries and actionable error classification.
- Backup and integrity helpers.

Functional requirements
- Must support idempotent migration application.
- Conditional writes report affected row counts so callers can detect lost races.
- The run budget ceiling is immutable and events are append-only at the database level.

Non-functional requirements
- Must avoid long-lived locks; no global handle, a StateDB is passed explicitly.
"""

from __future__ import annotations

import hashlib
import json
import sqlite3
import time
from collections.abc import Iterable, Iterator, Sequence
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Final

from paigent_orchestrator.constants import STATE_DB_SCHEMA_VERSION
from paigent_orchestrator.domain.graph import NodeType
from paigent_orchestrator.domain.models import (
    ActorType,
    ReceiptStatus,
    ReservationStatus,
    RunStatus,
    StepStatus,
)

try:
    from datetime import UTC
except ImportError:
    UTC = timezone.utc  # noqa: UP017

SQLValue = str | int | float | bytes | None
SQLParams = Sequence[SQLValue]
RowValue = str | int | float | bytes | None

DEFAULT_BUSY_TIMEOUT_MS: Final[int] = 5_000
DEFAULT_BUSY_RETRY_LIMIT: Final[int] = 4
DEFAULT_BUSY_RETRY_BACKOFF_MS: Final[int] = 25

WORKSPACE_ROLES: Final[tuple[str, ...]] = ("owner", "admin", "member", "viewer")


def _sql_enum(values: Iterable[str]) -> str:
    return ", ".join(f"'{value}'" for value in values)


def _atomic_column_check(column: str) -> str:
    """Canonical non-negative decimal text: digits only, no leading zeros."""
    return (
        f"{column} <> '' AND {column} NOT GLOB '*[^0-9]*' "
        f"AND ({column} = '0' OR {column} NOT GLOB '0*')"
    )


def _atomic_le(left: str, right: str) -> str:
    """``left <= right`` for canonical decimal text of arbitrary length."""
    return f"(length({left}) < length({right}) OR (length({left}) = length({right}) AND {left} <= {right}))"


_SCHEMA_VERSIONS_TABLE_SQL: Final[str] = """
CREATE TABLE IF NOT EXISTS schema_versions (
    version INTEGER PRIMARY KEY CHECK (version > 0),
    name TEXT NOT NULL,
    checksum TEXT NOT NULL CHECK (length(checksum) = 64),
    applied_at TEXT NOT NULL
)
"""

_MIGRATION_0001_STATEMENTS: Final[tuple[str, ...]] = (
    _SCHEMA_VERSIONS_TABLE_SQL,
    f"""
    CREATE TABLE IF NOT EXISTS runs (
        id TEXT PRIMARY KEY,
        workspace_id TEXT NOT NULL,
        input TEXT NOT NULL,
        status TEXT NOT NULL CHECK (status IN ({_sql_enum(RunStatus)})),
        graph_json TEXT NOT NULL,
        budget_asset TEXT NOT NULL,
        budget_network TEXT NOT NULL,
        budget_max_atomic TEXT NOT NULL CHECK ({_atomic_column_check("budget_max_atomic")}),
        budget_spent_atomic TEXT NOT NULL DEFAULT '0'
            CHECK ({_atomic_column_check("budget_spent_atomic")}),
        budget_reserved_atomic TEXT NOT NULL DEFAULT '0'
            CHECK ({_atomic_column_check("budget_reserved_atomic")}),
        auto_pay_json TEXT NOT NULL,
        created_by TEXT,
        planning_error TEXT,
        created_at TEXT NOT NULL,
        updated_at TEXT NOT NULL,
        CHECK {_atomic_le("budget_spent_atomic", "budget_max_atomic")},
        CHECK {_atomic_le("budget_reserved_atomic", "budget_max_atomic")}
    )
    """,
    """
    CREATE INDEX IF NOT EXISTS idx_runs_workspace_created
    ON runs(workspace_id, created_at DESC)
    """,
    """
    CREATE TRIGGER IF NOT EXISTS runs_budget_max_immutable
    BEFORE UPDATE OF budget_max_atomic ON runs
    WHEN NEW.budget_max_atomic IS NOT OLD.budget_max_atomic
    BEGIN
        SELECT RAISE(ABORT, 'budget_max_atomic is immutable');
    END
    """,
    """
    CREATE TRIGGER IF NOT EXISTS runs_no_delete
    BEFORE DELETE ON runs
    BEGIN
        SELECT RAISE(ABORT, 'runs are never deleted');
    END
    """,
    f"""
    CREATE TABLE IF NOT EXISTS steps (
        id TEXT PRIMARY KEY,
        run_id TEXT NOT NULL REFERENCES runs(id),
        step_id TEXT NOT NULL,
        node_type TEXT NOT NULL CHECK (node_type IN ({_sql_enum(NodeType)})),
        status TEXT NOT NULL CHECK (status IN ({_sql_enum(StepStatus)})),
        attempt INTEGER NOT NULL DEFAULT 0 CHECK (attempt >= 0),
        inputs_json TEXT,
        outputs_json TEXT,
        error_json TEXT,
        metrics_json TEXT,
        next_eligible_at TEXT NOT NULL,
        lease_owner TEXT,
        lease_expires_at TEXT,
        approved INTEGER NOT NULL DEFAULT 0 CHECK (approved IN (0, 1)),
        started_at TEXT,
        created_at TEXT NOT NULL,
        updated_at TEXT NOT NULL,
        UNIQUE (run_id, step_id)
    )
    """,
    """
    CREATE INDEX IF NOT EXISTS idx_steps_status_next_eligible
    ON steps(status, next_eligible_at)
    """,
    f"""
    CREATE TABLE IF NOT EXISTS events (
        id TEXT PRIMARY KEY,
        run_id TEXT NOT NULL REFERENCES runs(id),
        seq INTEGER NOT NULL CHECK (seq > 0),
        ts TEXT NOT NULL,
        type TEXT NOT NULL,
        data_json TEXT NOT NULL,
        actor_type TEXT NOT NULL CHECK (actor_type IN ({_sql_enum(ActorType)})),
        actor_id TEXT NOT NULL,
        UNIQUE (run_id, seq)
    )
    """,
    """
    CREATE TRIGGER IF NOT EXISTS events_no_update
    BEFORE UPDATE ON events
    BEGIN
        SELECT RAISE(ABORT, 'events are append-only');
    END
    """,
    """
    CREATE TRIGGER IF NOT EXISTS events_no_delete
    BEFORE DELETE ON events
    BEGIN
        SELECT RAISE(ABORT, 'events are append-only');
    END
    """,
    """
    CREATE TABLE IF NOT EXISTS tools (
        id TEXT PRIMARY KEY,
        workspace_id TEXT NOT NULL,
        name TEXT NOT NULL,
        description TEXT NOT NULL DEFAULT '',
        base_url TEXT NOT NULL,
        endpoints_json TEXT NOT NULL,
        pricing_json TEXT NOT NULL,
        created_at TEXT NOT NULL,
        updated_at TEXT NOT NULL,
        UNIQUE (workspace_id, base_url)
    )
    """,
    f"""
    CREATE TABLE IF NOT EXISTS budget_reservations (
        id TEXT PRIMARY KEY,
        run_id TEXT NOT NULL REFERENCES runs(id),
        step_id TEXT NOT NULL,
        amount_atomic TEXT NOT NULL CHECK ({_atomic_column_check("amount_atomic")}),
        actual_atomic TEXT CHECK (actual_atomic IS NULL OR ({_atomic_column_check("actual_atomic")})),
        status TEXT NOT NULL CHECK (status IN ({_sql_enum(ReservationStatus)})),
        created_at TEXT NOT NULL,
        updated_at TEXT NOT NULL
    )
    """,
    """
    CREATE UNIQUE INDEX IF NOT EXISTS idx_budget_reservations_open
    ON budget_reservations(run_id, step_id)
    WHERE status = 'reserved'
    """,
    f"""
    CREATE TABLE IF NOT EXISTS payment_receipts (
        id TEXT PRIMARY KEY,
        run_id TEXT NOT NULL REFERENCES runs(id),
        step_id TEXT NOT NULL,
        tool_id TEXT NOT NULL,
        network TEXT NOT NULL,
        asset TEXT NOT NULL,
        amount_atomic TEXT NOT NULL CHECK ({_atomic_column_check("amount_atomic")}),
        tx_hash TEXT,
        status TEXT NOT NULL CHECK (status IN ({_sql_enum(ReceiptStatus)})),
        created_at TEXT NOT NULL
    )
    """,
    """
    CREATE INDEX IF NOT EXISTS idx_payment_receipts_run
    ON payment_receipts(run_id, created_at)
    """,
    f"""
    CREATE TABLE IF NOT EXISTS workspace_members (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        workspace_id TEXT NOT NULL,
        clerk_user_id TEXT NOT NULL,
        role TEXT NOT NULL CHECK (role IN ({_sql_enum(WORKSPACE_ROLES)})),
        created_at TEXT NOT NULL,
        UNIQUE (workspace_id, clerk_user_id)
    )
    """,
)


@dataclass(frozen=True, slots=True)
class MigrationRecord:
    version: int
    name: str
    checksum: str
    applied_at: str


@dataclass(frozen=True, slots=True)
class _Migration:
    version: int
    name: str
    statements: tuple[str, ...]
    checksum: str


def _migration_checksum(version: int, name: str, statements: Sequence[str]) -> str:
    digest = hashlib.sha256()
    digest.update(f"{version}:{name}\n".encode())
    for statement in statements:
        normalized = "\n".join(line.rstrip() for line in statement.strip().splitlines())
        digest.update(normalized.encode("utf-8"))
        digest.update(b"\n--\n")
    return digest.hexdigest()


_MIGRATIONS: Final[tuple[_Migration, ...]] = (
    _Migration(
        version=1,
        name="orchestration_core_schema",
        statements=_MIGRATION_0001_STATEMENTS,
        checksum=_migration_checksum(1, "orchestration_core_schema", _MIGRATION_0001_STATEMENTS),
    ),
)

_SQLITE_BUSY_CODES: Final[frozenset[int]] = frozenset(
    code
    for code in (
        getattr(sqlite3, "SQLITE_BUSY", None),
        getattr(sqlite3, "SQLITE_BUSY_RECOVERY", None),
        getattr(sqlite3, "SQLITE_BUSY_SNAPSHOT", None),
        getattr(sqlite3, "SQLITE_LOCKED", None),
    )
    if isinstance(code, int)
)

_SQLITE_CORRUPTION_CODES: Final[frozenset[int]] = frozenset(
    code
    for code in (getattr(sqlite3, "SQLITE_CORRUPT", None), getattr(sqlite3, "SQLITE_NOTADB", None))
    if isinstance(code, int)
)

_BUSY_SUBSTRINGS: Final[tuple[str, ...]] = (
    "database is locked",
    "database table is locked",
    "database schema is locked",
)

_CORRUPTION_SUBSTRINGS: Final[tuple[str, ...]] = (
    "database disk image is malformed",
    "file is not a database",
)


class StateDBError(RuntimeError):
    """Base class for persistence DB errors."""


class StateDBBusyError(StateDBError):
    """Raised when bounded busy retries are exhausted."""


class StateDBMigrationError(StateDBError):
    """Raised when migrations cannot be applied safely."""


class StateDBCorruptionError(StateDBError):
    """Raised when SQLite reports possible corruption."""


class StateDB:
    """SQLite state store with deterministic migrations and short-lived connections."""

    def __init__(
        self,
        path: str | Path,
        *,
        busy_timeout_ms: int = DEFAULT_BUSY_TIMEOUT_MS,
        busy_retry_limit: int = DEFAULT_BUSY_RETRY_LIMIT,
        busy_retry_backoff_ms: int = DEFAULT_BUSY_RETRY_BACKOFF_MS,
    ) -> None:
        if busy_timeout_ms < 0:
            raise ValueError("busy_timeout_ms must be >= 0")
        if busy_retry_limit < 0:
            raise ValueError("busy_retry_limit must be >= 0")
        if busy_retry_backoff_ms < 0:
            raise ValueError("busy_retry_backoff_ms must be >= 0")

        self._path = Path(path).expanduser()
        self._busy_timeout_ms = busy_timeout_ms
        self._busy_retry_limit = busy_retry_limit
        self._busy_retry_backoff_ms = busy_retry_backoff_ms
        self._savepoint_counter = 0
        self._migrated = False

    @property
    def path(self) -> Path:
        return self._path

    def connect(self) -> sqlite3.Connection:
        self._path.parent.mkdir(parents=True, exist_ok=True)
        try:
            conn = sqlite3.connect(
                self._path,
                timeout=self._busy_timeout_ms / 1000.0,
                isolation_level=None,
                check_same_thread=False,
            )
        except sqlite3.Error as exc:
            self._raise_actionable_error(exc, operation="open connection")
        conn.row_factory = sqlite3.Row
        try:
            self._configure_connection(conn)
        except BaseException:
            conn.close()
            raise
        return conn

    @contextmanager
    def connection(self) -> Iterator[sqlite3.Connection]:
        conn = self.connect()
        try:
            yield conn
        finally:
            conn.close()

    @contextmanager
    def transaction(
        self,
        *,
        conn: sqlite3.Connection | None = None,
        immediate: bool = True,
    ) -> Iterator[sqlite3.Connection]:
        """Atomic unit of work; nests as a savepoint when ``conn`` is already in a transaction."""
        if conn is None:
            with self.connection() as owned_conn:
                with self.transaction(conn=owned_conn, immediate=immediate) as txn_conn:
                    yield txn_conn
                return

        if conn.in_transaction:
            savepoint = self._next_savepoint_name()
            self._execute_with_retry(conn, f"SAVEPOINT {savepoint}", (), operation="savepoint")
            try:
                yield conn
            except BaseException:
                self._execute_with_retry(
                    conn, f"ROLLBACK TO SAVEPOINT {savepoint}", (), operation="rollback to savepoint"
                )
                self._execute_with_retry(
                    conn, f"RELEASE SAVEPOINT {savepoint}", (), operation="release savepoint"
                )
                raise
            self._execute_with_retry(conn, f"RELEASE SAVEPOINT {savepoint}", (), operation="release savepoint")
            return

        begin_sql = "BEGIN IMMEDIATE" if immediate else "BEGIN"
        self._execute_with_retry(conn, begin_sql, (), operation="begin transaction")
        try:
            yield conn
        except BaseException:
            self._execute_with_retry(conn, "ROLLBACK", (), operation="rollback transaction")
            raise
        self._execute_with_retry(conn, "COMMIT", (), operation="commit transaction")

    def migrate(self) -> int:
        """Apply migrations idempotently and return the current schema version."""
        self._validate_migration_chain(STATE_DB_SCHEMA_VERSION)
        with self.connection() as conn:
            self._execute_with_retry(
                conn, _SCHEMA_VERSIONS_TABLE_SQL, (), operation="create schema_versions table"
            )
            applied = self._load_applied_migrations(conn)
            current_version = max(applied, default=0)
            if current_version > STATE_DB_SCHEMA_VERSION:
                raise StateDBMigrationError(
                    "database schema is newer than supported by this build "
                    f"(db={current_version}, code={STATE_DB_SCHEMA_VERSION})"
                )

            for migration in _MIGRATIONS:
                if migration.version > STATE_DB_SCHEMA_VERSION:
                    continue
                record = applied.get(migration.version)
                if record is not None:
                    if record.checksum != migration.checksum:
                        raise StateDBMigrationError(
                            f"migration checksum mismatch for version {migration.version}: "
                            f"db={record.checksum} code={migration.checksum}"
                        )
                    continue

                with self.transaction(conn=conn, immediate=True) as tx:
                    # A concurrent migrator may have won between the read and BEGIN IMMEDIATE.
                    if self._load_applied_migrations(tx).get(migration.version) is not None:
                        continue
                    for statement in migration.statements:
                        self._execute_with_retry(
                            tx, statement, (), operation=f"apply migration {migration.version}"
                        )
                    self._execute_with_retry(
                        tx,
                        """
                        INSERT INTO schema_versions (version, name, checksum, applied_at)
                        VALUES (?, ?, ?, ?)
                        """,
                        (migration.version, migration.name, migration.checksum, utc_now_iso()),
                        operation=f"record migration {migration.version}",
                    )

            self._migrated = True
            return self.schema_version(conn=conn)

    def ensure_migrated(self) -> None:
        if not self._migrated:
            self.migrate()

    def schema_version(self, *, conn: sqlite3.Connection | None = None) -> int:
        row = self.query_one("SELECT COALESCE(MAX(version), 0) AS version FROM schema_versions", conn=conn)
        value = 0 if row is None else row["version"]
        if not isinstance(value, int):
            raise StateDBMigrationError("schema_versions.version must be an integer")
        return value

    def schema_history(self) -> list[MigrationRecord]:
        with self.connection() as conn:
            return sorted(self._load_applied_migrations(conn).values(), key=lambda record: record.version)

    def execute(
        self,
        sql: str,
        params: SQLParams = (),
        *,
        conn: sqlite3.Connection | None = None,
    ) -> int:
        """Execute a parameterized statement and return the affected row count."""
        if conn is not None:
            return self._execute_with_retry(conn, sql, params, operation="execute statement").rowcount
        with self.transaction(immediate=True) as tx:
            return self._execute_with_retry(tx, sql, params, operation="execute statement").rowcount

    def executemany(
        self,
        sql: str,
        params_iter: Iterable[SQLParams],
        *,
        conn: sqlite3.Connection | None = None,
    ) -> int:
        params_list = [tuple(params) for params in params_iter]
        if conn is not None:
            return self._executemany_with_retry(conn, sql, params_list, operation="execute many")
        with self.transaction(immediate=True) as tx:
            return self._executemany_with_retry(tx, sql, params_list, operation="execute many")

    def query_all(
        self,
        sql: str,
        params: SQLParams = (),
        *,
        conn: sqlite3.Connection | None = None,
    ) -> list[dict[str, RowValue]]:
        if conn is not None:
            cursor = self._execute_with_retry(conn, sql, params, operation="query all")
            return [_row_to_dict(row) for row in cursor.fetchall()]
        with self.connection() as owned_conn:
            cursor = self._execute_with_retry(owned_conn, sql, params, operation="query all")
            return [_row_to_dict(row) for row in cursor.fetchall()]

    def query_one(
        self,
        sql: str,
        params: SQLParams = (),
        *,
        conn: sqlite3.Connection | None = None,
    ) -> dict[str, RowValue] | None:
        if conn is not None:
            row = self._execute_with_retry(conn, sql, params, operation="query one").fetchone()
            return None if row is None else _row_to_dict(row)
        with self.connection() as owned_conn:
            row = self._execute_with_retry(owned_conn, sql, params, operation="query one").fetchone()
            return None if row is None else _row_to_dict(row)

    def backup(self, destination: str | Path) -> Path:
        """Consistent snapshot through the SQLite backup API."""
        destination_path = Path(destination).expanduser()
        destination_path.parent.mkdir(parents=True, exist_ok=True)
        with self.connection() as source:
            target = sqlite3.connect(destination_path, isolation_level=None)
            try:
                source.backup(target)
            finally:
                target.close()
        return destination_path

    def integrity_check(self, *, max_errors: int = 100) -> tuple[str, ...]:
        """Return integrity-check errors; an empty tuple means OK."""
        if max_errors <= 0:
            raise ValueError("max_errors must be > 0")
        rows = self.query_all(f"PRAGMA integrity_check({int(max_errors)})")
        messages = tuple(str(row.get("integrity_check", "")) for row in rows)
        return () if messages == ("ok",) else messages

    def close(self) -> None:
        """No-op; connections are scoped per operation."""

    def __enter__(self) -> StateDB:
        self.migrate()
        return self

    def __exit__(self, exc_type: object, exc: object, tb: object) -> None:
        del exc_type, exc, tb
        self.close()

    def _configure_connection(self, conn: sqlite3.Connection) -> None:
        conn.execute("PRAGMA foreign_keys=ON")
        conn.execute(f"PRAGMA busy_timeout={self._busy_timeout_ms}")
        journal_row = conn.execute("PRAGMA journal_mode=WAL").fetchone()
        journal_mode = "" if journal_row is None else str(journal_row[0]).lower()
        if journal_mode != "wal":
            raise StateDBError(f"journal_mode must be WAL, got {journal_mode!r}")

    def _load_applied_migrations(self, conn: sqlite3.Connection) -> dict[int, MigrationRecord]:
        cursor = self._execute_with_retry(
            conn,
            "SELECT version, name, checksum, applied_at FROM schema_versions ORDER BY version ASC",
            (),
            operation="load schema_versions",
        )
        out: dict[int, MigrationRecord] = {}
        for row in cursor.fetchall():
            version, name, checksum, applied_at = (
                row["version"],
                row["name"],
                row["checksum"],
                row["applied_at"],
            )
            if not isinstance(version, int) or not all(
                isinstance(value, str) for value in (name, checksum, applied_at)
            ):
                raise StateDBMigrationError(f"malformed schema_versions row for version {version!r}")
            out[version] = MigrationRecord(version, name, checksum, applied_at)
        return out

    def _validate_migration_chain(self, target_version: int) -> None:
        known = {migration.version for migration in _MIGRATIONS}
        if target_version > max(known, default=0):
            raise StateDBMigrationError(
                f"schema target exceeds known migrations (target={target_version}, known={max(known, default=0)})"
            )
        for version in range(1, target_version + 1):
            if version not in known:
                raise StateDBMigrationError(f"missing migration for schema version {version}")

    def _next_savepoint_name(self) -> str:
        self._savepoint_counter += 1
        return f"sp_{self._savepoint_counter}"

    def _execute_with_retry(
        self,
        conn: sqlite3.Connection,
        sql: str,
        params: SQLParams,
        *,
        operation: str,
    ) -> sqlite3.Cursor:
        for attempt in range(self._busy_retry_limit + 1):
            try:
                return conn.execute(sql, tuple(params))
            except sqlite3.IntegrityError:
                raise
            except sqlite3.Error as exc:
                if self._is_busy_error(exc) and attempt < self._busy_retry_limit:
                    time.sleep((self._busy_retry_backoff_ms / 1000.0) * float(2**attempt))
                    continue
                self._raise_actionable_error(exc, operation=operation)
        raise StateDBBusyError(f"{operation} exhausted retries unexpectedly")

    def _executemany_with_retry(
        self,
        conn: sqlite3.Connection,
        sql: str,
        params_list: Sequence[SQLParams],
        *,
        operation: str,
    ) -> int:
        for attempt in range(self._busy_retry_limit + 1):
            try:
                return conn.executemany(sql, params_list).rowcount
            except sqlite3.IntegrityError:
                raise
            except sqlite3.Error as exc:
                if self._is_busy_error(exc) and attempt < self._busy_retry_limit:
                    time.sleep((self._busy_retry_backoff_ms / 1000.0) * float(2**attempt))
                    continue
                self._raise_actionable_error(exc, operation=operation)
        raise StateDBBusyError(f"{operation} exhausted retries unexpectedly")

    def _is_busy_error(self, exc: sqlite3.Error) -> bool:
        code = getattr(exc, "sqlite_errorcode", None)
        if isinstance(code, int) and code in _SQLITE_BUSY_CODES:
            return True
        message = str(exc).lower()
        return any(fragment in message for fragment in _BUSY_SUBSTRINGS)

    def _is_corruption_error(self, exc: sqlite3.Error) -> bool:
        code = getattr(exc, "sqlite_errorcode", None)
        if isinstance(code, int) and code in _SQLITE_CORRUPTION_CODES:
            return True
        message = str(exc).lower()
        return any(fragment in message for fragment in _CORRUPTION_SUBSTRINGS)

    def _raise_actionable_error(self, exc: sqlite3.Error, *, operation: str) -> None:
        if self._is_corruption_error(exc):
            raise StateDBCorruptionError(
                f"{operation} failed for {self._path}: {exc}. "
                "Run `StateDB.integrity_check()` and restore from `StateDB.backup(...)` if needed."
            ) from exc
        if self._is_busy_error(exc):
            raise StateDBBusyError(
                f"{operation} hit SQLITE_BUSY for {self._path} after "
                f"{self._busy_retry_limit + 1} attempt(s): {exc}"
            ) from exc
        raise StateDBError(f"{operation} failed for {self._path}: {exc}") from exc


def _row_to_dict(row: sqlite3.Row) -> dict[str, RowValue]:
    return {str(key): row[key] for key in row.keys()}  # noqa: SIM118


def iso8601z(value: datetime) -> str:
    """Fixed-width UTC text so that lexicographic order equals time order."""
    if value.tzinfo is None or value.utcoffset() is None:
        raise ValueError("datetime must be timezone-aware")
    return value.astimezone(UTC).isoformat(timespec="microseconds").replace("+00:00", "Z")


def parse_iso8601z(value: str) -> datetime:
    text = value[:-1] + "+00:00" if value.endswith("Z") else value
    parsed = datetime.fromisoformat(text)
    if parsed.tzinfo is None:
        raise ValueError(f"timestamp must be timezone-aware: {value!r}")
    return parsed.astimezone(UTC)


def utc_now() -> datetime:
    return datetime.now(UTC)


def utc_now_iso() -> str:
    return iso8601z(utc_now())


def canonical_json(value: object) -> str:
    """Deterministic JSON for persistence payloads."""
    return json.dumps(value, sort_keys=True, separators=(",", ":"), ensure_ascii=False)


__all__ = [
    "DEFAULT_BUSY_RETRY_BACKOFF_MS",
    "DEFAULT_BUSY_RETRY_LIMIT",
    "DEFAULT_BUSY_TIMEOUT_MS",
    "WORKSPACE_ROLES",
    "MigrationRecord",
    "RowValue",
    "SQLParams",
    "SQLValue",
    "StateDB",
    "StateDBBusyError",
    "StateDBCorruptionError",
    "StateDBError",
    "StateDBMigrationError",
    "canonical_json",
    "iso8601z",
    "parse_iso8601z",
    "utc_now",
    "utc_now_iso",
]
