"""
Database module for docintegrity.

Provides SQLite-based storage for documents, versions and the audit log.
Connections are thread-local; writes run inside explicit
``BEGIN IMMEDIATE`` transactions so every logical operation either commits
completely or leaves no trace.
"""

import json
import sqlite3
import threading
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional, Tuple, Union

from .config import DB_BUSY_TIMEOUT, DB_PATH
from .errors import DocumentNotFoundError
from .models import AuditEvent, Document, Version

SCHEMA = (
    """
    CREATE TABLE IF NOT EXISTS documents (
        id TEXT PRIMARY KEY,
        owner_id TEXT NOT NULL,
        current_version INTEGER NOT NULL,
        content_hash TEXT NOT NULL,
        updated_at TEXT NOT NULL,
        document_json TEXT NOT NULL
    );""",
    """
    CREATE TABLE IF NOT EXISTS versions (
        document_id TEXT NOT NULL,
        version INTEGER NOT NULL,
        content_hash TEXT NOT NULL,
        previous_version_hash TEXT,
        is_active INTEGER NOT NULL DEFAULT 0,
        created_at TEXT NOT NULL,
        version_json TEXT NOT NULL,
        PRIMARY KEY (document_id, version)
    );""",
    # at most one active version per document
    """
    CREATE UNIQUE INDEX IF NOT EXISTS idx_versions_active
    ON versions(document_id) WHERE is_active = 1;""",
    """
    CREATE TABLE IF NOT EXISTS audit_log (
        sequence_number INTEGER PRIMARY KEY,
        previous_hash TEXT NOT NULL,
        current_hash TEXT NOT NULL,
        action TEXT NOT NULL,
        actor TEXT NOT NULL,
        resource_type TEXT NOT NULL,
        resource_id TEXT NOT NULL,
        severity TEXT NOT NULL,
        result TEXT NOT NULL,
        timestamp TEXT NOT NULL,
        metadata_json TEXT NOT NULL
    );""",
    """
    CREATE INDEX IF NOT EXISTS idx_audit_log_actor
    ON audit_log(actor);""",
    """
    CREATE INDEX IF NOT EXISTS idx_audit_log_resource
    ON audit_log(resource_id);""",
    """
    CREATE INDEX IF NOT EXISTS idx_audit_log_action
    ON audit_log(action);""",
)


class Database:
    """
    SQLite database with one connection per thread.

    ``transaction()`` is re-entrant on the same thread: an inner block joins
    the outer transaction, and only the outermost block commits.
    """

    def __init__(self, path: Union[str, Path] = DB_PATH, busy_timeout: float = DB_BUSY_TIMEOUT):
        self.path = Path(path)
        self.busy_timeout = busy_timeout
        self._local = threading.local()
        self._all_connections: List[sqlite3.Connection] = []
        self._registry_lock = threading.Lock()

    def connection(self) -> sqlite3.Connection:
        """
        Get a thread-local database connection.
        Connections are reused within the same thread.
        """
        conn = getattr(self._local, "conn", None)
        if conn is None:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            # autocommit mode; transactions are opened explicitly
            conn = sqlite3.connect(
                str(self.path),
                timeout=self.busy_timeout,
                isolation_level=None,
                check_same_thread=False,
            )
            conn.execute("PRAGMA journal_mode=WAL;")
            conn.execute("PRAGMA synchronous=FULL;")
            conn.execute("PRAGMA foreign_keys=ON;")
            conn.row_factory = sqlite3.Row
            self._local.conn = conn
            with self._registry_lock:
                self._all_connections.append(conn)
        return conn

    @contextmanager
    def transaction(self) -> Iterator[sqlite3.Connection]:
        """
        Context manager for write transactions.
        Commits on success, rolls back on any failure.
        """
        conn = self.connection()
        if conn.in_transaction:
            yield conn
            return

        conn.execute("BEGIN IMMEDIATE")
        try:
            yield conn
        except BaseException:
            conn.execute("ROLLBACK")
            raise
        try:
            conn.execute("COMMIT")
        except BaseException:
            if conn.in_transaction:
                conn.execute("ROLLBACK")
            raise

    def init_schema(self) -> None:
        """
        Initialize database schema with indexes.
        Safe to call multiple times (uses IF NOT EXISTS).
        """
        with self.transaction() as conn:
            for statement in SCHEMA:
                conn.execute(statement)

    def reset(self) -> None:
        """
        Reset the database for test isolation.
        Clears all tables but preserves schema.
        """
        with self.transaction() as conn:
            conn.execute("DELETE FROM documents")
            conn.execute("DELETE FROM versions")
            conn.execute("DELETE FROM audit_log")

    def stats(self) -> Dict[str, int]:
        """Get row counts for monitoring."""
        conn = self.connection()
        return {
            f"{table}_count": conn.execute(f"SELECT COUNT(*) AS cnt FROM {table}").fetchone()["cnt"]
            for table in ("documents", "versions", "audit_log")
        }

    def close(self) -> None:
        """Close every connection this database opened."""
        with self._registry_lock:
            for conn in self._all_connections:
                conn.close()
            self._all_connections.clear()
        self._local = threading.local()


# ============================================================
# Documents
# ============================================================

class DocumentStore:
    """Persistence for the current state of each document."""

    def __init__(self, db: Database):
        self.db = db

    def save(self, document: Document, conn: Optional[sqlite3.Connection] = None) -> None:
        with self._conn(conn) as c:
            c.execute(
                "INSERT INTO documents(id, owner_id, current_version, content_hash, updated_at, document_json) "
                "VALUES(?,?,?,?,?,?) "
                "ON CONFLICT(id) DO UPDATE SET current_version=excluded.current_version, "
                "content_hash=excluded.content_hash, updated_at=excluded.updated_at, "
                "document_json=excluded.document_json",
                (
                    document.id,
                    document.owner_id,
                    document.current_version,
                    document.content_hash,
                    document.updated_at.isoformat(),
                    document.model_dump_json(),
                ),
            )

    def get(self, document_id: str, conn: Optional[sqlite3.Connection] = None) -> Document:
        c = conn or self.db.connection()
        row = c.execute("SELECT document_json FROM documents WHERE id=?", (document_id,)).fetchone()
        if row is None:
            raise DocumentNotFoundError(f"Document not found: {document_id}")
        return Document.model_validate_json(row["document_json"])

    def exists(self, document_id: str) -> bool:
        row = self.db.connection().execute("SELECT 1 FROM documents WHERE id=?", (document_id,)).fetchone()
        return row is not None

    @contextmanager
    def _conn(self, conn: Optional[sqlite3.Connection]):
        if conn is not None:
            yield conn
        else:
            with self.db.transaction() as c:
                yield c


# ============================================================
# Versions
# ============================================================

class VersionStore:
    """Persistence for version snapshots. Rows are never deleted."""

    def __init__(self, db: Database):
        self.db = db

    def insert(self, version: Version, conn: sqlite3.Connection) -> None:
        conn.execute(
            "INSERT INTO versions(document_id, version, content_hash, previous_version_hash, "
            "is_active, created_at, version_json) VALUES(?,?,?,?,?,?,?)",
            (
                version.document_id,
                version.version,
                version.content_hash,
                version.previous_version_hash,
                1 if version.is_active else 0,
                version.created_at.isoformat(),
                version.model_dump_json(exclude={"is_active"}),
            ),
        )

    def deactivate(self, document_id: str, version: int, conn: sqlite3.Connection) -> bool:
        cur = conn.execute(
            "UPDATE versions SET is_active=0 WHERE document_id=? AND version=? AND is_active=1",
            (document_id, version),
        )
        return cur.rowcount == 1

    def active(self, document_id: str, conn: Optional[sqlite3.Connection] = None) -> Optional[Version]:
        c = conn or self.db.connection()
        row = c.execute(
            "SELECT is_active, version_json FROM versions WHERE document_id=? AND is_active=1",
            (document_id,),
        ).fetchone()
        return _version_from_row(row) if row else None

    def get(self, document_id: str, version: int, conn: Optional[sqlite3.Connection] = None) -> Optional[Version]:
        c = conn or self.db.connection()
        row = c.execute(
            "SELECT is_active, version_json FROM versions WHERE document_id=? AND version=?",
            (document_id, version),
        ).fetchone()
        return _version_from_row(row) if row else None

    def list(self, document_id: str, conn: Optional[sqlite3.Connection] = None) -> List[Version]:
        """All versions of a document, oldest first."""
        c = conn or self.db.connection()
        rows = c.execute(
            "SELECT is_active, version_json FROM versions WHERE document_id=? ORDER BY version ASC",
            (document_id,),
        ).fetchall()
        return [_version_from_row(row) for row in rows]

    def latest_with_hash(
        self,
        document_id: str,
        content_hash: str,
        conn: Optional[sqlite3.Connection] = None
    ) -> Optional[Version]:
        """Most recent version whose content hashes to ``content_hash``."""
        c = conn or self.db.connection()
        row = c.execute(
            "SELECT is_active, version_json FROM versions WHERE document_id=? AND content_hash=? "
            "ORDER BY version DESC LIMIT 1",
            (document_id, content_hash),
        ).fetchone()
        return _version_from_row(row) if row else None


def _version_from_row(row: sqlite3.Row) -> Version:
    data = json.loads(row["version_json"])
    data["is_active"] = bool(row["is_active"])
    return Version.model_validate(data)


# ============================================================
# Audit log
# ============================================================

class AuditStore:
    """Append-only storage for audit events."""

    def __init__(self, db: Database):
        self.db = db

    def head(self, conn: Optional[sqlite3.Connection] = None) -> Optional[Tuple[int, str]]:
        """(sequence_number, current_hash) of the last entry, or None when empty."""
        c = conn or self.db.connection()
        row = c.execute(
            "SELECT sequence_number, current_hash FROM audit_log ORDER BY sequence_number DESC LIMIT 1"
        ).fetchone()
        return (row["sequence_number"], row["current_hash"]) if row else None

    def insert(self, event: AuditEvent, conn: sqlite3.Connection) -> None:
        conn.execute(
            "INSERT INTO audit_log(sequence_number, previous_hash, current_hash, action, actor, "
            "resource_type, resource_id, severity, result, timestamp, metadata_json) "
            "VALUES(?,?,?,?,?,?,?,?,?,?,?)",
            (
                event.sequence_number,
                event.previous_hash,
                event.current_hash,
                event.action.value,
                event.actor,
                event.resource_type,
                event.resource_id,
                event.severity.value,
                event.result.value,
                event.timestamp,
                json.dumps(event.metadata, sort_keys=True),
            ),
        )

    def rows(self, from_seq: int, to_seq: Optional[int] = None) -> List[sqlite3.Row]:
        """
        Raw rows with from_seq <= sequence_number <= to_seq, ordered by sequence.

        Verification works on these rather than on models, so a tampered
        column that no longer validates is reported as a break.
        """
        conn = self.db.connection()
        if to_seq is None:
            return conn.execute(
                "SELECT * FROM audit_log WHERE sequence_number >= ? ORDER BY sequence_number ASC",
                (from_seq,),
            ).fetchall()
        return conn.execute(
            "SELECT * FROM audit_log WHERE sequence_number BETWEEN ? AND ? ORDER BY sequence_number ASC",
            (from_seq, to_seq),
        ).fetchall()

    def range(self, from_seq: int, to_seq: Optional[int] = None) -> List[AuditEvent]:
        return [_event_from_row(row) for row in self.rows(from_seq, to_seq)]

    def get(self, sequence_number: int) -> Optional[AuditEvent]:
        row = self.db.connection().execute(
            "SELECT * FROM audit_log WHERE sequence_number=?", (sequence_number,)
        ).fetchone()
        return _event_from_row(row) if row else None

    def query(
        self,
        actor: Optional[str] = None,
        resource_id: Optional[str] = None,
        action: Optional[str] = None,
        limit: int = 1000
    ) -> List[AuditEvent]:
        clauses: List[str] = []
        params: List[Any] = []
        if actor:
            clauses.append("actor=?")
            params.append(actor)
        if resource_id:
            clauses.append("resource_id=?")
            params.append(resource_id)
        if action:
            clauses.append("action=?")
            params.append(action)
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        rows = self.db.connection().execute(
            f"SELECT * FROM audit_log {where} ORDER BY sequence_number ASC LIMIT ?",
            (*params, limit),
        ).fetchall()
        return [_event_from_row(row) for row in rows]


def _event_from_row(row: sqlite3.Row) -> AuditEvent:
    return AuditEvent(
        sequence_number=row["sequence_number"],
        previous_hash=row["previous_hash"],
        current_hash=row["current_hash"],
        action=row["action"],
        actor=row["actor"],
        resource_type=row["resource_type"],
        resource_id=row["resource_id"],
        severity=row["severity"],
        result=row["result"],
        timestamp=row["timestamp"],
        metadata=json.loads(row["metadata_json"]),
    )
