"""SQLite storage layer for memory items, associations, and full-text search.

This module provides the SQLite-based item store for Cortex with support for:
- Six item tables (decisions, errors, learnings, notes, unfinished, sessions)
- FTS5 full-text indexes kept in sync by triggers
- Typed association edges between items
- Embedding vectors stored as float32 BLOBs
- A small key/value meta table for maintenance cursors
- Schema versioning and migrations

All per-kind table and column names are taken from the item registry.
Timestamps are UTC text in ``YYYY-MM-DD HH:MM:SS`` form, so lexical order
equals chronological order.
"""

import hashlib
import json
import logging
import re
import secrets
import sqlite3
from contextlib import contextmanager
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Iterator, Optional

from cortex.memory.registry import REGISTRY, ItemSpec, get_spec
from cortex.memory.types import (
    Association,
    DecayStats,
    ItemId,
    ItemKind,
    ItemRef,
    Neighbor,
    Relation,
)

logger = logging.getLogger(__name__)

TIMESTAMP_FORMAT = "%Y-%m-%d %H:%M:%S"

# Columns shared by every item table
COMMON_COLUMNS = """
    access_count INTEGER NOT NULL DEFAULT 0,
    last_accessed TEXT,
    memory_strength REAL DEFAULT 1.0,
    importance_score REAL NOT NULL DEFAULT 0.5,
    archived_at TEXT
"""

ITEM_TABLES: dict[str, str] = {
    "sessions": f"""
        CREATE TABLE IF NOT EXISTS sessions (
            id TEXT PRIMARY KEY,
            started_at TEXT NOT NULL,
            ended_at TEXT,
            summary TEXT,
            key_changes TEXT,
            status TEXT NOT NULL DEFAULT 'active',
            {COMMON_COLUMNS}
        )
    """,
    "decisions": f"""
        CREATE TABLE IF NOT EXISTS decisions (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            session_id TEXT,
            created_at TEXT NOT NULL,
            category TEXT NOT NULL,
            title TEXT NOT NULL,
            reasoning TEXT NOT NULL,
            alternatives TEXT,
            files_affected TEXT,
            confidence TEXT NOT NULL DEFAULT 'high',
            {COMMON_COLUMNS}
        )
    """,
    "errors": f"""
        CREATE TABLE IF NOT EXISTS errors (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            session_id TEXT,
            first_seen TEXT NOT NULL,
            last_seen TEXT NOT NULL,
            occurrences INTEGER NOT NULL DEFAULT 1,
            error_signature TEXT NOT NULL UNIQUE,
            error_message TEXT NOT NULL,
            root_cause TEXT,
            fix_description TEXT,
            files_involved TEXT,
            prevention_rule TEXT,
            severity TEXT NOT NULL DEFAULT 'medium',
            {COMMON_COLUMNS}
        )
    """,
    "learnings": f"""
        CREATE TABLE IF NOT EXISTS learnings (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            session_id TEXT,
            created_at TEXT NOT NULL,
            anti_pattern TEXT NOT NULL,
            correct_pattern TEXT NOT NULL,
            detection_regex TEXT,
            context TEXT NOT NULL,
            severity TEXT NOT NULL DEFAULT 'medium',
            occurrences INTEGER NOT NULL DEFAULT 1,
            auto_block INTEGER NOT NULL DEFAULT 0,
            core_memory INTEGER NOT NULL DEFAULT 0,
            {COMMON_COLUMNS}
        )
    """,
    "notes": f"""
        CREATE TABLE IF NOT EXISTS notes (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            session_id TEXT,
            created_at TEXT NOT NULL,
            text TEXT NOT NULL,
            tags TEXT,
            {COMMON_COLUMNS}
        )
    """,
    "unfinished": f"""
        CREATE TABLE IF NOT EXISTS unfinished (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            session_id TEXT,
            created_at TEXT NOT NULL,
            description TEXT NOT NULL,
            context TEXT,
            priority TEXT NOT NULL DEFAULT 'medium',
            blocked_by TEXT,
            resolved_at TEXT,
            {COMMON_COLUMNS}
        )
    """,
}

# Schema version migrations
# Each migration has a description and up SQL (can be a list of statements)
MIGRATIONS: dict[int, dict[str, Any]] = {
    1: {
        "description": "Index item tables for decay and session lookups",
        "up": [
            f"CREATE INDEX IF NOT EXISTS idx_{spec.table}_strength "
            f"ON {spec.table}(memory_strength)"
            for spec in REGISTRY.values()
        ]
        + [
            f"CREATE INDEX IF NOT EXISTS idx_{spec.table}_session "
            f"ON {spec.table}(session_id)"
            for spec in REGISTRY.values()
            if spec.kind is not ItemKind.SESSION
        ],
    },
    2: {
        "description": "Index association endpoints",
        "up": [
            "CREATE INDEX IF NOT EXISTS idx_assoc_source "
            "ON memory_associations(source_type, source_id)",
            "CREATE INDEX IF NOT EXISTS idx_assoc_target "
            "ON memory_associations(target_type, target_id)",
        ],
    },
}


class SQLiteStoreError(Exception):
    """Custom exception for SQLite storage-related errors."""

    pass


# =========================================================================
# Timestamp helpers
# =========================================================================


def utc_now() -> datetime:
    """Current UTC time truncated to whole seconds."""
    return datetime.now(timezone.utc).replace(microsecond=0)


def format_timestamp(value: datetime) -> str:
    """Render a datetime as stored timestamp text (naive values are UTC)."""
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).strftime(TIMESTAMP_FORMAT)


def parse_timestamp(value: Optional[str]) -> Optional[datetime]:
    """Parse stored timestamp text into an aware UTC datetime.

    Accepts ``YYYY-MM-DD HH:MM:SS`` and ISO-8601 (``T`` separator, ``Z``
    suffix, fractional seconds).

    Raises:
        ValueError: If the text is not a recognizable timestamp
    """
    if value is None or value == "":
        return None
    text = str(value).strip().replace("Z", "+00:00")
    parsed = datetime.fromisoformat(text)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def compute_error_signature(message: str) -> str:
    """Signature of an error message with volatile parts normalized.

    Numbers become ``N``, paths ``PATH``, hex literals ``HEX``; whitespace is
    collapsed and the result lower-cased before hashing.

    Returns:
        First 16 hex characters of the SHA-256 digest
    """
    normalized = re.sub(r"\d+", "N", message)
    normalized = re.sub(r"/[\w./\-]+", "PATH", normalized)
    normalized = re.sub(r"0x[a-fA-F0-9]+", "HEX", normalized)
    normalized = re.sub(r"\s+", " ", normalized).strip().lower()
    return hashlib.sha256(normalized.encode("utf-8")).hexdigest()[:16]


def _encode_field(value: Any) -> Any:
    if isinstance(value, (list, tuple, dict)):
        return json.dumps(list(value) if isinstance(value, tuple) else value)
    if isinstance(value, bool):
        return int(value)
    return value


class SQLiteStore:
    """SQLite item store for the memory core.

    Provides storage for the six item kinds, their FTS5 indexes, association
    edges, embedding vectors, and maintenance metadata.

    Args:
        db_path: Path to SQLite database file.
                 Defaults to ~/.cortex/cortex.db
        ephemeral: If True, use in-memory storage for testing (default: False)

    Attributes:
        db_path: Path to database file (None if ephemeral)
        ephemeral: Whether using ephemeral storage
        _conn: SQLite connection instance
    """

    def __init__(
        self,
        db_path: Optional[Path] = None,
        ephemeral: bool = False,
    ):
        """Initialize SQLiteStore with persistent or ephemeral storage.

        Args:
            db_path: Path to SQLite database file.
                     Defaults to ~/.cortex/cortex.db if not ephemeral.
            ephemeral: If True, use in-memory database for testing

        Raises:
            SQLiteStoreError: If database initialization fails
        """
        self.ephemeral = ephemeral
        self._tx_depth = 0

        if ephemeral:
            self.db_path = None
        else:
            self.db_path = db_path or Path.home() / ".cortex" / "cortex.db"

        try:
            if ephemeral:
                self._conn = sqlite3.connect(":memory:", check_same_thread=False)
            else:
                if self.db_path is not None:
                    self.db_path.parent.mkdir(parents=True, exist_ok=True)
                self._conn = sqlite3.connect(str(self.db_path), check_same_thread=False)
                self._conn.execute("PRAGMA journal_mode = WAL")

            self._conn.row_factory = sqlite3.Row
            self._conn.execute("PRAGMA foreign_keys = ON")

            self._init_schema()

        except sqlite3.Error as e:
            raise SQLiteStoreError(f"Failed to initialize SQLite storage: {e}") from e

    def _init_schema(self) -> None:
        """Initialize database schema with all tables and indexes.

        Creates the item tables, one external-content FTS5 table per kind with
        insert/delete/update triggers, the association and embedding tables,
        and the meta table.

        Raises:
            SQLiteStoreError: If schema initialization fails
        """
        try:
            cursor = self._conn.cursor()

            for ddl in ITEM_TABLES.values():
                cursor.execute(ddl)

            cursor.execute("""
                CREATE TABLE IF NOT EXISTS memory_associations (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    source_type TEXT NOT NULL,
                    source_id TEXT NOT NULL,
                    target_type TEXT NOT NULL,
                    target_id TEXT NOT NULL,
                    relation TEXT NOT NULL,
                    strength REAL NOT NULL DEFAULT 1.0,
                    last_activated TEXT,
                    created_at TEXT NOT NULL,
                    UNIQUE(source_type, source_id, target_type, target_id, relation),
                    CHECK(strength >= 0.0 AND strength <= 1.0),
                    CHECK(NOT (source_type = target_type AND source_id = target_id))
                )
            """)

            cursor.execute("""
                CREATE TABLE IF NOT EXISTS embeddings (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    entity_type TEXT NOT NULL,
                    entity_id TEXT NOT NULL,
                    embedding BLOB NOT NULL,
                    model TEXT NOT NULL,
                    created_at TEXT NOT NULL,
                    UNIQUE(entity_type, entity_id)
                )
            """)

            cursor.execute("""
                CREATE TABLE IF NOT EXISTS meta (
                    key TEXT PRIMARY KEY,
                    value TEXT NOT NULL
                )
            """)

            for spec in REGISTRY.values():
                self._create_fts(cursor, spec)

            self._conn.commit()

            self._run_migrations()

        except sqlite3.Error as e:
            self._conn.rollback()
            raise SQLiteStoreError(f"Failed to initialize schema: {e}") from e

    def _create_fts(self, cursor: sqlite3.Cursor, spec: ItemSpec) -> None:
        """Create the FTS5 table and sync triggers for one item kind."""
        cursor.execute(
            "SELECT name FROM sqlite_master WHERE type='table' AND name=?",
            (spec.fts_table,),
        )
        if cursor.fetchone() is not None:
            return

        columns = ", ".join(spec.text_columns)
        new_values = ", ".join(f"NEW.{c}" for c in spec.text_columns)
        old_values = ", ".join(f"OLD.{c}" for c in spec.text_columns)
        rowid = spec.fts_join
        fts = spec.fts_table

        cursor.execute(f"""
            CREATE VIRTUAL TABLE {fts} USING fts5(
                {columns},
                content='{spec.table}',
                content_rowid='{rowid}'
            )
        """)
        cursor.execute(f"""
            CREATE TRIGGER IF NOT EXISTS {spec.table}_ai AFTER INSERT ON {spec.table} BEGIN
                INSERT INTO {fts}(rowid, {columns}) VALUES (NEW.{rowid}, {new_values});
            END
        """)
        cursor.execute(f"""
            CREATE TRIGGER IF NOT EXISTS {spec.table}_ad AFTER DELETE ON {spec.table} BEGIN
                INSERT INTO {fts}({fts}, rowid, {columns})
                VALUES ('delete', OLD.{rowid}, {old_values});
            END
        """)
        cursor.execute(f"""
            CREATE TRIGGER IF NOT EXISTS {spec.table}_au
            AFTER UPDATE OF {columns} ON {spec.table} BEGIN
                INSERT INTO {fts}({fts}, rowid, {columns})
                VALUES ('delete', OLD.{rowid}, {old_values});
                INSERT INTO {fts}(rowid, {columns}) VALUES (NEW.{rowid}, {new_values});
            END
        """)

    def _init_schema_version_table(self) -> None:
        """Create the schema_version table if it doesn't exist."""
        self._conn.execute("""
            CREATE TABLE IF NOT EXISTS schema_version (
                version INTEGER PRIMARY KEY,
                applied_at TEXT NOT NULL,
                description TEXT
            )
        """)
        self._conn.commit()

    def _get_schema_version(self) -> int:
        """Get the current schema version (0 if no migrations applied)."""
        self._init_schema_version_table()
        row = self._conn.execute("SELECT MAX(version) FROM schema_version").fetchone()
        return row[0] if row and row[0] is not None else 0

    def _run_migrations(self) -> None:
        """Run any pending schema migrations, one transaction each.

        Raises:
            SQLiteStoreError: If a migration fails
        """
        current_version = self._get_schema_version()
        max_version = max(MIGRATIONS.keys()) if MIGRATIONS else 0

        if current_version >= max_version:
            return

        logger.info(f"Running migrations from v{current_version} to v{max_version}")

        for version in range(current_version + 1, max_version + 1):
            if version not in MIGRATIONS:
                continue

            migration = MIGRATIONS[version]
            description = migration.get("description", f"Migration {version}")
            up_sql = migration.get("up", [])
            if isinstance(up_sql, str):
                up_sql = [up_sql]

            try:
                cursor = self._conn.cursor()
                for sql in up_sql:
                    cursor.execute(sql)
                cursor.execute(
                    "INSERT INTO schema_version (version, applied_at, description) VALUES (?, ?, ?)",
                    (version, format_timestamp(utc_now()), description),
                )
                self._conn.commit()
                logger.info(f"Applied migration v{version}: {description}")

            except sqlite3.Error as e:
                self._conn.rollback()
                raise SQLiteStoreError(
                    f"Migration v{version} failed ({description}): {e}"
                ) from e

    # =========================================================================
    # Transactions
    # =========================================================================

    @contextmanager
    def transaction(self) -> Iterator[sqlite3.Cursor]:
        """Group several writes into one transaction.

        Nested blocks join the outermost one, which commits on success and
        rolls everything back on any exception.

        Example:
            >>> with store.transaction():
            ...     store.set_strengths(ItemKind.NOTE, [(0.5, 1)])
            ...     store.set_strengths(ItemKind.NOTE, [(0.4, 2)])
        """
        self._tx_depth += 1
        try:
            yield self._conn.cursor()
        except BaseException:
            self._tx_depth -= 1
            if self._tx_depth == 0:
                self._conn.rollback()
            raise
        else:
            self._tx_depth -= 1
            if self._tx_depth == 0:
                self._conn.commit()

    @property
    def in_transaction(self) -> bool:
        return self._tx_depth > 0

    def _commit(self) -> None:
        if self._tx_depth == 0:
            self._conn.commit()

    def _rollback(self) -> None:
        if self._tx_depth == 0:
            self._conn.rollback()

    # =========================================================================
    # Item Operations
    # =========================================================================

    def add_item(
        self,
        kind: ItemKind,
        fields: dict[str, Any],
        session_id: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> tuple[ItemId, bool]:
        """Insert an item, or update the existing row for a repeated error.

        Only fields known to the kind are written; list values are stored as
        JSON. Errors are keyed by their normalized signature: a repeat bumps
        ``occurrences`` and ``last_seen`` and fills in newly supplied details.
        Sessions use ``fields["id"]`` when given, otherwise a generated id.

        Args:
            kind: Item kind
            fields: Item fields (required fields must be present)
            session_id: Session the item was recorded in
            now: Override for the creation time

        Returns:
            Tuple of (item id, created) where created is False when an
            existing row was updated instead of inserted

        Raises:
            SQLiteStoreError: If the write fails
            ValueError: If a required field is missing
        """
        spec = get_spec(kind)
        missing = [name for name in spec.required_fields if not fields.get(name)]
        if missing:
            raise ValueError(f"{spec.kind.value} requires {', '.join(missing)}")

        timestamp = format_timestamp(now or utc_now())
        values = {
            name: _encode_field(fields[name])
            for name in spec.writable_fields
            if fields.get(name) is not None
        }

        try:
            if spec.kind is ItemKind.ERROR:
                return self._upsert_error(values, session_id, timestamp)
            if spec.kind is ItemKind.SESSION:
                return self._insert_session(fields.get("id"), values, timestamp)

            values[spec.date_column] = timestamp
            if session_id is not None:
                values["session_id"] = session_id

            columns = ", ".join(values)
            placeholders = ", ".join("?" for _ in values)
            cursor = self._conn.execute(
                f"INSERT INTO {spec.table} ({columns}) VALUES ({placeholders})",
                list(values.values()),
            )
            item_id = cursor.lastrowid
            self._commit()
            return item_id, True  # type: ignore[return-value]

        except sqlite3.Error as e:
            self._rollback()
            raise SQLiteStoreError(f"Failed to add {spec.kind.value}: {e}") from e

    def _upsert_error(
        self, values: dict[str, Any], session_id: Optional[str], timestamp: str
    ) -> tuple[ItemId, bool]:
        signature = compute_error_signature(values["error_message"])
        existing = self._conn.execute(
            "SELECT id FROM errors WHERE error_signature = ?", (signature,)
        ).fetchone()

        if existing is not None:
            self._conn.execute(
                """
                UPDATE errors SET
                    last_seen = ?,
                    occurrences = occurrences + 1,
                    root_cause = COALESCE(?, root_cause),
                    fix_description = COALESCE(?, fix_description),
                    files_involved = COALESCE(?, files_involved),
                    prevention_rule = COALESCE(?, prevention_rule),
                    severity = COALESCE(?, severity),
                    archived_at = NULL
                WHERE id = ?
                """,
                (
                    timestamp,
                    values.get("root_cause"),
                    values.get("fix_description"),
                    values.get("files_involved"),
                    values.get("prevention_rule"),
                    values.get("severity"),
                    existing["id"],
                ),
            )
            self._commit()
            return existing["id"], False

        values = dict(values)
        values.update(
            error_signature=signature,
            first_seen=timestamp,
            last_seen=timestamp,
        )
        if session_id is not None:
            values["session_id"] = session_id
        columns = ", ".join(values)
        placeholders = ", ".join("?" for _ in values)
        cursor = self._conn.execute(
            f"INSERT INTO errors ({columns}) VALUES ({placeholders})",
            list(values.values()),
        )
        self._commit()
        return cursor.lastrowid, True  # type: ignore[return-value]

    def _insert_session(
        self, session_id: Optional[str], values: dict[str, Any], timestamp: str
    ) -> tuple[ItemId, bool]:
        session_id = session_id or f"sess_{utc_now().strftime('%Y%m%d%H%M%S')}_{secrets.token_hex(4)}"
        existing = self._conn.execute(
            "SELECT id FROM sessions WHERE id = ?", (session_id,)
        ).fetchone()
        if existing is not None:
            return session_id, False

        values = dict(values)
        values.update(id=session_id, started_at=timestamp)
        columns = ", ".join(values)
        placeholders = ", ".join("?" for _ in values)
        self._conn.execute(
            f"INSERT INTO sessions ({columns}) VALUES ({placeholders})",
            list(values.values()),
        )
        self._commit()
        return session_id, True

    def update_session(
        self,
        session_id: str,
        summary: Optional[str] = None,
        key_changes: Optional[str] = None,
        status: str = "completed",
        now: Optional[datetime] = None,
    ) -> bool:
        """Close a session, recording its summary.

        Returns:
            True if the session exists and was updated
        """
        try:
            cursor = self._conn.execute(
                """
                UPDATE sessions SET
                    ended_at = ?,
                    summary = COALESCE(?, summary),
                    key_changes = COALESCE(?, key_changes),
                    status = ?
                WHERE id = ?
                """,
                (format_timestamp(now or utc_now()), summary, key_changes, status, session_id),
            )
            self._commit()
            return cursor.rowcount > 0
        except sqlite3.Error as e:
            self._rollback()
            raise SQLiteStoreError(f"Failed to update session: {e}") from e

    def get_item(
        self, kind: ItemKind, item_id: ItemId, include_archived: bool = False
    ) -> Optional[dict[str, Any]]:
        """Get one item row as a dict.

        Args:
            kind: Item kind
            item_id: Item id
            include_archived: Also return archived rows

        Returns:
            Row dict (with a ``type`` key added), or None if not found
        """
        spec = get_spec(kind)
        sql = f"SELECT * FROM {spec.table} WHERE id = ?"
        if not include_archived:
            sql += " AND archived_at IS NULL"
        try:
            row = self._conn.execute(sql, (spec.coerce_id(item_id),)).fetchone()
        except sqlite3.Error as e:
            raise SQLiteStoreError(f"Failed to get {spec.kind.value}: {e}") from e
        if row is None:
            return None
        item = dict(row)
        item["type"] = spec.kind.value
        return item

    def is_active(self, ref: ItemRef) -> bool:
        """Check that an item exists and is not archived."""
        return self.get_item(ref.kind, ref.id) is not None

    def touch_item(
        self, kind: ItemKind, item_id: ItemId, now: Optional[datetime] = None
    ) -> bool:
        """Record an access: reset strength to 1.0, bump access_count, stamp time.

        Returns:
            True if an active item was touched, False if not found
        """
        spec = get_spec(kind)
        try:
            cursor = self._conn.execute(
                f"""
                UPDATE {spec.table} SET
                    memory_strength = 1.0,
                    access_count = COALESCE(access_count, 0) + 1,
                    last_accessed = ?
                WHERE id = ? AND archived_at IS NULL
                """,
                (format_timestamp(now or utc_now()), spec.coerce_id(item_id)),
            )
            self._commit()
            return cursor.rowcount > 0
        except sqlite3.Error as e:
            self._rollback()
            raise SQLiteStoreError(f"Failed to touch {spec.kind.value}: {e}") from e

    def archive_item(
        self, kind: ItemKind, item_id: ItemId, now: Optional[datetime] = None
    ) -> bool:
        """Soft-delete an item by stamping archived_at.

        Returns:
            True if an active item was archived
        """
        spec = get_spec(kind)
        try:
            cursor = self._conn.execute(
                f"UPDATE {spec.table} SET archived_at = ? WHERE id = ? AND archived_at IS NULL",
                (format_timestamp(now or utc_now()), spec.coerce_id(item_id)),
            )
            self._commit()
            return cursor.rowcount > 0
        except sqlite3.Error as e:
            self._rollback()
            raise SQLiteStoreError(f"Failed to archive {spec.kind.value}: {e}") from e

    def set_pinned(self, kind: ItemKind, item_id: ItemId, pinned: bool = True) -> bool:
        """Pin (NULL strength) or unpin (strength 1.0) an item."""
        spec = get_spec(kind)
        try:
            cursor = self._conn.execute(
                f"UPDATE {spec.table} SET memory_strength = ? WHERE id = ?",
                (None if pinned else 1.0, spec.coerce_id(item_id)),
            )
            self._commit()
            return cursor.rowcount > 0
        except sqlite3.Error as e:
            self._rollback()
            raise SQLiteStoreError(f"Failed to pin {spec.kind.value}: {e}") from e

    # =========================================================================
    # Decay and Importance Support
    # =========================================================================

    def fetch_decay_candidates(self, kind: ItemKind) -> list[dict[str, Any]]:
        """Rows eligible for decay: active, not pinned, not dead, not immune.

        Raises:
            SQLiteStoreError: If the table lacks expected columns
        """
        spec = get_spec(kind)
        try:
            rows = self._conn.execute(
                f"""
                SELECT id, access_count, last_accessed, {spec.date_column} AS created_at
                FROM {spec.table}
                WHERE memory_strength IS NOT NULL
                  AND memory_strength > 0.01
                  AND archived_at IS NULL
                  AND {spec.immunity_sql()}
                """
            ).fetchall()
        except sqlite3.Error as e:
            raise SQLiteStoreError(f"Failed to read decay candidates from {spec.table}: {e}") from e
        return [dict(row) for row in rows]

    def set_strengths(self, kind: ItemKind, updates: list[tuple[float, ItemId]]) -> int:
        """Write new memory_strength values as (strength, id) pairs."""
        spec = get_spec(kind)
        if not updates:
            return 0
        try:
            self._conn.executemany(
                f"UPDATE {spec.table} SET memory_strength = ? WHERE id = ?",
                updates,
            )
            self._commit()
            return len(updates)
        except sqlite3.Error as e:
            self._rollback()
            raise SQLiteStoreError(f"Failed to update strengths in {spec.table}: {e}") from e

    def decay_distribution(self, kind: ItemKind, weak_below: float = 0.1) -> DecayStats:
        """Count strong, weak (strength below ``weak_below``) and pinned rows of a table."""
        spec = get_spec(kind)
        try:
            row = self._conn.execute(
                f"""
                SELECT
                    COUNT(*) AS total,
                    SUM(CASE WHEN memory_strength >= ? THEN 1 ELSE 0 END) AS strong,
                    SUM(CASE WHEN memory_strength < ? THEN 1 ELSE 0 END) AS weak,
                    SUM(CASE WHEN memory_strength IS NULL THEN 1 ELSE 0 END) AS pinned
                FROM {spec.table}
                WHERE archived_at IS NULL
                """,
                (weak_below, weak_below),
            ).fetchone()
        except sqlite3.Error as e:
            raise SQLiteStoreError(f"Failed to read decay stats for {spec.table}: {e}") from e
        return DecayStats(
            table=spec.table,
            total=row["total"] or 0,
            strong=row["strong"] or 0,
            weak=row["weak"] or 0,
            pinned=row["pinned"] or 0,
        )

    def fetch_importance_candidates(
        self, kind: ItemKind, limit: int = 500
    ) -> list[dict[str, Any]]:
        """Active rows with the inputs of the importance formula."""
        spec = get_spec(kind)
        impact = spec.impact_column or "NULL"
        try:
            rows = self._conn.execute(
                f"""
                SELECT id, access_count, last_accessed,
                       {spec.date_column} AS created_at, {impact} AS impact
                FROM {spec.table}
                WHERE archived_at IS NULL
                LIMIT ?
                """,
                (limit,),
            ).fetchall()
        except sqlite3.Error as e:
            raise SQLiteStoreError(f"Failed to read {spec.table} for scoring: {e}") from e
        return [dict(row) for row in rows]

    def set_importance(self, kind: ItemKind, updates: list[tuple[float, ItemId]]) -> int:
        """Write new importance_score values as (score, id) pairs."""
        spec = get_spec(kind)
        if not updates:
            return 0
        try:
            self._conn.executemany(
                f"UPDATE {spec.table} SET importance_score = ? WHERE id = ?",
                updates,
            )
            self._commit()
            return len(updates)
        except sqlite3.Error as e:
            self._rollback()
            raise SQLiteStoreError(f"Failed to update importance in {spec.table}: {e}") from e

    def count_active(self, kind: ItemKind) -> int:
        """Number of non-archived items of a kind."""
        spec = get_spec(kind)
        try:
            row = self._conn.execute(
                f"SELECT COUNT(*) FROM {spec.table} WHERE archived_at IS NULL"
            ).fetchone()
        except sqlite3.Error as e:
            raise SQLiteStoreError(f"Failed to count {spec.table}: {e}") from e
        return row[0]

    def archive_stale(
        self,
        kind: ItemKind,
        unused_before: datetime,
        rarely_used_before: datetime,
        rare_access_limit: int = 3,
        now: Optional[datetime] = None,
    ) -> int:
        """Archive old items nobody reads.

        Archives active, non-immune rows created before ``unused_before`` with
        no accesses, or before ``rarely_used_before`` with fewer than
        ``rare_access_limit`` accesses.

        Returns:
            Number of rows archived
        """
        spec = get_spec(kind)
        try:
            cursor = self._conn.execute(
                f"""
                UPDATE {spec.table} SET archived_at = ?
                WHERE archived_at IS NULL
                  AND {spec.immunity_sql()}
                  AND (
                    ({spec.date_column} < ? AND COALESCE(access_count, 0) = 0)
                    OR ({spec.date_column} < ? AND COALESCE(access_count, 0) < ?)
                  )
                """,
                (
                    format_timestamp(now or utc_now()),
                    format_timestamp(unused_before),
                    format_timestamp(rarely_used_before),
                    rare_access_limit,
                ),
            )
            self._commit()
            return cursor.rowcount
        except sqlite3.Error as e:
            self._rollback()
            raise SQLiteStoreError(f"Failed to prune {spec.table}: {e}") from e

    # =========================================================================
    # Association Lookups
    # =========================================================================

    def recent_in_session(
        self,
        kind: ItemKind,
        session_id: str,
        limit: int,
        exclude_id: Optional[ItemId] = None,
    ) -> list[ItemRef]:
        """Most recent active items of a kind recorded in a session."""
        spec = get_spec(kind)
        if spec.kind is ItemKind.SESSION:
            return []
        sql = f"SELECT id FROM {spec.table} WHERE session_id = ? AND archived_at IS NULL"
        params: list[Any] = [session_id]
        if exclude_id is not None:
            sql += " AND id != ?"
            params.append(spec.coerce_id(exclude_id))
        sql += " ORDER BY id DESC LIMIT ?"
        params.append(limit)
        return self._refs(spec, sql, params)

    def created_between(
        self,
        kind: ItemKind,
        start: datetime,
        end: datetime,
        limit: int,
        exclude_id: Optional[ItemId] = None,
    ) -> list[ItemRef]:
        """Active items of a kind created strictly inside (start, end)."""
        spec = get_spec(kind)
        sql = (
            f"SELECT id FROM {spec.table} "
            f"WHERE archived_at IS NULL AND {spec.date_column} > ? AND {spec.date_column} < ?"
        )
        params: list[Any] = [format_timestamp(start), format_timestamp(end)]
        if exclude_id is not None:
            sql += " AND id != ?"
            params.append(spec.coerce_id(exclude_id))
        sql += f" ORDER BY {spec.date_column} DESC LIMIT ?"
        params.append(limit)
        return self._refs(spec, sql, params)

    def items_for_file(
        self,
        kind: ItemKind,
        file_path: str,
        limit: int,
        exclude_id: Optional[ItemId] = None,
    ) -> list[ItemRef]:
        """Most recent active items whose file references contain a path."""
        spec = get_spec(kind)
        if spec.files_column is None:
            return []
        sql = (
            f"SELECT id FROM {spec.table} "
            f"WHERE archived_at IS NULL AND {spec.files_column} LIKE ?"
        )
        params: list[Any] = [f"%{file_path}%"]
        if exclude_id is not None:
            sql += " AND id != ?"
            params.append(spec.coerce_id(exclude_id))
        sql += f" ORDER BY {spec.recency_column} DESC LIMIT ?"
        params.append(limit)
        return self._refs(spec, sql, params)

    def _refs(self, spec: ItemSpec, sql: str, params: list[Any]) -> list[ItemRef]:
        try:
            rows = self._conn.execute(sql, params).fetchall()
        except sqlite3.Error as e:
            raise SQLiteStoreError(f"Failed to query {spec.table}: {e}") from e
        return [ItemRef(spec.kind, row["id"]) for row in rows]

    def list_active(
        self, kind: ItemKind, columns: tuple[str, ...], limit: int = 500
    ) -> list[dict[str, Any]]:
        """Active rows of a kind with selected registry columns."""
        spec = get_spec(kind)
        selected = ", ".join(("id",) + tuple(columns))
        try:
            rows = self._conn.execute(
                f"SELECT {selected} FROM {spec.table} WHERE archived_at IS NULL "
                f"ORDER BY id DESC LIMIT ?",
                (limit,),
            ).fetchall()
        except sqlite3.Error as e:
            raise SQLiteStoreError(f"Failed to list {spec.table}: {e}") from e
        return [dict(row) for row in rows]

    # =========================================================================
    # Full-Text Search
    # =========================================================================

    def search_fts(self, kind: ItemKind, query: str, limit: int = 15) -> list[dict[str, Any]]:
        """Run an FTS5 MATCH against one kind's index.

        Args:
            kind: Item kind
            query: FTS5 query (supports AND, OR, NOT, phrases, prefixes)
            limit: Maximum number of rows

        Returns:
            Active row dicts ordered by relevance, each with an ``fts_rank`` key
            holding the raw bm25() value (lower is better)

        Raises:
            SQLiteStoreError: If the query is malformed or the index is missing
        """
        spec = get_spec(kind)
        try:
            rows = self._conn.execute(
                f"""
                SELECT s.*, bm25({spec.fts_table}) AS fts_rank
                FROM {spec.fts_table}
                JOIN {spec.table} s ON s.{spec.fts_join} = {spec.fts_table}.rowid
                WHERE {spec.fts_table} MATCH ?
                  AND s.archived_at IS NULL
                ORDER BY fts_rank
                LIMIT ?
                """,
                (query, limit),
            ).fetchall()
        except sqlite3.Error as e:
            raise SQLiteStoreError(f"Failed to search {spec.table}: {e}") from e
        return [dict(row) for row in rows]

    # =========================================================================
    # Association Operations
    # =========================================================================

    def add_association(
        self,
        source: ItemRef,
        target: ItemRef,
        relation: Relation,
        strength: float = 1.0,
        now: Optional[datetime] = None,
    ) -> bool:
        """Insert an edge unless it exists or violates a constraint.

        Returns:
            True if a new edge was inserted; False for duplicates,
            self-loops, and out-of-range strengths
        """
        try:
            cursor = self._conn.execute(
                """
                INSERT OR IGNORE INTO memory_associations
                    (source_type, source_id, target_type, target_id, relation, strength, created_at)
                VALUES (?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    source.kind.value,
                    str(source.id),
                    target.kind.value,
                    str(target.id),
                    relation.value,
                    strength,
                    format_timestamp(now or utc_now()),
                ),
            )
            self._commit()
            return cursor.rowcount > 0
        except sqlite3.IntegrityError as e:
            logger.debug(f"Association {source.key} -> {target.key} rejected: {e}")
            return False
        except sqlite3.Error as e:
            self._rollback()
            raise SQLiteStoreError(f"Failed to add association: {e}") from e

    def get_associations(self, ref: ItemRef) -> list[Association]:
        """All edges touching an item, strongest first."""
        try:
            rows = self._conn.execute(
                """
                SELECT * FROM memory_associations
                WHERE (source_type = ? AND source_id = ?)
                   OR (target_type = ? AND target_id = ?)
                ORDER BY strength DESC, id
                """,
                (ref.kind.value, str(ref.id), ref.kind.value, str(ref.id)),
            ).fetchall()
        except sqlite3.Error as e:
            raise SQLiteStoreError(f"Failed to get associations: {e}") from e
        return [
            Association(
                id=row["id"],
                source=_ref(row["source_type"], row["source_id"]),
                target=_ref(row["target_type"], row["target_id"]),
                relation=Relation(row["relation"]),
                strength=row["strength"],
                created_at=row["created_at"],
                last_activated=row["last_activated"],
            )
            for row in rows
        ]

    def get_neighbors(self, ref: ItemRef) -> list[Neighbor]:
        """Items adjacent to ``ref`` through an edge in either direction."""
        try:
            rows = self._conn.execute(
                """
                SELECT target_type AS type, target_id AS item_id, relation, strength
                FROM memory_associations
                WHERE source_type = ? AND source_id = ?
                UNION ALL
                SELECT source_type AS type, source_id AS item_id, relation, strength
                FROM memory_associations
                WHERE target_type = ? AND target_id = ?
                """,
                (ref.kind.value, str(ref.id), ref.kind.value, str(ref.id)),
            ).fetchall()
        except sqlite3.Error as e:
            raise SQLiteStoreError(f"Failed to get neighbors: {e}") from e
        return [
            Neighbor(
                ref=_ref(row["type"], row["item_id"]),
                relation=Relation(row["relation"]),
                strength=row["strength"],
            )
            for row in rows
        ]

    def count_associations(self) -> int:
        try:
            return self._conn.execute("SELECT COUNT(*) FROM memory_associations").fetchone()[0]
        except sqlite3.Error as e:
            raise SQLiteStoreError(f"Failed to count associations: {e}") from e

    # =========================================================================
    # Embedding Operations
    # =========================================================================

    def upsert_embedding(
        self,
        ref: ItemRef,
        vector: bytes,
        model: str,
        now: Optional[datetime] = None,
    ) -> None:
        """Store (or replace) the embedding BLOB of an item."""
        try:
            self._conn.execute(
                """
                INSERT OR REPLACE INTO embeddings (entity_type, entity_id, embedding, model, created_at)
                VALUES (?, ?, ?, ?, ?)
                """,
                (ref.kind.value, str(ref.id), vector, model, format_timestamp(now or utc_now())),
            )
            self._commit()
        except sqlite3.Error as e:
            self._rollback()
            raise SQLiteStoreError(f"Failed to store embedding for {ref.key}: {e}") from e

    def get_embedding(self, ref: ItemRef) -> Optional[bytes]:
        try:
            row = self._conn.execute(
                "SELECT embedding FROM embeddings WHERE entity_type = ? AND entity_id = ?",
                (ref.kind.value, str(ref.id)),
            ).fetchone()
        except sqlite3.Error as e:
            raise SQLiteStoreError(f"Failed to get embedding for {ref.key}: {e}") from e
        return row["embedding"] if row else None

    def all_embeddings(self) -> list[tuple[ItemRef, bytes]]:
        """Every stored embedding with its item reference."""
        try:
            rows = self._conn.execute(
                "SELECT entity_type, entity_id, embedding FROM embeddings ORDER BY id"
            ).fetchall()
        except sqlite3.Error as e:
            raise SQLiteStoreError(f"Failed to read embeddings: {e}") from e
        return [(_ref(row["entity_type"], row["entity_id"]), row["embedding"]) for row in rows]

    def count_embeddings(self) -> int:
        try:
            return self._conn.execute("SELECT COUNT(*) FROM embeddings").fetchone()[0]
        except sqlite3.Error as e:
            raise SQLiteStoreError(f"Failed to count embeddings: {e}") from e

    def items_missing_embeddings(self, kind: ItemKind, limit: int = 300) -> list[dict[str, Any]]:
        """Active items of a kind with no stored embedding."""
        spec = get_spec(kind)
        try:
            rows = self._conn.execute(
                f"""
                SELECT s.* FROM {spec.table} s
                LEFT JOIN embeddings e
                  ON e.entity_type = ? AND e.entity_id = CAST(s.id AS TEXT)
                WHERE e.id IS NULL AND s.archived_at IS NULL
                ORDER BY s.id
                LIMIT ?
                """,
                (spec.kind.value, limit),
            ).fetchall()
        except sqlite3.Error as e:
            raise SQLiteStoreError(f"Failed to find unembedded {spec.table}: {e}") from e
        return [dict(row) for row in rows]

    # =========================================================================
    # Meta Operations
    # =========================================================================

    def get_meta(self, key: str, default: Optional[str] = None) -> Optional[str]:
        try:
            row = self._conn.execute("SELECT value FROM meta WHERE key = ?", (key,)).fetchone()
        except sqlite3.Error as e:
            raise SQLiteStoreError(f"Failed to read meta '{key}': {e}") from e
        return row["value"] if row else default

    def set_meta(self, key: str, value: str) -> None:
        try:
            self._conn.execute(
                "INSERT OR REPLACE INTO meta (key, value) VALUES (?, ?)", (key, value)
            )
            self._commit()
        except sqlite3.Error as e:
            self._rollback()
            raise SQLiteStoreError(f"Failed to write meta '{key}': {e}") from e

    def close(self) -> None:
        """Close the database connection."""
        if self._conn:
            self._conn.close()

    def __enter__(self) -> "SQLiteStore":
        """Context manager entry."""
        return self

    def __exit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        """Context manager exit."""
        self.close()


def _ref(kind_value: str, raw_id: Any) -> ItemRef:
    spec = get_spec(ItemKind.parse(kind_value))
    return ItemRef(spec.kind, spec.coerce_id(raw_id))


def days_between(earlier: datetime, later: datetime) -> float:
    """Elapsed days between two datetimes (never negative, naive values are UTC)."""
    if earlier.tzinfo is None:
        earlier = earlier.replace(tzinfo=timezone.utc)
    if later.tzinfo is None:
        later = later.replace(tzinfo=timezone.utc)
    return max((later - earlier) / timedelta(days=1), 0.0)
