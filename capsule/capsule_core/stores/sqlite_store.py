"""
SQLite row store with row-level authorization.

This module stores the three collections of the time capsule:
- groups: one row per capsule, with its immutable unlock time
- group_members: (group_id, user_id) pairs, unique
- journal_entries: immutable text or media entries

It is the security boundary of the local deployment. Every query and insert
names the acting principal, and rows the actor may not see are left out of
results.

Invariants:
    - Groups are visible to their members only
    - Membership rows are visible to the member they describe
    - Journal entries are visible to members only, and only once
      the group's unlock_at has passed
    - Writers may only insert rows authored by themselves
    - Every committed journal entry is announced on the change feed

How to change safely:
    - Schema changes must be backward compatible (CREATE ... IF NOT EXISTS)
    - Keep the visibility clauses in one place (_visibility)
    - Use BEGIN IMMEDIATE for every check-then-insert

Table schema:
    groups:
        - id TEXT PRIMARY KEY (UUID)
        - name TEXT
        - unlock_at INTEGER (Unix ms)
        - created_at INTEGER (Unix ms)
        - created_by TEXT

    group_members:
        - group_id TEXT
        - user_id TEXT
        - joined_at INTEGER (Unix ms)
        - UNIQUE (group_id, user_id)

    journal_entries:
        - id TEXT PRIMARY KEY (UUID)
        - group_id TEXT
        - user_id TEXT
        - created_at INTEGER (Unix ms)
        - entry_text TEXT NULL
        - media_url TEXT NULL
"""

from __future__ import annotations

import asyncio
import logging
import sqlite3
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Mapping, Optional

from ..errors import (
    AuthorizationDenied,
    ConflictIgnorable,
    NotFoundError,
    TransientIOError,
    ValidationError,
)
from ..gate import Clock, SystemClock
from ..models import to_millis
from ..ports import (
    GROUP_MEMBERS,
    GROUPS,
    JOURNAL_ENTRIES,
    ChangeEvent,
    ChangeKind,
    Order,
)
from .memory_feed import InMemoryChangeFeed

logger = logging.getLogger(__name__)

_COLUMNS: dict[str, tuple[str, ...]] = {
    GROUPS: ("id", "name", "unlock_at", "created_at", "created_by"),
    GROUP_MEMBERS: ("group_id", "user_id", "joined_at"),
    JOURNAL_ENTRIES: ("id", "group_id", "user_id", "created_at", "entry_text", "media_url"),
}

_REQUIRED: dict[str, tuple[str, ...]] = {
    GROUPS: ("id", "name", "unlock_at", "created_at", "created_by"),
    GROUP_MEMBERS: ("group_id", "user_id"),
    JOURNAL_ENTRIES: ("id", "group_id", "user_id", "created_at"),
}

_KEY: dict[str, tuple[str, ...]] = {
    GROUPS: ("id",),
    GROUP_MEMBERS: ("group_id", "user_id"),
    JOURNAL_ENTRIES: ("id",),
}


class SqliteRowStore:
    """SQLite implementation of the RowStore protocol.

    Each operation opens its own connection; writes are serialized with an
    asyncio lock.

    Example:
        >>> rows = SqliteRowStore("./capsule-data/capsule.db", feed=feed)
        >>> await rows.initialize()
        >>> await rows.insert("groups", "alice", {...})
        >>> await rows.query("groups", "alice", filters={"id": ["g1", "g2"]})
    """

    def __init__(
        self,
        db_path: str,
        clock: Optional[Clock] = None,
        feed: Optional[InMemoryChangeFeed] = None,
        busy_timeout_ms: int = 5000,
        wal_mode: bool = True,
    ) -> None:
        """Initialize the store.

        Args:
            db_path: SQLite database file path
            clock: Clock used by the unlock visibility rule
            feed: Change feed announcing committed journal entries
            busy_timeout_ms: SQLite busy timeout
            wal_mode: Enable WAL journal mode
        """
        self.db_path = Path(db_path)
        self._clock = clock or SystemClock()
        self._feed = feed
        self.busy_timeout_ms = busy_timeout_ms
        self.wal_mode = wal_mode
        self._lock = asyncio.Lock()
        self._initialized = False

    @contextmanager
    def _get_connection(self) -> Iterator[sqlite3.Connection]:
        self.db_path.parent.mkdir(parents=True, exist_ok=True)

        conn = sqlite3.connect(
            str(self.db_path),
            timeout=self.busy_timeout_ms / 1000.0,
            isolation_level=None,  # Autocommit by default, explicit transactions
        )
        conn.row_factory = sqlite3.Row

        try:
            conn.execute(f"PRAGMA busy_timeout = {self.busy_timeout_ms}")
            if self.wal_mode:
                conn.execute("PRAGMA journal_mode = WAL")
            conn.execute("PRAGMA synchronous = NORMAL")
            conn.execute("PRAGMA foreign_keys = ON")

            yield conn
        finally:
            conn.close()

    def _create_schema(self, conn: sqlite3.Connection) -> None:
        conn.executescript("""
            CREATE TABLE IF NOT EXISTS schema_version (
                version INTEGER PRIMARY KEY,
                applied_at INTEGER NOT NULL
            );

            CREATE TABLE IF NOT EXISTS groups (
                id TEXT PRIMARY KEY,
                name TEXT NOT NULL,
                unlock_at INTEGER NOT NULL,
                created_at INTEGER NOT NULL,
                created_by TEXT NOT NULL
            );

            CREATE TABLE IF NOT EXISTS group_members (
                group_id TEXT NOT NULL REFERENCES groups(id),
                user_id TEXT NOT NULL,
                joined_at INTEGER NOT NULL,
                UNIQUE (group_id, user_id)
            );

            CREATE INDEX IF NOT EXISTS idx_members_user ON group_members(user_id, group_id);

            CREATE TABLE IF NOT EXISTS journal_entries (
                id TEXT PRIMARY KEY,
                group_id TEXT NOT NULL REFERENCES groups(id),
                user_id TEXT NOT NULL,
                created_at INTEGER NOT NULL,
                entry_text TEXT,
                media_url TEXT
            );

            CREATE INDEX IF NOT EXISTS idx_entries_group
                ON journal_entries(group_id, created_at DESC);

            INSERT OR IGNORE INTO schema_version (version, applied_at)
            VALUES (1, strftime('%s', 'now') * 1000);
        """)

    async def initialize(self) -> None:
        """Create the database file and schema if they don't exist."""
        async with self._lock:
            if self._initialized:
                return
            try:
                with self._get_connection() as conn:
                    self._create_schema(conn)
            except sqlite3.Error as e:
                raise TransientIOError(f"Schema setup failed: {e}", operation="initialize") from e
            self._initialized = True
            logger.info(f"Initialized capsule database: {self.db_path}")

    async def query(
        self,
        collection: str,
        actor: str,
        filters: Optional[Mapping[str, Any]] = None,
        order: Optional[Order] = None,
    ) -> list[dict[str, Any]]:
        """Return the rows of `collection` visible to `actor`.

        A list or tuple filter value selects rows whose column is in it; an
        empty one matches nothing.
        """
        columns = self._columns(collection)
        await self.initialize()

        where, params = self._visibility(collection, actor)
        clauses = [where]
        for column, value in (filters or {}).items():
            self._check_column(collection, column)
            if isinstance(value, (list, tuple, set, frozenset)):
                values = list(value)
                if not values:
                    return []
                clauses.append(f"{column} IN ({', '.join('?' for _ in values)})")
                params.extend(values)
            elif value is None:
                clauses.append(f"{column} IS NULL")
            else:
                clauses.append(f"{column} = ?")
                params.append(value)

        sql = f"SELECT {', '.join(columns)} FROM {collection} WHERE {' AND '.join(clauses)}"
        if order is not None:
            self._check_column(collection, order.column)
            sql += f" ORDER BY {order.column} {'DESC' if order.descending else 'ASC'}"

        try:
            with self._get_connection() as conn:
                rows = conn.execute(sql, params).fetchall()
        except sqlite3.Error as e:
            raise TransientIOError(f"Query on {collection} failed: {e}", operation="query") from e
        return [dict(row) for row in rows]

    async def insert(
        self,
        collection: str,
        actor: str,
        record: Mapping[str, Any],
    ) -> dict[str, Any]:
        """Insert `record` on behalf of `actor` and return the stored row."""
        self._columns(collection)
        await self.initialize()

        row = dict(record)
        for column in row:
            self._check_column(collection, column)
        for column in _REQUIRED[collection]:
            if row.get(column) in (None, ""):
                raise ValidationError(f"{column} is required", field_name=column)
        if collection == GROUP_MEMBERS:
            row.setdefault("joined_at", to_millis(self._clock.now()))

        async with self._lock:
            try:
                with self._get_connection() as conn:
                    conn.execute("BEGIN IMMEDIATE")
                    try:
                        self._authorize_insert(conn, collection, actor, row)
                        stored = self._write(conn, collection, row)
                        conn.execute("COMMIT")
                    except BaseException:
                        conn.execute("ROLLBACK")
                        raise
            except sqlite3.IntegrityError as e:
                if collection == GROUP_MEMBERS:
                    raise ConflictIgnorable(
                        f"{actor} is already a member of {row['group_id']}",
                        collection=collection,
                    ) from e
                raise TransientIOError(
                    f"Insert into {collection} rejected: {e}", operation="insert"
                ) from e
            except sqlite3.Error as e:
                raise TransientIOError(
                    f"Insert into {collection} failed: {e}", operation="insert"
                ) from e

        logger.debug(
            "Row inserted",
            extra={"collection": collection, "actor": actor},
        )
        if collection == JOURNAL_ENTRIES and self._feed is not None:
            await self._announce(stored)
        return stored

    def _visibility(self, collection: str, actor: str) -> tuple[str, list[Any]]:
        if collection == GROUPS:
            return "id IN (SELECT group_id FROM group_members WHERE user_id = ?)", [actor]
        if collection == GROUP_MEMBERS:
            return "user_id = ?", [actor]
        return (
            "group_id IN ("
            "SELECT m.group_id FROM group_members m JOIN groups g ON g.id = m.group_id "
            "WHERE m.user_id = ? AND g.unlock_at <= ?)",
            [actor, to_millis(self._clock.now())],
        )

    def _authorize_insert(
        self,
        conn: sqlite3.Connection,
        collection: str,
        actor: str,
        row: dict[str, Any],
    ) -> None:
        if collection == GROUPS:
            if row["created_by"] != actor:
                raise AuthorizationDenied(
                    "Groups can only be created on your own behalf",
                    actor=actor,
                    resource=f"{GROUPS}:{row['id']}",
                )
            return

        if row["user_id"] != actor:
            raise AuthorizationDenied(
                f"Cannot write {collection} rows for another user",
                actor=actor,
                resource=f"{collection}:{row['group_id']}",
            )

        exists = conn.execute("SELECT 1 FROM groups WHERE id = ?", (row["group_id"],)).fetchone()
        if exists is None:
            raise NotFoundError(
                f"Group not found: {row['group_id']}",
                resource_type="group",
                resource_id=row["group_id"],
            )

        if collection == JOURNAL_ENTRIES:
            member = conn.execute(
                "SELECT 1 FROM group_members WHERE group_id = ? AND user_id = ?",
                (row["group_id"], actor),
            ).fetchone()
            if member is None:
                raise AuthorizationDenied(
                    "Only members can write to this group",
                    actor=actor,
                    resource=f"{GROUPS}:{row['group_id']}",
                )

    def _write(self, conn: sqlite3.Connection, collection: str, row: dict[str, Any]) -> dict[str, Any]:
        columns = [c for c in _COLUMNS[collection] if c in row]
        conn.execute(
            f"INSERT INTO {collection} ({', '.join(columns)}) "
            f"VALUES ({', '.join('?' for _ in columns)})",
            [row[c] for c in columns],
        )
        key = _KEY[collection]
        stored = conn.execute(
            f"SELECT {', '.join(_COLUMNS[collection])} FROM {collection} "
            f"WHERE {' AND '.join(f'{c} = ?' for c in key)}",
            [row[c] for c in key],
        ).fetchone()
        return dict(stored)

    async def _announce(self, stored: dict[str, Any]) -> None:
        event = ChangeEvent(JOURNAL_ENTRIES, ChangeKind.INSERT, stored["group_id"], stored["id"])
        try:
            await self._feed.publish(event)
        except Exception:
            logger.warning(
                "Change feed publish failed",
                extra={"group_id": stored["group_id"]},
                exc_info=True,
            )

    def _columns(self, collection: str) -> tuple[str, ...]:
        try:
            return _COLUMNS[collection]
        except KeyError:
            raise ValidationError(
                f"Unknown collection: {collection}", field_name="collection"
            ) from None

    def _check_column(self, collection: str, column: str) -> None:
        if column not in _COLUMNS[collection]:
            raise ValidationError(
                f"Unknown column {column} for {collection}", field_name=column
            )

    # Testing helpers

    async def insert_raw(self, collection: str, record: Mapping[str, Any]) -> None:
        """Insert a row without authorization checks or feed events."""
        self._columns(collection)
        await self.initialize()
        row = dict(record)
        if collection == GROUP_MEMBERS:
            row.setdefault("joined_at", to_millis(self._clock.now()))
        async with self._lock:
            with self._get_connection() as conn:
                self._write(conn, collection, row)

    async def count(self, collection: str) -> int:
        """Count all rows of a collection, ignoring visibility."""
        self._columns(collection)
        await self.initialize()
        with self._get_connection() as conn:
            return conn.execute(f"SELECT COUNT(*) FROM {collection}").fetchone()[0]
