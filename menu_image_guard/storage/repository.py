"""
Repository pattern for data access.

Handles database operations for the image cache, the generation budget
ledger and the group roster.
"""

import sqlite3
import time
from datetime import datetime, timezone
from decimal import Decimal
from typing import Optional

from .db import DEFAULT_DB_PATH, get_connection
from .models import BudgetState, CacheEntry, Group, GroupMember

# Well-known id of the singleton ledger row
LEDGER_ID = "image_generation"

# Attempts for the ledger transaction when the database stays locked
MAX_TRANSACTION_ATTEMPTS = 3
RETRY_DELAY_SECONDS = 0.05


def initialize_schema(db_path: str = DEFAULT_DB_PATH) -> None:
    """Create the cache, ledger and group tables if they don't exist.

    ``artifact_cache`` is append-only and deliberately has no unique
    constraint on ``normalized_key``. ``budget_state`` holds a single row.

    Args:
        db_path: Path to SQLite database file
    """
    conn = get_connection(db_path)
    try:
        conn.executescript("""
            CREATE TABLE IF NOT EXISTS artifact_cache (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                normalized_key TEXT NOT NULL,
                artifact_url TEXT NOT NULL,
                created_at TEXT NOT NULL
            );
            CREATE INDEX IF NOT EXISTS idx_artifact_cache_key
                ON artifact_cache (normalized_key);

            CREATE TABLE IF NOT EXISTS budget_state (
                id TEXT PRIMARY KEY,
                units_generated INTEGER NOT NULL,
                total_cost_spent TEXT NOT NULL,
                last_updated TEXT NOT NULL
            );

            CREATE TABLE IF NOT EXISTS groups (
                id TEXT PRIMARY KEY,
                name TEXT NOT NULL,
                code TEXT
            );

            CREATE TABLE IF NOT EXISTS group_members (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                group_id TEXT NOT NULL REFERENCES groups (id) ON DELETE CASCADE,
                name TEXT NOT NULL,
                user_id TEXT
            );
        """)
        conn.commit()
    finally:
        conn.close()


class CacheRepository:
    """Lookup and append access to the ``artifact_cache`` table."""

    def __init__(self, db_path: str = DEFAULT_DB_PATH):
        self.db_path = db_path

    def find_first(self, normalized_key: str) -> Optional[CacheEntry]:
        """Return the oldest entry for the key, or None if there is none.

        Args:
            normalized_key: Exact key to match

        Returns:
            First matching cache entry or None
        """
        conn = get_connection(self.db_path)
        try:
            cursor = conn.execute("""
                SELECT normalized_key, artifact_url, created_at
                FROM artifact_cache
                WHERE normalized_key = ?
                ORDER BY id
                LIMIT 1
            """, (normalized_key,))
            row = cursor.fetchone()
            if row is None:
                return None
            return CacheEntry(
                normalized_key=row[0],
                artifact_url=row[1],
                created_at=datetime.fromisoformat(row[2]),
            )
        finally:
            conn.close()

    def count(self, normalized_key: str) -> int:
        """Number of rows stored for a key (duplicates included)."""
        conn = get_connection(self.db_path)
        try:
            cursor = conn.execute(
                "SELECT COUNT(*) FROM artifact_cache WHERE normalized_key = ?",
                (normalized_key,),
            )
            return cursor.fetchone()[0]
        finally:
            conn.close()

    def insert(self, entry: CacheEntry) -> None:
        """Append a cache entry. Existing entries are never touched.

        Args:
            entry: The cache entry to store
        """
        conn = get_connection(self.db_path)
        try:
            conn.execute("""
                INSERT INTO artifact_cache (normalized_key, artifact_url, created_at)
                VALUES (?, ?, ?)
            """, (
                entry.normalized_key,
                entry.artifact_url,
                entry.created_at.isoformat(),
            ))
            conn.commit()
        finally:
            conn.close()


class BudgetRepository:
    """Access to the singleton ``budget_state`` row."""

    def __init__(self, db_path: str = DEFAULT_DB_PATH):
        self.db_path = db_path

    def get_state(self) -> Optional[BudgetState]:
        """Read the ledger row, or None if nothing has been generated yet."""
        conn = get_connection(self.db_path)
        try:
            return self._read(conn)
        finally:
            conn.close()

    def increment(self, unit_cost: Decimal) -> BudgetState:
        """Atomically add one generated unit and its cost to the ledger.

        Creates the row with ``units_generated=1`` on first use. The read
        and the write run inside one ``BEGIN IMMEDIATE`` transaction, which
        takes SQLite's write lock up front, so concurrent increments are
        serialised and none is lost. A transaction that cannot get the lock
        is retried up to MAX_TRANSACTION_ATTEMPTS times.

        Args:
            unit_cost: Cost of one generated image

        Returns:
            Ledger state after the increment

        Raises:
            sqlite3.OperationalError: If the lock could not be obtained
                after all attempts
        """
        for attempt in range(1, MAX_TRANSACTION_ATTEMPTS + 1):
            try:
                return self._increment_once(unit_cost)
            except sqlite3.OperationalError as e:
                if not _is_lock_conflict(e) or attempt == MAX_TRANSACTION_ATTEMPTS:
                    raise
                time.sleep(RETRY_DELAY_SECONDS * attempt)
        raise AssertionError("unreachable")

    def _increment_once(self, unit_cost: Decimal) -> BudgetState:
        conn = get_connection(self.db_path)
        try:
            conn.execute("BEGIN IMMEDIATE")
            current = self._read(conn)
            now = datetime.now(timezone.utc)
            if current is None:
                updated = BudgetState(
                    units_generated=1,
                    total_cost_spent=unit_cost,
                    last_updated=now,
                )
                conn.execute("""
                    INSERT INTO budget_state
                    (id, units_generated, total_cost_spent, last_updated)
                    VALUES (?, ?, ?, ?)
                """, (LEDGER_ID, 1, str(unit_cost), now.isoformat()))
            else:
                updated = BudgetState(
                    units_generated=current.units_generated + 1,
                    total_cost_spent=current.total_cost_spent + unit_cost,
                    last_updated=now,
                )
                conn.execute("""
                    UPDATE budget_state
                    SET units_generated = ?, total_cost_spent = ?, last_updated = ?
                    WHERE id = ?
                """, (
                    updated.units_generated,
                    str(updated.total_cost_spent),
                    now.isoformat(),
                    LEDGER_ID,
                ))
            conn.commit()
            return updated
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    @staticmethod
    def _read(conn: sqlite3.Connection) -> Optional[BudgetState]:
        cursor = conn.execute("""
            SELECT units_generated, total_cost_spent, last_updated
            FROM budget_state WHERE id = ?
        """, (LEDGER_ID,))
        row = cursor.fetchone()
        if row is None:
            return None
        return BudgetState(
            units_generated=row[0],
            total_cost_spent=Decimal(row[1]),
            last_updated=datetime.fromisoformat(row[2]),
        )


class GroupRepository:
    """Read access to groups and their member rosters."""

    def __init__(self, db_path: str = DEFAULT_DB_PATH):
        self.db_path = db_path

    def get_group(self, group_id: str) -> Optional[Group]:
        """Fetch a group with its members, or None if it doesn't exist."""
        conn = get_connection(self.db_path)
        try:
            row = conn.execute(
                "SELECT id, name, code FROM groups WHERE id = ?", (group_id,)
            ).fetchone()
            if row is None:
                return None
            members = [
                GroupMember(name=name, user_id=user_id)
                for name, user_id in conn.execute(
                    "SELECT name, user_id FROM group_members WHERE group_id = ? ORDER BY id",
                    (group_id,),
                ).fetchall()
            ]
            return Group(group_id=row[0], name=row[1], code=row[2], members=members)
        finally:
            conn.close()

    def save_group(self, group: Group) -> None:
        """Insert or replace a group together with its full member roster."""
        conn = get_connection(self.db_path)
        try:
            conn.execute("BEGIN TRANSACTION")
            conn.execute("DELETE FROM group_members WHERE group_id = ?", (group.group_id,))
            conn.execute("""
                INSERT INTO groups (id, name, code) VALUES (?, ?, ?)
                ON CONFLICT (id) DO UPDATE SET name = excluded.name, code = excluded.code
            """, (group.group_id, group.name, group.code))
            conn.executemany(
                "INSERT INTO group_members (group_id, name, user_id) VALUES (?, ?, ?)",
                [(group.group_id, m.name, m.user_id) for m in group.members],
            )
            conn.commit()
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()


def _is_lock_conflict(error: sqlite3.OperationalError) -> bool:
    message = str(error).lower()
    return "locked" in message or "busy" in message
