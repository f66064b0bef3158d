"""
Subject link store: which authenticated subject owns which linked number.

The gateway only consumes the SubjectLinkStore contract. SqliteLinkStore is
the bundled implementation; linking is a single INSERT against the number's
primary key, so two concurrent link attempts for one number cannot both win.
"""
from __future__ import annotations

import logging
import sqlite3
import threading
from contextlib import closing
from pathlib import Path
from typing import Optional, Protocol, runtime_checkable

from gateway.errors import AlreadyLinkedError, OwnershipError

log = logging.getLogger(__name__)

SCHEMA_VERSION = 1


@runtime_checkable
class SubjectLinkStore(Protocol):
    """What the session layer needs from the ownership store."""

    def find_account_owner(self, number: str) -> Optional[str]:
        ...

    def link_account(self, subject: str, number: str, slot: int) -> None:
        """Atomically link; raises AlreadyLinkedError if the number is taken."""
        ...

    def list_accounts(self, subject: str) -> list[str]:
        ...


class SqliteLinkStore:
    """SQLite-backed SubjectLinkStore."""

    def __init__(self, db_path: Path):
        self.db_path = Path(db_path)
        # One connection per call; the lock serializes writers inside this process
        self._lock = threading.Lock()
        self._ensure_db()

    def _connect(self) -> sqlite3.Connection:
        return sqlite3.connect(str(self.db_path), timeout=10)

    def _ensure_db(self):
        """Create database and tables if they don't exist."""
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        with closing(self._connect()) as conn, conn:
            conn.execute("""
                CREATE TABLE IF NOT EXISTS linked_numbers (
                    number TEXT PRIMARY KEY,
                    sub TEXT NOT NULL,
                    service_id INTEGER NOT NULL,
                    created_at TEXT DEFAULT CURRENT_TIMESTAMP
                )
            """)
            conn.execute("""
                CREATE INDEX IF NOT EXISTS idx_linked_numbers_sub
                ON linked_numbers(sub)
            """)
            conn.execute("""
                CREATE TABLE IF NOT EXISTS schema_version (
                    version INTEGER PRIMARY KEY
                )
            """)
            conn.execute("INSERT OR IGNORE INTO schema_version VALUES (?)", (SCHEMA_VERSION,))

    def find_account_owner(self, number: str) -> Optional[str]:
        with closing(self._connect()) as conn:
            row = conn.execute("SELECT sub FROM linked_numbers WHERE number = ?", (number,)).fetchone()
        return row[0] if row else None

    def slot_for(self, number: str) -> Optional[int]:
        with closing(self._connect()) as conn:
            row = conn.execute("SELECT service_id FROM linked_numbers WHERE number = ?", (number,)).fetchone()
        return row[0] if row else None

    def link_account(self, subject: str, number: str, slot: int) -> None:
        """Link `number` to `subject`. Never overwrites an existing link."""
        with self._lock, closing(self._connect()) as conn:
            try:
                with conn:
                    conn.execute(
                        "INSERT INTO linked_numbers (number, sub, service_id) VALUES (?, ?, ?)",
                        (number, subject, slot),
                    )
            except sqlite3.IntegrityError:
                row = conn.execute("SELECT sub FROM linked_numbers WHERE number = ?", (number,)).fetchone()
                raise AlreadyLinkedError(number, bool(row) and row[0] == subject) from None
        log.info(f"Linked {number} (slot {slot}) to subject {subject}")

    def list_accounts(self, subject: str) -> list[str]:
        with closing(self._connect()) as conn:
            rows = conn.execute(
                "SELECT number FROM linked_numbers WHERE sub = ? ORDER BY service_id", (subject,)
            ).fetchall()
        return [r[0] for r in rows]

    def all_links(self) -> list[tuple[str, str, int]]:
        """(subject, number, slot) for every link, ordered by slot."""
        with closing(self._connect()) as conn:
            rows = conn.execute(
                "SELECT sub, number, service_id FROM linked_numbers ORDER BY service_id"
            ).fetchall()
        return [(r[0], r[1], r[2]) for r in rows]

    def check_owner(self, subject: str, number: str) -> None:
        """Raise OwnershipError unless `subject` owns `number`."""
        owner = self.find_account_owner(number)
        if owner is None:
            raise OwnershipError(f"number {number} not found")
        if owner != subject:
            raise OwnershipError(f"number {number} is linked to another user")

    def unlink_account(self, subject: str, number: str) -> None:
        """Remove the link; only the owning subject may do so."""
        with self._lock, closing(self._connect()) as conn:
            with conn:
                cursor = conn.execute(
                    "DELETE FROM linked_numbers WHERE number = ? AND sub = ?", (number, subject)
                )
            if cursor.rowcount == 0:
                owner = conn.execute("SELECT sub FROM linked_numbers WHERE number = ?", (number,)).fetchone()
                if owner is None:
                    raise OwnershipError(f"number {number} not found")
                raise OwnershipError(f"number {number} is linked to another user")
        log.info(f"Unlinked {number} from subject {subject}")
