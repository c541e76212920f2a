"""Database layer for registry_hub using SQLite.

Stores one row per company, keyed by registry identifier.  Writes are
upserts: a field missing from the incoming record never erases the value
already stored.
"""

from __future__ import annotations

import json
import logging
import sqlite3
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Generator, Iterable, List, Optional

from registry_hub.core.data_models import (
    Announcement,
    Capital,
    CompanyRecord,
    Document,
    Establishment,
    normalize_registry_id,
    parse_date,
)

_COLUMNS = (
    "registry_id",
    "establishment_id",
    "legal_name",
    "legal_form",
    "activity_code",
    "activity_label",
    "registered_address",
    "creation_date",
    "active",
    "capital_amount",
    "capital_currency",
    "headcount_band",
    "acronym",
    "establishments",
    "announcements",
    "documents",
    "source_breakdown",
    "last_updated",
)

_UPSERT_SQL = """
    INSERT INTO companies ({columns})
    VALUES ({placeholders})
    ON CONFLICT(registry_id) DO UPDATE SET
        {updates},
        updated_at = CURRENT_TIMESTAMP
""".format(
    columns=", ".join(_COLUMNS),
    placeholders=", ".join("?" for _ in _COLUMNS),
    updates=",\n        ".join(
        f"{name} = COALESCE(excluded.{name}, companies.{name})"
        for name in _COLUMNS
        if name != "registry_id"
    ),
)


def _json_list(items: List[Any]) -> Optional[str]:
    if not items:
        return None
    return json.dumps([item.to_dict() for item in items])


def _load_list(value: Optional[str], factory) -> List[Any]:
    if not value:
        return []
    return [factory(item) for item in json.loads(value)]


class Database:
    """SQLite database manager for registry_hub."""

    def __init__(self, db_path: str = "registry_hub.db", timeout: float = 10.0):
        """
        Initialize database connection.

        Args:
            db_path: Path to SQLite database file
            timeout: Seconds to wait for a concurrent writer's lock
        """
        self.db_path = db_path
        self.timeout = timeout
        self.logger = logging.getLogger(self.__class__.__name__)
        self._initialize_schema()

    @contextmanager
    def _get_connection(self) -> Generator[sqlite3.Connection, None, None]:
        """
        Context manager for database connections.

        Yields:
            SQLite connection with row factory set
        """
        conn = sqlite3.connect(self.db_path, timeout=self.timeout)
        conn.row_factory = sqlite3.Row
        try:
            yield conn
            conn.commit()
        except Exception as e:
            conn.rollback()
            self.logger.error(f"Database error: {e}")
            raise
        finally:
            conn.close()

    def _initialize_schema(self) -> None:
        """Create database tables if they don't exist."""
        with self._get_connection() as conn:
            cursor = conn.cursor()

            cursor.execute(
                """
                CREATE TABLE IF NOT EXISTS companies (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    registry_id TEXT UNIQUE NOT NULL,
                    establishment_id TEXT,
                    legal_name TEXT,
                    legal_form TEXT,
                    activity_code TEXT,
                    activity_label TEXT,
                    registered_address TEXT,
                    creation_date TEXT,
                    active INTEGER,
                    capital_amount TEXT,
                    capital_currency TEXT,
                    headcount_band TEXT,
                    acronym TEXT,
                    establishments TEXT,
                    announcements TEXT,
                    documents TEXT,
                    source_breakdown TEXT,
                    last_updated TEXT,
                    created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
                    updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
                )
            """
            )

            cursor.execute(
                """
                CREATE INDEX IF NOT EXISTS idx_companies_legal_name
                ON companies(legal_name COLLATE NOCASE)
            """
            )

            self.logger.info(f"Database initialized at {self.db_path}")

    def _row_values(self, record: CompanyRecord) -> tuple:
        return (
            record.registry_id,
            record.establishment_id,
            record.legal_name,
            record.legal_form,
            record.activity_code,
            record.activity_label,
            record.registered_address,
            record.creation_date.isoformat() if record.creation_date else None,
            None if record.active is None else int(record.active),
            str(record.capital.amount) if record.capital else None,
            record.capital.currency if record.capital else None,
            record.headcount_band,
            record.acronym,
            _json_list(record.establishments),
            _json_list(record.announcements),
            _json_list(record.documents),
            json.dumps(record.source_breakdown) if record.source_breakdown else None,
            record.last_updated.isoformat(),
        )

    def _row_to_record(self, row: sqlite3.Row) -> CompanyRecord:
        capital = None
        if row["capital_amount"] is not None:
            capital = Capital.parse(row["capital_amount"], row["capital_currency"])

        last_updated = row["last_updated"]
        return CompanyRecord(
            registry_id=row["registry_id"],
            establishment_id=row["establishment_id"],
            legal_name=row["legal_name"],
            legal_form=row["legal_form"],
            activity_code=row["activity_code"],
            activity_label=row["activity_label"],
            registered_address=row["registered_address"],
            creation_date=parse_date(row["creation_date"]),
            active=None if row["active"] is None else bool(row["active"]),
            capital=capital,
            headcount_band=row["headcount_band"],
            acronym=row["acronym"],
            establishments=_load_list(row["establishments"], Establishment.from_dict),
            announcements=_load_list(row["announcements"], Announcement.from_dict),
            documents=_load_list(row["documents"], Document.from_dict),
            source_breakdown=json.loads(row["source_breakdown"]) if row["source_breakdown"] else {},
            last_updated=(
                datetime.fromisoformat(last_updated)
                if last_updated
                else datetime.now(timezone.utc)
            ),
        )

    def upsert_company(self, record: CompanyRecord) -> None:
        """
        Insert a company or update the stored one.

        Args:
            record: Company to store
        """
        with self._get_connection() as conn:
            conn.execute(_UPSERT_SQL, self._row_values(record))
        self.logger.debug(f"Upserted company {record.registry_id}")

    def upsert_companies(self, records: Iterable[CompanyRecord]) -> int:
        """
        Upsert a batch of companies in one transaction.

        Either every record is written or none is.

        Args:
            records: Companies to store

        Returns:
            Number of records written
        """
        rows = [self._row_values(record) for record in records]
        if not rows:
            return 0
        with self._get_connection() as conn:
            conn.executemany(_UPSERT_SQL, rows)
        self.logger.info(f"Upserted batch of {len(rows)} companies")
        return len(rows)

    def get_company(self, registry_id: str) -> Optional[CompanyRecord]:
        """
        Retrieve one company.

        Args:
            registry_id: Registry identifier (spaces allowed)

        Returns:
            Stored record or None
        """
        normalized = normalize_registry_id(registry_id)
        if normalized is None:
            return None

        with self._get_connection() as conn:
            cursor = conn.cursor()
            cursor.execute("SELECT * FROM companies WHERE registry_id = ?", (normalized,))
            row = cursor.fetchone()
            return self._row_to_record(row) if row else None

    def search_companies(self, text: str, limit: int = 20) -> List[CompanyRecord]:
        """
        Search stored companies by name or acronym.

        Args:
            text: Substring to look for (case-insensitive)
            limit: Maximum number of records to return

        Returns:
            Matching records ordered by name
        """
        pattern = f"%{text.strip()}%"
        with self._get_connection() as conn:
            cursor = conn.cursor()
            cursor.execute(
                """
                SELECT * FROM companies
                WHERE legal_name LIKE ? COLLATE NOCASE
                   OR acronym LIKE ? COLLATE NOCASE
                ORDER BY legal_name COLLATE NOCASE
                LIMIT ?
            """,
                (pattern, pattern, limit),
            )
            return [self._row_to_record(row) for row in cursor.fetchall()]

    def delete_company(self, registry_id: str) -> bool:
        """Delete a company; returns True if a row was removed."""
        with self._get_connection() as conn:
            cursor = conn.cursor()
            cursor.execute("DELETE FROM companies WHERE registry_id = ?", (registry_id,))
            return cursor.rowcount > 0

    def count_companies(self) -> int:
        with self._get_connection() as conn:
            cursor = conn.cursor()
            cursor.execute("SELECT COUNT(*) as count FROM companies")
            return cursor.fetchone()["count"]

    def get_statistics(self) -> Dict[str, Any]:
        """
        Get database statistics.

        Returns:
            Dictionary with database statistics
        """
        with self._get_connection() as conn:
            cursor = conn.cursor()

            stats: Dict[str, Any] = {}

            cursor.execute("SELECT COUNT(*) as count FROM companies")
            stats["total_companies"] = cursor.fetchone()["count"]

            cursor.execute("SELECT COUNT(*) as count FROM companies WHERE active = 1")
            stats["active_companies"] = cursor.fetchone()["count"]

            cursor.execute(
                """
                SELECT legal_form, COUNT(*) as count
                FROM companies
                WHERE legal_form IS NOT NULL
                GROUP BY legal_form
                ORDER BY count DESC
                LIMIT 10
            """
            )
            stats["companies_by_legal_form"] = {
                row["legal_form"]: row["count"] for row in cursor.fetchall()
            }

            stats["database_size_bytes"] = Path(self.db_path).stat().st_size

            return stats
