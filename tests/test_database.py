"""Tests for the database storage module."""

from __future__ import annotations

import tempfile
from datetime import date
from decimal import Decimal
from pathlib import Path

import pytest

from registry_hub.core.data_models import Capital, CompanyRecord, Document, Establishment
from registry_hub.storage.database import Database


class TestDatabase:
    """Test the Database class."""

    @pytest.fixture
    def temp_db(self) -> Database:
        """Create a temporary database for testing."""
        with tempfile.NamedTemporaryFile(suffix=".db", delete=False) as f:
            db_path = f.name

        db = Database(db_path)
        yield db

        # Cleanup
        Path(db_path).unlink(missing_ok=True)

    @pytest.fixture
    def danone(self) -> CompanyRecord:
        return CompanyRecord(
            registry_id="552032534",
            establishment_id="55203253400646",
            legal_name="DANONE",
            legal_form="SA à conseil d'administration",
            activity_code="70.10Z",
            registered_address="17 BD HAUSSMANN 75009 PARIS",
            creation_date=date(1955, 1, 1),
            active=True,
            capital=Capital(Decimal("168514140")),
            establishments=[Establishment("55203253400646", headquarters=True)],
            documents=[Document("A1", kind="Acte")],
            source_breakdown={"sirene": ["legal_name"], "rne": ["documents"]},
        )

    def test_database_initialization(self, temp_db: Database) -> None:
        """Test that database initializes with proper schema."""
        assert Path(temp_db.db_path).exists()

        with temp_db._get_connection() as conn:
            cursor = conn.cursor()
            cursor.execute("SELECT name FROM sqlite_master WHERE type='table'")
            tables = {row["name"] for row in cursor.fetchall()}

        assert "companies" in tables

    def test_upsert_and_get(self, temp_db: Database, danone: CompanyRecord) -> None:
        """Test a stored record comes back unchanged."""
        temp_db.upsert_company(danone)

        stored = temp_db.get_company("552 032 534")

        assert stored is not None
        assert stored.legal_name == "DANONE"
        assert stored.capital == Capital(Decimal("168514140"))
        assert stored.creation_date == date(1955, 1, 1)
        assert stored.active is True
        assert stored.establishments[0].headquarters is True
        assert stored.documents[0].reference == "A1"
        assert stored.source_breakdown == danone.source_breakdown

    def test_upsert_never_erases(self, temp_db: Database, danone: CompanyRecord) -> None:
        """Test missing fields keep the stored value while present ones win."""
        temp_db.upsert_company(danone)
        temp_db.upsert_company(
            CompanyRecord(registry_id="552032534", legal_name="DANONE SA", active=False)
        )

        stored = temp_db.get_company("552032534")

        assert stored.legal_name == "DANONE SA"
        assert stored.active is False
        assert stored.capital == Capital(Decimal("168514140"))
        assert stored.registered_address == "17 BD HAUSSMANN 75009 PARIS"
        assert len(stored.documents) == 1
        assert temp_db.count_companies() == 1

    def test_batch_upsert(self, temp_db: Database) -> None:
        """Test a batch is written in one go."""
        records = [
            CompanyRecord(registry_id="552032534", legal_name="DANONE"),
            CompanyRecord(registry_id="775670417", legal_name="MICHELIN"),
            CompanyRecord(registry_id="552032534", acronym="BSN"),
        ]

        assert temp_db.upsert_companies(records) == 3
        assert temp_db.upsert_companies([]) == 0

        assert temp_db.count_companies() == 2
        stored = temp_db.get_company("552032534")
        assert stored.legal_name == "DANONE"
        assert stored.acronym == "BSN"

    def test_search_companies(self, temp_db: Database) -> None:
        """Test case-insensitive search on name and acronym."""
        temp_db.upsert_companies(
            [
                CompanyRecord(registry_id="552032534", legal_name="DANONE"),
                CompanyRecord(registry_id="775670417", legal_name="MICHELIN", acronym="MFPM"),
                CompanyRecord(registry_id="542065479", legal_name="DANONE RESEARCH"),
            ]
        )

        names = [r.legal_name for r in temp_db.search_companies("danone")]
        assert names == ["DANONE", "DANONE RESEARCH"]
        assert [r.registry_id for r in temp_db.search_companies("mfpm")] == ["775670417"]
        assert len(temp_db.search_companies("danone", limit=1)) == 1

    def test_get_missing_or_invalid(self, temp_db: Database) -> None:
        """Test unknown and malformed ids return None."""
        assert temp_db.get_company("552032534") is None
        assert temp_db.get_company("abc") is None

    def test_delete_company(self, temp_db: Database, danone: CompanyRecord) -> None:
        """Test deleting a record."""
        temp_db.upsert_company(danone)
        assert temp_db.delete_company("552032534")
        assert not temp_db.delete_company("552032534")

    def test_get_statistics(self, temp_db: Database, danone: CompanyRecord) -> None:
        """Test database statistics."""
        temp_db.upsert_company(danone)
        temp_db.upsert_company(CompanyRecord(registry_id="775670417", active=False))

        stats = temp_db.get_statistics()

        assert stats["total_companies"] == 2
        assert stats["active_companies"] == 1
        assert stats["companies_by_legal_form"] == {"SA à conseil d'administration": 1}
        assert stats["database_size_bytes"] > 0
