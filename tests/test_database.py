"""
Tests for database.py - SQLite schema and sessions.
"""

import pytest
from sqlalchemy import inspect
from sqlalchemy.exc import IntegrityError

from seasonlink.database import (
    AuditEntryRow,
    IdentityMapping,
    MasterIdentity,
    create_engine_for,
    get_session,
    init_database,
)
from seasonlink.schema import PLAYER


class TestDatabaseInit:
    """Test database initialization."""

    def test_init_creates_database_file(self, tmp_path):
        """init_database creates the database file."""
        db_path = tmp_path / "identity.db"
        assert not db_path.exists()

        init_database(db_path)

        assert db_path.exists()

    def test_init_creates_tables(self, tmp_path):
        """All four tables exist after initialization."""
        db_path = tmp_path / "identity.db"
        init_database(db_path)

        tables = set(inspect(create_engine_for(db_path)).get_table_names())
        assert {"master_identities", "identity_mappings", "pending_matches", "identity_audit_log"} <= tables

    def test_init_creates_parent_directories(self, tmp_path):
        """init_database creates missing parent directories."""
        db_path = tmp_path / "nested" / "dir" / "identity.db"
        assert not db_path.parent.exists()

        init_database(db_path)

        assert db_path.exists()

    def test_init_is_repeatable(self, tmp_path):
        """Initializing twice keeps existing rows."""
        db_path = tmp_path / "identity.db"
        init_database(db_path)
        session = get_session(db_path)
        session.add(MasterIdentity(entity_type=PLAYER, master_key="player_1", canonical_name="Josh Allen"))
        session.commit()
        session.close()

        init_database(db_path)

        session = get_session(db_path)
        assert session.query(MasterIdentity).count() == 1
        session.close()


class TestConstraints:
    """Test schema constraints."""

    @pytest.fixture
    def db_session(self, tmp_path):
        db_path = tmp_path / "identity.db"
        init_database(db_path)
        session = get_session(db_path)
        yield session
        session.close()

    def test_master_key_unique(self, db_session):
        """Two identities cannot share a master key."""
        db_session.add(MasterIdentity(entity_type=PLAYER, master_key="player_1", canonical_name="A"))
        db_session.commit()
        db_session.add(MasterIdentity(entity_type=PLAYER, master_key="player_1", canonical_name="B"))

        with pytest.raises(IntegrityError):
            db_session.commit()

    def test_one_mapping_per_record_season(self, db_session):
        """An (external id, season) maps to at most one identity."""
        identity = MasterIdentity(entity_type=PLAYER, master_key="player_1", canonical_name="A")
        db_session.add(identity)
        db_session.flush()
        for _ in range(2):
            db_session.add(
                IdentityMapping(
                    identity_id=identity.id,
                    entity_type=PLAYER,
                    external_id="1",
                    season=2023,
                    name_variation="A",
                    confidence_score=1.0,
                    method="exact",
                )
            )

        with pytest.raises(IntegrityError):
            db_session.commit()

    def test_version_increments(self, db_session):
        """Every update bumps the identity version."""
        identity = MasterIdentity(entity_type=PLAYER, master_key="player_1", canonical_name="A")
        db_session.add(identity)
        db_session.commit()
        assert identity.version == 1

        identity.canonical_name = "B"
        db_session.commit()
        assert identity.version == 2

    def test_defaults(self, db_session):
        """New identities are active with timestamps and empty metadata."""
        identity = MasterIdentity(entity_type=PLAYER, master_key="player_1", canonical_name="A")
        db_session.add(identity)
        db_session.commit()

        data = identity.to_dict()
        assert data["status"] == "active"
        assert data["metadata"] == {}
        assert data["created_at"] is not None
        assert "version" not in data

    def test_audit_ids_generated(self, db_session):
        """Audit rows get a string id and an insertion sequence."""
        row = AuditEntryRow(entity_type=PLAYER, entity_id="x", action="CREATE")
        db_session.add(row)
        db_session.commit()
        assert row.id
        assert row.seq == 1
