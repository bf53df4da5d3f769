"""
Database schema and connection management.

Uses SQLite with SQLAlchemy for the identity graph, the review queue and
the audit trail.
"""

import uuid
from datetime import datetime
from pathlib import Path
from typing import Any, Dict

from sqlalchemy import (
    JSON,
    Column,
    DateTime,
    Float,
    ForeignKey,
    Integer,
    String,
    Text,
    UniqueConstraint,
    create_engine,
)
from sqlalchemy.orm import declarative_base, sessionmaker

Base = declarative_base()

ACTIVE = "active"


def new_id() -> str:
    return str(uuid.uuid4())


def _iso(value):
    return value.isoformat() if value is not None else None


class MasterIdentity(Base):
    """Canonical, season-spanning player or team."""

    __tablename__ = "master_identities"

    id = Column(String, primary_key=True, default=new_id)
    entity_type = Column(String, nullable=False, index=True)  # PLAYER or TEAM
    master_key = Column(String, nullable=False, unique=True)  # player_<id> / team_<league>_<id>
    league_id = Column(String, nullable=True, index=True)
    canonical_name = Column(String, nullable=False)
    confidence_score = Column(Float, nullable=False, default=1.0)
    status = Column(String, nullable=False, default=ACTIVE)
    metadata_json = Column("metadata", JSON, nullable=False, default=dict)
    version = Column(Integer, nullable=False)
    created_at = Column(DateTime, nullable=False, default=datetime.now)
    updated_at = Column(DateTime, nullable=False, default=datetime.now, onupdate=datetime.now)

    __mapper_args__ = {"version_id_col": version}

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "entity_type": self.entity_type,
            "master_key": self.master_key,
            "league_id": self.league_id,
            "canonical_name": self.canonical_name,
            "confidence_score": self.confidence_score,
            "status": self.status,
            "metadata": dict(self.metadata_json or {}),
            "created_at": _iso(self.created_at),
        }


class IdentityMapping(Base):
    """Binding of one season-scoped raw record to exactly one identity."""

    __tablename__ = "identity_mappings"
    __table_args__ = (
        UniqueConstraint("entity_type", "scope", "external_id", "season", name="uq_mapping_record_season"),
    )

    id = Column(String, primary_key=True, default=new_id)
    identity_id = Column(String, ForeignKey("master_identities.id"), nullable=False, index=True)
    entity_type = Column(String, nullable=False)
    scope = Column(String, nullable=False, default="")  # league id for teams, "" for players
    external_id = Column(String, nullable=False)
    season = Column(Integer, nullable=False)
    name_variation = Column(String, nullable=False)
    confidence_score = Column(Float, nullable=False)
    method = Column(String, nullable=False)  # exact, fuzzy, manual
    attributes_json = Column("attributes", JSON, nullable=False, default=dict)
    created_at = Column(DateTime, nullable=False, default=datetime.now)
    updated_at = Column(DateTime, nullable=False, default=datetime.now, onupdate=datetime.now)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "identity_id": self.identity_id,
            "entity_type": self.entity_type,
            "scope": self.scope,
            "external_id": self.external_id,
            "season": self.season,
            "name_variation": self.name_variation,
            "confidence_score": self.confidence_score,
            "method": self.method,
            "attributes": dict(self.attributes_json or {}),
        }


class PendingMatchRow(Base):
    """Review-queue item awaiting a human decision."""

    __tablename__ = "pending_matches"

    id = Column(String, primary_key=True)
    entity_type = Column(String, nullable=False)
    league_id = Column(String, nullable=True, index=True)
    confidence = Column(Float, nullable=False)
    status = Column(String, nullable=False, default="pending")
    payload = Column(JSON, nullable=False)
    created_at = Column(DateTime, nullable=False, default=datetime.now)
    expires_at = Column(DateTime, nullable=False, index=True)


class AuditEntryRow(Base):
    """Append-only audit record of one identity graph mutation."""

    __tablename__ = "identity_audit_log"

    seq = Column(Integer, primary_key=True, autoincrement=True)  # insertion order
    id = Column(String, nullable=False, unique=True, default=new_id)
    entity_type = Column(String, nullable=False)
    entity_id = Column(String, nullable=False, index=True)
    action = Column(String, nullable=False)  # CREATE, MERGE, SPLIT, UPDATE, DELETE, ROLLBACK
    before_state = Column(JSON, nullable=True)
    after_state = Column(JSON, nullable=True)
    reason = Column(Text, nullable=True)
    performed_by = Column(String, nullable=True, index=True)
    performed_at = Column(DateTime, nullable=False, default=datetime.now, index=True)
    extra = Column(JSON, nullable=True)


def create_engine_for(db_path: Path):
    return create_engine(
        f"sqlite:///{db_path}",
        connect_args={"check_same_thread": False, "timeout": 15},
    )


def init_database(db_path: Path) -> None:
    """
    Initialize database and create tables.

    Args:
        db_path: Path to SQLite database file
    """
    db_path.parent.mkdir(parents=True, exist_ok=True)
    engine = create_engine_for(db_path)
    Base.metadata.create_all(engine)


def get_session(db_path: Path):
    """
    Get database session.

    Args:
        db_path: Path to SQLite database file

    Returns:
        SQLAlchemy session
    """
    return get_session_factory(db_path)()


def get_session_factory(db_path: Path):
    """
    Get a session factory shared by the repositories.

    Objects stay usable after commit so snapshots can be taken outside
    the transaction.
    """
    engine = create_engine_for(db_path)
    return sessionmaker(bind=engine, expire_on_commit=False)
