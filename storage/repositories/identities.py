"""
Identity Graph Repository.

Responsibilities:
- Read master identities and their per-season mappings.
- Find-or-create identities without duplicating a master key.
- Idempotent mapping upserts.
- Transactional merge and split, with optimistic version checks.
- Structural restore helpers used by audit rollback.

Non-Responsibilities:
- No scoring.
- No candidate selection.
- No decision about which records match.

Invariant:
A raw record (entity type, scope, external id, season) maps to exactly one
identity. A failed merge or split leaves the graph exactly as it was.
"""

from contextlib import contextmanager, nullcontext
from datetime import datetime
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple

from sqlalchemy.exc import IntegrityError, OperationalError
from sqlalchemy.orm.exc import StaleDataError

from seasonlink.database import ACTIVE, IdentityMapping, MasterIdentity, new_id
from seasonlink.errors import ConcurrencyConflict, NotFoundError, ValidationError
from seasonlink.logger import get_logger
from seasonlink.metadata import (
    IdentityMetadata,
    PlayerMetadata,
    TeamMetadata,
    build_owner_history,
    metadata_for,
)
from seasonlink.retry import exponential_backoff, is_transient_error
from seasonlink.schema import PLAYER, TEAM, RawRecord, record_from_attributes


def mapping_scope(record: RawRecord) -> str:
    """Team ids are only unique within a league; player ids are global."""
    if record.entity_type == TEAM:
        return record.league_id or ""
    return ""


def seed_metadata(entity_type: str, records: Iterable[RawRecord]) -> IdentityMetadata:
    """Initial metadata for an identity built from the records it maps."""
    records = sorted(records, key=lambda r: r.season)
    if entity_type == TEAM:
        return TeamMetadata(
            owner_history=build_owner_history((r.season, r.owner_name) for r in records),
        )

    meta = PlayerMetadata()
    for record in records:
        if record.position and record.position not in meta.positions:
            meta.positions.append(record.position)
        if record.team and record.team not in meta.teams:
            meta.teams.append(record.team)
    return meta


def mapping_record(mapping: IdentityMapping) -> RawRecord:
    """The raw record a mapping was created from."""
    attributes = mapping.attributes_json or {}
    if attributes.get("entity_type"):
        return record_from_attributes(attributes)
    return RawRecord(
        entity_type=mapping.entity_type or PLAYER,
        external_id=mapping.external_id,
        season=mapping.season,
        name=mapping.name_variation,
    )


def _parse_ts(value: Optional[str]) -> datetime:
    return datetime.fromisoformat(value) if value else datetime.now()


class IdentityGraph:
    """SQL-backed store of master identities and their mappings."""

    def __init__(
        self,
        session_factory,
        audit_logger=None,
        max_retries: int = 3,
        base_delay: float = 0.05,
        logger=None,
    ):
        self.session_factory = session_factory
        self.audit_logger = audit_logger
        self.max_retries = max_retries
        self.base_delay = base_delay
        self.logger = logger or get_logger()

    # Sessions and retry

    @contextmanager
    def transaction(self):
        """
        Unit of work: commit on success, roll back on any exception.

        Version mismatches and lock contention surface as ConcurrencyConflict.
        """
        session = self.session_factory()
        try:
            yield session
            session.commit()
        except StaleDataError as e:
            session.rollback()
            raise ConcurrencyConflict(str(e)) from e
        except OperationalError as e:
            session.rollback()
            if is_transient_error(e):
                raise ConcurrencyConflict(str(e)) from e
            raise
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    def _with_retry(self, func: Callable, *args, **kwargs):
        def on_retry(attempt, error, delay):
            self.logger.warning(
                f"Identity graph write conflict, retrying (attempt {attempt})",
                error=str(error),
                delay=delay,
            )

        retrying = exponential_backoff(
            max_retries=self.max_retries,
            base_delay=self.base_delay,
            max_delay=2.0,
            exceptions=(ConcurrencyConflict,),
            on_retry=on_retry,
        )(func)
        return retrying(*args, **kwargs)

    def _in_session(self, session, func: Callable, *args):
        if session is not None:
            return func(session, *args)
        with self.transaction() as own:
            return func(own, *args)

    def _audit(self, entity_type, entity_id, action, before, after, reason, performed_by, extra=None):
        if self.audit_logger is None:
            return None
        return self.audit_logger.log_action(
            entity_type=entity_type,
            entity_id=entity_id,
            action=action,
            before_state=before,
            after_state=after,
            reason=reason,
            performed_by=performed_by,
            extra=extra,
        )

    # Queries

    def get_identity(self, identity_id: str) -> Optional[MasterIdentity]:
        with self.transaction() as session:
            return session.get(MasterIdentity, identity_id)

    def require_identity(self, identity_id: str) -> MasterIdentity:
        identity = self.get_identity(identity_id)
        if identity is None:
            raise NotFoundError(f"Identity not found: {identity_id}")
        return identity

    def get_identity_by_key(self, master_key: str) -> Optional[MasterIdentity]:
        with self.transaction() as session:
            return session.query(MasterIdentity).filter_by(master_key=master_key).first()

    def find_identity_for(
        self,
        entity_type: str,
        external_id: str,
        season: Optional[int] = None,
        scope: str = "",
    ) -> Optional[MasterIdentity]:
        """Identity mapped to an external id (latest season when season is None)."""
        with self.transaction() as session:
            query = (
                session.query(MasterIdentity)
                .join(IdentityMapping, IdentityMapping.identity_id == MasterIdentity.id)
                .filter(
                    IdentityMapping.entity_type == entity_type,
                    IdentityMapping.scope == scope,
                    IdentityMapping.external_id == str(external_id),
                )
            )
            if season is not None:
                query = query.filter(IdentityMapping.season == season)
            return query.order_by(IdentityMapping.season.desc()).first()

    def resolve(self, entity_type: str, external_id: str, season: int, scope: str = "") -> Optional[str]:
        """Identity id for one (external id, season), or None when unmapped."""
        identity = self.find_identity_for(entity_type, external_id, season, scope)
        return identity.id if identity else None

    def list_identities(
        self, entity_type: Optional[str] = None, league_id: Optional[str] = None
    ) -> List[MasterIdentity]:
        with self.transaction() as session:
            query = session.query(MasterIdentity)
            if entity_type:
                query = query.filter(MasterIdentity.entity_type == entity_type)
            if league_id:
                query = query.filter(MasterIdentity.league_id == league_id)
            return query.order_by(MasterIdentity.created_at, MasterIdentity.master_key).all()

    def get_mappings(self, identity_id: str) -> List[IdentityMapping]:
        with self.transaction() as session:
            return self._mappings(session, identity_id)

    def _mappings(self, session, identity_id: str) -> List[IdentityMapping]:
        return (
            session.query(IdentityMapping)
            .filter_by(identity_id=identity_id)
            .order_by(IdentityMapping.season, IdentityMapping.external_id)
            .all()
        )

    def snapshot(self, identity_id: str) -> Dict[str, Any]:
        with self.transaction() as session:
            identity = session.get(MasterIdentity, identity_id)
            if identity is None:
                raise NotFoundError(f"Identity not found: {identity_id}")
            return self._snapshot(session, identity)

    def _snapshot(self, session, identity: MasterIdentity) -> Dict[str, Any]:
        return {
            "identity": identity.to_dict(),
            "mappings": [m.to_dict() for m in self._mappings(session, identity.id)],
        }

    # Writes

    def find_or_create_identity(
        self,
        entity_type: str,
        seed: RawRecord,
        master_key: str,
        confidence: float = 1.0,
        metadata: Optional[IdentityMetadata] = None,
        lock=None,
    ) -> Tuple[MasterIdentity, bool]:
        """
        Return the identity with master_key, creating it from seed if absent.

        Args:
            lock: Context manager serialising creation for one blocking key
                (the unique master key catches anything that slips past it)

        Returns:
            (identity, created)
        """
        with lock or nullcontext():
            existing = self.get_identity_by_key(master_key)
            if existing is not None:
                return existing, False

            metadata = metadata or seed_metadata(entity_type, [seed])

            def create(session):
                identity = MasterIdentity(
                    entity_type=entity_type,
                    master_key=master_key,
                    league_id=seed.league_id if entity_type == TEAM else None,
                    canonical_name=seed.name,
                    confidence_score=confidence,
                    status=ACTIVE,
                    metadata_json=metadata.to_dict(),
                )
                session.add(identity)
                session.flush()
                return identity

            try:
                identity = self._with_retry(self._in_session, None, create)
            except IntegrityError:
                existing = self.get_identity_by_key(master_key)
                if existing is None:
                    raise
                self.logger.debug("Identity created concurrently, reusing", master_key=master_key)
                return existing, False

            self.logger.debug("Created identity", master_key=master_key, identity_id=identity.id)
            return identity, True

    def upsert_mapping(
        self,
        identity_id: str,
        record: RawRecord,
        confidence: float,
        method: str,
    ) -> Tuple[IdentityMapping, bool]:
        """
        Bind record to identity_id unless the record is already mapped.

        An existing mapping keeps its identity; only its confidence is raised
        to the higher of the two values.

        Returns:
            (mapping, changed)
        """
        scope = mapping_scope(record)

        def upsert(session):
            existing = (
                session.query(IdentityMapping)
                .filter_by(
                    entity_type=record.entity_type,
                    scope=scope,
                    external_id=record.external_id,
                    season=record.season,
                )
                .first()
            )
            if existing is not None:
                if existing.identity_id != identity_id:
                    self.logger.warning(
                        "Record already mapped to another identity, merge required",
                        external_id=record.external_id,
                        season=record.season,
                        mapped_to=existing.identity_id,
                        proposed=identity_id,
                    )
                if confidence > existing.confidence_score:
                    existing.confidence_score = confidence
                    return existing, True
                return existing, False

            if session.get(MasterIdentity, identity_id) is None:
                raise NotFoundError(f"Identity not found: {identity_id}")

            mapping = IdentityMapping(
                identity_id=identity_id,
                entity_type=record.entity_type,
                scope=scope,
                external_id=record.external_id,
                season=record.season,
                name_variation=record.name,
                confidence_score=confidence,
                method=method,
                attributes_json=record.to_dict(),
            )
            session.add(mapping)
            session.flush()
            return mapping, True

        try:
            return self._with_retry(self._in_session, None, upsert)
        except IntegrityError:
            # lost a race on the unique (record, season) key; the row exists now
            return self._with_retry(self._in_session, None, upsert)

    def update_metadata(
        self,
        identity_id: str,
        metadata: IdentityMetadata,
        performed_by: Optional[str] = None,
        reason: Optional[str] = None,
        canonical_name: Optional[str] = None,
    ) -> MasterIdentity:
        """Replace an identity's metadata (and optionally its name); audited as UPDATE."""

        def update(session):
            identity = session.get(MasterIdentity, identity_id)
            if identity is None:
                raise NotFoundError(f"Identity not found: {identity_id}")
            before = self._snapshot(session, identity)
            identity.metadata_json = metadata.to_dict()
            if canonical_name:
                identity.canonical_name = canonical_name
            session.flush()
            return identity, before, self._snapshot(session, identity)

        identity, before, after = self._with_retry(self._in_session, None, update)
        if before["identity"] != after["identity"]:
            self._audit(identity.entity_type, identity.id, "UPDATE", before, after, reason, performed_by)
        return identity

    def merge(
        self,
        primary_id: str,
        secondary_id: str,
        reason: Optional[str] = None,
        performed_by: Optional[str] = None,
    ) -> MasterIdentity:
        """
        Fold secondary into primary in one transaction.

        Every mapping moves to primary, metadata is merged by type and the
        secondary row is removed. The MERGE audit entry is written after
        commit.

        Raises:
            NotFoundError: Either identity does not exist
            ValidationError: Same identity twice, or different entity types
            RetryError: Conflicting writers kept winning
        """
        if primary_id == secondary_id:
            raise ValidationError("Cannot merge an identity into itself")

        def merge_once(session):
            primary = session.get(MasterIdentity, primary_id)
            secondary = session.get(MasterIdentity, secondary_id)
            if primary is None:
                raise NotFoundError(f"Identity not found: {primary_id}")
            if secondary is None:
                raise NotFoundError(f"Identity not found: {secondary_id}")
            if primary.entity_type != secondary.entity_type:
                raise ValidationError(
                    f"Cannot merge {secondary.entity_type} into {primary.entity_type}"
                )

            before = {
                "primary": self._snapshot(session, primary),
                "secondary": self._snapshot(session, secondary),
            }

            for mapping in self._mappings(session, secondary.id):
                mapping.identity_id = primary.id
            session.flush()

            merged = metadata_for(primary.entity_type, primary.metadata_json).merge(
                metadata_for(secondary.entity_type, secondary.metadata_json),
                secondary.canonical_name,
            )
            primary.metadata_json = merged.to_dict()

            self._delete_identity(session, secondary)
            session.flush()
            return primary, before, {"merged": self._snapshot(session, primary)}

        primary, before, after = self._with_retry(self._in_session, None, merge_once)
        self.logger.info(
            "Merged identities",
            primary_id=primary_id,
            secondary_id=secondary_id,
            mappings=len(after["merged"]["mappings"]),
        )
        self._audit(primary.entity_type, primary.id, "MERGE", before, after, reason, performed_by)
        return primary

    def split(
        self,
        identity_id: str,
        mapping_ids: List[str],
        reason: Optional[str] = None,
        performed_by: Optional[str] = None,
    ) -> MasterIdentity:
        """
        Move the named mappings onto a new identity.

        The new identity is named after the first listed mapping.

        Raises:
            ValidationError: mapping_ids is empty or names a mapping owned by
                another identity
            NotFoundError: Identity or a mapping does not exist
        """
        if not mapping_ids:
            raise ValidationError("Split requires at least one mapping id")
        mapping_ids = list(dict.fromkeys(mapping_ids))

        def split_once(session):
            original = session.get(MasterIdentity, identity_id)
            if original is None:
                raise NotFoundError(f"Identity not found: {identity_id}")

            rows = session.query(IdentityMapping).filter(IdentityMapping.id.in_(mapping_ids)).all()
            by_id = {row.id: row for row in rows}
            missing = [mid for mid in mapping_ids if mid not in by_id]
            if missing:
                raise NotFoundError(f"Mappings not found: {', '.join(missing)}")
            foreign = [mid for mid in mapping_ids if by_id[mid].identity_id != identity_id]
            if foreign:
                raise ValidationError(
                    f"Mappings not owned by identity {identity_id}: {', '.join(foreign)}"
                )

            moving = [by_id[mid] for mid in mapping_ids]
            first = moving[0]
            records = [mapping_record(m) for m in moving]

            split_identity = MasterIdentity(
                entity_type=original.entity_type,
                master_key=f"{original.master_key}_split_{new_id()[:8]}",
                league_id=original.league_id,
                canonical_name=first.name_variation,
                confidence_score=first.confidence_score,
                status=ACTIVE,
                metadata_json=seed_metadata(original.entity_type, records).to_dict(),
            )
            session.add(split_identity)
            session.flush()

            for mapping in moving:
                mapping.identity_id = split_identity.id
            session.flush()

            after = {
                "original": self._snapshot(session, original),
                "split": self._snapshot(session, split_identity),
                "mappings_split": mapping_ids,
            }
            return original, split_identity, after

        original, split_identity, after = self._with_retry(self._in_session, None, split_once)
        self.logger.info(
            "Split identity",
            identity_id=identity_id,
            split_id=split_identity.id,
            mappings=len(mapping_ids),
        )
        self._audit(original.entity_type, original.id, "SPLIT", None, after, reason, performed_by)
        return split_identity

    def delete(
        self,
        identity_id: str,
        reason: Optional[str] = None,
        performed_by: Optional[str] = None,
    ) -> None:
        """Remove an identity and its mappings; audited as DELETE."""

        def delete_once(session):
            identity = session.get(MasterIdentity, identity_id)
            if identity is None:
                raise NotFoundError(f"Identity not found: {identity_id}")
            before = self._snapshot(session, identity)
            entity_type = identity.entity_type
            self.delete_identity(identity_id, session=session)
            return entity_type, before

        entity_type, before = self._with_retry(self._in_session, None, delete_once)
        self.logger.info("Deleted identity", identity_id=identity_id)
        self._audit(entity_type, identity_id, "DELETE", before, None, reason, performed_by)

    # Restore helpers (rollback)

    def _delete_identity(self, session, identity: MasterIdentity) -> None:
        session.delete(identity)

    def delete_identity(self, identity_id: str, session=None) -> None:
        """Remove an identity together with any mappings still pointing at it."""

        def delete(s):
            identity = s.get(MasterIdentity, identity_id)
            if identity is None:
                raise NotFoundError(f"Identity not found: {identity_id}")
            for mapping in self._mappings(s, identity_id):
                s.delete(mapping)
            s.flush()
            self._delete_identity(s, identity)
            s.flush()

        self._in_session(session, delete)

    def reassign_mappings(self, mapping_ids: Iterable[str], identity_id: str, session=None) -> int:
        mapping_ids = list(mapping_ids)

        def reassign(s):
            if s.get(MasterIdentity, identity_id) is None:
                raise NotFoundError(f"Identity not found: {identity_id}")
            rows = s.query(IdentityMapping).filter(IdentityMapping.id.in_(mapping_ids)).all()
            for row in rows:
                row.identity_id = identity_id
            s.flush()
            return len(rows)

        return self._in_session(session, reassign)

    def restore_identity(self, snapshot: Dict[str, Any], session=None) -> MasterIdentity:
        """Recreate an identity (same id and key) and rebind its mappings."""
        data = snapshot["identity"]

        def restore(s):
            if s.get(MasterIdentity, data["id"]) is not None:
                raise ValidationError(f"Identity already exists: {data['id']}")
            identity = MasterIdentity(
                id=data["id"],
                entity_type=data["entity_type"],
                master_key=data["master_key"],
                league_id=data.get("league_id"),
                canonical_name=data["canonical_name"],
                confidence_score=data.get("confidence_score", 1.0),
                status=ACTIVE,
                metadata_json=data.get("metadata") or {},
                created_at=_parse_ts(data.get("created_at")),
            )
            s.add(identity)
            s.flush()
            for mapping in snapshot.get("mappings", []):
                self._restore_mapping(s, mapping, identity.id)
            s.flush()
            return identity

        return self._in_session(session, restore)

    def apply_state(self, identity_id: str, state: Dict[str, Any], session=None) -> MasterIdentity:
        """
        Bring an identity back to a snapshot: name, confidence, metadata and,
        when the snapshot lists them, exactly its mapping set.
        """
        data = state["identity"]

        def apply(s):
            identity = s.get(MasterIdentity, identity_id)
            if identity is None:
                raise NotFoundError(f"Identity not found: {identity_id}")
            identity.canonical_name = data["canonical_name"]
            identity.confidence_score = data.get("confidence_score", identity.confidence_score)
            identity.metadata_json = data.get("metadata") or {}

            if "mappings" in state:
                wanted = {m["id"]: m for m in state["mappings"]}
                for row in self._mappings(s, identity_id):
                    if row.id not in wanted:
                        s.delete(row)
                s.flush()
                for mapping in wanted.values():
                    self._restore_mapping(s, mapping, identity_id)
            s.flush()
            return identity

        return self._in_session(session, apply)

    def _restore_mapping(self, session, data: Dict[str, Any], identity_id: str) -> None:
        row = session.get(IdentityMapping, data["id"])
        if row is not None:
            row.identity_id = identity_id
            return
        session.add(
            IdentityMapping(
                id=data["id"],
                identity_id=identity_id,
                entity_type=data["entity_type"],
                scope=data.get("scope", ""),
                external_id=data["external_id"],
                season=data["season"],
                name_variation=data["name_variation"],
                confidence_score=data["confidence_score"],
                method=data["method"],
                attributes_json=data.get("attributes") or {},
            )
        )

