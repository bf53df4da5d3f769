"""
Entity Resolution Orchestrator (fantasy teams).

Responsibilities:
- Group a league's season records by team id.
- Keep a team id bound to one identity across seasons.
- Detect re-issued team ids through owner and name continuity.
- Maintain each identity's owner history.

Non-Responsibilities:
- No player matching (see resolver).
- No SQL (see storage.repositories).

Invariant:
Team ids are only unique inside a league. A team id seen in several
seasons always resolves to the same identity.
"""

from dataclasses import dataclass, field, replace
from typing import Any, Dict, Iterable, List, Optional, Tuple, Union

from seasonlink.config import Settings
from seasonlink.errors import IdentityError, NotFoundError, ValidationError
from seasonlink.logger import get_logger
from seasonlink.metadata import build_owner_history, extend_owner_history, metadata_for
from seasonlink.retry import RetryError
from seasonlink.schema import TEAM, RawRecord, record_from_dict
from storage.repositories.identities import IdentityGraph, mapping_record, seed_metadata

from .features import StringSimilarityEngine

NAME_WEIGHT = 0.3
OWNER_WEIGHT = 0.7


@dataclass
class TeamResolutionResult:
    resolved: int = 0
    errors: int = 0
    id_changes: int = 0

    def summary(self) -> Dict[str, int]:
        return {
            "resolved": self.resolved,
            "errors": self.errors,
            "id_changes": self.id_changes,
        }


@dataclass
class TeamHistory:
    identity: Any
    seasons: List[Dict[str, Any]] = field(default_factory=list)
    total_seasons: int = 0
    total_wins: int = 0
    total_losses: int = 0
    best_finish: int = 0
    championships: int = 0

    def stats(self) -> Dict[str, int]:
        return {
            "total_seasons": self.total_seasons,
            "total_wins": self.total_wins,
            "total_losses": self.total_losses,
            "best_finish": self.best_finish,
            "championships": self.championships,
        }


class TeamIdentityResolver:
    """Tracks fantasy team continuity across seasons within a league."""

    def __init__(
        self,
        graph: IdentityGraph,
        audit_logger=None,
        similarity: Optional[StringSimilarityEngine] = None,
        settings: Optional[Settings] = None,
        logger=None,
    ):
        self.settings = settings or Settings()
        self.graph = graph
        self.audit_logger = audit_logger if audit_logger is not None else graph.audit_logger
        self.similarity = similarity or StringSimilarityEngine()
        self.logger = logger or get_logger()

    def _records(
        self,
        records: Iterable[Union[RawRecord, dict]],
        league_id: str,
        seasons: Optional[List[int]],
        result: TeamResolutionResult,
    ) -> List[RawRecord]:
        teams = []
        for raw in records:
            if isinstance(raw, RawRecord):
                record = raw
            else:
                try:
                    record = record_from_dict(raw, TEAM)
                except ValidationError as e:
                    result.errors += 1
                    self.logger.warning(f"Skipping invalid team record: {e}")
                    self.logger.record_record_rejected()
                    continue
            if record.league_id and record.league_id != league_id:
                continue
            if seasons and record.season not in seasons:
                continue
            teams.append(replace(record, entity_type=TEAM, league_id=league_id))
        return teams

    @staticmethod
    def group_by_team_id(records: Iterable[RawRecord]) -> Dict[str, List[RawRecord]]:
        """Records per team id, each group in season order, groups by first season."""
        groups: Dict[str, List[RawRecord]] = {}
        for record in records:
            groups.setdefault(record.external_id, []).append(record)
        for group in groups.values():
            group.sort(key=lambda r: r.season)
        return dict(sorted(groups.items(), key=lambda item: (item[1][0].season, item[0])))

    def resolve_team_identities(
        self,
        records: Iterable[Union[RawRecord, dict]],
        league_id: str,
        seasons: Optional[List[int]] = None,
        auto_resolve: bool = True,
    ) -> TeamResolutionResult:
        """
        Bind every team season of a league to a team identity.

        Args:
            records: Team RawRecords or raw dicts for the league
            league_id: League the team ids belong to
            seasons: Only resolve these seasons (all when None)
            auto_resolve: Detect re-issued team ids and map at full confidence

        Returns:
            TeamResolutionResult with resolved seasons, errors and detected
            team id changes
        """
        result = TeamResolutionResult()
        teams = self._records(records, league_id, seasons, result)
        if not teams:
            return result

        groups = self.group_by_team_id(teams)
        self.logger.info("Starting team resolution", league_id=league_id, teams=len(groups))

        for external_id, group in groups.items():
            self.logger.record_comparison(TEAM)
            try:
                result.resolved += self._resolve_group(league_id, external_id, group, auto_resolve, result)
            except (IdentityError, RetryError) as e:
                result.errors += 1
                self.logger.error(
                    f"Team resolution failed: {e}",
                    league_id=league_id,
                    external_id=external_id,
                )
                self.logger.record_comparison_failure(TEAM, type(e).__name__)

        self.logger.info("Team resolution complete", league_id=league_id, **result.summary())
        return result

    def _resolve_group(
        self,
        league_id: str,
        external_id: str,
        group: List[RawRecord],
        auto_resolve: bool,
        result: TeamResolutionResult,
    ) -> int:
        method = "exact"
        confidence = 1.0 if auto_resolve else 0.8

        continued = False
        identity = self.graph.find_identity_for(TEAM, external_id, scope=league_id)
        if identity is not None:
            method, confidence = self._known_provenance(identity.id, external_id, method, confidence)
        elif auto_resolve:
            match = self._continuity_match(league_id, group)
            if match is not None:
                identity, score = match
                method, confidence = "fuzzy", score
                continued = True
                result.id_changes += 1
                self.logger.info(
                    f'Potential team ID change detected: Team "{group[0].name}" '
                    f"(ID: {external_id}) matched to existing identity with "
                    f"{score * 100:.1f}% confidence",
                    identity_id=identity.id,
                )

        created = False
        if identity is None:
            identity, created = self.graph.find_or_create_identity(
                TEAM,
                seed=group[0],
                master_key=f"team_{league_id}_{external_id}",
                confidence=confidence,
                metadata=seed_metadata(TEAM, group),
            )

        before = None if created else self.graph.snapshot(identity.id)
        changed = False
        for record in group:
            _, did_change = self.graph.upsert_mapping(identity.id, record, confidence, method)
            changed = changed or did_change

        if created:
            self._audit(identity.id, "CREATE", None, self.graph.snapshot(identity.id),
                        f"Created team identity for team {external_id}")
        elif changed:
            self._audit(identity.id, "UPDATE", before, self.graph.snapshot(identity.id),
                        f"Mapped {len(group)} season(s) of team {external_id}")

        self._refresh_owner_history(identity.id, group if continued else None)
        return len(group)

    def _continuity_match(self, league_id: str, group: List[RawRecord]) -> Optional[Tuple[Any, float]]:
        """Best existing identity this team id plausibly continues, with its score."""
        first = group[0]
        group_seasons = {r.season for r in group}
        best = None

        for identity in self.graph.list_identities(TEAM, league_id):
            mappings = self.graph.get_mappings(identity.id)
            if not mappings:
                continue
            if any(m.season in group_seasons for m in mappings):
                continue
            latest = max(mappings, key=lambda m: m.season)
            if abs(first.season - latest.season) > self.settings.team_season_window:
                continue

            previous = mapping_record(latest)
            score = self.continuity_score(first, previous)
            if score > self.settings.team_continuity_threshold and (best is None or score > best[1]):
                best = (identity, score)
        return best

    def continuity_score(self, record: RawRecord, previous: RawRecord) -> float:
        """Owner similarity weighs more than team name for continuity."""
        name = self.similarity.similarity(record.name or "", previous.name or "")
        owner = self.similarity.similarity(record.owner_name or "", previous.owner_name or "")
        return name * NAME_WEIGHT + owner * OWNER_WEIGHT

    def _known_provenance(
        self, identity_id: str, external_id: str, method: str, confidence: float
    ) -> Tuple[str, float]:
        """Method and confidence this team id was first mapped with, if any."""
        known = [m for m in self.graph.get_mappings(identity_id) if m.external_id == external_id]
        if not known:
            return method, confidence
        latest = max(known, key=lambda m: m.season)
        return latest.method, latest.confidence_score

    def _refresh_owner_history(self, identity_id: str, continued: Optional[List[RawRecord]] = None) -> None:
        """
        Write the identity's owner timeline and alternate names.

        A continued team (re-issued id) extends the stored timeline with the
        new id's seasons; otherwise the timeline is rebuilt from the mappings.
        """
        identity = self.graph.require_identity(identity_id)
        records = [mapping_record(m) for m in self.graph.get_mappings(identity_id)]
        meta = metadata_for(TEAM, identity.metadata_json)
        if continued:
            history = list(meta.owner_history)
            for record in continued:
                history = extend_owner_history(history, record.owner_name, record.season)
        else:
            history = build_owner_history((r.season, r.owner_name) for r in records)

        names = list(meta.alternate_names)
        for record in records:
            if record.name != identity.canonical_name and record.name not in names:
                names.append(record.name)

        if history == meta.owner_history and names == meta.alternate_names:
            return
        self.graph.update_metadata(
            identity_id,
            replace(meta, owner_history=history, alternate_names=names),
            reason="Owner history refreshed",
        )

    def _audit(self, entity_id, action, before, after, reason, performed_by="system"):
        if self.audit_logger is None:
            return None
        return self.audit_logger.log_action(
            entity_type=TEAM,
            entity_id=entity_id,
            action=action,
            before_state=before,
            after_state=after,
            reason=reason,
            performed_by=performed_by,
        )

    # Lookups

    def get_team_identity(self, league_id: str, external_id: str, season: int):
        return self.graph.find_identity_for(TEAM, str(external_id), season, scope=league_id)

    def team_history(self, master_key: str) -> TeamHistory:
        """
        A team identity's seasons with aggregate results.

        Raises:
            NotFoundError: No team identity with that master key
        """
        identity = self.graph.get_identity_by_key(master_key)
        if identity is None or identity.entity_type != TEAM:
            raise NotFoundError(f"Team identity not found: {master_key}")

        history = TeamHistory(identity=identity)
        best = None
        for mapping in self.graph.get_mappings(identity.id):
            record = mapping_record(mapping)
            stats = record.stats
            history.total_wins += stats.wins
            history.total_losses += stats.losses
            if stats.standing:
                best = stats.standing if best is None else min(best, stats.standing)
                if stats.standing == 1:
                    history.championships += 1
            history.seasons.append(
                {
                    "season": mapping.season,
                    "external_id": mapping.external_id,
                    "team_name": mapping.name_variation,
                    "owner_name": record.owner_name,
                    "wins": stats.wins,
                    "losses": stats.losses,
                    "standing": stats.standing,
                    "confidence": mapping.confidence_score,
                }
            )

        history.total_seasons = len(history.seasons)
        history.best_finish = best or 0
        return history

    def merge_team_identities(
        self,
        primary_id: str,
        secondary_id: str,
        reason: Optional[str] = None,
        performed_by: Optional[str] = None,
    ):
        return self.graph.merge(primary_id, secondary_id, reason=reason, performed_by=performed_by)
