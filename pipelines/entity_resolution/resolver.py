"""
Entity Resolution Orchestrator (players).

Responsibilities:
- Validate and block incoming season records.
- Score candidate pairs on a bounded worker pool.
- Apply decision thresholds: auto-apply, queue for review, or skip.
- Apply matches to the identity graph and drive the review queue.

Non-Responsibilities:
- No feature computation (see features / scoring).
- No SQL (see storage.repositories).

Invariant:
Classification is deterministic given the same inputs: pairs are decided
in candidate order regardless of which worker scored them. A failing
comparison skips only that pair.
"""

from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timedelta
from typing import Iterable, List, Optional, Tuple, Union

from seasonlink.config import Settings
from seasonlink.errors import IdentityError, NotFoundError, ValidationError
from seasonlink.logger import get_logger
from seasonlink.normalize import normalize_name, normalize_team
from seasonlink.retry import RetryError
from seasonlink.schema import PLAYER, RawRecord, record_from_dict
from storage.repositories.identities import IdentityGraph, seed_metadata
from storage.repositories.pending_matches import InMemoryPendingMatchStore, PendingMatchStore

from .candidate_selector import blocking_keys, build_blocks, candidate_pairs
from .context import (
    APPROVED,
    PENDING,
    REJECTED,
    MatchCandidate,
    ResolutionContext,
    ResolutionResult,
    pair_id,
)
from .features import StringSimilarityEngine
from .scoring import (
    SKIP,
    ConfidenceExplanation,
    ConfidenceFactors,
    ConfidenceScorer,
    ScoringWeights,
    position_compatibility,
    statistical_similarity,
)

RecordInput = Union[RawRecord, dict]


def team_continuity(a: RawRecord, b: RawRecord) -> float:
    """1.0 same pro team, 0.3 adjacent seasons on different teams (trade), else 0."""
    team_a = normalize_team(a.team)
    team_b = normalize_team(b.team)
    if not team_a or not team_b:
        return 0.0
    if team_a == team_b:
        return 1.0
    if abs(a.season - b.season) == 1:
        return 0.3
    return 0.0


def match_reasons(factors: ConfidenceFactors) -> List[str]:
    reasons = []
    if factors.name_similarity > 0.9:
        reasons.append("Name match")
    elif factors.name_similarity > 0.7:
        reasons.append("Similar name")

    if factors.position_match == 1.0:
        reasons.append("Same position")
    elif factors.position_match > 0.5:
        reasons.append("Compatible positions")

    if factors.team_continuity > 0.5:
        reasons.append("Team continuity")
    if factors.stat_similarity > 0.8:
        reasons.append("Similar statistics")
    return reasons


class PlayerIdentityResolver:
    """Resolves player records across seasons into master identities."""

    def __init__(
        self,
        graph: IdentityGraph,
        pending_store: Optional[PendingMatchStore] = None,
        audit_logger=None,
        scorer: Optional[ConfidenceScorer] = None,
        similarity: Optional[StringSimilarityEngine] = None,
        settings: Optional[Settings] = None,
        max_workers: Optional[int] = None,
        logger=None,
    ):
        self.settings = settings or Settings()
        self.graph = graph
        self.pending_store = pending_store or InMemoryPendingMatchStore()
        self.audit_logger = audit_logger if audit_logger is not None else graph.audit_logger
        self.scorer = scorer or ConfidenceScorer(ScoringWeights.from_overrides(self.settings.weights))
        self.similarity = similarity or StringSimilarityEngine()
        self.max_workers = max_workers or self.settings.max_workers
        self.logger = logger or get_logger()

    # Scoring

    def compare(self, a: RawRecord, b: RawRecord) -> Tuple[float, ConfidenceFactors, List[str]]:
        """Score one pair of player records."""
        factors = ConfidenceFactors(
            name_similarity=self.similarity.similarity(a.name, b.name),
            position_match=position_compatibility(a.position, b.position),
            team_continuity=team_continuity(a, b),
            stat_similarity=statistical_similarity(a.stats, b.stats),
        )
        return self.scorer.score(factors), factors, match_reasons(factors)

    def explain(self, match: MatchCandidate) -> ConfidenceExplanation:
        return self.scorer.explain(match.factors, match.confidence)

    # Resolution run

    def _validated(self, records: Iterable[RecordInput], context: ResolutionContext) -> List[RawRecord]:
        valid = []
        for raw in records:
            if isinstance(raw, RawRecord):
                record = raw
            else:
                try:
                    record = record_from_dict(raw, PLAYER)
                except ValidationError as e:
                    context.validation_errors += 1
                    context.errors.append(f"Invalid record: {e}")
                    self.logger.warning(f"Skipping invalid record: {e}")
                    self.logger.record_record_rejected()
                    continue
            if context.seasons and record.season not in context.seasons:
                continue
            valid.append(record)
        return valid

    def resolve_identities(
        self,
        records: Iterable[RecordInput],
        context: Optional[ResolutionContext] = None,
    ) -> ResolutionResult:
        """
        Resolve a pool of player records into identities and review items.

        Args:
            records: RawRecords or raw dicts (dicts are validated first)
            context: Run options and tallies; a default context is created
                from settings when omitted

        Returns:
            ResolutionResult with per-run tallies and every produced match
        """
        context = context or ResolutionContext(min_confidence=self.settings.min_confidence)
        self.logger.info("Starting player resolution", run_id=context.run_id, dry_run=context.dry_run)

        players = self._validated(records, context)
        if context.skip_existing:
            players = [
                p for p in players
                if self.graph.resolve(PLAYER, p.external_id, p.season) is None
            ]
        context.total_processed = len(players)

        blocks = build_blocks(players)
        pairs = candidate_pairs(blocks)
        self.logger.debug(f"Built {len(blocks)} blocks, {len(pairs)} candidate pairs", run_id=context.run_id)

        success = True
        for match in self._score_pairs(pairs, context):
            if not self._classify(match, context):
                success = False

        self.logger.info(
            "Player resolution complete",
            run_id=context.run_id,
            processed=context.total_processed,
            auto_matched=context.auto_matched,
            pending=context.manual_review_required,
            skipped=context.skipped,
            validation_errors=context.validation_errors,
            comparison_errors=context.comparison_errors,
        )
        return ResolutionResult.from_context(context, success=success)

    def _score_pairs(self, pairs, context: ResolutionContext) -> List[MatchCandidate]:
        scored: List[MatchCandidate] = []
        if not pairs:
            return scored

        ttl = timedelta(days=self.settings.pending_ttl_days)
        with ThreadPoolExecutor(max_workers=self.max_workers) as pool:
            futures = [(pair, pool.submit(self.compare, pair[0], pair[1])) for pair in pairs]
            for (a, b, block_key), future in futures:
                self.logger.record_comparison(PLAYER)
                try:
                    confidence, factors, reasons = future.result()
                except Exception as e:
                    context.comparison_errors += 1
                    context.errors.append(f"Comparison {a.key} vs {b.key} failed: {e}")
                    self.logger.error(
                        f"Comparison failed: {e}",
                        record_a=a.key,
                        record_b=b.key,
                        block=block_key,
                    )
                    self.logger.record_comparison_failure(PLAYER, type(e).__name__)
                    continue

                scored.append(
                    MatchCandidate(
                        id=pair_id(PLAYER, a, b),
                        entity_type=PLAYER,
                        record_a=a,
                        record_b=b,
                        confidence=confidence,
                        factors=factors,
                        action=self.scorer.determine_action(confidence),
                        reasons=reasons,
                        method=self._method_for(a, b),
                        expires_at=datetime.now() + ttl,
                    )
                )
        return scored

    def _method_for(self, a: RawRecord, b: RawRecord) -> str:
        if a.external_id == b.external_id and normalize_name(a.name) == normalize_name(b.name):
            return "exact"
        return "fuzzy"

    def _classify(self, match: MatchCandidate, context: ResolutionContext) -> bool:
        """Route one scored pair; returns False when applying it failed."""
        if match.action == SKIP or match.confidence < context.min_confidence:
            context.skipped += 1
            return True

        known = self.pending_store.get(match.id)
        if known is not None and known.status == REJECTED:
            context.skipped += 1
            self.logger.debug("Pair was rejected in review, skipping", match_id=match.id)
            return True

        if context.auto_approve and match.confidence >= self.settings.auto_apply_threshold:
            match = match.with_status(APPROVED)
            context.auto_matched += 1
            context.matches.append(match)
            if context.dry_run:
                return True
            try:
                self.apply_match(match, performed_by=context.performed_by, context=context)
            except (IdentityError, RetryError) as e:
                context.errors.append(f"Applying match {match.id} failed: {e}")
                self.logger.error(f"Applying match failed: {e}", match_id=match.id)
                return False
            if known is not None and known.status == PENDING:
                self.pending_store.update_status(match.id, APPROVED)
            return True

        if known is not None and known.status == APPROVED:
            context.skipped += 1
            return True

        context.manual_review_required += 1
        if known is not None:
            # still queued from an earlier run
            context.matches.append(known)
            return True
        context.matches.append(match)
        if not context.dry_run:
            self.pending_store.put(match)
            self.logger.record_match_pending()
        return True

    def _lock_key(self, record: RawRecord) -> str:
        keys = blocking_keys(record)
        return f"{PLAYER}:{keys[0] if keys else record.external_id}"

    # Applying matches

    def apply_match(
        self,
        match: MatchCandidate,
        performed_by: Optional[str] = "system",
        method: Optional[str] = None,
        reason: Optional[str] = None,
        context: Optional[ResolutionContext] = None,
    ):
        """
        Bind both records of a match to one identity.

        Reuses the identity already mapped to either side, otherwise creates
        one from the earlier-season record. Creation is serialised per
        blocking key when a run context is given. Re-applying a pair never
        duplicates a mapping.
        """
        a, b = match.record_a, match.record_b
        if b.season < a.season:
            a, b = b, a
        method = method or match.method

        identity = self.graph.find_identity_for(PLAYER, a.external_id, a.season)
        if identity is None:
            identity = self.graph.find_identity_for(PLAYER, b.external_id, b.season)

        created = False
        if identity is None:
            identity, created = self.graph.find_or_create_identity(
                PLAYER,
                seed=a,
                master_key=f"player_{a.external_id}",
                confidence=match.confidence,
                metadata=seed_metadata(PLAYER, [a, b]),
                lock=context.locks.hold(self._lock_key(a)) if context else None,
            )

        before = None if created else self.graph.snapshot(identity.id)
        changed = False
        for record in (a, b):
            _, did_change = self.graph.upsert_mapping(identity.id, record, match.confidence, method)
            changed = changed or did_change

        reason = reason or f"Applied {method} match {match.id} ({match.confidence:.3f})"
        if created:
            self._audit(identity.id, "CREATE", None, self.graph.snapshot(identity.id), reason, performed_by)
        elif changed:
            self._audit(identity.id, "UPDATE", before, self.graph.snapshot(identity.id), reason, performed_by)

        self.logger.record_match_applied()
        return identity

    def _audit(self, entity_id, action, before, after, reason, performed_by, extra=None):
        if self.audit_logger is None:
            return None
        return self.audit_logger.log_action(
            entity_type=PLAYER,
            entity_id=entity_id,
            action=action,
            before_state=before,
            after_state=after,
            reason=reason,
            performed_by=performed_by,
            extra=extra,
        )

    # Review queue

    def list_pending(self, status: Optional[str] = None, league_id: Optional[str] = None) -> List[MatchCandidate]:
        return self.pending_store.list(status=status, league_id=league_id)

    def _pending(self, match_id: str) -> MatchCandidate:
        match = self.pending_store.get(match_id)
        if match is None:
            raise NotFoundError(f"Pending match not found: {match_id}")
        if match.status != PENDING:
            raise ValidationError(f"Match {match_id} is already {match.status}")
        return match

    def approve_match(self, match_id: str, performed_by: Optional[str] = None):
        """Apply a queued match as a manual decision."""
        match = self._pending(match_id)
        identity = self.apply_match(
            match,
            performed_by=performed_by,
            method="manual",
            reason=f"Approved pending match {match_id}",
        )
        self.pending_store.update_status(match_id, APPROVED)
        self.logger.info("Approved pending match", match_id=match_id, identity_id=identity.id)
        return identity

    def reject_match(
        self,
        match_id: str,
        performed_by: Optional[str] = None,
        reason: Optional[str] = None,
    ) -> MatchCandidate:
        match = self._pending(match_id)
        updated = self.pending_store.update_status(match_id, REJECTED)
        self._audit(
            f"match:{match_id}",
            "UPDATE",
            {"match": match.to_dict()},
            {"match": updated.to_dict()},
            reason or f"Rejected pending match {match_id}",
            performed_by,
            extra={"review": REJECTED},
        )
        self.logger.info("Rejected pending match", match_id=match_id)
        return updated

    # Graph maintenance

    def merge_identities(
        self,
        primary_id: str,
        secondary_id: str,
        reason: Optional[str] = None,
        performed_by: Optional[str] = None,
    ):
        return self.graph.merge(primary_id, secondary_id, reason=reason, performed_by=performed_by)

    def split_identity(
        self,
        identity_id: str,
        mapping_ids: List[str],
        reason: Optional[str] = None,
        performed_by: Optional[str] = None,
    ):
        return self.graph.split(identity_id, mapping_ids, reason=reason, performed_by=performed_by)
