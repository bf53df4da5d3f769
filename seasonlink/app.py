import argparse
import json
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, List, Optional

from . import __version__
from .audit import IdentityAuditLogger
from .cleanup import cleanup_expired_matches
from .config import Settings, load_settings
from .database import get_session_factory, init_database
from .errors import IdentityError
from .events import EventSink, NullEventSink, WebhookEventSink
from .logger import get_logger
from .retry import RetryError
from .schema import PLAYER, TEAM, validate_record

from pipelines.entity_resolution.context import ResolutionContext
from pipelines.entity_resolution.resolver import PlayerIdentityResolver
from pipelines.entity_resolution.team_resolver import TeamIdentityResolver
from storage.repositories.audit import AuditRepository
from storage.repositories.identities import IdentityGraph
from storage.repositories.pending_matches import PendingMatchStore, SqlPendingMatchStore


@dataclass
class Services:
    settings: Settings
    session_factory: Any
    graph: IdentityGraph
    audit: IdentityAuditLogger
    pending: PendingMatchStore
    players: PlayerIdentityResolver
    teams: TeamIdentityResolver


def build_services(
    settings: Settings,
    pending_store: Optional[PendingMatchStore] = None,
    event_sink: Optional[EventSink] = None,
) -> Services:
    """Wire the identity graph, audit logger and resolvers over one database."""
    init_database(settings.db_path)
    session_factory = get_session_factory(settings.db_path)

    if event_sink is None:
        event_sink = WebhookEventSink(settings.event_webhook_url) if settings.event_webhook_url else NullEventSink()

    graph = IdentityGraph(session_factory)
    audit = IdentityAuditLogger(AuditRepository(session_factory), graph=graph, event_sink=event_sink)
    graph.audit_logger = audit

    pending = pending_store or SqlPendingMatchStore(session_factory)
    return Services(
        settings=settings,
        session_factory=session_factory,
        graph=graph,
        audit=audit,
        pending=pending,
        players=PlayerIdentityResolver(graph, pending_store=pending, audit_logger=audit, settings=settings),
        teams=TeamIdentityResolver(graph, audit_logger=audit, settings=settings),
    )


def read_jsonl(path: Path) -> List[Dict[str, Any]]:
    if not path.exists():
        raise SystemExit(f"Input file not found: {path}")
    records = []
    with path.open("r", encoding="utf-8") as f:
        for lineno, line in enumerate(f, start=1):
            line = line.strip()
            if not line or line.startswith("#"):
                continue
            try:
                records.append(json.loads(line))
            except json.JSONDecodeError as e:
                raise SystemExit(f"Invalid JSON on line {lineno} of {path}: {e}")
    return records


def _parse_seasons(raw: Optional[str]) -> Optional[List[int]]:
    if not raw:
        return None
    try:
        return [int(s) for s in raw.split(",") if s.strip()]
    except ValueError:
        raise SystemExit(f"Invalid --seasons value: {raw}")


def _print_json(data: Any) -> None:
    print(json.dumps(data, indent=2, default=str))


def _services(args: argparse.Namespace) -> Services:
    settings = load_settings()
    if args.db:
        settings.db_path = Path(args.db)
    get_logger(level=settings.log_level, log_dir=settings.log_dir)
    return build_services(settings)


def cmd_init_db(args: argparse.Namespace) -> None:
    services = _services(args)
    print(f"Database ready: {services.settings.db_path}")


def cmd_validate(args: argparse.Namespace) -> None:
    records = read_jsonl(Path(args.input))
    invalid = 0
    for index, record in enumerate(records, start=1):
        errors = validate_record(record)
        if errors:
            invalid += 1
            print(f"Record {index} invalid:")
            for e in errors:
                print(f" - {e}")
    if invalid:
        raise SystemExit(2)
    print(f"Valid ({len(records)} records)")


def cmd_resolve_players(args: argparse.Namespace) -> None:
    services = _services(args)
    records = read_jsonl(Path(args.input))
    context = ResolutionContext(
        seasons=_parse_seasons(args.seasons),
        min_confidence=args.min_confidence if args.min_confidence is not None else services.settings.min_confidence,
        auto_approve=not args.no_auto_approve,
        skip_existing=args.skip_existing,
        dry_run=args.dry_run,
        performed_by=args.by,
    )
    result = services.players.resolve_identities(records, context)
    _print_json(result.summary())
    get_logger().log_metrics_summary()


def cmd_resolve_teams(args: argparse.Namespace) -> None:
    services = _services(args)
    records = read_jsonl(Path(args.input))
    result = services.teams.resolve_team_identities(
        records,
        league_id=args.league,
        seasons=_parse_seasons(args.seasons),
        auto_resolve=not args.no_auto_resolve,
    )
    _print_json(result.summary())


def cmd_pending_list(args: argparse.Namespace) -> None:
    services = _services(args)
    matches = services.players.list_pending(status=args.status, league_id=args.league)
    if not matches:
        print("No pending matches.")
        return
    for match in matches:
        print(
            f"{match.id}  {match.confidence:.3f}  {match.action}  [{match.status}]  "
            f"{match.record_a.name} ({match.record_a.season}) <-> "
            f"{match.record_b.name} ({match.record_b.season})"
        )


def cmd_pending_approve(args: argparse.Namespace) -> None:
    services = _services(args)
    identity = services.players.approve_match(args.match_id, performed_by=args.by)
    print(f"Approved: {args.match_id} -> {identity.id}")


def cmd_pending_reject(args: argparse.Namespace) -> None:
    services = _services(args)
    services.players.reject_match(args.match_id, performed_by=args.by, reason=args.reason)
    print(f"Rejected: {args.match_id}")


def cmd_merge(args: argparse.Namespace) -> None:
    services = _services(args)
    primary = services.graph.merge(args.primary, args.secondary, reason=args.reason, performed_by=args.by)
    print(f"Merged {args.secondary} into {primary.id}")


def cmd_split(args: argparse.Namespace) -> None:
    services = _services(args)
    split = services.graph.split(args.identity, args.mapping_ids, reason=args.reason, performed_by=args.by)
    print(f"Split {len(args.mapping_ids)} mapping(s) into {split.id}")


def cmd_delete(args: argparse.Namespace) -> None:
    services = _services(args)
    services.graph.delete(args.identity, reason=args.reason, performed_by=args.by)
    print(f"Deleted {args.identity}")


def cmd_rollback(args: argparse.Namespace) -> None:
    services = _services(args)
    entry = services.audit.rollback(args.entry_id, performed_by=args.by, reason=args.reason)
    print(f"Rolled back {args.entry_id}" + (f" (entry {entry.id})" if entry else ""))


def cmd_audit_trail(args: argparse.Namespace) -> None:
    services = _services(args)
    entries = services.audit.get_audit_trail(args.entity_type, args.entity_id)
    _print_json([e.to_dict() for e in entries])


def cmd_audit_user(args: argparse.Namespace) -> None:
    services = _services(args)
    entries = services.audit.get_user_audit_trail(args.user, limit=args.limit)
    _print_json([e.to_dict() for e in entries])


def cmd_audit_league(args: argparse.Namespace) -> None:
    services = _services(args)
    entries = services.audit.get_league_audit_trail(args.league, limit=args.limit)
    _print_json([e.to_dict() for e in entries])


def cmd_audit_stats(args: argparse.Namespace) -> None:
    services = _services(args)
    stats = services.audit.get_audit_statistics(entity_type=args.entity_type, user=args.user, days=args.days)
    _print_json(stats.to_dict())


def cmd_lookup(args: argparse.Namespace) -> None:
    services = _services(args)
    scope = args.league if args.entity_type == TEAM else ""
    identity = services.graph.find_identity_for(args.entity_type, args.external_id, args.season, scope=scope)
    if identity is None:
        print("Not mapped.")
        raise SystemExit(1)
    _print_json(services.graph.snapshot(identity.id))


def cmd_cleanup(args: argparse.Namespace) -> None:
    services = _services(args)
    before, after = cleanup_expired_matches(services.pending)
    print(f"Pending matches: {before} -> {after}")


def _add_actor(parser: argparse.ArgumentParser, reason: bool = True) -> None:
    parser.add_argument("--by", default="cli", help="Who performs the change (default: cli)")
    if reason:
        parser.add_argument("--reason", help="Reason recorded in the audit trail")


def main(argv: Optional[List[str]] = None):
    parser = argparse.ArgumentParser(prog="seasonlink", description="SeasonLink identity resolution CLI")
    parser.add_argument("--version", action="store_true", help="Show version")
    parser.add_argument("--db", help="SQLite database path (default: $SEASONLINK_DB_PATH or data/identity.db)")

    subparsers = parser.add_subparsers(dest="command")

    init = subparsers.add_parser("init-db", help="Create the identity database")
    init.set_defaults(func=cmd_init_db)

    val = subparsers.add_parser("validate", help="Validate a JSONL file of season records")
    val.add_argument("--input", required=True, help="Path to JSONL records")
    val.set_defaults(func=cmd_validate)

    rp = subparsers.add_parser("resolve-players", help="Resolve player records across seasons")
    rp.add_argument("--input", required=True, help="Path to JSONL player records")
    rp.add_argument("--seasons", help="Comma-separated seasons to include")
    rp.add_argument("--min-confidence", type=float, help="Drop pairs below this confidence")
    rp.add_argument("--no-auto-approve", action="store_true", help="Queue every match for review")
    rp.add_argument("--skip-existing", action="store_true", help="Ignore records that are already mapped")
    rp.add_argument("--dry-run", action="store_true", help="Score and classify without writing")
    rp.add_argument("--by", default="system", help="Performer recorded for auto-applied matches")
    rp.set_defaults(func=cmd_resolve_players)

    rt = subparsers.add_parser("resolve-teams", help="Resolve a league's teams across seasons")
    rt.add_argument("--input", required=True, help="Path to JSONL team records")
    rt.add_argument("--league", required=True, help="League id the team ids belong to")
    rt.add_argument("--seasons", help="Comma-separated seasons to include")
    rt.add_argument("--no-auto-resolve", action="store_true", help="Skip team id change detection")
    rt.set_defaults(func=cmd_resolve_teams)

    pend = subparsers.add_parser("pending", help="Review queue")
    pend_sub = pend.add_subparsers(dest="pending_command", required=True)
    pl = pend_sub.add_parser("list", help="List queued matches")
    pl.add_argument("--status", choices=["pending", "approved", "rejected"], help="Filter by status")
    pl.add_argument("--league", help="Filter by league id")
    pl.set_defaults(func=cmd_pending_list)
    pa = pend_sub.add_parser("approve", help="Apply a queued match")
    pa.add_argument("match_id")
    _add_actor(pa, reason=False)
    pa.set_defaults(func=cmd_pending_approve)
    pr = pend_sub.add_parser("reject", help="Reject a queued match")
    pr.add_argument("match_id")
    _add_actor(pr)
    pr.set_defaults(func=cmd_pending_reject)

    mrg = subparsers.add_parser("merge", help="Merge secondary identity into primary")
    mrg.add_argument("primary")
    mrg.add_argument("secondary")
    _add_actor(mrg)
    mrg.set_defaults(func=cmd_merge)

    spl = subparsers.add_parser("split", help="Move mappings onto a new identity")
    spl.add_argument("identity")
    spl.add_argument("mapping_ids", nargs="+")
    _add_actor(spl)
    spl.set_defaults(func=cmd_split)

    dlt = subparsers.add_parser("delete", help="Delete an identity and its mappings")
    dlt.add_argument("identity")
    _add_actor(dlt)
    dlt.set_defaults(func=cmd_delete)

    rb = subparsers.add_parser("rollback", help="Undo an audited change")
    rb.add_argument("entry_id")
    _add_actor(rb)
    rb.set_defaults(func=cmd_rollback)

    aud = subparsers.add_parser("audit", help="Query the audit trail")
    aud_sub = aud.add_subparsers(dest="audit_command", required=True)
    at = aud_sub.add_parser("trail", help="Entries for one entity")
    at.add_argument("--entity-type", required=True, choices=[PLAYER, TEAM])
    at.add_argument("--entity-id", required=True)
    at.set_defaults(func=cmd_audit_trail)
    au = aud_sub.add_parser("user", help="Entries by one performer")
    au.add_argument("user")
    au.add_argument("--limit", type=int, default=100)
    au.set_defaults(func=cmd_audit_user)
    al = aud_sub.add_parser("league", help="Entries for a league's team identities")
    al.add_argument("league")
    al.add_argument("--limit", type=int, default=100)
    al.set_defaults(func=cmd_audit_league)
    ast = aud_sub.add_parser("stats", help="Aggregate audit statistics")
    ast.add_argument("--entity-type", choices=[PLAYER, TEAM])
    ast.add_argument("--user")
    ast.add_argument("--days", type=int, default=30)
    ast.set_defaults(func=cmd_audit_stats)

    lk = subparsers.add_parser("lookup", help="Identity for an external id and season")
    lk.add_argument("--entity-type", default=PLAYER, choices=[PLAYER, TEAM])
    lk.add_argument("--external-id", required=True)
    lk.add_argument("--season", type=int, required=True)
    lk.add_argument("--league", default="", help="League id (teams only)")
    lk.set_defaults(func=cmd_lookup)

    cln = subparsers.add_parser("cleanup", help="Expire stale review-queue items")
    cln.set_defaults(func=cmd_cleanup)

    args = parser.parse_args(argv)

    if args.version:
        print(__version__)
        return

    if hasattr(args, "func"):
        try:
            args.func(args)
        except (IdentityError, RetryError) as e:
            raise SystemExit(f"Error: {e}")
        return

    parser.print_help()


if __name__ == "__main__":
    main()
