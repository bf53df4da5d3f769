from dataclasses import dataclass, field, asdict
from typing import Any, Dict, List, Optional, Tuple

from .errors import ValidationError

PLAYER = "PLAYER"
TEAM = "TEAM"
ENTITY_TYPES = (PLAYER, TEAM)

REQUIRED_FIELDS = ["external_id", "season", "name"]
OPTIONAL_STR_FIELDS = [
    "position",
    "team",
    "owner_name",
    "league_id",
]
STAT_FIELDS = [
    "games",
    "total_points",
    "average_points",
    "wins",
    "losses",
    "ties",
    "standing",
]


@dataclass(frozen=True)
class RecordStats:
    games: int = 0
    total_points: float = 0.0
    average_points: float = 0.0
    wins: int = 0
    losses: int = 0
    ties: int = 0
    standing: Optional[int] = None


@dataclass(frozen=True)
class RawRecord:
    """One season-scoped snapshot of a player or team, as ingested upstream."""

    entity_type: str
    external_id: str
    season: int
    name: str
    position: Optional[str] = None
    team: Optional[str] = None
    owner_name: Optional[str] = None
    league_id: Optional[str] = None
    stats: RecordStats = field(default_factory=RecordStats)

    @property
    def key(self) -> Tuple[str, int]:
        return (self.external_id, self.season)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def _is_non_empty_str(v: Any) -> bool:
    return isinstance(v, str) and v.strip() != ""


def _is_int_like(v: Any) -> bool:
    if isinstance(v, bool):
        return False
    if isinstance(v, int):
        return True
    return isinstance(v, str) and v.strip().isdigit()


def validate_record(data: Dict[str, Any]) -> List[str]:
    """
    Returns a list of validation error messages. Empty list means valid.
    """
    errors: List[str] = []

    if not isinstance(data, dict):
        return ["Record must be an object"]

    # external ids arrive as ints from some feeds
    ext = data.get("external_id")
    if ext is None:
        errors.append("Missing required field: external_id")
    elif not (_is_non_empty_str(ext) or (isinstance(ext, int) and not isinstance(ext, bool))):
        errors.append("Field 'external_id' must be a non-empty string or integer")

    if "season" not in data or data["season"] is None:
        errors.append("Missing required field: season")
    elif not _is_int_like(data["season"]):
        errors.append("Field 'season' must be an integer")

    if "name" not in data:
        errors.append("Missing required field: name")
    elif not _is_non_empty_str(data["name"]):
        errors.append("Field 'name' must be a non-empty string")

    # Optional strings: if present, must be strings
    for f in OPTIONAL_STR_FIELDS:
        if data.get(f) is not None and not isinstance(data[f], str):
            errors.append(f"Field '{f}' must be a string if provided")

    stats = data.get("stats")
    if stats is not None:
        if not isinstance(stats, dict):
            errors.append("Field 'stats' must be an object if provided")
        else:
            for f in STAT_FIELDS:
                v = stats.get(f)
                if v is None:
                    continue
                if isinstance(v, bool) or not isinstance(v, (int, float)):
                    errors.append(f"Stat '{f}' must be a number")
                elif v < 0:
                    errors.append(f"Stat '{f}' must not be negative")

    return errors


def record_from_dict(data: Dict[str, Any], entity_type: str = PLAYER) -> RawRecord:
    """Build a RawRecord, raising ValidationError for malformed input."""
    if entity_type not in ENTITY_TYPES:
        raise ValidationError(f"Unknown entity type: {entity_type}")
    errors = validate_record(data)
    if errors:
        raise ValidationError(errors, record=data if isinstance(data, dict) else None)

    raw_stats = data.get("stats") or {}
    games = int(raw_stats.get("games", raw_stats.get("games_played", 0)) or 0)
    total = float(raw_stats.get("total_points", 0) or 0)
    average = raw_stats.get("average_points")
    if average is None:
        average = total / games if games else 0.0
    standing = raw_stats.get("standing")

    stats = RecordStats(
        games=games,
        total_points=total,
        average_points=float(average),
        wins=int(raw_stats.get("wins", 0) or 0),
        losses=int(raw_stats.get("losses", 0) or 0),
        ties=int(raw_stats.get("ties", 0) or 0),
        standing=int(standing) if standing is not None else None,
    )

    return RawRecord(
        entity_type=entity_type,
        external_id=str(data["external_id"]).strip(),
        season=int(data["season"]),
        name=data["name"].strip(),
        position=data.get("position"),
        team=data.get("team"),
        owner_name=data.get("owner_name"),
        league_id=data.get("league_id"),
        stats=stats,
    )


def record_from_attributes(attributes: Dict[str, Any]) -> RawRecord:
    """Rebuild a RawRecord from a mapping's stored attribute snapshot."""
    stats = RecordStats(**(attributes.get("stats") or {}))
    return RawRecord(
        entity_type=attributes["entity_type"],
        external_id=attributes["external_id"],
        season=int(attributes["season"]),
        name=attributes["name"],
        position=attributes.get("position"),
        team=attributes.get("team"),
        owner_name=attributes.get("owner_name"),
        league_id=attributes.get("league_id"),
        stats=stats,
    )
