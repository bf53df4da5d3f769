"""
Versioned metadata records attached to master identities.

Player identities carry alternate names, positions and pro teams. Team
identities carry alternate names and an ordered, non-overlapping owner
history. Both serialise to plain dicts for the JSON column and refuse
schema versions they do not know.
"""

from dataclasses import dataclass, field, replace
from typing import Any, Dict, Iterable, List, Optional, Tuple, Union

from .errors import ValidationError
from .schema import PLAYER, TEAM

SCHEMA_VERSION = 1


def _union(*sequences: Iterable[str]) -> List[str]:
    seen = []
    for seq in sequences:
        for item in seq:
            if item and item not in seen:
                seen.append(item)
    return seen


def _check_version(data: Dict[str, Any], kind: str) -> None:
    version = data.get("schema_version", SCHEMA_VERSION)
    if version != SCHEMA_VERSION:
        raise ValidationError(f"Unsupported {kind} metadata schema version: {version}")


@dataclass(frozen=True)
class OwnerSegment:
    owner: str
    start_season: int
    end_season: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "owner": self.owner,
            "start_season": self.start_season,
            "end_season": self.end_season,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "OwnerSegment":
        try:
            end = data.get("end_season")
            return cls(
                owner=str(data["owner"]),
                start_season=int(data["start_season"]),
                end_season=int(end) if end is not None else None,
            )
        except (KeyError, TypeError, ValueError) as e:
            raise ValidationError(f"Malformed owner segment {data!r}: {e}")


def build_owner_history(seasons: Iterable[Tuple[int, Optional[str]]]) -> List[OwnerSegment]:
    """
    Build a contiguous owner timeline from (season, owner_name) pairs.

    Consecutive seasons under the same owner coalesce into one segment; a
    segment is closed the season before the next distinct owner appears.
    The last segment stays open-ended.
    """
    history: List[OwnerSegment] = []
    current: Optional[OwnerSegment] = None

    for season, owner in sorted(seasons, key=lambda pair: pair[0]):
        owner = owner or "Unknown"
        if current is None:
            current = OwnerSegment(owner=owner, start_season=season)
        elif current.owner != owner:
            history.append(replace(current, end_season=season - 1))
            current = OwnerSegment(owner=owner, start_season=season)

    if current is not None:
        history.append(current)
    return history


def extend_owner_history(
    history: List[OwnerSegment], owner: Optional[str], season: int
) -> List[OwnerSegment]:
    """Append one season to a timeline, extending or closing the last segment."""
    owner = owner or "Unknown"
    if not history:
        return [OwnerSegment(owner=owner, start_season=season)]

    last = history[-1]
    if season < last.start_season:
        # out-of-order season: rebuild from the expanded season list
        pairs = []
        for seg in history:
            end = seg.end_season if seg.end_season is not None else seg.start_season
            pairs.extend((s, seg.owner) for s in range(seg.start_season, end + 1))
        pairs.append((season, owner))
        return build_owner_history(pairs)

    if last.owner == owner:
        if last.end_season is not None and season > last.end_season:
            return history[:-1] + [replace(last, end_season=None)]
        return list(history)
    return history[:-1] + [
        replace(last, end_season=season - 1),
        OwnerSegment(owner=owner, start_season=season),
    ]


def merge_owner_histories(
    first: List[OwnerSegment], second: List[OwnerSegment]
) -> List[OwnerSegment]:
    """Interleave two timelines by start season and coalesce equal-owner runs."""
    merged: List[OwnerSegment] = []
    current: Optional[OwnerSegment] = None

    for segment in sorted(first + second, key=lambda s: s.start_season):
        if current is None:
            current = segment
        elif current.owner == segment.owner:
            if segment.end_season is None or current.end_season is None:
                end = None
            else:
                end = max(current.end_season, segment.end_season)
            current = replace(current, end_season=end)
        else:
            if current.end_season is None or current.end_season >= segment.start_season:
                current = replace(current, end_season=segment.start_season - 1)
            merged.append(current)
            current = segment

    if current is not None:
        merged.append(current)
    return merged


@dataclass
class PlayerMetadata:
    alternate_names: List[str] = field(default_factory=list)
    positions: List[str] = field(default_factory=list)
    teams: List[str] = field(default_factory=list)
    schema_version: int = SCHEMA_VERSION

    def merge(self, other: "PlayerMetadata", other_canonical_name: Optional[str] = None) -> "PlayerMetadata":
        names = [other_canonical_name] if other_canonical_name else []
        return PlayerMetadata(
            alternate_names=_union(self.alternate_names, names, other.alternate_names),
            positions=_union(self.positions, other.positions),
            teams=_union(self.teams, other.teams),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "kind": PLAYER,
            "schema_version": self.schema_version,
            "alternate_names": list(self.alternate_names),
            "positions": list(self.positions),
            "teams": list(self.teams),
        }

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "PlayerMetadata":
        data = data or {}
        _check_version(data, "player")
        return cls(
            alternate_names=list(data.get("alternate_names") or []),
            positions=list(data.get("positions") or []),
            teams=list(data.get("teams") or []),
        )


@dataclass
class TeamMetadata:
    alternate_names: List[str] = field(default_factory=list)
    owner_history: List[OwnerSegment] = field(default_factory=list)
    schema_version: int = SCHEMA_VERSION

    def merge(self, other: "TeamMetadata", other_canonical_name: Optional[str] = None) -> "TeamMetadata":
        names = [other_canonical_name] if other_canonical_name else []
        return TeamMetadata(
            alternate_names=_union(self.alternate_names, names, other.alternate_names),
            owner_history=merge_owner_histories(self.owner_history, other.owner_history),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "kind": TEAM,
            "schema_version": self.schema_version,
            "alternate_names": list(self.alternate_names),
            "owner_history": [seg.to_dict() for seg in self.owner_history],
        }

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "TeamMetadata":
        data = data or {}
        _check_version(data, "team")
        return cls(
            alternate_names=list(data.get("alternate_names") or []),
            owner_history=[OwnerSegment.from_dict(s) for s in data.get("owner_history") or []],
        )


IdentityMetadata = Union[PlayerMetadata, TeamMetadata]


def metadata_for(entity_type: str, data: Optional[Dict[str, Any]] = None) -> IdentityMetadata:
    """Decode the metadata column for an entity type."""
    if entity_type == PLAYER:
        return PlayerMetadata.from_dict(data)
    if entity_type == TEAM:
        return TeamMetadata.from_dict(data)
    raise ValidationError(f"Unknown entity type: {entity_type}")
