"""
Scoring Logic for Entity Resolution (v1).

Responsibilities:
- Combine named confidence factors into one score in [0, 1].
- Map a score onto an action band.
- Emit a qualitative explanation (strengths, weaknesses, suggestions).
- Compute the position and statistics factors from raw attributes.

Non-Responsibilities:
- No database access.
- No candidate selection.
- No name similarity computation (see features).

Invariant:
Given identical inputs, this module must always return
the same score and explanation.
"""

from dataclasses import dataclass, field, fields
from typing import Dict, List, Optional

from seasonlink.normalize import DEFENSE_ALIASES
from seasonlink.schema import RecordStats

AUTO_APPROVE_HIGH = "auto_approve_high"
AUTO_APPROVE = "auto_approve"
MANUAL_REVIEW = "manual_review"
MANUAL_REVIEW_LOW = "manual_review_low"
SKIP = "skip"

AUTO_ACTIONS = (AUTO_APPROVE_HIGH, AUTO_APPROVE)
REVIEW_ACTIONS = (MANUAL_REVIEW, MANUAL_REVIEW_LOW)

# (lower bound, action), checked top-down; lower bounds are inclusive
ACTION_BANDS = [
    (0.95, AUTO_APPROVE_HIGH),
    (0.85, AUTO_APPROVE),
    (0.70, MANUAL_REVIEW),
    (0.50, MANUAL_REVIEW_LOW),
]

LEVEL_BANDS = [
    (0.9, "Very High"),
    (0.75, "High"),
    (0.6, "Medium"),
    (0.4, "Low"),
]

FLEX_POSITIONS = {"RB", "WR", "TE"}


@dataclass(frozen=True)
class ConfidenceFactors:
    name_similarity: float
    position_match: float
    team_continuity: float
    stat_similarity: float
    draft_position: Optional[float] = None
    ownership: Optional[float] = None
    seasonal_performance: Optional[float] = None

    def to_dict(self) -> Dict[str, Optional[float]]:
        return {f.name: getattr(self, f.name) for f in fields(self)}


@dataclass
class ScoringWeights:
    name_similarity: float = 0.35
    position_match: float = 0.15
    team_continuity: float = 0.15
    stat_similarity: float = 0.20
    draft_position: float = 0.10
    ownership: float = 0.05
    seasonal_performance: float = 0.10

    @classmethod
    def from_overrides(cls, overrides: Optional[Dict[str, float]]) -> "ScoringWeights":
        """Apply {factor: weight} overrides, ignoring unknown factor names."""
        weights = cls()
        known = {f.name for f in fields(cls)}
        for factor, weight in (overrides or {}).items():
            if factor in known:
                setattr(weights, factor, float(weight))
        return weights


@dataclass
class ConfidenceExplanation:
    score: float
    level: str
    action: str
    strengths: List[str] = field(default_factory=list)
    weaknesses: List[str] = field(default_factory=list)
    suggestions: List[str] = field(default_factory=list)


def determine_action(score: float) -> str:
    for bound, action in ACTION_BANDS:
        if score >= bound:
            return action
    return SKIP


def confidence_level(score: float) -> str:
    for bound, level in LEVEL_BANDS:
        if score >= bound:
            return level
    return "Very Low"


def _is_defense(position: str) -> bool:
    return position in DEFENSE_ALIASES or "D/ST" in position or "DST" in position


def position_compatibility(p1: Optional[str], p2: Optional[str]) -> float:
    """
    Positional compatibility of two roster slots.

    Exact match 1.0, FLEX against RB/WR/TE 0.8, two different flex-eligible
    positions 0.3, defense aliases (D/ST, DST, DEF) 1.0, anything else 0.
    """
    if not p1 or not p2:
        return 0.0

    a = p1.strip().upper()
    b = p2.strip().upper()
    if a == b:
        return 1.0
    if (a == "FLEX" and b in FLEX_POSITIONS) or (b == "FLEX" and a in FLEX_POSITIONS):
        return 0.8
    if a in FLEX_POSITIONS and b in FLEX_POSITIONS:
        return 0.3
    if _is_defense(a) and _is_defense(b):
        return 1.0
    return 0.0


def statistical_similarity(s1: Optional[RecordStats], s2: Optional[RecordStats]) -> float:
    """
    Compare two season stat lines.

    Both without games -> 1.0 (nothing contradicts); exactly one without
    games -> 0. Otherwise 0.7 * average-points similarity (relative to the
    mean of the two averages) + 0.3 * games-played similarity.
    """
    if s1 is None or s2 is None:
        return 0.0
    if s1.games == 0 and s2.games == 0:
        return 1.0
    if s1.games == 0 or s2.games == 0:
        return 0.0

    avg_mean = (s1.average_points + s2.average_points) / 2
    if avg_mean == 0:
        return 0.0
    avg_similarity = max(0.0, 1 - abs(s1.average_points - s2.average_points) / avg_mean)

    games_similarity = 1 - abs(s1.games - s2.games) / max(s1.games, s2.games)
    return avg_similarity * 0.7 + games_similarity * 0.3


class ConfidenceScorer:
    """Weighted, renormalized combination of confidence factors."""

    def __init__(self, weights: Optional[ScoringWeights] = None):
        self.weights = weights or ScoringWeights()

    def base_score(self, factors: ConfidenceFactors) -> float:
        """Weighted sum of the present factors divided by the weight used."""
        total = 0.0
        weight_used = 0.0
        for f in fields(ConfidenceFactors):
            value = getattr(factors, f.name)
            if value is None:
                continue
            weight = getattr(self.weights, f.name)
            total += value * weight
            weight_used += weight
        return total / weight_used if weight_used > 0 else 0.0

    def score(self, factors: ConfidenceFactors) -> float:
        """
        Combine factors into a confidence score.

        Starts from base_score, then adjusts in order: near-identical name
        +0.1, position mismatch x0.8, strong name and stats +0.05.
        """
        score = self.base_score(factors)

        if factors.name_similarity >= 0.95:
            score = min(score + 0.1, 1.0)
        if factors.position_match == 0:
            score *= 0.8
        if factors.name_similarity >= 0.8 and factors.stat_similarity >= 0.8:
            score = min(score + 0.05, 1.0)

        return min(max(score, 0.0), 1.0)

    def determine_action(self, score: float) -> str:
        return determine_action(score)

    def explain(self, factors: ConfidenceFactors, score: float) -> ConfidenceExplanation:
        """Qualitative reading of a score for the review queue."""
        explanation = ConfidenceExplanation(
            score=score,
            level=confidence_level(score),
            action=determine_action(score),
        )

        self._explain_name(factors.name_similarity, explanation)
        self._explain_position(factors.position_match, explanation)
        self._explain_team(factors.team_continuity, explanation)
        self._explain_stats(factors.stat_similarity, explanation)
        if factors.draft_position is not None:
            self._explain_draft(factors.draft_position, explanation)
        if factors.ownership is not None:
            self._explain_ownership(factors.ownership, explanation)
        self._overall(score, explanation)
        return explanation

    def _explain_name(self, value: float, e: ConfidenceExplanation) -> None:
        if value >= 0.95:
            e.strengths.append("Names are virtually identical")
        elif value >= 0.85:
            e.strengths.append("Names are very similar")
        elif value >= 0.70:
            e.strengths.append("Names have good similarity")
        elif value >= 0.50:
            e.weaknesses.append("Names have moderate differences")
            e.suggestions.append("Check for nickname variations or name changes")
        else:
            e.weaknesses.append("Names are significantly different")
            e.suggestions.append("Verify this is the same player despite name differences")
            e.suggestions.append("Check for data entry errors or official name changes")

    def _explain_position(self, value: float, e: ConfidenceExplanation) -> None:
        if value == 1.0:
            e.strengths.append("Exact position match")
        elif value >= 0.5:
            e.strengths.append("Compatible positions (e.g., FLEX eligible)")
        elif value > 0:
            e.weaknesses.append("Positions are somewhat different")
            e.suggestions.append("Verify if player changed positions")
        else:
            e.weaknesses.append("Completely different positions")
            e.suggestions.append("Check if this is actually the same player")
            e.suggestions.append("Investigate potential position changes or data errors")

    def _explain_team(self, value: float, e: ConfidenceExplanation) -> None:
        if value >= 0.8:
            e.strengths.append("Strong NFL team continuity")
        elif value >= 0.5:
            e.strengths.append("Some team continuity")
        elif value >= 0.3:
            e.weaknesses.append("Limited team continuity")
            e.suggestions.append("Player may have been traded or changed teams")
        else:
            e.weaknesses.append("No team continuity between seasons")
            e.suggestions.append("Verify player team history and trades")

    def _explain_stats(self, value: float, e: ConfidenceExplanation) -> None:
        if value >= 0.85:
            e.strengths.append("Very consistent statistical performance")
        elif value >= 0.70:
            e.strengths.append("Similar statistical profile")
        elif value >= 0.50:
            e.weaknesses.append("Moderate statistical variance")
            e.suggestions.append("Check for injuries or role changes")
        elif value >= 0.30:
            e.weaknesses.append("Significant statistical differences")
            e.suggestions.append("Review if player had injury or major role change")
            e.suggestions.append("Verify playing time and usage differences")
        else:
            e.weaknesses.append("Completely different statistical profiles")
            e.suggestions.append("May indicate different players or major career changes")

    def _explain_draft(self, value: float, e: ConfidenceExplanation) -> None:
        if value >= 0.8:
            e.strengths.append("Consistent draft position across seasons")
        elif value >= 0.5:
            e.weaknesses.append("Significant draft position variance")
            e.suggestions.append("Player value may have changed due to performance")
        else:
            e.weaknesses.append("Very different draft positions")
            e.suggestions.append("Check for breakout/decline seasons affecting draft stock")

    def _explain_ownership(self, value: float, e: ConfidenceExplanation) -> None:
        if value >= 0.8:
            e.strengths.append("Similar ownership percentages")
        elif value < 0.3:
            e.weaknesses.append("Very different ownership levels")
            e.suggestions.append("Player popularity may have changed significantly")

    def _overall(self, score: float, e: ConfidenceExplanation) -> None:
        if score >= 0.95:
            e.suggestions.append("Highly confident match - safe to auto-approve")
        elif score >= 0.85:
            e.suggestions.append("Strong match - recommend automatic approval")
        elif score >= 0.70:
            e.suggestions.append("Good match - manual review recommended for verification")
        elif score >= 0.50:
            e.suggestions.append("Uncertain match - requires careful manual review")
            e.suggestions.append("Consider additional data sources for verification")
        else:
            e.suggestions.append("Low confidence - likely different players")
            e.suggestions.append("Only merge if you have strong external evidence")

        if len(e.weaknesses) >= 3:
            e.suggestions.append("Consider checking data quality and completeness")
