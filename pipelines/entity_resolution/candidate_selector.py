"""
Candidate Selection Logic.

Responsibilities:
- Derive coarse blocking keys from a record's display name.
- Group records into blocks so only plausibly related records are compared.
- Emit the unordered cross-season pairs within each block, once each.

Non-Responsibilities:
- No scoring.
- No similarity computation.
- No resolution decisions.

Invariant:
Candidate selection must never exclude a valid match.
It may include false positives but never false negatives:
every cross-season pair that shares a block is emitted.
"""

from collections import OrderedDict
from typing import Dict, Iterable, List, Set, Tuple

from seasonlink.normalize import letters_only, normalize_name, strip_suffixes
from seasonlink.schema import RawRecord

PREFIX_LENGTH = 4

CandidatePair = Tuple[RawRecord, RawRecord, str]


def blocking_keys(record: RawRecord) -> List[str]:
    """
    Blocking keys for one record.

    ``last:<surname>`` (generational suffix removed) catches nicknames and
    shortened first names; ``prefix:<first four letters>`` catches surname
    spelling changes.
    """
    cleaned = strip_suffixes(normalize_name(record.name))
    if not cleaned:
        return []

    keys = [f"last:{cleaned.split()[-1]}"]
    letters = letters_only(cleaned)
    if letters:
        keys.append(f"prefix:{letters[:PREFIX_LENGTH]}")
    return keys


def build_blocks(records: Iterable[RawRecord]) -> Dict[str, List[RawRecord]]:
    blocks: Dict[str, List[RawRecord]] = OrderedDict()
    for record in records:
        for key in blocking_keys(record):
            blocks.setdefault(key, []).append(record)
    return blocks


def candidate_pairs(blocks: Dict[str, List[RawRecord]]) -> List[CandidatePair]:
    """
    Cross-season pairs within each block, deduplicated across blocks.

    Each pair is ordered earliest season first. Same-season pairs are never
    emitted: records are assumed deduplicated within a season.
    """
    seen: Set[Tuple[Tuple[str, int], Tuple[str, int]]] = set()
    pairs: List[CandidatePair] = []

    for block_key, members in blocks.items():
        for i, first in enumerate(members):
            for second in members[i + 1:]:
                if first.season == second.season:
                    continue
                a, b = (first, second) if first.season < second.season else (second, first)
                pair_key = (a.key, b.key)
                if pair_key in seen:
                    continue
                seen.add(pair_key)
                pairs.append((a, b, block_key))

    return pairs
