"""Pure game rules: imposter count, role assignment, vote tally, win check."""
from __future__ import annotations

import random
from dataclasses import dataclass, field
from typing import Any, Iterable, List, Mapping, Optional, Sequence, Set, Tuple

from .models import Player, Winner

IMPOSTER_COUNT_RANGES = {
    (0, 9): 1,
    (10, 12): 2,
    (13, 99): 3,
}


def get_imposter_count(participant_count: int, override: int = 0) -> int:
    if 0 < override < participant_count:
        return override
    for (min_p, max_p), imposters in IMPOSTER_COUNT_RANGES.items():
        if min_p <= participant_count <= max_p:
            return imposters
    return 3


@dataclass
class RoleAssignment:
    imposters: Set[str] = field(default_factory=set)
    normals: Set[str] = field(default_factory=set)


def assign_roles(
    participants: Sequence[str],
    override: int = 0,
    rng: Optional[random.Random] = None,
) -> RoleAssignment:
    """Split participants into imposters and normals.

    ``random.shuffle`` is a Fisher-Yates shuffle, so every participant is
    equally likely to land in the first ``imposter_count`` slots.
    """
    rng = rng or random
    count = get_imposter_count(len(participants), override)
    shuffled = list(participants)
    rng.shuffle(shuffled)
    return RoleAssignment(imposters=set(shuffled[:count]), normals=set(shuffled[count:]))


@dataclass
class Tally:
    results: List[Tuple[str, int]]
    max_votes: int
    leaders: List[str]

    @property
    def is_tie(self) -> bool:
        return self.max_votes > 0 and len(self.leaders) > 1

    @property
    def no_elimination(self) -> bool:
        return self.max_votes == 0

    def as_payload(self) -> List[List[Any]]:
        return [[name, count] for name, count in self.results]


def tally_votes(
    votes: Mapping[str, str],
    active: Iterable[str],
    candidates: Optional[Iterable[str]] = None,
) -> Tally:
    """Count votes cast by active players for valid candidates.

    Results are sorted by count descending, then by name.
    """
    voters = set(active)
    pool = list(voters) if candidates is None else list(candidates)
    counts = {name: 0 for name in pool}
    for voter, target in votes.items():
        if voter in voters and target in counts:
            counts[target] += 1

    results = sorted(counts.items(), key=lambda item: (-item[1], item[0]))
    max_votes = results[0][1] if results else 0
    leaders = [name for name, count in results if count == max_votes] if max_votes else []
    return Tally(results=results, max_votes=max_votes, leaders=leaders)


def check_winner(active: Iterable[Player]) -> Optional[Winner]:
    imposters = 0
    normals = 0
    for p in active:
        if p.is_imposter:
            imposters += 1
        else:
            normals += 1
    if imposters == 0:
        return Winner.PEOPLE
    if normals <= 1 or imposters > normals:
        return Winner.IMPOSTERS
    return None
