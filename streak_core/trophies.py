"""Trophy records minted when a competition finishes, plus trophy-case stats."""
from __future__ import annotations

from dataclasses import dataclass
from typing import Sequence

from .ranking import Placement, Standings, compute_placements
from .types import CompetitionState


@dataclass(frozen=True)
class Trophy:
    competition_id: str
    competition_name: str
    competition_type: str
    user_id: str
    placement: int
    score: float
    total_participants: int
    completed_date: str
    unit: str


def mint_trophies(
    competition: CompetitionState,
    standings: Standings,
    completed_date: str,
    placement_policy: str | None = None,
) -> tuple[Trophy, ...]:
    """One trophy per accepted participant, in final board order."""
    rows = standings.full
    placements: Sequence[Placement] = compute_placements(rows, placement_policy)  # type: ignore[arg-type]
    return tuple(
        Trophy(
            competition_id=competition.get("competition_id", ""),
            competition_name=competition.get("competition_name", ""),
            competition_type=competition.get("type", ""),
            user_id=p.user_id,
            placement=p.placement,
            score=p.score,
            total_participants=len(rows),
            completed_date=completed_date,
            unit=(competition.get("options") or {}).get("unit", "miles"),
        )
        for p in placements
    )


@dataclass(frozen=True)
class TrophyCase:
    trophies: tuple[Trophy, ...]

    @classmethod
    def for_user(cls, trophies: Sequence[Trophy], user_id: str) -> "TrophyCase":
        return cls(trophies=tuple(t for t in trophies if t.user_id == user_id))

    @property
    def gold_count(self) -> int:
        return sum(1 for t in self.trophies if t.placement == 1)

    @property
    def silver_count(self) -> int:
        return sum(1 for t in self.trophies if t.placement == 2)

    @property
    def bronze_count(self) -> int:
        return sum(1 for t in self.trophies if t.placement == 3)

    @property
    def total_competitions(self) -> int:
        return len(self.trophies)

    @property
    def win_rate(self) -> float:
        """Percentage of finished competitions won (0-100)."""
        if not self.trophies:
            return 0.0
        return self.gold_count / self.total_competitions * 100
