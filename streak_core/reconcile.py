"""Client-side view of a competition between server refreshes.

The fetched snapshot always replaces the displayed one in full; there is no
field-level merge. Optimistic flags set after a local action (flex sent,
nudges sent) are shown until the next successful fetch and then dropped.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any

from .types import STATUS_ORDER, CompetitionState

logger = logging.getLogger(__name__)


class RefreshTrigger(str, Enum):
    APPEAR = "appear"
    PULL_TO_REFRESH = "pull_to_refresh"
    AFTER_MUTATION = "after_mutation"
    BEFORE_MUTATION = "before_mutation"


@dataclass(frozen=True)
class DisplayedCompetition:
    competition: CompetitionState
    fetch_generation: int = 0
    # Optimistic, non-authoritative
    flex_sent_today: bool = False
    nudged_today: frozenset[str] = field(default_factory=frozenset)


def reconcile(
    displayed: DisplayedCompetition | None,
    fetched: CompetitionState,
    fetch_generation: int = 0,
) -> DisplayedCompetition:
    """Replace the displayed competition with the fetched one.

    A fetch older than the one already displayed (lower generation) is
    discarded so that a slow, superseded request cannot roll the view back.
    """
    if displayed is not None and fetch_generation < displayed.fetch_generation:
        logger.debug(
            f"Discarding stale fetch {fetch_generation} "
            f"(displaying {displayed.fetch_generation})"
        )
        return displayed
    if displayed is not None:
        before = _status_index(displayed.competition)
        after = _status_index(fetched)
        if after < before:
            # Server is authoritative; just make the regression visible in logs.
            logger.warning(
                f"Server status for {fetched.get('competition_id')} moved back "
                f"from {displayed.competition.get('status')} to {fetched.get('status')}"
            )
    return DisplayedCompetition(competition=fetched, fetch_generation=fetch_generation)


def mark_flex_sent(displayed: DisplayedCompetition) -> DisplayedCompetition:
    return replace(displayed, flex_sent_today=True)


def mark_nudge_sent(displayed: DisplayedCompetition, target_id: str) -> DisplayedCompetition:
    return replace(displayed, nudged_today=displayed.nudged_today | {target_id})


def _status_index(competition: Any) -> int:
    status = competition.get("status") if isinstance(competition, dict) else None
    return STATUS_ORDER.index(status) if status in STATUS_ORDER else -1
