"""Live results: percentages, ranking, leader and tie detection.

``ResultsAggregator.compute_results`` is not a pure read. It first
applies the auto-close rule, and when that close uncovers a tie it spawns the
runoff before returning, so no reader ever sees an expired election as open.
"""

from __future__ import annotations

import datetime
import logging
from collections.abc import Iterable, Sequence
from dataclasses import dataclass, replace
from decimal import ROUND_HALF_UP, Decimal

from django.utils import timezone

from core.elections_lifecycle import ElectionLifecycle
from core.elections_runoff import RunoffFactory
from core.elections_store import CandidateRecord, ElectionRecord, ElectionStore

logger = logging.getLogger(__name__)

_ONE_DECIMAL = Decimal("0.1")
_LATEST = datetime.datetime.max.replace(tzinfo=datetime.UTC)


def format_percentage(*, votes: int, total: int) -> str:
    if total <= 0:
        return "0.0"
    value = (Decimal(votes) * 100) / Decimal(total)
    return str(value.quantize(_ONE_DECIMAL, rounding=ROUND_HALF_UP))


def rank_candidates(candidates: Iterable[CandidateRecord]) -> list[CandidateRecord]:
    """Most votes first; on equal votes whoever reached the count earlier ranks higher."""
    return sorted(
        candidates,
        key=lambda c: (-c.votes, c.last_vote_timestamp or _LATEST, c.position, c.id),
    )


@dataclass(frozen=True)
class CandidateResult:
    candidate: CandidateRecord
    percentage: str

    @property
    def id(self) -> int:
        return self.candidate.id

    @property
    def name(self) -> str:
        return self.candidate.name

    @property
    def votes(self) -> int:
        return self.candidate.votes


@dataclass(frozen=True)
class TieStatus:
    is_tie: bool
    tied_candidates: tuple[CandidateResult, ...]
    leader: CandidateResult | None


def detect_tie(ranked: Sequence[CandidateResult]) -> TieStatus:
    """Tie/leader status for candidates already in display order.

    Fewer than two candidates, or nobody with a vote, means neither a tie nor
    a leader.
    """

    if len(ranked) < 2 or ranked[0].votes == 0:
        return TieStatus(is_tie=False, tied_candidates=(), leader=None)

    max_votes = ranked[0].votes
    top = tuple(result for result in ranked if result.votes == max_votes)
    if len(top) > 1:
        return TieStatus(is_tie=True, tied_candidates=top, leader=None)
    return TieStatus(is_tie=False, tied_candidates=(), leader=ranked[0])


@dataclass(frozen=True)
class ElectionResults:
    election: ElectionRecord
    candidates: tuple[CandidateResult, ...]
    total_votes: int
    is_tie: bool
    tied_candidates: tuple[CandidateResult, ...]
    leader: CandidateResult | None
    auto_closed: bool = False
    runoff: ElectionRecord | None = None


def build_results(*, election: ElectionRecord, candidates: Iterable[CandidateRecord]) -> ElectionResults:
    ranked = rank_candidates(candidates)
    total_votes = sum(c.votes for c in ranked)
    results = tuple(
        CandidateResult(candidate=c, percentage=format_percentage(votes=c.votes, total=total_votes)) for c in ranked
    )
    tie = detect_tie(results)
    return ElectionResults(
        election=election,
        candidates=results,
        total_votes=total_votes,
        is_tie=tie.is_tie,
        tied_candidates=tie.tied_candidates,
        leader=tie.leader,
    )


class ResultsAggregator:
    def __init__(
        self,
        *,
        store: ElectionStore,
        lifecycle: ElectionLifecycle,
        runoffs: RunoffFactory,
    ) -> None:
        self.store = store
        self.lifecycle = lifecycle
        self.runoffs = runoffs

    def compute_results(self, *, election_id: int, now: datetime.datetime | None = None) -> ElectionResults:
        now = now or timezone.now()
        election, auto_closed = self.lifecycle.close_if_expired(election_id=election_id, now=now)

        results = build_results(
            election=election,
            candidates=self.store.list_candidates(election_id=election_id),
        )
        if not auto_closed:
            return results

        runoff = None
        if results.is_tie:
            runoff = self._spawn_runoff(results=results, now=now)

        return replace(results, auto_closed=True, runoff=runoff)

    def _spawn_runoff(self, *, results: ElectionResults, now: datetime.datetime) -> ElectionRecord | None:
        # Best effort: a results read must never fail because the runoff could not be created.
        try:
            return self.runoffs.create_runoff(
                original=results.election,
                tied_candidates=[result.candidate for result in results.tied_candidates],
                now=now,
            )
        except Exception:
            logger.exception(
                "runoff_creation_failed election_id=%s tied=%s",
                results.election.id,
                [result.name for result in results.tied_candidates],
            )
            return None
