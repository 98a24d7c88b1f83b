"""Ballot-stuffing demo tooling: fake-vote injection and the fraud heuristic.

The heuristic flags any candidate holding more votes than there are real
(non-fake) registered voters. It cannot tell high turnout from manipulation
and is not a security control.
"""

from __future__ import annotations

import datetime
import logging
from dataclasses import dataclass, replace

from django.conf import settings
from django.utils import timezone

from core.elections_errors import ElectionNotFoundError, ElectionValidationError
from core.elections_results import rank_candidates
from core.elections_store import CandidateRecord, ElectionStore

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class FraudReport:
    election_id: int
    real_voter_count: int
    candidates: tuple[CandidateRecord, ...]

    @property
    def flagged(self) -> tuple[CandidateRecord, ...]:
        return tuple(c for c in self.candidates if c.fraud_suspected)


class FraudDetector:
    def __init__(self, *, store: ElectionStore) -> None:
        self.store = store

    def _require_election(self, *, election_id: int) -> None:
        if self.store.get_election(election_id=election_id) is None:
            raise ElectionNotFoundError(f"election {election_id} not found")

    def detect_fraud(self, *, election_id: int) -> FraudReport:
        """Recompute ``fraud_suspected`` for every candidate and persist it."""

        self._require_election(election_id=election_id)
        real_voter_count = self.store.count_real_voters(election_id=election_id)
        candidates = rank_candidates(self.store.list_candidates(election_id=election_id))

        flags = {c.id: c.votes > real_voter_count for c in candidates}
        self.store.set_fraud_flags(flags=flags)

        report = FraudReport(
            election_id=election_id,
            real_voter_count=real_voter_count,
            candidates=tuple(replace(c, fraud_suspected=flags[c.id]) for c in candidates),
        )
        if report.flagged:
            logger.warning(
                "fraud_suspected election_id=%s real_voters=%d candidates=%s",
                election_id,
                real_voter_count,
                [c.id for c in report.flagged],
            )
        return report

    def inject_fake_votes(
        self,
        *,
        election_id: int,
        candidate_id: int,
        count: object,
        now: datetime.datetime | None = None,
    ) -> CandidateRecord:
        """Stuff ``count`` synthetic ballots for a candidate.

        Bypasses the one-vote-per-voter path: it adds ``is_fake``
        voters and bumps the tally directly, without Vote rows.
        """

        max_batch = int(settings.ELECTION_FAKE_VOTES_MAX_BATCH)
        if isinstance(count, bool) or not isinstance(count, int) or not 1 <= count <= max_batch:
            raise ElectionValidationError(f"Fake vote count must be between 1 and {max_batch}.")

        self._require_election(election_id=election_id)
        candidate = self.store.get_candidate(candidate_id=candidate_id)
        if candidate is None:
            raise ElectionNotFoundError(f"candidate {candidate_id} not found")
        if candidate.election_id != election_id:
            raise ElectionValidationError("Candidate does not belong to this election.")

        now = now or timezone.now()
        with self.store.atomic():
            self.store.add_fake_voters(election_id=election_id, count=count)
            if not self.store.increment_candidate_votes(candidate_id=candidate_id, amount=count, timestamp=now):
                raise ElectionNotFoundError(f"candidate {candidate_id} not found")

        logger.warning(
            "fake_votes_injected election_id=%s candidate_id=%s count=%d",
            election_id,
            candidate_id,
            count,
        )
        updated = self.store.get_candidate(candidate_id=candidate_id)
        if updated is None:
            raise ElectionNotFoundError(f"candidate {candidate_id} not found")
        return updated
