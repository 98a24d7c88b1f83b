"""Entry points the HTTP layer calls into.

``ElectionService`` wires the engine components around one injected store.
Errors surface as the typed exceptions in ``core.elections_errors`` so callers
can tell "you already voted" apart from a genuine failure.
"""

from __future__ import annotations

import datetime
import logging

from django.utils import timezone

from core.elections_codes import normalize_election_code
from core.elections_errors import (
    ElectionForbiddenError,
    ElectionNotFoundError,
    ElectionValidationError,
)
from core.elections_fraud import FraudDetector, FraudReport
from core.elections_lifecycle import (
    ELECTION_TITLE_MAX_LENGTH,
    ElectionLifecycle,
    check_date_order,
    clean_datetime,
    clean_text,
)
from core.elections_results import ElectionResults, ResultsAggregator
from core.elections_runoff import RunoffFactory
from core.elections_store import (
    CandidateRecord,
    DjangoElectionStore,
    ElectionRecord,
    ElectionStore,
    ElectionSummary,
    VoteRecord,
    VoterRecord,
)
from core.elections_voting import VoteRecorder, VoterRegistry
from core.models import Candidate, Election

logger = logging.getLogger(__name__)

CANDIDATE_NAME_MAX_LENGTH: int = Candidate._meta.get_field("name").max_length

_UNSET = object()


class ElectionService:
    def __init__(self, *, store: ElectionStore) -> None:
        self.store = store
        self.lifecycle = ElectionLifecycle(store=store)
        self.voters = VoterRegistry(store=store)
        self.votes = VoteRecorder(store=store)
        self.runoffs = RunoffFactory(store=store, lifecycle=self.lifecycle)
        self.results = ResultsAggregator(store=store, lifecycle=self.lifecycle, runoffs=self.runoffs)
        self.fraud = FraudDetector(store=store)

    # Voter-facing operations

    def join_election(self, *, code: object) -> ElectionRecord:
        normalized = normalize_election_code(code)
        election = self.store.get_election_by_code(code=normalized) if normalized else None
        if election is None:
            raise ElectionNotFoundError("Invalid election code.")
        if election.status == Election.Status.draft:
            raise ElectionForbiddenError("This election has not started yet.", status=election.status)
        if election.status == Election.Status.closed:
            raise ElectionForbiddenError("This election has ended.", status=election.status)
        return election

    def register_voter(
        self,
        *,
        election_id: int,
        name: object,
        age: object,
        identifier: object = None,
    ) -> VoterRecord:
        return self.voters.register_voter(election_id=election_id, name=name, age=age, identifier=identifier)

    def list_candidates(self, *, election_id: int) -> list[CandidateRecord]:
        self.lifecycle.require_election(election_id=election_id)
        return self.store.list_candidates(election_id=election_id)

    def cast_vote(self, *, election_id: int, voter_id: int, candidate_id: int) -> VoteRecord:
        return self.votes.record_vote(election_id=election_id, voter_id=voter_id, candidate_id=candidate_id)

    def get_results(self, *, election_id: int, now: datetime.datetime | None = None) -> ElectionResults:
        """Current results. Not a pure read: may auto-close and spawn a runoff."""
        return self.results.compute_results(election_id=election_id, now=now)

    # Admin operations

    def create_election(
        self,
        *,
        title: str,
        description: str = "",
        start_date: datetime.datetime | None = None,
        end_date: datetime.datetime | None = None,
        round: int = 1,
    ) -> ElectionRecord:
        return self.lifecycle.create_election(
            title=title,
            description=description,
            start_date=start_date,
            end_date=end_date,
            round=round,
        )

    def get_election(self, *, election_id: int) -> ElectionRecord:
        return self.lifecycle.require_election(election_id=election_id)

    def list_elections(self) -> list[ElectionSummary]:
        return self.store.list_elections()

    def update_election(
        self,
        *,
        election_id: int,
        title: object = _UNSET,
        description: object = _UNSET,
        start_date: object = _UNSET,
        end_date: object = _UNSET,
    ) -> ElectionRecord:
        current = self.lifecycle.require_election(election_id=election_id)

        fields: dict[str, object] = {}
        if title is not _UNSET:
            fields["title"] = clean_text(title, label="Election title", max_length=ELECTION_TITLE_MAX_LENGTH)
        if description is not _UNSET:
            fields["description"] = str(description or "")
        if start_date is not _UNSET:
            fields["start_date"] = clean_datetime(start_date, label="Start date")
        if end_date is not _UNSET:
            fields["end_date"] = clean_datetime(end_date, label="End date")

        check_date_order(
            start_date=fields.get("start_date", current.start_date),
            end_date=fields.get("end_date", current.end_date),
        )

        updated = self.store.update_election_fields(election_id=election_id, fields=fields)
        if updated is None:
            raise ElectionNotFoundError(f"election {election_id} not found")
        logger.info("election_updated election_id=%s fields=%s", election_id, sorted(fields))
        return updated

    def delete_election(self, *, election_id: int) -> None:
        if not self.store.delete_election(election_id=election_id):
            raise ElectionNotFoundError(f"election {election_id} not found")
        logger.info("election_deleted election_id=%s", election_id)

    def set_election_status(self, *, election_id: int, status: object) -> ElectionRecord:
        return self.lifecycle.set_status(election_id=election_id, status=status)

    def regenerate_code(self, *, election_id: int) -> str:
        return self.lifecycle.regenerate_code(election_id=election_id).code

    def add_candidate(self, *, election_id: int, name: object) -> CandidateRecord:
        election = self.lifecycle.require_election(election_id=election_id)
        if election.status == Election.Status.closed:
            raise ElectionValidationError("Candidates cannot be added to a closed election.")

        clean_name = clean_text(name, label="Candidate name", max_length=CANDIDATE_NAME_MAX_LENGTH)

        candidate = self.store.add_candidate(election_id=election_id, name=clean_name)
        logger.info(
            "candidate_added election_id=%s candidate_id=%s position=%s",
            election_id,
            candidate.id,
            candidate.position,
        )
        return candidate

    def delete_candidate(self, *, candidate_id: int) -> None:
        if not self.store.delete_candidate(candidate_id=candidate_id):
            raise ElectionNotFoundError(f"candidate {candidate_id} not found")
        logger.info("candidate_deleted candidate_id=%s", candidate_id)

    def inject_fake_votes(self, *, election_id: int, candidate_id: int, count: object) -> CandidateRecord:
        return self.fraud.inject_fake_votes(election_id=election_id, candidate_id=candidate_id, count=count)

    def detect_fraud(self, *, election_id: int) -> FraudReport:
        return self.fraud.detect_fraud(election_id=election_id)

    def close_expired_elections(self, *, now: datetime.datetime | None = None) -> list[ElectionResults]:
        """Run the read-path auto-close (and runoff) for every expired open election."""

        now = now or timezone.now()
        closed: list[ElectionResults] = []
        for election in self.store.list_expired_open_elections(now=now):
            results = self.results.compute_results(election_id=election.id, now=now)
            if results.auto_closed:
                closed.append(results)
        return closed


def election_service() -> ElectionService:
    return ElectionService(store=DjangoElectionStore())
