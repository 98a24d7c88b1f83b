from __future__ import annotations

import datetime
import logging

from django.utils import timezone

from core.elections_errors import (
    ElectionConflictError,
    ElectionNotFoundError,
    ElectionNotOpenError,
    ElectionValidationError,
)
from core.elections_lifecycle import clean_text, is_expired
from core.elections_store import VOTE_VOTER_CONSTRAINT, ElectionRecord, ElectionStore, VoteRecord, VoterRecord
from core.models import Election, Voter

logger = logging.getLogger(__name__)

MINIMUM_VOTER_AGE = 18
MAXIMUM_VOTER_AGE = 150
VOTER_NAME_MAX_LENGTH: int = Voter._meta.get_field("name").max_length
VOTER_IDENTIFIER_MAX_LENGTH: int = Voter._meta.get_field("identifier").max_length


def parse_age(raw: object) -> int:
    # bool is an int subclass; "age": true is not an age. JSON clients may send 30.0.
    if isinstance(raw, bool):
        raise ElectionValidationError("Age must be a whole number.")
    if isinstance(raw, float) and raw.is_integer():
        raw = int(raw)
    if not isinstance(raw, int):
        raise ElectionValidationError("Age must be a whole number.")
    if raw < MINIMUM_VOTER_AGE:
        raise ElectionValidationError(f"You must be at least {MINIMUM_VOTER_AGE} years old to vote.")
    if raw > MAXIMUM_VOTER_AGE:
        raise ElectionValidationError(f"Age must be at most {MAXIMUM_VOTER_AGE}.")
    return raw


def _require_accepting_votes(*, election: ElectionRecord | None, election_id: int, now: datetime.datetime) -> ElectionRecord:
    if election is None:
        raise ElectionNotFoundError(f"election {election_id} not found")
    if election.status != Election.Status.open:
        raise ElectionNotOpenError("This election is not open for voting.")
    if is_expired(election=election, now=now):
        raise ElectionNotOpenError("This election has ended.")
    return election


class VoterRegistry:
    def __init__(self, *, store: ElectionStore) -> None:
        self.store = store

    def register_voter(
        self,
        *,
        election_id: int,
        name: object,
        age: object,
        identifier: object = None,
        now: datetime.datetime | None = None,
    ) -> VoterRecord:
        now = now or timezone.now()
        _require_accepting_votes(
            election=self.store.get_election(election_id=election_id),
            election_id=election_id,
            now=now,
        )

        clean_name = clean_text(name, label="Name", max_length=VOTER_NAME_MAX_LENGTH)
        clean_age = parse_age(age)

        clean_identifier = str(identifier).strip() if identifier is not None else ""
        if len(clean_identifier) > VOTER_IDENTIFIER_MAX_LENGTH:
            raise ElectionValidationError(f"Identifier must be at most {VOTER_IDENTIFIER_MAX_LENGTH} characters.")

        voter = self.store.add_voter(
            election_id=election_id,
            name=clean_name,
            age=clean_age,
            identifier=clean_identifier or None,
        )
        logger.info("voter_registered election_id=%s voter_id=%s", election_id, voter.id)
        return voter


class VoteRecorder:
    """Records at most one vote per voter per election.

    The ``has_voted`` check only exists to fail fast with a friendly message.
    Correctness comes from the store's unique constraint on (election, voter):
    two concurrent submissions can both pass the check, and exactly one insert
    wins.
    """

    def __init__(self, *, store: ElectionStore) -> None:
        self.store = store

    def record_vote(
        self,
        *,
        election_id: int,
        voter_id: int,
        candidate_id: int,
        now: datetime.datetime | None = None,
    ) -> VoteRecord:
        now = now or timezone.now()
        _require_accepting_votes(
            election=self.store.get_election(election_id=election_id),
            election_id=election_id,
            now=now,
        )

        candidate = self.store.get_candidate(candidate_id=candidate_id)
        if candidate is None:
            raise ElectionNotFoundError(f"candidate {candidate_id} not found")
        if candidate.election_id != election_id:
            raise ElectionValidationError("Candidate does not belong to this election.")

        voter = self.store.get_voter(voter_id=voter_id)
        if voter is None or voter.election_id != election_id:
            raise ElectionValidationError("Voter is not registered for this election.")

        if self.store.has_voted(election_id=election_id, voter_id=voter_id):
            logger.info(
                "duplicate_vote_rejected election_id=%s voter_id=%s reason=precheck",
                election_id,
                voter_id,
            )
            raise ElectionConflictError(
                "You have already voted in this election.",
                constraint=VOTE_VOTER_CONSTRAINT,
            )

        try:
            with self.store.atomic():
                vote = self.store.insert_vote(
                    election_id=election_id,
                    voter_id=voter_id,
                    candidate_id=candidate_id,
                )
                if not self.store.increment_candidate_votes(candidate_id=candidate_id, amount=1, timestamp=now):
                    # Candidate vanished after the insert; roll the vote back with it.
                    raise ElectionNotFoundError(f"candidate {candidate_id} not found")
        except ElectionConflictError:
            logger.info(
                "duplicate_vote_rejected election_id=%s voter_id=%s reason=constraint",
                election_id,
                voter_id,
            )
            raise

        logger.info(
            "vote_recorded election_id=%s voter_id=%s candidate_id=%s",
            election_id,
            voter_id,
            candidate_id,
        )
        return vote
