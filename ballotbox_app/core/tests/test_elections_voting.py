from __future__ import annotations

import datetime
import threading
from unittest.mock import patch

from django.db.models import Sum
from django.test import SimpleTestCase, TestCase
from django.utils import timezone

from core.elections_errors import (
    ElectionConflictError,
    ElectionNotFoundError,
    ElectionNotOpenError,
    ElectionValidationError,
)
from core.elections_services import ElectionService, election_service
from core.elections_store import VOTE_VOTER_CONSTRAINT, DjangoElectionStore
from core.models import Candidate, Vote, Voter
from core.tests.fakes import InMemoryElectionStore


class VoteCastingTests(TestCase):
    def setUp(self) -> None:
        self.service = election_service()
        self.election = self.service.create_election(title="Committee")
        self.service.set_election_status(election_id=self.election.id, status="open")
        self.alice = self.service.add_candidate(election_id=self.election.id, name="Alice")
        self.bob = self.service.add_candidate(election_id=self.election.id, name="Bob")
        self.voter = self.service.register_voter(election_id=self.election.id, name="Voter One", age=30)

    def test_vote_is_recorded_and_tallied(self) -> None:
        vote = self.service.cast_vote(election_id=self.election.id, voter_id=self.voter.id, candidate_id=self.alice.id)

        self.assertEqual(vote.candidate_id, self.alice.id)
        alice = Candidate.objects.get(pk=self.alice.id)
        self.assertEqual(alice.votes, 1)
        self.assertIsNotNone(alice.last_vote_timestamp)
        self.assertTrue(Vote.objects.filter(election_id=self.election.id, voter_id=self.voter.id).exists())

    def test_second_vote_is_a_conflict_and_changes_nothing(self) -> None:
        self.service.cast_vote(election_id=self.election.id, voter_id=self.voter.id, candidate_id=self.alice.id)

        with self.assertRaises(ElectionConflictError) as ctx:
            self.service.cast_vote(election_id=self.election.id, voter_id=self.voter.id, candidate_id=self.bob.id)

        self.assertEqual(ctx.exception.constraint, VOTE_VOTER_CONSTRAINT)
        self.assertEqual(Candidate.objects.get(pk=self.alice.id).votes, 1)
        self.assertEqual(Candidate.objects.get(pk=self.bob.id).votes, 0)
        self.assertEqual(Vote.objects.filter(election_id=self.election.id).count(), 1)

    def test_constraint_rejects_a_duplicate_that_slipped_past_the_precheck(self) -> None:
        self.service.cast_vote(election_id=self.election.id, voter_id=self.voter.id, candidate_id=self.alice.id)

        # Simulates the loser of two concurrent submissions: both saw "not voted yet".
        with (
            patch.object(DjangoElectionStore, "has_voted", return_value=False),
            self.assertLogs("core.elections_voting", level="INFO") as logs,
            self.assertRaises(ElectionConflictError),
        ):
            self.service.cast_vote(election_id=self.election.id, voter_id=self.voter.id, candidate_id=self.bob.id)

        self.assertTrue(any("reason=constraint" in line for line in logs.output))
        self.assertEqual(Candidate.objects.get(pk=self.bob.id).votes, 0)
        self.assertEqual(Vote.objects.filter(election_id=self.election.id).count(), 1)

    def test_candidate_from_another_election_is_rejected(self) -> None:
        other = self.service.create_election(title="Other")
        stranger = self.service.add_candidate(election_id=other.id, name="Stranger")

        with self.assertRaises(ElectionValidationError):
            self.service.cast_vote(election_id=self.election.id, voter_id=self.voter.id, candidate_id=stranger.id)

        self.assertFalse(Vote.objects.exists())

    def test_unknown_candidate_is_not_found(self) -> None:
        with self.assertRaises(ElectionNotFoundError):
            self.service.cast_vote(election_id=self.election.id, voter_id=self.voter.id, candidate_id=999_999)

    def test_voter_from_another_election_is_rejected(self) -> None:
        other = self.service.create_election(title="Other")
        self.service.set_election_status(election_id=other.id, status="open")
        outsider = self.service.register_voter(election_id=other.id, name="Outsider", age=40)

        with self.assertRaises(ElectionValidationError):
            self.service.cast_vote(election_id=self.election.id, voter_id=outsider.id, candidate_id=self.alice.id)

        with self.assertRaises(ElectionValidationError):
            self.service.cast_vote(election_id=self.election.id, voter_id=999_999, candidate_id=self.alice.id)

    def test_votes_require_an_open_election(self) -> None:
        self.service.set_election_status(election_id=self.election.id, status="closed")

        with self.assertRaises(ElectionNotOpenError):
            self.service.cast_vote(election_id=self.election.id, voter_id=self.voter.id, candidate_id=self.alice.id)

        self.service.set_election_status(election_id=self.election.id, status="draft")

        with self.assertRaises(ElectionNotOpenError):
            self.service.cast_vote(election_id=self.election.id, voter_id=self.voter.id, candidate_id=self.alice.id)

    def test_votes_after_the_end_date_are_rejected(self) -> None:
        now = timezone.now()
        self.service.update_election(
            election_id=self.election.id,
            start_date=now - datetime.timedelta(hours=2),
            end_date=now - datetime.timedelta(minutes=1),
        )

        with self.assertRaises(ElectionNotOpenError):
            self.service.cast_vote(election_id=self.election.id, voter_id=self.voter.id, candidate_id=self.alice.id)

        self.assertEqual(Candidate.objects.get(pk=self.alice.id).votes, 0)

    def test_missing_election_is_not_found(self) -> None:
        with self.assertRaises(ElectionNotFoundError):
            self.service.cast_vote(election_id=999_999, voter_id=self.voter.id, candidate_id=self.alice.id)

    def test_tallies_match_votes_plus_fake_voters(self) -> None:
        for idx in range(3):
            voter = self.service.register_voter(election_id=self.election.id, name=f"Extra {idx}", age=25)
            self.service.cast_vote(election_id=self.election.id, voter_id=voter.id, candidate_id=self.bob.id)
        self.service.cast_vote(election_id=self.election.id, voter_id=self.voter.id, candidate_id=self.alice.id)
        self.service.inject_fake_votes(election_id=self.election.id, candidate_id=self.alice.id, count=5)

        tally = Candidate.objects.filter(election_id=self.election.id).aggregate(total=Sum("votes"))["total"]
        votes = Vote.objects.filter(election_id=self.election.id).count()
        fakes = Voter.objects.filter(election_id=self.election.id, is_fake=True).count()

        self.assertEqual(tally, 9)
        self.assertEqual(tally, votes + fakes)


class ConcurrentVoteTests(SimpleTestCase):
    def test_only_one_of_many_simultaneous_votes_counts(self) -> None:
        store = InMemoryElectionStore()
        service = ElectionService(store=store)
        election = service.create_election(title="Race")
        service.set_election_status(election_id=election.id, status="open")
        candidate = service.add_candidate(election_id=election.id, name="Only")
        voter = service.register_voter(election_id=election.id, name="Eager", age=22)

        barrier = threading.Barrier(8)
        outcomes: list[str] = []
        outcomes_lock = threading.Lock()

        def _cast() -> None:
            barrier.wait()
            try:
                service.cast_vote(election_id=election.id, voter_id=voter.id, candidate_id=candidate.id)
                outcome = "ok"
            except ElectionConflictError:
                outcome = "conflict"
            with outcomes_lock:
                outcomes.append(outcome)

        threads = [threading.Thread(target=_cast) for _ in range(8)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        self.assertEqual(outcomes.count("ok"), 1)
        self.assertEqual(outcomes.count("conflict"), 7)
        self.assertEqual(store.count_votes(election_id=election.id), 1)
        self.assertEqual(store.get_candidate(candidate_id=candidate.id).votes, 1)
