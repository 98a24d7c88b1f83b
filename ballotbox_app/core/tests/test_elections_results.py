from __future__ import annotations

import datetime

from django.test import SimpleTestCase
from django.utils import timezone

from core.elections_results import format_percentage, rank_candidates
from core.elections_services import ElectionService
from core.elections_store import CandidateRecord
from core.models import Election
from core.tests.fakes import InMemoryElectionStore


class ElectionResultsTests(SimpleTestCase):
    def setUp(self) -> None:
        self.store = InMemoryElectionStore()
        self.service = ElectionService(store=self.store)
        self.election = self.service.create_election(title="Board seat")
        self.service.set_election_status(election_id=self.election.id, status="open")

    def _candidates_with_votes(self, *counts: int) -> list[CandidateRecord]:
        base = timezone.now() - datetime.timedelta(hours=1)
        created: list[CandidateRecord] = []
        for idx, count in enumerate(counts):
            candidate = self.service.add_candidate(election_id=self.election.id, name=f"Candidate {idx + 1}")
            if count:
                self.store.increment_candidate_votes(
                    candidate_id=candidate.id,
                    amount=count,
                    timestamp=base + datetime.timedelta(minutes=idx),
                )
            created.append(candidate)
        return created

    def test_two_way_tie_at_the_top(self) -> None:
        self._candidates_with_votes(5, 5, 3)

        results = self.service.get_results(election_id=self.election.id)

        self.assertTrue(results.is_tie)
        self.assertEqual(len(results.tied_candidates), 2)
        self.assertEqual({c.name for c in results.tied_candidates}, {"Candidate 1", "Candidate 2"})
        self.assertIsNone(results.leader)
        self.assertEqual(results.total_votes, 13)

    def test_clear_leader_with_rounded_percentage(self) -> None:
        self._candidates_with_votes(5, 3, 3)

        results = self.service.get_results(election_id=self.election.id)

        self.assertFalse(results.is_tie)
        self.assertEqual(results.tied_candidates, ())
        self.assertIsNotNone(results.leader)
        assert results.leader is not None
        self.assertEqual(results.leader.name, "Candidate 1")
        self.assertEqual(results.leader.percentage, "45.5")
        self.assertEqual([c.percentage for c in results.candidates], ["45.5", "27.3", "27.3"])
        self.assertEqual(results.total_votes, 11)

    def test_no_votes_means_zero_percent_and_no_tie(self) -> None:
        self._candidates_with_votes(0, 0, 0)

        results = self.service.get_results(election_id=self.election.id)

        self.assertEqual([c.percentage for c in results.candidates], ["0.0", "0.0", "0.0"])
        self.assertEqual(results.total_votes, 0)
        self.assertFalse(results.is_tie)
        self.assertIsNone(results.leader)

    def test_single_candidate_never_has_a_leader(self) -> None:
        self._candidates_with_votes(4)

        results = self.service.get_results(election_id=self.election.id)

        self.assertFalse(results.is_tie)
        self.assertIsNone(results.leader)
        self.assertEqual(results.candidates[0].percentage, "100.0")

    def test_no_candidates(self) -> None:
        results = self.service.get_results(election_id=self.election.id)

        self.assertEqual(results.candidates, ())
        self.assertEqual(results.total_votes, 0)
        self.assertFalse(results.is_tie)
        self.assertIsNone(results.leader)

    def test_equal_votes_ranked_by_who_got_there_first(self) -> None:
        first, second = self._candidates_with_votes(0, 0)
        now = timezone.now()
        self.store.increment_candidate_votes(candidate_id=first.id, amount=2, timestamp=now)
        self.store.increment_candidate_votes(
            candidate_id=second.id,
            amount=2,
            timestamp=now - datetime.timedelta(minutes=5),
        )

        results = self.service.get_results(election_id=self.election.id)

        self.assertEqual([c.id for c in results.candidates], [second.id, first.id])
        self.assertTrue(results.is_tie)

    def test_candidates_without_votes_rank_last(self) -> None:
        candidates = [
            CandidateRecord(
                id=1,
                election_id=1,
                name="Zero",
                votes=0,
                color_code="#000000",
                position=0,
                last_vote_timestamp=None,
                fraud_suspected=False,
            ),
            CandidateRecord(
                id=2,
                election_id=1,
                name="One",
                votes=1,
                color_code="#000000",
                position=1,
                last_vote_timestamp=timezone.now(),
                fraud_suspected=False,
            ),
        ]

        self.assertEqual([c.name for c in rank_candidates(candidates)], ["One", "Zero"])

    def test_results_read_leaves_open_election_without_end_date_open(self) -> None:
        self._candidates_with_votes(1, 1)

        results = self.service.get_results(election_id=self.election.id)

        self.assertEqual(results.election.status, Election.Status.open)
        self.assertFalse(results.auto_closed)
        self.assertIsNone(results.runoff)


class FormatPercentageTests(SimpleTestCase):
    def test_rounds_half_up_to_one_decimal(self) -> None:
        self.assertEqual(format_percentage(votes=5, total=11), "45.5")
        self.assertEqual(format_percentage(votes=1, total=3), "33.3")
        self.assertEqual(format_percentage(votes=2, total=3), "66.7")
        self.assertEqual(format_percentage(votes=1, total=16), "6.3")
        self.assertEqual(format_percentage(votes=3, total=3), "100.0")

    def test_zero_total(self) -> None:
        self.assertEqual(format_percentage(votes=0, total=0), "0.0")
