from __future__ import annotations

from unittest.mock import patch

from django.test import SimpleTestCase

from core.elections_codes import (
    ELECTION_CODE_ALPHABET,
    ELECTION_CODE_LENGTH,
    ELECTION_CODE_MAX_ATTEMPTS,
    generate_election_code,
    normalize_election_code,
    write_with_unique_code,
)
from core.elections_errors import ElectionCodeExhaustedError, ElectionConflictError, ElectionNotFoundError
from core.elections_services import ElectionService
from core.elections_store import ELECTION_CODE_CONSTRAINT, VOTE_VOTER_CONSTRAINT
from core.tests.fakes import InMemoryElectionStore


class ElectionCodeGenerationTests(SimpleTestCase):
    def test_generated_codes_use_the_unambiguous_alphabet(self) -> None:
        for ambiguous in "0O1I":
            self.assertNotIn(ambiguous, ELECTION_CODE_ALPHABET)

        for _ in range(50):
            code = generate_election_code()
            self.assertEqual(len(code), ELECTION_CODE_LENGTH)
            self.assertTrue(set(code) <= set(ELECTION_CODE_ALPHABET), code)

    def test_normalize_trims_and_uppercases(self) -> None:
        self.assertEqual(normalize_election_code("  abcd2345 "), "ABCD2345")
        self.assertEqual(normalize_election_code(None), "")

    def test_collision_is_retried_with_a_new_code(self) -> None:
        store = InMemoryElectionStore()
        service = ElectionService(store=store)
        with patch("core.elections_codes.generate_election_code", return_value="AAAAAAAA"):
            service.create_election(title="First")

        codes = iter(["AAAAAAAA", "AAAAAAAA", "BBBBBBBB"])
        with patch("core.elections_codes.generate_election_code", side_effect=lambda: next(codes)):
            second = service.create_election(title="Second")

        self.assertEqual(second.code, "BBBBBBBB")

    def test_gives_up_after_max_attempts(self) -> None:
        store = InMemoryElectionStore()
        service = ElectionService(store=store)
        with patch("core.elections_codes.generate_election_code", return_value="AAAAAAAA"):
            service.create_election(title="First")

        calls: list[str] = []

        def _generate() -> str:
            calls.append("AAAAAAAA")
            return "AAAAAAAA"

        with (
            patch("core.elections_codes.generate_election_code", side_effect=_generate),
            self.assertRaises(ElectionCodeExhaustedError) as ctx,
        ):
            service.create_election(title="Second")

        self.assertEqual(len(calls), ELECTION_CODE_MAX_ATTEMPTS)
        self.assertEqual(ctx.exception.constraint, ELECTION_CODE_CONSTRAINT)
        self.assertEqual(len(store.elections), 1)

    def test_collision_detected_on_write_is_retried(self) -> None:
        store = InMemoryElectionStore()
        codes = iter(["RACE2345", "SAFE2345"])
        attempts: list[str] = []

        def _write(code: str) -> str:
            attempts.append(code)
            if code == "RACE2345":
                raise ElectionConflictError("taken", constraint=ELECTION_CODE_CONSTRAINT)
            return code

        result = write_with_unique_code(store=store, write=_write, generate=lambda: next(codes))

        self.assertEqual(result, "SAFE2345")
        self.assertEqual(attempts, ["RACE2345", "SAFE2345"])

    def test_unrelated_conflicts_are_not_retried(self) -> None:
        store = InMemoryElectionStore()

        def _write(code: str) -> str:
            raise ElectionConflictError("other", constraint=VOTE_VOTER_CONSTRAINT)

        with self.assertRaises(ElectionConflictError) as ctx:
            write_with_unique_code(store=store, write=_write)

        self.assertNotIsInstance(ctx.exception, ElectionCodeExhaustedError)

    def test_regenerate_code_replaces_the_join_code(self) -> None:
        store = InMemoryElectionStore()
        service = ElectionService(store=store)
        election = service.create_election(title="Regenerate")
        service.set_election_status(election_id=election.id, status="open")

        new_code = service.regenerate_code(election_id=election.id)

        self.assertNotEqual(new_code, election.code)
        self.assertEqual(service.join_election(code=new_code).id, election.id)
        with self.assertRaises(ElectionNotFoundError):
            service.join_election(code=election.code)

    def test_regenerate_code_for_missing_election(self) -> None:
        service = ElectionService(store=InMemoryElectionStore())

        with self.assertRaises(ElectionNotFoundError):
            service.regenerate_code(election_id=404)
