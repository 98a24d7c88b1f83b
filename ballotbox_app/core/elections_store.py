"""Durable storage for elections, candidates, voters and votes.

The store is the only owner of mutable election state. Engine components get a
store injected and only ever see immutable records copied out of it.
"""

from __future__ import annotations

import datetime
import functools
import logging
from abc import ABC, abstractmethod
from collections.abc import Callable, Iterator, Mapping
from contextlib import AbstractContextManager, contextmanager
from dataclasses import dataclass
from typing import ParamSpec, TypeVar

from django.db import DatabaseError, IntegrityError, transaction
from django.db.models import Count, F, IntegerField, Sum
from django.db.models.functions import Coalesce
from django.utils import timezone

from core.elections_errors import ElectionConflictError, ElectionInternalError, ElectionNotFoundError
from core.models import Candidate, Election, Vote, Voter

logger = logging.getLogger(__name__)

P = ParamSpec("P")
T = TypeVar("T")

ELECTION_CODE_CONSTRAINT = "uniq_election_code"
VOTER_IDENTIFIER_CONSTRAINT = "uniq_voter_election_identifier"
VOTE_VOTER_CONSTRAINT = "uniq_vote_election_voter"

CANDIDATE_COLOR_PALETTE: tuple[str, ...] = (
    "#6366f1",
    "#8b5cf6",
    "#ec4899",
    "#f43f5e",
    "#f97316",
    "#eab308",
    "#22c55e",
    "#14b8a6",
    "#0ea5e9",
    "#3b82f6",
)

FAKE_VOTER_NAME = "Fake"

UPDATABLE_ELECTION_FIELDS: frozenset[str] = frozenset({"title", "description", "start_date", "end_date"})


def candidate_color(position: int) -> str:
    """Chart color for the candidate at ``position`` within its election (round-robin)."""
    return CANDIDATE_COLOR_PALETTE[position % len(CANDIDATE_COLOR_PALETTE)]


@dataclass(frozen=True)
class ElectionRecord:
    id: int
    title: str
    description: str
    code: str
    status: Election.Status
    start_date: datetime.datetime | None
    end_date: datetime.datetime | None
    round: int
    parent_id: int | None
    created_at: datetime.datetime


@dataclass(frozen=True)
class CandidateRecord:
    id: int
    election_id: int
    name: str
    votes: int
    color_code: str
    position: int
    last_vote_timestamp: datetime.datetime | None
    fraud_suspected: bool


@dataclass(frozen=True)
class VoterRecord:
    id: int
    election_id: int
    name: str
    age: int
    identifier: str | None
    is_fake: bool


@dataclass(frozen=True)
class VoteRecord:
    id: int
    election_id: int
    voter_id: int
    candidate_id: int
    created_at: datetime.datetime


@dataclass(frozen=True)
class ElectionSummary:
    election: ElectionRecord
    total_votes: int
    candidate_count: int


class ElectionStore(ABC):
    """Persistence contract for the election engine.

    Writes that can violate a uniqueness rule raise ``ElectionConflictError``
    naming the constraint, and leave no partial side effect behind. Lookups
    that miss return ``None`` (or ``False`` for deletes); callers decide
    whether that is a NotFound.
    """

    @abstractmethod
    def atomic(self) -> AbstractContextManager[object]:
        """Group several writes so they commit or roll back together."""

    # Elections

    @abstractmethod
    def create_election(
        self,
        *,
        title: str,
        description: str,
        code: str,
        status: Election.Status,
        start_date: datetime.datetime | None,
        end_date: datetime.datetime | None,
        round: int,
        parent_id: int | None = None,
    ) -> ElectionRecord: ...

    @abstractmethod
    def election_code_exists(self, *, code: str) -> bool: ...

    @abstractmethod
    def get_election(self, *, election_id: int) -> ElectionRecord | None: ...

    @abstractmethod
    def get_election_by_code(self, *, code: str) -> ElectionRecord | None: ...

    @abstractmethod
    def list_elections(self) -> list[ElectionSummary]:
        """All elections, newest first, with their vote and candidate totals."""

    @abstractmethod
    def list_expired_open_elections(self, *, now: datetime.datetime) -> list[ElectionRecord]: ...

    @abstractmethod
    def update_election_fields(
        self,
        *,
        election_id: int,
        fields: Mapping[str, object],
    ) -> ElectionRecord | None: ...

    @abstractmethod
    def set_election_status(self, *, election_id: int, status: Election.Status) -> ElectionRecord | None: ...

    @abstractmethod
    def close_election_if_expired(self, *, election_id: int, now: datetime.datetime) -> bool:
        """Flip ``open`` to ``closed`` when ``end_date < now``, in one conditional write.

        Returns True only for the caller whose write performed the transition.
        """

    @abstractmethod
    def set_election_code(self, *, election_id: int, code: str) -> ElectionRecord | None: ...

    @abstractmethod
    def delete_election(self, *, election_id: int) -> bool: ...

    # Candidates

    @abstractmethod
    def add_candidate(self, *, election_id: int, name: str) -> CandidateRecord: ...

    @abstractmethod
    def get_candidate(self, *, candidate_id: int) -> CandidateRecord | None: ...

    @abstractmethod
    def list_candidates(self, *, election_id: int) -> list[CandidateRecord]: ...

    @abstractmethod
    def delete_candidate(self, *, candidate_id: int) -> bool: ...

    @abstractmethod
    def increment_candidate_votes(
        self,
        *,
        candidate_id: int,
        amount: int,
        timestamp: datetime.datetime,
    ) -> bool: ...

    @abstractmethod
    def set_fraud_flags(self, *, flags: Mapping[int, bool]) -> None: ...

    # Voters and votes

    @abstractmethod
    def add_voter(
        self,
        *,
        election_id: int,
        name: str,
        age: int,
        identifier: str | None,
        is_fake: bool = False,
    ) -> VoterRecord: ...

    @abstractmethod
    def add_fake_voters(self, *, election_id: int, count: int) -> int: ...

    @abstractmethod
    def get_voter(self, *, voter_id: int) -> VoterRecord | None: ...

    @abstractmethod
    def has_voted(self, *, election_id: int, voter_id: int) -> bool: ...

    @abstractmethod
    def insert_vote(self, *, election_id: int, voter_id: int, candidate_id: int) -> VoteRecord: ...

    @abstractmethod
    def count_votes(self, *, election_id: int) -> int: ...

    @abstractmethod
    def count_real_voters(self, *, election_id: int) -> int: ...


def _store_operation(operation: str) -> Callable[[Callable[P, T]], Callable[P, T]]:
    def decorator(func: Callable[P, T]) -> Callable[P, T]:
        @functools.wraps(func)
        def wrapper(*args: P.args, **kwargs: P.kwargs) -> T:
            try:
                return func(*args, **kwargs)
            except DatabaseError as exc:
                logger.exception("election_store_failure operation=%s", operation)
                raise ElectionInternalError(f"Failed to {operation}: {exc}") from exc

        return wrapper

    return decorator


def _election_record(row: Election) -> ElectionRecord:
    return ElectionRecord(
        id=int(row.pk),
        title=str(row.title),
        description=str(row.description or ""),
        code=str(row.code),
        status=Election.Status(row.status),
        start_date=row.start_date,
        end_date=row.end_date,
        round=int(row.round),
        parent_id=row.parent_id,
        created_at=row.created_at,
    )


def _candidate_record(row: Candidate) -> CandidateRecord:
    return CandidateRecord(
        id=int(row.pk),
        election_id=int(row.election_id),
        name=str(row.name),
        votes=int(row.votes),
        color_code=str(row.color_code),
        position=int(row.position),
        last_vote_timestamp=row.last_vote_timestamp,
        fraud_suspected=bool(row.fraud_suspected),
    )


def _voter_record(row: Voter) -> VoterRecord:
    return VoterRecord(
        id=int(row.pk),
        election_id=int(row.election_id),
        name=str(row.name),
        age=int(row.age),
        identifier=row.identifier,
        is_fake=bool(row.is_fake),
    )


class DjangoElectionStore(ElectionStore):
    """ORM-backed store; uniqueness is enforced by the database constraints."""

    @contextmanager
    def atomic(self) -> Iterator[None]:
        # Store methods already translate their own errors; this catches the commit itself.
        try:
            with transaction.atomic():
                yield
        except DatabaseError as exc:
            logger.exception("election_store_failure operation=commit")
            raise ElectionInternalError(f"Failed to commit: {exc}") from exc

    @_store_operation("create election")
    def create_election(
        self,
        *,
        title: str,
        description: str,
        code: str,
        status: Election.Status,
        start_date: datetime.datetime | None,
        end_date: datetime.datetime | None,
        round: int,
        parent_id: int | None = None,
    ) -> ElectionRecord:
        try:
            with transaction.atomic():
                row = Election.objects.create(
                    title=title,
                    description=description,
                    code=code,
                    status=status,
                    start_date=start_date,
                    end_date=end_date,
                    round=round,
                    parent_id=parent_id,
                )
        except IntegrityError as exc:
            raise ElectionConflictError(
                f"election code {code!r} is already in use",
                constraint=ELECTION_CODE_CONSTRAINT,
            ) from exc
        return _election_record(row)

    @_store_operation("check election code")
    def election_code_exists(self, *, code: str) -> bool:
        return Election.objects.filter(code=code).exists()

    @_store_operation("get election")
    def get_election(self, *, election_id: int) -> ElectionRecord | None:
        row = Election.objects.filter(pk=election_id).first()
        return _election_record(row) if row is not None else None

    @_store_operation("get election by code")
    def get_election_by_code(self, *, code: str) -> ElectionRecord | None:
        row = Election.objects.filter(code=code).first()
        return _election_record(row) if row is not None else None

    @_store_operation("list elections")
    def list_elections(self) -> list[ElectionSummary]:
        rows = Election.objects.annotate(
            total_votes=Coalesce(Sum("candidates__votes"), 0, output_field=IntegerField()),
            candidate_count=Count("candidates"),
        ).order_by("-created_at", "-id")
        return [
            ElectionSummary(
                election=_election_record(row),
                total_votes=int(row.total_votes or 0),
                candidate_count=int(row.candidate_count or 0),
            )
            for row in rows
        ]

    @_store_operation("list expired elections")
    def list_expired_open_elections(self, *, now: datetime.datetime) -> list[ElectionRecord]:
        rows = Election.objects.filter(
            status=Election.Status.open,
            end_date__isnull=False,
            end_date__lt=now,
        ).order_by("end_date", "id")
        return [_election_record(row) for row in rows]

    @_store_operation("update election")
    def update_election_fields(
        self,
        *,
        election_id: int,
        fields: Mapping[str, object],
    ) -> ElectionRecord | None:
        unknown = set(fields) - UPDATABLE_ELECTION_FIELDS
        if unknown:
            raise ValueError(f"Unsupported election fields: {sorted(unknown)}")

        if fields:
            Election.objects.filter(pk=election_id).update(**fields, updated_at=timezone.now())
        return self.get_election(election_id=election_id)

    @_store_operation("set election status")
    def set_election_status(self, *, election_id: int, status: Election.Status) -> ElectionRecord | None:
        Election.objects.filter(pk=election_id).update(status=status, updated_at=timezone.now())
        return self.get_election(election_id=election_id)

    @_store_operation("close expired election")
    def close_election_if_expired(self, *, election_id: int, now: datetime.datetime) -> bool:
        updated = Election.objects.filter(
            pk=election_id,
            status=Election.Status.open,
            end_date__isnull=False,
            end_date__lt=now,
        ).update(status=Election.Status.closed, updated_at=now)
        return updated > 0

    @_store_operation("set election code")
    def set_election_code(self, *, election_id: int, code: str) -> ElectionRecord | None:
        try:
            with transaction.atomic():
                Election.objects.filter(pk=election_id).update(code=code, updated_at=timezone.now())
        except IntegrityError as exc:
            raise ElectionConflictError(
                f"election code {code!r} is already in use",
                constraint=ELECTION_CODE_CONSTRAINT,
            ) from exc
        return self.get_election(election_id=election_id)

    @_store_operation("delete election")
    def delete_election(self, *, election_id: int) -> bool:
        with transaction.atomic():
            # Runoffs keep existing on their own; only the lineage pointer goes away.
            deleted, _ = Election.objects.filter(pk=election_id).delete()
        return deleted > 0

    @_store_operation("add candidate")
    def add_candidate(self, *, election_id: int, name: str) -> CandidateRecord:
        with transaction.atomic():
            # Claim the next ordinal with a single mutating statement; the row stays
            # locked until commit, so the read-back below sees our own increment.
            claimed = Election.objects.filter(pk=election_id).update(
                candidate_sequence=F("candidate_sequence") + 1,
            )
            if not claimed:
                raise ElectionNotFoundError(f"election {election_id} not found")

            sequence = Election.objects.filter(pk=election_id).values_list("candidate_sequence", flat=True).get()
            position = int(sequence) - 1
            row = Candidate.objects.create(
                election_id=election_id,
                name=name,
                votes=0,
                color_code=candidate_color(position),
                position=position,
            )
        return _candidate_record(row)

    @_store_operation("get candidate")
    def get_candidate(self, *, candidate_id: int) -> CandidateRecord | None:
        row = Candidate.objects.filter(pk=candidate_id).first()
        return _candidate_record(row) if row is not None else None

    @_store_operation("list candidates")
    def list_candidates(self, *, election_id: int) -> list[CandidateRecord]:
        rows = Candidate.objects.filter(election_id=election_id).order_by("position", "id")
        return [_candidate_record(row) for row in rows]

    @_store_operation("delete candidate")
    def delete_candidate(self, *, candidate_id: int) -> bool:
        with transaction.atomic():
            deleted, _ = Candidate.objects.filter(pk=candidate_id).delete()
        return deleted > 0

    @_store_operation("increment candidate votes")
    def increment_candidate_votes(
        self,
        *,
        candidate_id: int,
        amount: int,
        timestamp: datetime.datetime,
    ) -> bool:
        updated = Candidate.objects.filter(pk=candidate_id).update(
            votes=F("votes") + amount,
            last_vote_timestamp=timestamp,
        )
        return updated > 0

    @_store_operation("set fraud flags")
    def set_fraud_flags(self, *, flags: Mapping[int, bool]) -> None:
        flagged = [candidate_id for candidate_id, suspected in flags.items() if suspected]
        cleared = [candidate_id for candidate_id, suspected in flags.items() if not suspected]
        with transaction.atomic():
            if flagged:
                Candidate.objects.filter(pk__in=flagged).update(fraud_suspected=True)
            if cleared:
                Candidate.objects.filter(pk__in=cleared).update(fraud_suspected=False)

    @_store_operation("add voter")
    def add_voter(
        self,
        *,
        election_id: int,
        name: str,
        age: int,
        identifier: str | None,
        is_fake: bool = False,
    ) -> VoterRecord:
        try:
            with transaction.atomic():
                row = Voter.objects.create(
                    election_id=election_id,
                    name=name,
                    age=age,
                    identifier=identifier,
                    is_fake=is_fake,
                )
        except IntegrityError as exc:
            raise ElectionConflictError(
                "a voter with this identifier is already registered for this election",
                constraint=VOTER_IDENTIFIER_CONSTRAINT,
            ) from exc
        return _voter_record(row)

    @_store_operation("add fake voters")
    def add_fake_voters(self, *, election_id: int, count: int) -> int:
        rows = Voter.objects.bulk_create(
            [Voter(election_id=election_id, name=FAKE_VOTER_NAME, age=0, is_fake=True) for _ in range(count)]
        )
        return len(rows)

    @_store_operation("get voter")
    def get_voter(self, *, voter_id: int) -> VoterRecord | None:
        row = Voter.objects.filter(pk=voter_id).first()
        return _voter_record(row) if row is not None else None

    @_store_operation("check vote")
    def has_voted(self, *, election_id: int, voter_id: int) -> bool:
        return Vote.objects.filter(election_id=election_id, voter_id=voter_id).exists()

    @_store_operation("insert vote")
    def insert_vote(self, *, election_id: int, voter_id: int, candidate_id: int) -> VoteRecord:
        try:
            # Savepoint: a duplicate must not poison the caller's transaction.
            with transaction.atomic():
                row = Vote.objects.create(election_id=election_id, voter_id=voter_id, candidate_id=candidate_id)
        except IntegrityError as exc:
            if not Vote.objects.filter(election_id=election_id, voter_id=voter_id).exists():
                # Not the one-vote rule (e.g. a dangling foreign key); surface as a store failure.
                raise
            raise ElectionConflictError(
                "voter has already voted in this election",
                constraint=VOTE_VOTER_CONSTRAINT,
            ) from exc
        return VoteRecord(
            id=int(row.pk),
            election_id=int(row.election_id),
            voter_id=int(row.voter_id),
            candidate_id=int(row.candidate_id),
            created_at=row.created_at,
        )

    @_store_operation("count votes")
    def count_votes(self, *, election_id: int) -> int:
        return Vote.objects.filter(election_id=election_id).count()

    @_store_operation("count real voters")
    def count_real_voters(self, *, election_id: int) -> int:
        return Voter.objects.filter(election_id=election_id, is_fake=False).count()
