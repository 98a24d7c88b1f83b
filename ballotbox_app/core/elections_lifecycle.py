"""Election state machine: draft -> open -> closed (and admin re-open).

Auto-close is lazy. Nothing runs on a timer; the transition happens the next
time someone reads results (or runs the ``close_expired_elections`` command).
"""

from __future__ import annotations

import datetime
import logging

from django.utils import timezone

from core.elections_codes import write_with_unique_code
from core.elections_errors import ElectionNotFoundError, ElectionValidationError
from core.elections_store import ElectionRecord, ElectionStore
from core.models import Election

logger = logging.getLogger(__name__)

ELECTION_TITLE_MAX_LENGTH: int = Election._meta.get_field("title").max_length


def parse_status(raw: object) -> Election.Status:
    value = str(raw or "").strip().lower()
    try:
        return Election.Status(value)
    except ValueError as exc:
        allowed = ", ".join(Election.Status.values)
        raise ElectionValidationError(f"Invalid status {raw!r}; expected one of: {allowed}.") from exc


def is_expired(*, election: ElectionRecord, now: datetime.datetime) -> bool:
    return election.end_date is not None and now > election.end_date


def clean_text(raw: object, *, label: str, max_length: int) -> str:
    """Stripped, non-empty text that fits its column; raises Validation otherwise."""
    value = raw.strip() if isinstance(raw, str) else ""
    if not value:
        raise ElectionValidationError(f"{label} is required.")
    if len(value) > max_length:
        raise ElectionValidationError(f"{label} must be at most {max_length} characters.")
    return value


def clean_datetime(raw: object, *, label: str) -> datetime.datetime | None:
    if raw is None:
        return None
    if not isinstance(raw, datetime.datetime):
        raise ElectionValidationError(f"{label} must be a date and time.")
    # USE_TZ is on; comparing naive and aware values raises TypeError.
    if timezone.is_naive(raw):
        raise ElectionValidationError(f"{label} must include a timezone.")
    return raw


def check_date_order(*, start_date: datetime.datetime | None, end_date: datetime.datetime | None) -> None:
    if start_date is not None and end_date is not None and end_date <= start_date:
        raise ElectionValidationError("End date must be later than the start date.")


class ElectionLifecycle:
    def __init__(self, *, store: ElectionStore) -> None:
        self.store = store

    def require_election(self, *, election_id: int) -> ElectionRecord:
        election = self.store.get_election(election_id=election_id)
        if election is None:
            raise ElectionNotFoundError(f"election {election_id} not found")
        return election

    def create_election(
        self,
        *,
        title: str,
        description: str = "",
        start_date: datetime.datetime | None = None,
        end_date: datetime.datetime | None = None,
        round: int = 1,
        parent_id: int | None = None,
    ) -> ElectionRecord:
        title = clean_text(title, label="Election title", max_length=ELECTION_TITLE_MAX_LENGTH)
        if round < 1:
            raise ElectionValidationError("Election round must be at least 1.")
        start_date = clean_datetime(start_date, label="Start date")
        end_date = clean_datetime(end_date, label="End date")
        check_date_order(start_date=start_date, end_date=end_date)

        election = write_with_unique_code(
            store=self.store,
            write=lambda code: self.store.create_election(
                title=title,
                description=str(description or ""),
                code=code,
                status=Election.Status.draft,
                start_date=start_date,
                end_date=end_date,
                round=round,
                parent_id=parent_id,
            ),
        )
        logger.info(
            "election_created election_id=%s code=%s round=%s parent_id=%s",
            election.id,
            election.code,
            election.round,
            election.parent_id,
        )
        return election

    def set_status(self, *, election_id: int, status: object) -> ElectionRecord:
        """Move an election to ``status``.

        Any valid target is accepted from any state, including re-opening a
        closed election; round and tallies are left untouched.
        """

        target = parse_status(status)
        current = self.require_election(election_id=election_id)

        updated = self.store.set_election_status(election_id=election_id, status=target)
        if updated is None:
            raise ElectionNotFoundError(f"election {election_id} not found")

        logger.info(
            "election_status_changed election_id=%s from=%s to=%s",
            election_id,
            current.status,
            target,
        )
        return updated

    def regenerate_code(self, *, election_id: int) -> ElectionRecord:
        current = self.require_election(election_id=election_id)

        def _write(code: str) -> ElectionRecord:
            updated = self.store.set_election_code(election_id=election_id, code=code)
            if updated is None:
                raise ElectionNotFoundError(f"election {election_id} not found")
            return updated

        updated = write_with_unique_code(store=self.store, write=_write)
        logger.info(
            "election_code_regenerated election_id=%s old_code=%s new_code=%s",
            election_id,
            current.code,
            updated.code,
        )
        return updated

    def close_if_expired(
        self,
        *,
        election_id: int,
        now: datetime.datetime | None = None,
    ) -> tuple[ElectionRecord, bool]:
        """Apply the auto-close rule and return the fresh record.

        The boolean is True only when this call performed the open -> closed
        transition; concurrent callers racing on the same election see False.
        """

        now = now or timezone.now()
        election = self.require_election(election_id=election_id)
        if election.status != Election.Status.open or not is_expired(election=election, now=now):
            return election, False

        if not self.store.close_election_if_expired(election_id=election_id, now=now):
            return self.require_election(election_id=election_id), False

        logger.info(
            "election_auto_closed election_id=%s end_date=%s now=%s",
            election_id,
            election.end_date.isoformat() if election.end_date else "",
            now.isoformat(),
        )
        return self.require_election(election_id=election_id), True
