from __future__ import annotations

import datetime
import logging
from collections.abc import Sequence

from django.utils import timezone

from core.elections_lifecycle import ELECTION_TITLE_MAX_LENGTH, ElectionLifecycle
from core.elections_store import CandidateRecord, ElectionRecord, ElectionStore
from core.models import Election

logger = logging.getLogger(__name__)

RUNOFF_TITLE_PREFIX = "[Runoff] "
RUNOFF_VOTING_WINDOW = datetime.timedelta(hours=1)


def runoff_title(*, original: ElectionRecord) -> str:
    # Each round adds the prefix; clip so deep runoffs of long titles still fit the column.
    return (RUNOFF_TITLE_PREFIX + original.title)[:ELECTION_TITLE_MAX_LENGTH]


def runoff_description(*, original: ElectionRecord) -> str:
    return f"Runoff for the tied candidates of election #{original.id} ({original.title})."


class RunoffFactory:
    def __init__(self, *, store: ElectionStore, lifecycle: ElectionLifecycle) -> None:
        self.store = store
        self.lifecycle = lifecycle

    def create_runoff(
        self,
        *,
        original: ElectionRecord,
        tied_candidates: Sequence[CandidateRecord],
        now: datetime.datetime | None = None,
    ) -> ElectionRecord:
        """Spawn the next round, open for a fixed one-hour window.

        Only candidate names carry over; tallies, colors and ids start fresh.
        """

        now = now or timezone.now()

        with self.store.atomic():
            runoff = self.lifecycle.create_election(
                title=runoff_title(original=original),
                description=runoff_description(original=original),
                start_date=now,
                end_date=now + RUNOFF_VOTING_WINDOW,
                round=original.round + 1,
                parent_id=original.id,
            )
            for candidate in tied_candidates:
                self.store.add_candidate(election_id=runoff.id, name=candidate.name)
            runoff = self.lifecycle.set_status(election_id=runoff.id, status=Election.Status.open)

        logger.info(
            "runoff_created election_id=%s runoff_id=%s round=%s candidates=%s",
            original.id,
            runoff.id,
            runoff.round,
            [candidate.name for candidate in tied_candidates],
        )
        return runoff
