import logging
from typing import override

from django.core.management.base import BaseCommand
from django.utils import timezone

from core.elections_services import election_service

logger = logging.getLogger(__name__)


class Command(BaseCommand):
    help = (
        "Close every open election whose end date has passed, spawning runoffs for ties. "
        "Results reads do this lazily; run this to sweep elections nobody is reading."
    )

    @override
    def add_arguments(self, parser) -> None:
        parser.add_argument(
            "--dry-run",
            action="store_true",
            help="List the elections that would be closed without changing anything.",
        )

    @override
    def handle(self, *args, **options) -> None:
        dry_run: bool = bool(options.get("dry_run"))
        now = timezone.now()
        service = election_service()

        if dry_run:
            expired = service.store.list_expired_open_elections(now=now)
            for election in expired:
                self.stdout.write(
                    f"[dry-run] Would close election {election.id} ({election.title}); "
                    f"ended {election.end_date:%Y-%m-%d %H:%M}."
                )
            self.stdout.write(f"[dry-run] {len(expired)} expired election(s).")
            return

        closed = service.close_expired_elections(now=now)
        runoffs = 0
        for results in closed:
            line = f"Closed election {results.election.id} ({results.election.title})"
            if results.is_tie and results.runoff is not None:
                runoffs += 1
                line += f"; tie, runoff {results.runoff.id} opened with code {results.runoff.code}"
            elif results.is_tie:
                line += "; tie, runoff creation failed (see logs)"
            self.stdout.write(line + ".")

        summary = f"Closed {len(closed)} election(s); opened {runoffs} runoff(s)."
        logger.info("close_expired_elections closed=%d runoffs=%d", len(closed), runoffs)
        self.stdout.write(summary)
