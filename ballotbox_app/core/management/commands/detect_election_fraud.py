from typing import override

from django.core.management.base import BaseCommand, CommandError

from core.elections_errors import ElectionNotFoundError
from core.elections_services import election_service


class Command(BaseCommand):
    help = "Recompute the fraud heuristic for an election and print which candidates are flagged."

    @override
    def add_arguments(self, parser) -> None:
        parser.add_argument("election_id", type=int)

    @override
    def handle(self, *args, **options) -> None:
        election_id: int = options["election_id"]

        try:
            report = election_service().detect_fraud(election_id=election_id)
        except ElectionNotFoundError as exc:
            raise CommandError(str(exc)) from exc

        self.stdout.write(f"Real voters: {report.real_voter_count}")
        for candidate in report.candidates:
            marker = "FLAGGED" if candidate.fraud_suspected else "ok"
            self.stdout.write(f"{candidate.name}: {candidate.votes} vote(s) [{marker}]")
        self.stdout.write(f"{len(report.flagged)} candidate(s) flagged.")
