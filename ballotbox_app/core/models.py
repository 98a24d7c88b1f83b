from __future__ import annotations

from django.core.validators import MinValueValidator
from django.db import models
from django.db.models import Q


class Election(models.Model):
    class Status(models.TextChoices):
        draft = "draft", "Draft"
        open = "open", "Open"
        closed = "closed", "Closed"

    title = models.CharField(max_length=255)
    description = models.TextField(blank=True, default="")
    code = models.CharField(max_length=8, unique=True)
    status = models.CharField(max_length=16, choices=Status.choices, default=Status.draft, db_index=True)
    start_date = models.DateTimeField(blank=True, null=True)
    end_date = models.DateTimeField(blank=True, null=True)
    round = models.PositiveIntegerField(default=1, validators=[MinValueValidator(1)])

    # Set on runoff elections; points at the election whose tie spawned them.
    parent = models.ForeignKey(
        "self",
        on_delete=models.SET_NULL,
        blank=True,
        null=True,
        related_name="runoffs",
    )

    # Ordinal handed to the next candidate; never reused, so colors stay stable after deletions.
    candidate_sequence = models.PositiveIntegerField(default=0)

    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        ordering = ("-created_at", "-id")
        indexes = [
            models.Index(fields=["status", "end_date"], name="election_status_end"),
        ]

    def __str__(self) -> str:
        return f"{self.title} ({self.code})"


class Candidate(models.Model):
    election = models.ForeignKey(Election, on_delete=models.CASCADE, related_name="candidates")
    name = models.CharField(max_length=255)
    votes = models.PositiveIntegerField(default=0)
    color_code = models.CharField(max_length=7)
    position = models.PositiveIntegerField(default=0)
    last_vote_timestamp = models.DateTimeField(blank=True, null=True)
    fraud_suspected = models.BooleanField(default=False)
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        ordering = ("election", "position", "id")

    def __str__(self) -> str:
        return f"{self.name} ({self.election_id})"


class Voter(models.Model):
    election = models.ForeignKey(Election, on_delete=models.CASCADE, related_name="voters")
    name = models.CharField(max_length=255)
    age = models.PositiveSmallIntegerField()
    identifier = models.CharField(max_length=255, blank=True, null=True)

    # Synthetic ballot-stuffing voters; excluded from the real-voter count.
    is_fake = models.BooleanField(default=False)

    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        ordering = ("election", "id")
        constraints = [
            models.UniqueConstraint(
                fields=["election", "identifier"],
                name="uniq_voter_election_identifier",
                condition=Q(identifier__isnull=False),
            ),
        ]
        indexes = [
            models.Index(fields=["election", "is_fake"], name="voter_el_fake"),
        ]

    def __str__(self) -> str:
        return f"{self.name} ({self.election_id})"


class Vote(models.Model):
    election = models.ForeignKey(Election, on_delete=models.CASCADE, related_name="votes")
    voter = models.ForeignKey(Voter, on_delete=models.CASCADE, related_name="votes")
    candidate = models.ForeignKey(Candidate, on_delete=models.CASCADE, related_name="cast_votes")
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        constraints = [
            # The only thing that keeps one vote per voter correct under concurrency.
            models.UniqueConstraint(
                fields=["election", "voter"],
                name="uniq_vote_election_voter",
            ),
        ]

    def __str__(self) -> str:
        return f"vote:{self.election_id}:{self.voter_id}"
