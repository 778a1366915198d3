"""
DunningAttempt model for failed-payment recovery.

Each row is one scheduled retry of an unpaid invoice. The unique
(subscription, invoice, attempt_number) constraint makes scheduling the
same attempt twice impossible even when two deliveries of the same
failure race each other.
"""

from __future__ import annotations

from django.db import models
from django.utils import timezone

from core.model_mixins import UUIDPrimaryKeyMixin
from core.models import BaseModel

from billing.state_machines import DunningOutcome


class DunningAttempt(UUIDPrimaryKeyMixin, BaseModel):
    """
    A scheduled retry of an unpaid invoice.

    Outcome Flow:
        PENDING -> SUCCEEDED / FAILED / ABANDONED

    Immutable once resolved.
    """

    subscription = models.ForeignKey(
        "billing.Subscription",
        on_delete=models.CASCADE,
        related_name="dunning_attempts",
    )

    invoice = models.ForeignKey(
        "billing.Invoice",
        on_delete=models.CASCADE,
        related_name="dunning_attempts",
    )

    attempt_number = models.PositiveSmallIntegerField(
        help_text="1-based position in the retry schedule",
    )

    scheduled_for = models.DateTimeField(db_index=True)

    executed_at = models.DateTimeField(
        null=True,
        blank=True,
        help_text="When the retry was submitted to the provider",
    )

    outcome = models.CharField(
        max_length=20,
        choices=DunningOutcome.choices,
        default=DunningOutcome.PENDING,
        db_index=True,
    )

    resolved_at = models.DateTimeField(null=True, blank=True)

    class Meta:
        ordering = ["subscription", "attempt_number"]
        verbose_name = "Dunning Attempt"
        verbose_name_plural = "Dunning Attempts"
        constraints = [
            models.UniqueConstraint(
                fields=["subscription", "invoice", "attempt_number"],
                name="billing_unique_dunning_attempt",
            ),
        ]

    def __str__(self) -> str:
        return f"DunningAttempt({self.subscription_id}, #{self.attempt_number}, {self.outcome})"

    @property
    def is_pending(self) -> bool:
        return self.outcome == DunningOutcome.PENDING

    def resolve(self, outcome: str) -> None:
        """
        Record the attempt's outcome.

        Note: Does not save - caller must save after calling.

        Raises:
            ValueError: If the attempt is already resolved
        """
        if not self.is_pending:
            raise ValueError(f"Dunning attempt {self.id} already resolved as {self.outcome}")
        self.outcome = outcome
        self.resolved_at = timezone.now()
