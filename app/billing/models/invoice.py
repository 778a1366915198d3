"""
Invoice model for subscription billing cycles.

One row per provider invoice, upserted by provider_invoice_id as invoice
webhooks arrive. Tax is recomputed locally with the tax engine so the
stored breakdown always matches the jurisdiction rules.
"""

from __future__ import annotations

from django.db import models
from django.db.models import F, Q
from django.utils import timezone

from core.model_mixins import UUIDPrimaryKeyMixin
from core.models import BaseModel

from billing.state_machines import InvoiceStatus


class Invoice(UUIDPrimaryKeyMixin, BaseModel):
    """
    A billing-cycle charge against a subscription.

    Status Flow:
        OPEN -> PAID
        OPEN -> VOID / UNCOLLECTIBLE

    A PAID invoice is never mutated again; later events for the same
    invoice id leave it untouched.
    """

    subscription = models.ForeignKey(
        "billing.Subscription",
        on_delete=models.PROTECT,
        related_name="invoices",
    )

    provider_invoice_id = models.CharField(
        max_length=255,
        unique=True,
        help_text="Provider Invoice ID (in_xxx)",
    )

    subtotal_cents = models.PositiveBigIntegerField(default=0)

    tax_cents = models.PositiveBigIntegerField(default=0)

    total_cents = models.PositiveBigIntegerField(default=0)

    tax_breakdown = models.JSONField(default=dict, blank=True)

    amount_paid_cents = models.PositiveBigIntegerField(default=0)

    amount_due_cents = models.PositiveBigIntegerField(default=0)

    currency = models.CharField(max_length=3, default="cad")

    status = models.CharField(
        max_length=20,
        choices=InvoiceStatus.choices,
        default=InvoiceStatus.OPEN,
        db_index=True,
    )

    period_start = models.DateTimeField(null=True, blank=True)

    period_end = models.DateTimeField(null=True, blank=True)

    paid_at = models.DateTimeField(null=True, blank=True)

    class Meta:
        ordering = ["-created_at"]
        verbose_name = "Invoice"
        verbose_name_plural = "Invoices"
        indexes = [
            models.Index(fields=["subscription", "status"], name="billing_inv_subscri_6b0f3d_idx"),
        ]
        constraints = [
            models.CheckConstraint(
                condition=Q(total_cents=F("subtotal_cents") + F("tax_cents")),
                name="billing_invoice_total_matches_parts",
            ),
        ]

    def __str__(self) -> str:
        return f"Invoice({self.provider_invoice_id}, {self.status})"

    @property
    def is_paid(self) -> bool:
        return self.status == InvoiceStatus.PAID

    def mark_paid(self, amount_paid_cents: int) -> None:
        """
        Record payment in full.

        Note: Does not save - caller must save after calling.
        """
        self.status = InvoiceStatus.PAID
        self.amount_paid_cents = amount_paid_cents
        self.amount_due_cents = 0
        self.paid_at = timezone.now()
