"""
WebhookEvent model for provider webhook event tracking.

Stores every webhook event received from the provider for idempotent
processing and audit trails. The processed status is the only gate that
stops an event id from being handled again.

Usage:
    from billing.models import WebhookEvent

    event, created = WebhookEvent.objects.get_or_create(
        provider_event_id="evt_1234567890",
        defaults={
            "event_type": "payment_intent.succeeded",
            "payload": envelope,
        },
    )

    if event.is_processed:
        # Duplicate delivery - acknowledge without handling
        return
"""

from __future__ import annotations

from django.conf import settings
from django.db import models
from django.utils import timezone

from core.model_mixins import UUIDPrimaryKeyMixin
from core.models import BaseModel

from billing.state_machines import WebhookEventStatus


class WebhookEvent(UUIDPrimaryKeyMixin, BaseModel):
    """
    Tracks provider webhook events for idempotent processing.

    Processing Flow:
        1. Webhook arrives, signature verified by the view
        2. Insert/get WebhookEvent by provider_event_id, row locked
        3. If PROCESSED -> acknowledge (duplicate)
        4. Set status to PROCESSING, bump attempts
        5. Route to the handler for the event type
        6. Set status to PROCESSED, or FAILED with error detail
        7. FAILED transient events are swept by retry_failed_webhooks

    Fields:
        provider_event_id: Unique provider Event ID (evt_xxx)
        event_type: Provider event type string
        payload: Full envelope as received
        status: Processing status
        failure_kind: Classification of the last failure
        attempts: Number of processing attempts
    """

    # ==========================================================================
    # Event Identification
    # ==========================================================================

    provider_event_id = models.CharField(
        max_length=255,
        unique=True,
        help_text="Provider Event ID (evt_xxx) - unique for idempotency",
    )

    event_type = models.CharField(
        max_length=100,
        db_index=True,
        help_text="Provider event type (e.g., 'payment_intent.succeeded')",
    )

    payload = models.JSONField(help_text="Full webhook envelope (JSON)")

    # ==========================================================================
    # Processing Status
    # ==========================================================================

    status = models.CharField(
        max_length=20,
        choices=WebhookEventStatus.choices,
        default=WebhookEventStatus.PENDING,
        db_index=True,
    )

    processed_at = models.DateTimeField(null=True, blank=True)

    # ==========================================================================
    # Error Handling
    # ==========================================================================

    error_message = models.TextField(null=True, blank=True)

    error_code = models.CharField(max_length=100, null=True, blank=True)

    failure_kind = models.CharField(
        max_length=20,
        null=True,
        blank=True,
        help_text="validation / not_found / conflict / transient",
    )

    attempts = models.PositiveSmallIntegerField(
        default=0,
        help_text="Number of processing attempts",
    )

    class Meta:
        ordering = ["-created_at"]
        verbose_name = "Webhook Event"
        verbose_name_plural = "Webhook Events"
        indexes = [
            models.Index(fields=["status", "created_at"], name="billing_web_status_2c9e17_idx"),
            models.Index(
                fields=["status", "failure_kind", "attempts"],
                name="billing_web_status_e41a08_idx",
            ),
        ]

    def __str__(self) -> str:
        return f"WebhookEvent({self.provider_event_id}, {self.event_type})"

    # ==========================================================================
    # Properties
    # ==========================================================================

    @property
    def is_processed(self) -> bool:
        """Check if event has been successfully processed."""
        return self.status == WebhookEventStatus.PROCESSED

    @property
    def is_failed(self) -> bool:
        return self.status == WebhookEventStatus.FAILED

    @property
    def can_retry(self) -> bool:
        """Failed transiently and below the configured attempt limit."""
        return (
            self.is_failed
            and self.failure_kind == "transient"
            and self.attempts < settings.BILLING_WEBHOOK_MAX_ATTEMPTS
        )

    # ==========================================================================
    # Helper Methods
    # ==========================================================================

    def mark_processing(self) -> None:
        """Note: Does not save - caller must save after calling."""
        self.status = WebhookEventStatus.PROCESSING
        self.attempts += 1

    def mark_processed(self) -> None:
        """Note: Does not save - caller must save after calling."""
        self.status = WebhookEventStatus.PROCESSED
        self.processed_at = timezone.now()
        self.error_message = None
        self.error_code = None
        self.failure_kind = None

    def mark_failed(
        self,
        error_message: str,
        error_code: str | None = None,
        failure_kind: str | None = None,
    ) -> None:
        """
        Mark event as failed with error detail.

        Note: Does not save - caller must save after calling.
        """
        self.status = WebhookEventStatus.FAILED
        self.error_message = error_message
        self.error_code = error_code
        self.failure_kind = failure_kind

    def get_object(self) -> dict:
        """The event's data object (``object`` or Stripe's ``data.object``)."""
        payload = self.payload if isinstance(self.payload, dict) else {}
        obj = payload.get("object")
        if not isinstance(obj, dict):
            obj = (payload.get("data") or {}).get("object")
        return obj if isinstance(obj, dict) else {}
