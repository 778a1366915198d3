"""
Model mixins providing reusable functionality for Django models.

Abstract mixins combined with BaseModel. They carry infrastructure only;
domain behaviour lives in the domain apps.

Available Mixins:
    UUIDPrimaryKeyMixin: Use UUID as primary key
    VersionedMixin: Optimistic-locking version counter bumped on every save

Usage:
    from core.models import BaseModel
    from core.model_mixins import UUIDPrimaryKeyMixin, VersionedMixin

    class Order(UUIDPrimaryKeyMixin, VersionedMixin, BaseModel):
        total_cents = models.PositiveBigIntegerField()

Note:
    - Always list mixins before BaseModel in inheritance
    - Mixins are abstract and don't create database tables
"""

from __future__ import annotations

import uuid

from django.db import models
from django.db.models import F


class UUIDPrimaryKeyMixin(models.Model):
    """
    Use UUID as primary key instead of auto-increment integer.

    IDs are safe to hand to the payment provider as metadata and do not
    reveal record counts.
    """

    id = models.UUIDField(
        primary_key=True,
        default=uuid.uuid4,
        editable=False,
        help_text="Unique identifier for this record",
    )

    class Meta:
        abstract = True


class VersionedMixin(models.Model):
    """
    Optimistic locking via a monotonically increasing version field.

    Every update increments ``version`` atomically in the database with an
    F() expression; the new value is read back so the instance stays usable
    after save(). Combine with ``billing.locks.check_version`` to reject
    writes based on a stale read.

    Note:
        Only the version column is refreshed after save. Models with
        protected FSM fields must not be refreshed wholesale; reload them
        with ``Model.objects.get(pk=...)`` instead.
    """

    version = models.PositiveIntegerField(
        default=1,
        help_text="Version for optimistic locking - incremented on each save",
    )

    class Meta:
        abstract = True

    def save(self, *args, **kwargs):
        """Save with version auto-increment for optimistic locking."""
        is_update = not self._state.adding and not kwargs.get("force_insert", False)
        if is_update:
            self.version = F("version") + 1
        super().save(*args, **kwargs)
        if is_update:
            self.refresh_from_db(fields=["version"])
