"""
Subscription service: lifecycle of recurring subscriptions.

User-driven operations (create, change, cancel, reactivate) update the
local record and queue PROVIDER_SYNC effects; provider-driven operations
(invoice and subscription webhooks) mirror what the provider reports,
within the transitions the state machine allows.

Every write locks the subscription row for the length of the transaction.
Side effects, including dunning retries, are queued to run after commit.

Usage:
    from billing.services import SubscriptionService

    result = SubscriptionService.cancel(subscription.id, at_period_end=True)
    if not result:
        logger.warning(result.error)
"""

from __future__ import annotations

import datetime
import uuid
from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal
from typing import Any

from django.conf import settings
from django.utils import timezone

from core.exceptions import ConflictError, NotFoundError, TransientError, ValidationError
from core.services import BaseService, ServiceResult
from billing import effects
from billing.adapters import (
    CreateSubscriptionParams,
    IdempotencyKeyGenerator,
    StripeAdapter,
    from_timestamp,
    subscription_period_bounds,
)
from billing.dunning.service import DunningService
from billing.exceptions import (
    DataIntegrityError,
    InvalidAmountError,
    InvalidPaymentMethodError,
    InvalidPromoCodeError,
    InvalidStateTransitionError,
    InvalidWebhookPayloadError,
    PlanNotFoundError,
    ReactivationNotAllowedError,
    StripeError,
    SubscriptionNotFoundError,
)
from billing.locks import check_version, locked_row
from billing.models import Invoice, PromoCode, Subscription, SubscriptionPlan, advance_period
from billing.state_machines import BillingCycleAnchor, ProrationPolicy, SubscriptionState
from billing.state_machines.transitions import apply_transition
from billing.tax import TaxCalculation, compute_tax, provider_metadata, resolve_jurisdiction

EXPECTED_ERRORS = (ValidationError, NotFoundError, ConflictError)

# Provider subscription status -> local state. Statuses missing here
# (incomplete, incomplete_expired) are not mirrored.
PROVIDER_STATUS_MAP = {
    "trialing": SubscriptionState.TRIALING,
    "active": SubscriptionState.ACTIVE,
    "past_due": SubscriptionState.PAST_DUE,
    "unpaid": SubscriptionState.UNPAID,
    "paused": SubscriptionState.PAUSED,
    "canceled": SubscriptionState.CANCELLED,
}

# (current, target) -> transition method
SYNC_TRANSITIONS = {
    (SubscriptionState.TRIALING, SubscriptionState.ACTIVE): "activate",
    (SubscriptionState.ACTIVE, SubscriptionState.PAST_DUE): "mark_past_due",
    (SubscriptionState.TRIALING, SubscriptionState.PAST_DUE): "mark_past_due",
    (SubscriptionState.PAST_DUE, SubscriptionState.ACTIVE): "recover",
    (SubscriptionState.UNPAID, SubscriptionState.ACTIVE): "recover",
    (SubscriptionState.PAST_DUE, SubscriptionState.UNPAID): "mark_unpaid",
    (SubscriptionState.ACTIVE, SubscriptionState.PAUSED): "pause",
    (SubscriptionState.TRIALING, SubscriptionState.PAUSED): "pause",
    (SubscriptionState.PAUSED, SubscriptionState.ACTIVE): "resume",
}

CHANGEABLE_STATES = (SubscriptionState.ACTIVE, SubscriptionState.TRIALING)


def prorate(amount_cents: int, remaining_days: int, total_days: int) -> int:
    """round(amount × remaining / total), half away from zero."""
    value = Decimal(amount_cents) * remaining_days / total_days
    return int(value.quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def invoice_subscription_ref(obj: dict[str, Any]) -> str | None:
    """Provider subscription id of an invoice, in either API shape."""
    ref = obj.get("subscription")
    if not ref:
        details = (obj.get("parent") or {}).get("subscription_details") or {}
        ref = details.get("subscription")
    if isinstance(ref, dict):
        ref = ref.get("id")
    return ref or None


def invoice_line_period(obj: dict[str, Any]) -> tuple[datetime.datetime | None, datetime.datetime | None]:
    """Service period billed by an invoice, from its first line item."""
    lines = (obj.get("lines") or {}).get("data") or []
    if not lines:
        return None, None
    period = lines[0].get("period") or {}
    return from_timestamp(period.get("start")), from_timestamp(period.get("end"))


def cancellation_syncs(subscription: Subscription, refund_cents: int = 0) -> list[effects.SideEffect]:
    """
    Provider effects for an immediate cancellation.

    Cancel and refund are separate effects so a retried refund never
    repeats the cancel. Keys carry the subscription version, so a
    reactivated subscription cancelled again gets fresh ones.
    """
    provider_id = subscription.provider_subscription_id
    syncs = [
        effects.provider_sync(
            "cancel",
            subscription.id,
            provider_subscription_id=provider_id,
            idempotency_key=IdempotencyKeyGenerator.generate(
                "cancel_subscription", subscription.id, subscription.version
            ),
        )
    ]
    if refund_cents > 0:
        syncs.append(
            effects.provider_sync(
                "refund",
                subscription.id,
                provider_subscription_id=provider_id,
                refund_cents=refund_cents,
                idempotency_key=IdempotencyKeyGenerator.generate(
                    "cancel_refund", subscription.id, subscription.version
                ),
            )
        )
    return syncs


@dataclass(frozen=True)
class ChangePreview:
    """
    Outcome of a plan or quantity change, computed without side effects.

    Attributes:
        version: Subscription version the preview was computed from; pass
            it back to commit_change
        proration_cents: Net adjustment for the rest of the current period
            (negative is a credit)
        amount_due_now_cents: What the customer is charged immediately
        tax: Tax on amount_due_now_cents
    """

    subscription_id: uuid.UUID
    version: int
    plan_id: uuid.UUID
    quantity: int
    old_amount_cents: int
    new_amount_cents: int
    proration_cents: int
    amount_due_now_cents: int
    tax: TaxCalculation
    proration_policy: ProrationPolicy
    billing_cycle_anchor: BillingCycleAnchor
    period_start: datetime.datetime
    period_end: datetime.datetime


@dataclass(frozen=True)
class CancellationResult:
    subscription: Subscription
    refund_cents: int = 0


class SubscriptionService(BaseService):
    """
    Service for subscription lifecycle operations.

    Methods:
        create: Subscribe a customer to a plan
        preview_change / commit_change: Plan or quantity change
        cancel: At period end (flag) or immediately with prorated refund
        reactivate: Undo a scheduled or recent cancellation
        on_invoice_payment_failed / on_invoice_payment_succeeded: Invoice webhooks
        sync_from_provider / on_provider_cancelled: Subscription webhooks
    """

    # =========================================================================
    # Create
    # =========================================================================

    @classmethod
    def create(
        cls,
        customer,
        plan_id,
        jurisdiction: str,
        payment_method_id: str,
        promo_code: str | None = None,
        trial_days: int | None = None,
        quantity: int = 1,
        stripe_adapter: type[StripeAdapter] | None = None,
        request_key: str | None = None,
    ) -> ServiceResult[Subscription]:
        """
        Subscribe ``customer`` to a plan.

        Provider calls run before the local transaction; a declined or
        rejected payment method fails with InvalidPaymentMethodError, a
        provider outage with TransientError.

        ``request_key`` identifies the caller's request. Repeating a call
        with the same key returns the subscription the first call created,
        or re-sends the same provider idempotency key when the first call
        never reached the database.

        Returns:
            ServiceResult with the Subscription (TRIALING when a trial
            applies, otherwise ACTIVE). The tax preview for the recurring
            charge is stored in ``metadata["tax_preview"]``.
        """
        logger = cls.get_logger()
        adapter = stripe_adapter or StripeAdapter
        if request_key:
            subscription_id = uuid.uuid5(uuid.NAMESPACE_URL, f"subscription:{customer.pk}:{request_key}")
            existing = Subscription.objects.filter(pk=subscription_id).first()
            if existing is not None:
                logger.info(
                    "Subscription create replayed",
                    extra={"subscription_id": str(subscription_id)},
                )
                return ServiceResult.success(existing)
        else:
            subscription_id = uuid.uuid4()
        try:
            plan = SubscriptionPlan.objects.filter(pk=plan_id, is_active=True).first()
            if plan is None:
                raise PlanNotFoundError(
                    f"Plan {plan_id} does not exist or is not available",
                    details={"plan_id": str(plan_id)},
                )
            region = resolve_jurisdiction(jurisdiction)
            if quantity <= 0:
                raise InvalidAmountError("Quantity must be positive", details={"quantity": quantity})
            trial_days = plan.trial_days if trial_days is None else trial_days
            if trial_days < 0:
                raise InvalidAmountError("Trial days cannot be negative", details={"trial_days": trial_days})
            promo = cls._redeemable_promo(promo_code)

            amount = plan.price_cents * quantity
            discount = promo.discount_for(amount) if promo else 0
            calc = compute_tax(amount - discount, region)

            result = cls._create_with_provider(
                adapter, customer, plan, subscription_id, payment_method_id,
                quantity, trial_days, promo, calc,
            )
        except EXPECTED_ERRORS + (TransientError,) as e:
            logger.warning(
                "Subscription not created",
                extra={"plan_id": str(plan_id), "error_code": e.error_code},
            )
            return ServiceResult.from_exception(e)

        now = timezone.now()
        period_start = result.current_period_start or now
        period_end = result.current_period_end or (
            now + datetime.timedelta(days=trial_days) if trial_days else advance_period(now, plan.interval)
        )
        state = SubscriptionState.TRIALING if trial_days else SubscriptionState.ACTIVE

        with cls.atomic():
            subscription = Subscription.objects.create(
                id=subscription_id,
                customer=customer,
                plan=plan,
                promo_code=promo,
                provider_subscription_id=result.id,
                provider_customer_id=result.raw_response.get("customer") or "",
                price_cents=plan.price_cents,
                quantity=quantity,
                currency=plan.currency,
                jurisdiction=region.value,
                state=state,
                current_period_start=period_start,
                current_period_end=period_end,
                trial_start=now if trial_days else None,
                trial_end=period_end if trial_days else None,
                metadata={"tax_preview": calc.as_dict()},
            )
            effects.enqueue_on_commit(
                [
                    effects.notify(
                        "subscription_welcome",
                        customer.pk,
                        subscription_id=subscription.id,
                        plan=plan.name,
                        trial_days=trial_days,
                        recurring_total_cents=calc.total_cents,
                    ),
                    effects.audit("subscription", subscription.id, None, state, "Subscription created"),
                ]
            )

        logger.info(
            "Subscription created",
            extra={
                "subscription_id": str(subscription.id),
                "provider_subscription_id": result.id,
                "state": state,
            },
        )
        return ServiceResult.success(subscription)

    @classmethod
    def _redeemable_promo(cls, code: str | None) -> PromoCode | None:
        if not code:
            return None
        promo = PromoCode.objects.filter(code__iexact=code.strip()).first()
        if promo is None or not promo.is_redeemable():
            raise InvalidPromoCodeError(
                f"Promo code '{code}' is not valid",
                details={"promo_code": code},
            )
        return promo

    @classmethod
    def _create_with_provider(
        cls, adapter, customer, plan, subscription_id, payment_method_id,
        quantity, trial_days, promo, calc,
    ):
        try:
            customer_ref = adapter.ensure_customer(
                customer.pk, customer.email, customer.get_full_name()
            )
            adapter.attach_payment_method(customer_ref, payment_method_id)
            return adapter.create_subscription(
                CreateSubscriptionParams(
                    customer_ref=customer_ref,
                    price_id=plan.provider_price_id,
                    idempotency_key=IdempotencyKeyGenerator.generate(
                        "create_subscription", subscription_id
                    ),
                    quantity=quantity,
                    trial_days=trial_days,
                    coupon_id=promo.provider_coupon_id if promo else None,
                    payment_method_id=payment_method_id,
                    metadata={"subscription_id": str(subscription_id), **provider_metadata(calc)},
                )
            )
        except StripeError as e:
            if e.is_retryable:
                raise TransientError(
                    "Payment provider unavailable", error_code=e.error_code
                ) from e
            raise InvalidPaymentMethodError(
                e.message,
                details={"stripe_code": e.stripe_code, "decline_code": e.decline_code},
            ) from e

    # =========================================================================
    # Plan / Quantity Changes
    # =========================================================================

    @classmethod
    def preview_change(
        cls,
        subscription_id,
        new_plan_id=None,
        quantity: int | None = None,
        proration_policy: ProrationPolicy = ProrationPolicy.CREATE_PRORATIONS,
        billing_cycle_anchor: BillingCycleAnchor = BillingCycleAnchor.UNCHANGED,
        now: datetime.datetime | None = None,
    ) -> ServiceResult[ChangePreview]:
        """Compute a plan/quantity change without writing anything."""
        try:
            subscription = Subscription.objects.select_related("plan").filter(pk=subscription_id).first()
            if subscription is None:
                raise SubscriptionNotFoundError(
                    f"Subscription {subscription_id} not found",
                    details={"subscription_id": str(subscription_id)},
                )
            preview = cls._build_preview(
                subscription, new_plan_id, quantity, proration_policy, billing_cycle_anchor, now
            )
        except EXPECTED_ERRORS as e:
            return ServiceResult.from_exception(e)
        return ServiceResult.success(preview)

    @classmethod
    def commit_change(
        cls,
        subscription_id,
        expected_version: int,
        new_plan_id=None,
        quantity: int | None = None,
        proration_policy: ProrationPolicy = ProrationPolicy.CREATE_PRORATIONS,
        billing_cycle_anchor: BillingCycleAnchor = BillingCycleAnchor.UNCHANGED,
        now: datetime.datetime | None = None,
    ) -> ServiceResult[ChangePreview]:
        """
        Apply a previewed change.

        Fails with StaleRecordError when the subscription was modified
        after the caller read ``expected_version``.
        """
        logger = cls.get_logger()
        try:
            with cls.atomic():
                subscription = check_version(
                    Subscription, subscription_id, expected_version, SubscriptionNotFoundError
                )
                preview = cls._build_preview(
                    subscription, new_plan_id, quantity, proration_policy, billing_cycle_anchor, now
                )
                plan = SubscriptionPlan.objects.get(pk=preview.plan_id)
                old_amount = subscription.amount_cents

                subscription.plan = plan
                subscription.price_cents = plan.price_cents
                subscription.quantity = preview.quantity
                subscription.current_period_start = preview.period_start
                subscription.current_period_end = preview.period_end
                subscription.save()

                effects.enqueue_on_commit(
                    [
                        effects.provider_sync(
                            "update",
                            subscription.id,
                            price_id=plan.provider_price_id,
                            quantity=preview.quantity,
                            proration_behavior=proration_policy,
                            billing_cycle_anchor=billing_cycle_anchor,
                            idempotency_key=IdempotencyKeyGenerator.generate(
                                "update_subscription", subscription.id, subscription.version
                            ),
                        ),
                        effects.notify(
                            "subscription_changed",
                            subscription.customer_id,
                            subscription_id=subscription.id,
                            plan=plan.name,
                            quantity=preview.quantity,
                            amount_due_now_cents=preview.amount_due_now_cents,
                        ),
                        effects.audit(
                            "subscription",
                            subscription.id,
                            old_amount,
                            preview.new_amount_cents,
                            "Plan or quantity changed",
                        ),
                    ]
                )
        except EXPECTED_ERRORS as e:
            logger.warning(
                "Subscription change rejected",
                extra={"subscription_id": str(subscription_id), "error_code": e.error_code},
            )
            return ServiceResult.from_exception(e)

        logger.info(
            "Subscription changed",
            extra={
                "subscription_id": str(subscription.id),
                "plan_id": str(preview.plan_id),
                "quantity": preview.quantity,
                "proration_cents": preview.proration_cents,
            },
        )
        return ServiceResult.success(preview)

    @classmethod
    def _build_preview(
        cls,
        subscription: Subscription,
        new_plan_id,
        quantity: int | None,
        proration_policy: ProrationPolicy,
        billing_cycle_anchor: BillingCycleAnchor,
        now: datetime.datetime | None,
    ) -> ChangePreview:
        now = now or timezone.now()
        proration_policy = ProrationPolicy(proration_policy)
        billing_cycle_anchor = BillingCycleAnchor(billing_cycle_anchor)

        if subscription.state not in CHANGEABLE_STATES:
            raise InvalidStateTransitionError(
                f"Cannot change a {subscription.state} subscription",
                details={"current_state": subscription.state, "transition": "change"},
            )

        plan = subscription.plan
        if new_plan_id is not None:
            plan = SubscriptionPlan.objects.filter(pk=new_plan_id, is_active=True).first()
            if plan is None:
                raise PlanNotFoundError(
                    f"Plan {new_plan_id} does not exist or is not available",
                    details={"plan_id": str(new_plan_id)},
                )
        quantity = subscription.quantity if quantity is None else quantity
        if quantity <= 0:
            raise InvalidAmountError("Quantity must be positive", details={"quantity": quantity})
        if plan.pk == subscription.plan_id and quantity == subscription.quantity:
            raise ValidationError("Change does not alter the subscription", error_code="NO_CHANGE")

        old_amount = subscription.amount_cents
        new_amount = plan.price_cents * quantity
        remaining, total = subscription.period_days(now)

        if billing_cycle_anchor == BillingCycleAnchor.NOW:
            period_start, period_end = now, advance_period(now, plan.interval)
            proration = (
                0
                if proration_policy == ProrationPolicy.NONE
                else -prorate(old_amount, remaining, total)
            )
            amount_due_now = max(0, new_amount + proration)
        else:
            period_start = subscription.current_period_start
            period_end = subscription.current_period_end
            proration = (
                0
                if proration_policy == ProrationPolicy.NONE
                else prorate(new_amount - old_amount, remaining, total)
            )
            amount_due_now = (
                max(0, proration) if proration_policy == ProrationPolicy.ALWAYS_INVOICE else 0
            )

        return ChangePreview(
            subscription_id=subscription.id,
            version=subscription.version,
            plan_id=plan.pk,
            quantity=quantity,
            old_amount_cents=old_amount,
            new_amount_cents=new_amount,
            proration_cents=proration,
            amount_due_now_cents=amount_due_now,
            tax=compute_tax(amount_due_now, subscription.jurisdiction),
            proration_policy=proration_policy,
            billing_cycle_anchor=billing_cycle_anchor,
            period_start=period_start,
            period_end=period_end,
        )

    # =========================================================================
    # Cancel / Reactivate
    # =========================================================================

    @classmethod
    def cancel(
        cls,
        subscription_id,
        at_period_end: bool = True,
        reason: str = "",
        now: datetime.datetime | None = None,
    ) -> ServiceResult[CancellationResult]:
        """
        Cancel a subscription.

        Args:
            at_period_end: Only set cancel_at_period_end (access continues
                until the period ends); otherwise cancel now and refund the
                unused part of the period
            reason: Free-text cancellation reason

        Returns:
            ServiceResult with the subscription and the refund amount
        """
        logger = cls.get_logger()
        now = now or timezone.now()
        refund_cents = 0
        try:
            with cls.atomic():
                subscription = locked_row(
                    Subscription, SubscriptionNotFoundError, pk=subscription_id
                )
                if subscription.is_cancelled:
                    raise InvalidStateTransitionError(
                        f"Subscription {subscription.id} is already cancelled",
                        details={"current_state": subscription.state, "transition": "cancel"},
                    )

                old_state = subscription.state
                if at_period_end:
                    subscription.cancel_at_period_end = True
                    subscription.cancellation_reason = reason
                    subscription.save()
                    side_effects = [
                        effects.provider_sync(
                            "set_cancel_at_period_end",
                            subscription.id,
                            cancel_at_period_end=True,
                        ),
                        effects.notify(
                            "subscription_cancellation_scheduled",
                            subscription.customer_id,
                            subscription_id=subscription.id,
                            ends_at=subscription.current_period_end,
                        ),
                        effects.audit(
                            "subscription",
                            subscription.id,
                            old_state,
                            old_state,
                            "Cancellation scheduled for period end",
                        ),
                    ]
                else:
                    # Only an ACTIVE period has been paid for.
                    if old_state == SubscriptionState.ACTIVE:
                        remaining, total = subscription.period_days(now)
                        refund_cents = prorate(subscription.amount_cents, remaining, total)

                    side_effects = DunningService.abandon_pending(subscription)
                    apply_transition(subscription, "cancel", reason=reason)
                    subscription.save()
                    side_effects += cancellation_syncs(subscription, refund_cents)
                    side_effects += [
                        effects.notify(
                            "subscription_cancelled",
                            subscription.customer_id,
                            subscription_id=subscription.id,
                            refund_cents=refund_cents,
                        ),
                        effects.audit(
                            "subscription",
                            subscription.id,
                            old_state,
                            subscription.state,
                            f"Cancelled immediately, refund {refund_cents} cents",
                        ),
                    ]
                effects.enqueue_on_commit(side_effects)
        except EXPECTED_ERRORS as e:
            logger.warning(
                "Subscription cancellation rejected",
                extra={"subscription_id": str(subscription_id), "error_code": e.error_code},
            )
            return ServiceResult.from_exception(e)

        logger.info(
            "Subscription cancelled",
            extra={
                "subscription_id": str(subscription.id),
                "at_period_end": at_period_end,
                "refund_cents": refund_cents,
            },
        )
        return ServiceResult.success(CancellationResult(subscription, refund_cents))

    @classmethod
    def reactivate(
        cls,
        subscription_id,
        actor_is_admin: bool = False,
        now: datetime.datetime | None = None,
    ) -> ServiceResult[Subscription]:
        """
        Undo a cancellation.

        Allowed when cancel_at_period_end is set and the period has not
        ended, or (administrators only) when the subscription was
        cancelled no longer than BILLING_REACTIVATION_GRACE_DAYS ago.
        """
        logger = cls.get_logger()
        now = now or timezone.now()
        grace = datetime.timedelta(days=settings.BILLING_REACTIVATION_GRACE_DAYS)
        try:
            with cls.atomic():
                subscription = locked_row(
                    Subscription, SubscriptionNotFoundError, pk=subscription_id
                )
                old_state = subscription.state

                if (
                    not subscription.is_cancelled
                    and subscription.cancel_at_period_end
                    and subscription.current_period_end > now
                ):
                    subscription.cancel_at_period_end = False
                    subscription.cancellation_reason = ""
                    subscription.save()
                    sync = effects.provider_sync(
                        "set_cancel_at_period_end", subscription.id, cancel_at_period_end=False
                    )
                elif (
                    subscription.is_cancelled
                    and actor_is_admin
                    and subscription.cancelled_at is not None
                    and now - subscription.cancelled_at <= grace
                ):
                    apply_transition(subscription, "reactivate")
                    if subscription.current_period_end <= now:
                        subscription.current_period_start = now
                        subscription.current_period_end = advance_period(
                            now, subscription.plan.interval
                        )
                    subscription.save()
                    sync = effects.provider_sync(
                        "reactivate",
                        subscription.id,
                        customer_ref=subscription.provider_customer_id,
                        price_id=subscription.plan.provider_price_id,
                        quantity=subscription.quantity,
                        idempotency_key=IdempotencyKeyGenerator.generate(
                            "reactivate_subscription", subscription.id, subscription.version
                        ),
                    )
                else:
                    raise ReactivationNotAllowedError(
                        "Subscription cannot be reactivated",
                        details={
                            "current_state": subscription.state,
                            "cancel_at_period_end": subscription.cancel_at_period_end,
                            "actor_is_admin": actor_is_admin,
                        },
                    )

                effects.enqueue_on_commit(
                    [
                        sync,
                        effects.notify(
                            "subscription_reactivated",
                            subscription.customer_id,
                            subscription_id=subscription.id,
                        ),
                        effects.audit(
                            "subscription",
                            subscription.id,
                            old_state,
                            subscription.state,
                            "Subscription reactivated",
                        ),
                    ]
                )
        except EXPECTED_ERRORS as e:
            logger.warning(
                "Subscription reactivation rejected",
                extra={"subscription_id": str(subscription_id), "error_code": e.error_code},
            )
            return ServiceResult.from_exception(e)

        logger.info("Subscription reactivated", extra={"subscription_id": str(subscription.id)})
        return ServiceResult.success(subscription)

    # =========================================================================
    # Invoice Webhooks
    # =========================================================================

    @classmethod
    def on_invoice_payment_failed(
        cls,
        invoice_data: dict[str, Any],
        now: datetime.datetime | None = None,
    ) -> ServiceResult[Subscription]:
        """
        A subscription invoice charge failed.

        ACTIVE/TRIALING -> PAST_DUE, then the dunning schedule advances:
        attempt #1 after the original charge, the next attempt after each
        failed retry, cancellation after the last one.
        """
        logger = cls.get_logger()
        try:
            with cls.atomic():
                subscription = cls._lock_for_invoice(invoice_data)
                invoice = cls._upsert_invoice(subscription, invoice_data)
                if invoice.is_paid:
                    logger.info(
                        "Ignoring failure report for paid invoice",
                        extra={"invoice_id": invoice.provider_invoice_id},
                    )
                    return ServiceResult.success(subscription)

                side_effects = []
                old_state = subscription.state
                if old_state not in (SubscriptionState.PAST_DUE, SubscriptionState.UNPAID):
                    apply_transition(subscription, "mark_past_due")
                    subscription.save()
                    side_effects.append(
                        effects.audit(
                            "subscription",
                            subscription.id,
                            old_state,
                            subscription.state,
                            f"Invoice {invoice.provider_invoice_id} payment failed",
                        )
                    )

                side_effects += DunningService.handle_failure(subscription, invoice, now)
                effects.enqueue_on_commit(side_effects)
        except EXPECTED_ERRORS as e:
            logger.warning(
                "Could not apply invoice payment failure",
                extra={"invoice_id": invoice_data.get("id"), "error_code": e.error_code},
            )
            return ServiceResult.from_exception(e)

        logger.info(
            "Invoice payment failure applied",
            extra={
                "subscription_id": str(subscription.id),
                "invoice_id": invoice.provider_invoice_id,
                "state": subscription.state,
            },
        )
        return ServiceResult.success(subscription)

    @classmethod
    def on_invoice_payment_succeeded(cls, invoice_data: dict[str, Any]) -> ServiceResult[Subscription]:
        """
        A subscription invoice was paid.

        PAST_DUE/UNPAID -> ACTIVE (recovery), TRIALING -> ACTIVE (first
        charged invoice), ACTIVE stays ACTIVE (renewal). A $0 or
        subscription_create invoice leaves a trial alone. Charged renewals
        send a receipt. Pending dunning attempts for the invoice are
        resolved or abandoned.
        """
        logger = cls.get_logger()
        try:
            with cls.atomic():
                subscription = cls._lock_for_invoice(invoice_data)
                invoice = cls._upsert_invoice(subscription, invoice_data)
                if invoice.is_paid:
                    raise ConflictError(
                        f"Invoice {invoice.provider_invoice_id} is already paid",
                        error_code="INVOICE_ALREADY_PAID",
                        details={"invoice_id": invoice.provider_invoice_id},
                    )
                invoice.mark_paid(invoice_data.get("amount_paid", invoice.total_cents))
                invoice.save()

                # The $0 invoice opening a trial is "paid" but ends nothing;
                # the trial ends through customer.subscription.updated.
                charged = (
                    invoice.amount_paid_cents > 0
                    and invoice_data.get("billing_reason") != "subscription_create"
                )
                old_state = subscription.state
                recovering = old_state in (SubscriptionState.PAST_DUE, SubscriptionState.UNPAID)
                if recovering:
                    apply_transition(subscription, "recover")
                elif old_state == SubscriptionState.TRIALING and charged:
                    apply_transition(subscription, "activate")

                period_start, period_end = invoice_line_period(invoice_data)
                if (
                    period_start
                    and period_end
                    and period_start < period_end
                    and period_end > subscription.current_period_end
                ):
                    subscription.current_period_start = period_start
                    subscription.current_period_end = period_end
                subscription.save()

                side_effects = DunningService.handle_success(subscription, invoice)
                if subscription.state != old_state:
                    side_effects.append(
                        effects.audit(
                            "subscription",
                            subscription.id,
                            old_state,
                            subscription.state,
                            f"Invoice {invoice.provider_invoice_id} paid",
                        )
                    )
                if recovering:
                    side_effects.append(
                        effects.notify(
                            "payment_recovered",
                            subscription.customer_id,
                            subscription_id=subscription.id,
                            invoice_id=invoice.provider_invoice_id,
                        )
                    )
                elif charged:
                    side_effects.append(
                        effects.notify(
                            "subscription_renewed",
                            subscription.customer_id,
                            subscription_id=subscription.id,
                            invoice_id=invoice.provider_invoice_id,
                            amount_paid_cents=invoice.amount_paid_cents,
                            subtotal_cents=invoice.subtotal_cents,
                            tax_cents=invoice.tax_cents,
                            total_cents=invoice.total_cents,
                            period_end=subscription.current_period_end,
                        )
                    )
                effects.enqueue_on_commit(side_effects)
        except EXPECTED_ERRORS as e:
            logger.warning(
                "Could not apply invoice payment",
                extra={"invoice_id": invoice_data.get("id"), "error_code": e.error_code},
            )
            return ServiceResult.from_exception(e)

        logger.info(
            "Invoice payment applied",
            extra={
                "subscription_id": str(subscription.id),
                "invoice_id": invoice.provider_invoice_id,
                "state": subscription.state,
            },
        )
        return ServiceResult.success(subscription)

    @classmethod
    def _lock_for_invoice(cls, invoice_data: dict[str, Any]) -> Subscription:
        if not invoice_data.get("id"):
            raise InvalidWebhookPayloadError("Invoice payload has no id")
        ref = invoice_subscription_ref(invoice_data)
        if ref is None:
            raise InvalidWebhookPayloadError(
                "Invoice is not attached to a subscription",
                details={"invoice_id": invoice_data["id"]},
            )
        subscription = locked_row(
            Subscription, SubscriptionNotFoundError, provider_subscription_id=ref
        )
        if subscription.is_cancelled:
            raise InvalidStateTransitionError(
                f"Subscription {subscription.id} is cancelled",
                details={"current_state": subscription.state, "transition": "invoice"},
            )
        return subscription

    @classmethod
    def _upsert_invoice(cls, subscription: Subscription, invoice_data: dict[str, Any]) -> Invoice:
        """
        Create or refresh the local invoice row.

        Tax is recomputed from the invoice subtotal with the subscription's
        jurisdiction. Paid invoices are returned untouched.
        """
        subtotal = max(0, invoice_data.get("subtotal", invoice_data.get("amount_due", 0)) or 0)
        calc = compute_tax(subtotal, subscription.jurisdiction)
        period_start = from_timestamp(invoice_data.get("period_start"))
        period_end = from_timestamp(invoice_data.get("period_end"))
        amount_due = invoice_data.get("amount_due", calc.total_cents) or 0

        invoice, created = Invoice.objects.select_for_update().get_or_create(
            provider_invoice_id=invoice_data["id"],
            defaults={
                "subscription": subscription,
                "subtotal_cents": calc.subtotal_cents,
                "tax_cents": calc.total_tax_cents,
                "total_cents": calc.total_cents,
                "tax_breakdown": calc.as_dict(),
                "amount_due_cents": amount_due,
                "currency": invoice_data.get("currency") or subscription.currency,
                "period_start": period_start,
                "period_end": period_end,
            },
        )
        if invoice.subscription_id != subscription.id:
            raise DataIntegrityError(
                "Invoice belongs to another subscription",
                details={
                    "invoice_id": invoice.provider_invoice_id,
                    "subscription_id": str(subscription.id),
                },
            )
        if not created and not invoice.is_paid:
            invoice.amount_due_cents = amount_due
            invoice.save(update_fields=["amount_due_cents", "updated_at"])
        return invoice

    # =========================================================================
    # Subscription Webhooks
    # =========================================================================

    @classmethod
    def sync_from_provider(cls, subscription_data: dict[str, Any]) -> ServiceResult[Subscription]:
        """
        Mirror a provider subscription object (created/updated events).

        Status changes go through the state machine; a status the machine
        does not allow from the current state is a conflict, and nothing
        leaves CANCELLED.
        """
        logger = cls.get_logger()
        ref = subscription_data.get("id")
        status = subscription_data.get("status", "")
        target = PROVIDER_STATUS_MAP.get(status)
        try:
            if not ref:
                raise InvalidWebhookPayloadError("Subscription payload has no id")
            if target == SubscriptionState.CANCELLED:
                return cls.on_provider_cancelled(subscription_data)

            with cls.atomic():
                subscription = locked_row(
                    Subscription, SubscriptionNotFoundError, provider_subscription_id=ref
                )
                if subscription.is_cancelled:
                    raise InvalidStateTransitionError(
                        f"Subscription {subscription.id} is cancelled",
                        details={"current_state": subscription.state, "provider_status": status},
                    )

                old_state = subscription.state
                if target is not None and target != old_state:
                    method = SYNC_TRANSITIONS.get((old_state, target))
                    if method is None:
                        raise InvalidStateTransitionError(
                            f"Cannot move subscription from {old_state} to {target}",
                            details={"current_state": old_state, "provider_status": status},
                        )
                    apply_transition(subscription, method)

                period_start, period_end = subscription_period_bounds(subscription_data)
                if period_start and period_end and period_start < period_end:
                    subscription.current_period_start = period_start
                    subscription.current_period_end = period_end
                subscription.cancel_at_period_end = bool(
                    subscription_data.get("cancel_at_period_end", subscription.cancel_at_period_end)
                )
                subscription.save()

                if subscription.state != old_state:
                    effects.enqueue_on_commit(
                        [
                            effects.notify(
                                "subscription_status_changed",
                                subscription.customer_id,
                                subscription_id=subscription.id,
                                old_state=old_state,
                                new_state=subscription.state,
                            ),
                            effects.audit(
                                "subscription",
                                subscription.id,
                                old_state,
                                subscription.state,
                                f"Provider status {status}",
                            ),
                        ]
                    )
        except EXPECTED_ERRORS as e:
            logger.warning(
                "Could not sync subscription from provider",
                extra={"provider_subscription_id": ref, "error_code": e.error_code},
            )
            return ServiceResult.from_exception(e)

        logger.info(
            "Subscription synced from provider",
            extra={"subscription_id": str(subscription.id), "state": subscription.state},
        )
        return ServiceResult.success(subscription)

    @classmethod
    def on_provider_cancelled(cls, subscription_data: dict[str, Any]) -> ServiceResult[Subscription]:
        """The provider ended the subscription. Already-cancelled is a no-op."""
        logger = cls.get_logger()
        ref = subscription_data.get("id")
        try:
            if not ref:
                raise InvalidWebhookPayloadError("Subscription payload has no id")
            with cls.atomic():
                subscription = locked_row(
                    Subscription, SubscriptionNotFoundError, provider_subscription_id=ref
                )
                if subscription.is_cancelled:
                    return ServiceResult.success(subscription)

                old_state = subscription.state
                details = subscription_data.get("cancellation_details") or {}
                side_effects = DunningService.abandon_pending(subscription)
                apply_transition(
                    subscription,
                    "cancel",
                    reason=details.get("reason") or subscription.cancellation_reason or "provider_cancelled",
                )
                subscription.save()
                side_effects += [
                    effects.notify(
                        "subscription_cancelled",
                        subscription.customer_id,
                        subscription_id=subscription.id,
                        refund_cents=0,
                    ),
                    effects.audit(
                        "subscription",
                        subscription.id,
                        old_state,
                        subscription.state,
                        "Cancelled by provider",
                    ),
                ]
                effects.enqueue_on_commit(side_effects)
        except EXPECTED_ERRORS as e:
            logger.warning(
                "Could not apply provider cancellation",
                extra={"provider_subscription_id": ref, "error_code": e.error_code},
            )
            return ServiceResult.from_exception(e)

        logger.info("Subscription ended by provider", extra={"subscription_id": str(subscription.id)})
        return ServiceResult.success(subscription)


__all__ = [
    "CancellationResult",
    "ChangePreview",
    "SubscriptionService",
    "invoice_line_period",
    "invoice_subscription_ref",
    "prorate",
]
