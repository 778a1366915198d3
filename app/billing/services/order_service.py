"""
Order service: checkout and provider-driven order transitions.

Every operation runs in one transaction with the order row locked, and
queues its side effects to run after commit. Expected failures come back
as ServiceResult failures classified by FailureKind; the webhook
dispatcher decides from the kind whether to acknowledge the event.

Usage:
    from billing.services import OrderService

    result = OrderService.apply_payment_succeeded("pi_123", charge_ref="ch_123")
    if not result:
        logger.warning(result.error, extra={"error_code": result.error_code})
"""

from __future__ import annotations

import datetime
from collections.abc import Iterable, Mapping
from dataclasses import dataclass
from typing import Any

from django.conf import settings
from django.utils import timezone

from core.exceptions import ConflictError, NotFoundError, ValidationError
from core.services import BaseService, ServiceResult
from billing import effects
from billing.adapters import IdempotencyKeyGenerator, RefundResult, StripeAdapter
from billing.exceptions import (
    DataIntegrityError,
    InvalidAmountError,
    InvalidStateTransitionError,
    OrderNotFoundError,
    RefundNotAllowedError,
    StripeError,
)
from billing.locks import locked_row
from billing.models import Order, OrderItem, Payment, Refund
from billing.state_machines import OrderState, PaymentState, RefundReason, RefundStatus
from billing.state_machines.transitions import apply_transition
from billing.tax import TaxableItem, compute_line_items_tax

EXPECTED_ERRORS = (ValidationError, NotFoundError, ConflictError)


@dataclass(frozen=True)
class OrderLine:
    """A line item at checkout."""

    product_ref: str
    quantity: int
    unit_price_cents: int
    description: str = ""


@dataclass(frozen=True)
class RefundEligibility:
    """
    Whether an order may be refunded on request.

    Attributes:
        refundable_cents: Paid amount not yet refunded
        reasons: Why the order is not eligible; empty when it is
    """

    eligible: bool
    refundable_cents: int
    window_days: int
    reasons: tuple[str, ...] = ()


class OrderService(BaseService):
    """
    Service for the order/payment state machine.

    Methods:
        create_order: Price line items, compute tax, persist the order
        apply_payment_succeeded: PENDING -> COMPLETED, grant access once
        apply_payment_failed: PENDING -> CANCELLED
        apply_refund: COMPLETED -> REFUNDED / PARTIALLY_REFUNDED
        check_refund_eligibility: Refund policy verdict for an order
        request_refund: Ask the provider for a refund (applied by webhook)
        refund_history: Refunds applied to an order
    """

    # =========================================================================
    # Checkout
    # =========================================================================

    @classmethod
    def create_order(
        cls,
        customer,
        items: Iterable[OrderLine | Mapping[str, Any]],
        jurisdiction: str | None = None,
        provider_payment_ref: str | None = None,
        metadata: dict | None = None,
    ) -> ServiceResult[Order]:
        """
        Create a PENDING order with tax computed for ``jurisdiction``.

        Returns:
            ServiceResult with the Order, or a validation failure for an
            unknown jurisdiction or bad line items
        """
        lines = [item if isinstance(item, OrderLine) else OrderLine(**item) for item in items]
        jurisdiction = jurisdiction or settings.BILLING_DEFAULT_JURISDICTION
        if not lines:
            return ServiceResult.failure("An order needs at least one line item", "EMPTY_ORDER")

        try:
            calc = compute_line_items_tax(
                [TaxableItem(line.quantity, line.unit_price_cents) for line in lines],
                jurisdiction,
            )
        except ValidationError as e:
            return ServiceResult.from_exception(e)

        with cls.atomic():
            order = Order.objects.create(
                customer=customer,
                jurisdiction=calc.jurisdiction.value,
                currency=settings.BILLING_CURRENCY,
                subtotal_cents=calc.subtotal_cents,
                tax_cents=calc.total_tax_cents,
                total_cents=calc.total_cents,
                tax_breakdown=calc.as_dict(),
                provider_payment_ref=provider_payment_ref,
                metadata=metadata or {},
            )
            OrderItem.objects.bulk_create(
                OrderItem(
                    order=order,
                    product_ref=line.product_ref,
                    description=line.description,
                    quantity=line.quantity,
                    unit_price_cents=line.unit_price_cents,
                )
                for line in lines
            )
            effects.enqueue_on_commit(
                [effects.audit("order", order.id, None, order.state, "Order created at checkout")]
            )

        cls.get_logger().info(
            "Order created",
            extra={
                "order_id": str(order.id),
                "jurisdiction": order.jurisdiction,
                "total_cents": order.total_cents,
            },
        )
        return ServiceResult.success(order)

    # =========================================================================
    # Payment outcomes
    # =========================================================================

    @classmethod
    def apply_payment_succeeded(
        cls,
        payment_ref: str,
        charge_ref: str | None = None,
        amount_cents: int | None = None,
    ) -> ServiceResult[Order]:
        """
        Complete the order paid by PaymentIntent ``payment_ref``.

        Grants access and sends the order confirmation exactly once: a
        replay finds the order COMPLETED and fails with a conflict before
        any effect is queued.
        """
        logger = cls.get_logger()
        try:
            with cls.atomic():
                order = locked_row(Order, OrderNotFoundError, provider_payment_ref=payment_ref)
                if order.state != OrderState.PENDING:
                    raise InvalidStateTransitionError(
                        f"Order {order.id} is already {order.state}",
                        details={"current_state": order.state, "transition": "complete"},
                    )
                if amount_cents is not None and amount_cents != order.total_cents:
                    raise DataIntegrityError(
                        "Captured amount does not match order total",
                        details={"amount_cents": amount_cents, "total_cents": order.total_cents},
                    )

                payment = cls._open_payment(order, payment_ref)
                apply_transition(payment, "succeed", charge_ref=charge_ref)
                payment.save()

                old_state = order.state
                apply_transition(order, "complete")
                order.save()

                effects.enqueue_on_commit(
                    [
                        effects.grant_access(order.customer_id, order.id),
                        effects.notify(
                            "order_confirmation",
                            order.customer_id,
                            order_id=order.id,
                            total_cents=order.total_cents,
                            tax_breakdown=order.tax_breakdown,
                        ),
                        effects.audit("order", order.id, old_state, order.state, "Payment succeeded"),
                    ]
                )
        except EXPECTED_ERRORS as e:
            logger.warning(
                "Could not apply payment success",
                extra={"payment_ref": payment_ref, "error_code": e.error_code},
            )
            return ServiceResult.from_exception(e)

        logger.info(
            "Order completed",
            extra={"order_id": str(order.id), "payment_ref": payment_ref},
        )
        return ServiceResult.success(order)

    @classmethod
    def apply_payment_failed(
        cls,
        payment_ref: str,
        failure_code: str | None = None,
        failure_message: str | None = None,
    ) -> ServiceResult[Order]:
        """Cancel the PENDING order whose payment failed."""
        logger = cls.get_logger()
        try:
            with cls.atomic():
                order = locked_row(Order, OrderNotFoundError, provider_payment_ref=payment_ref)

                old_state = order.state
                apply_transition(
                    order, "cancel", failure_code=failure_code, failure_message=failure_message
                )
                order.save()

                payment = cls._open_payment(order, payment_ref)
                apply_transition(
                    payment, "fail", failure_code=failure_code, failure_message=failure_message
                )
                payment.save()

                effects.enqueue_on_commit(
                    [
                        effects.notify(
                            "order_payment_failed",
                            order.customer_id,
                            order_id=order.id,
                            failure_message=failure_message or "",
                        ),
                        effects.audit(
                            "order",
                            order.id,
                            old_state,
                            order.state,
                            f"Payment failed: {failure_code or 'unknown'}",
                        ),
                    ]
                )
        except EXPECTED_ERRORS as e:
            logger.warning(
                "Could not apply payment failure",
                extra={"payment_ref": payment_ref, "error_code": e.error_code},
            )
            return ServiceResult.from_exception(e)

        logger.info(
            "Order cancelled after payment failure",
            extra={"order_id": str(order.id), "failure_code": failure_code},
        )
        return ServiceResult.success(order)

    # =========================================================================
    # Refunds
    # =========================================================================

    @classmethod
    def apply_refund(
        cls,
        payment_ref: str,
        refunded_amount_cents: int,
        is_full_refund: bool | None = None,
        charge_ref: str | None = None,
        charge_amount_cents: int | None = None,
        refunds: Iterable[Mapping[str, Any]] = (),
    ) -> ServiceResult[Order]:
        """
        Apply the provider's cumulative refunded amount to an order.

        Args:
            payment_ref: PaymentIntent the refunded charge belongs to
            refunded_amount_cents: Total refunded on the charge so far
            is_full_refund: Provider's own full/partial flag, cross-checked
            charge_ref: Refunded charge id
            charge_amount_cents: Original charge amount as reported
            refunds: Provider refund objects ({id, amount, reason, status})

        Returns:
            ServiceResult with the Order. Amount mismatches fail with
            DataIntegrityError (validation, never retried); a replay of an
            already applied total fails with a conflict.
        """
        logger = cls.get_logger()
        try:
            with cls.atomic():
                order = locked_row(Order, OrderNotFoundError, provider_payment_ref=payment_ref)
                payment = order.payments.filter(state=PaymentState.SUCCEEDED).first()
                if payment is None:
                    raise InvalidStateTransitionError(
                        f"Order {order.id} has no succeeded payment to refund",
                        details={"current_state": order.state, "transition": "refund"},
                    )

                cls._check_refund_amounts(
                    payment, refunded_amount_cents, is_full_refund, charge_ref, charge_amount_cents
                )
                if refunded_amount_cents <= order.amount_refunded_cents:
                    raise ConflictError(
                        "Refund total already applied",
                        error_code="REFUND_ALREADY_APPLIED",
                        details={
                            "refunded_amount_cents": refunded_amount_cents,
                            "already_refunded_cents": order.amount_refunded_cents,
                        },
                    )

                for refund_data in refunds:
                    cls._record_refund(payment, refund_data)

                old_state = order.state
                full = refunded_amount_cents == payment.amount_cents
                apply_transition(order, "refund_full" if full else "refund_partial")
                order.amount_refunded_cents = refunded_amount_cents
                order.save()

                side_effects = [
                    effects.notify(
                        "refund_processed",
                        order.customer_id,
                        order_id=order.id,
                        refunded_cents=refunded_amount_cents,
                        full_refund=full,
                    ),
                    effects.audit(
                        "order",
                        order.id,
                        old_state,
                        order.state,
                        f"Refunded {refunded_amount_cents} of {payment.amount_cents} cents",
                    ),
                ]
                if full:
                    side_effects.insert(0, effects.revoke_access(order.customer_id, order.id))
                effects.enqueue_on_commit(side_effects)
        except EXPECTED_ERRORS as e:
            logger.warning(
                "Could not apply refund",
                extra={
                    "payment_ref": payment_ref,
                    "charge_ref": charge_ref,
                    "error_code": e.error_code,
                },
            )
            return ServiceResult.from_exception(e)

        logger.info(
            "Refund applied",
            extra={
                "order_id": str(order.id),
                "state": order.state,
                "refunded_cents": refunded_amount_cents,
            },
        )
        return ServiceResult.success(order)

    # =========================================================================
    # Refund Requests
    # =========================================================================

    @classmethod
    def check_refund_eligibility(
        cls,
        order_id,
        amount_cents: int | None = None,
        now: datetime.datetime | None = None,
    ) -> ServiceResult[RefundEligibility]:
        """
        Check an order against the refund policy without touching it.

        An ineligible order is still a successful result; only a missing
        order fails.
        """
        now = now or timezone.now()
        order = Order.objects.filter(pk=order_id).first()
        if order is None:
            return ServiceResult.from_exception(
                OrderNotFoundError(f"Order {order_id} not found", details={"order_id": str(order_id)})
            )

        payment = order.payments.filter(state=PaymentState.SUCCEEDED).first()
        refundable = max(order.total_cents - order.amount_refunded_cents, 0)
        window_days = settings.BILLING_REFUND_WINDOW_DAYS
        reasons = []

        if order.state == OrderState.REFUNDED:
            reasons.append("Order is already fully refunded")
        elif order.state not in (OrderState.COMPLETED, OrderState.PARTIALLY_REFUNDED):
            reasons.append(f"Order is {order.state}")
        if payment is None:
            reasons.append("No successful payment found")
        else:
            paid_at = payment.succeeded_at or order.completed_at or order.created_at
            if now - paid_at > datetime.timedelta(days=window_days):
                reasons.append(f"Refund window expired ({window_days} days)")
        if amount_cents is not None:
            if amount_cents <= 0:
                reasons.append("Refund amount must be positive")
            elif amount_cents > refundable:
                reasons.append(f"Amount exceeds refundable balance of {refundable} cents")

        return ServiceResult.success(
            RefundEligibility(
                eligible=not reasons,
                refundable_cents=refundable if payment else 0,
                window_days=window_days,
                reasons=tuple(reasons),
            )
        )

    @classmethod
    def request_refund(
        cls,
        order_id,
        amount_cents: int | None = None,
        reason: str = RefundReason.REQUESTED_BY_CUSTOMER,
        stripe_adapter: type[StripeAdapter] | None = None,
        now: datetime.datetime | None = None,
    ) -> ServiceResult[RefundResult]:
        """
        Ask the provider to refund an order, fully or in part.

        The order is not changed here: the provider's charge.refunded
        webhook goes through apply_refund, which records the refund and
        moves the order. Repeating a request before that webhook lands
        reuses the same idempotency key, so the provider refunds once.

        Args:
            amount_cents: Amount to refund; the whole refundable balance
                when omitted
            reason: A RefundReason value
        """
        logger = cls.get_logger()
        adapter = stripe_adapter or StripeAdapter
        try:
            if reason not in RefundReason.values:
                raise ValidationError(
                    f"Unknown refund reason '{reason}'",
                    error_code="INVALID_REFUND_REASON",
                    details={"reason": reason},
                )
            if amount_cents is not None and amount_cents <= 0:
                raise InvalidAmountError(
                    "Refund amount must be positive", details={"amount_cents": amount_cents}
                )
            eligibility = cls.check_refund_eligibility(order_id, amount_cents, now)
            if not eligibility:
                return eligibility
            verdict = eligibility.data
            if not verdict.eligible:
                raise RefundNotAllowedError(
                    "; ".join(verdict.reasons),
                    details={"order_id": str(order_id), "reasons": list(verdict.reasons)},
                )

            order = Order.objects.get(pk=order_id)
            payment = order.payments.filter(state=PaymentState.SUCCEEDED).first()
            amount = amount_cents or verdict.refundable_cents
            # Keyed on the refunded total this request aims for.
            idempotency_key = IdempotencyKeyGenerator.generate(
                "order_refund", order.id, order.amount_refunded_cents + amount
            )
            refund = adapter.create_refund(
                payment.provider_payment_intent_ref,
                amount,
                idempotency_key,
                # The provider has no "other" reason.
                reason=str(RefundReason.REQUESTED_BY_CUSTOMER if reason == RefundReason.OTHER else reason),
                metadata={"order_id": str(order.id)},
            )
        except EXPECTED_ERRORS + (StripeError,) as e:
            logger.warning(
                "Refund request rejected",
                extra={"order_id": str(order_id), "error_code": e.error_code},
            )
            return ServiceResult.from_exception(e)

        effects.enqueue_on_commit(
            [
                effects.audit(
                    "order",
                    order.id,
                    order.state,
                    order.state,
                    f"Refund of {amount} cents requested ({refund.id})",
                )
            ]
        )
        logger.info(
            "Refund requested",
            extra={"order_id": str(order.id), "refund_id": refund.id, "amount_cents": amount},
        )
        return ServiceResult.success(refund)

    @classmethod
    def refund_history(cls, order_id):
        """Refunds applied to an order, newest first."""
        return Refund.objects.filter(payment__order_id=order_id).order_by("-created_at")

    # =========================================================================
    # Helpers
    # =========================================================================

    @classmethod
    def _open_payment(cls, order: Order, payment_ref: str) -> Payment:
        """The order's PENDING payment for this intent, created on first sight."""
        payment = (
            order.payments.select_for_update()
            .filter(provider_payment_intent_ref=payment_ref, state=PaymentState.PENDING)
            .first()
        )
        if payment is None:
            payment = Payment.objects.create(
                order=order,
                provider_payment_intent_ref=payment_ref,
                amount_cents=order.total_cents,
                currency=order.currency,
            )
        return payment

    @staticmethod
    def _check_refund_amounts(
        payment: Payment,
        refunded_amount_cents: int,
        is_full_refund: bool | None,
        charge_ref: str | None,
        charge_amount_cents: int | None,
    ) -> None:
        details = {
            "payment_id": str(payment.id),
            "payment_amount_cents": payment.amount_cents,
            "refunded_amount_cents": refunded_amount_cents,
        }
        if charge_ref and payment.provider_charge_ref and charge_ref != payment.provider_charge_ref:
            raise DataIntegrityError(
                "Refunded charge is not the order's payment",
                details={**details, "charge_ref": charge_ref},
            )
        if charge_amount_cents is not None and charge_amount_cents != payment.amount_cents:
            raise DataIntegrityError(
                "Charge amount does not match original payment",
                details={**details, "charge_amount_cents": charge_amount_cents},
            )
        if refunded_amount_cents <= 0 or refunded_amount_cents > payment.amount_cents:
            raise DataIntegrityError("Refunded amount outside original payment", details=details)
        if is_full_refund is not None and is_full_refund != (
            refunded_amount_cents == payment.amount_cents
        ):
            raise DataIntegrityError(
                "Full-refund flag disagrees with refunded amount",
                details={**details, "is_full_refund": is_full_refund},
            )

    @staticmethod
    def _record_refund(payment: Payment, refund_data: Mapping[str, Any]) -> None:
        refund_id = refund_data.get("id")
        amount = refund_data.get("amount") or 0
        if not refund_id or amount <= 0:
            return
        reason = refund_data.get("reason")
        if reason not in RefundReason.values:
            reason = RefundReason.OTHER if reason else RefundReason.REQUESTED_BY_CUSTOMER
        status = refund_data.get("status")
        if status not in RefundStatus.values:
            status = RefundStatus.SUCCEEDED
        Refund.objects.get_or_create(
            provider_refund_id=refund_id,
            defaults={
                "payment": payment,
                "amount_cents": amount,
                "reason": reason,
                "status": status,
            },
        )


__all__ = ["OrderLine", "OrderService", "RefundEligibility"]
