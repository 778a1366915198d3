"""
Billing admin configuration.

State fields are managed by the state machines and are read-only here;
operators change state through the services, not the admin.
"""

from django.contrib import admin

from billing.models import (
    DunningAttempt,
    Invoice,
    Order,
    OrderItem,
    Payment,
    PromoCode,
    Refund,
    Subscription,
    SubscriptionPlan,
    WebhookEvent,
)


class OrderItemInline(admin.TabularInline):
    model = OrderItem
    extra = 0
    readonly_fields = ["product_ref", "description", "quantity", "unit_price_cents"]
    can_delete = False


class PaymentInline(admin.TabularInline):
    model = Payment
    extra = 0
    fields = ["provider_payment_intent_ref", "provider_charge_ref", "amount_cents", "state"]
    readonly_fields = fields
    can_delete = False


@admin.register(Order)
class OrderAdmin(admin.ModelAdmin):
    list_display = [
        "id",
        "customer",
        "jurisdiction",
        "total_cents",
        "state",
        "amount_refunded_cents",
        "created_at",
    ]
    list_filter = ["state", "jurisdiction"]
    search_fields = ["id", "provider_payment_ref", "customer__email"]
    readonly_fields = [
        "id",
        "state",
        "subtotal_cents",
        "tax_cents",
        "total_cents",
        "tax_breakdown",
        "amount_refunded_cents",
        "completed_at",
        "cancelled_at",
        "refunded_at",
        "version",
        "created_at",
        "updated_at",
    ]
    ordering = ["-created_at"]
    inlines = [OrderItemInline, PaymentInline]

    def has_delete_permission(self, request, obj=None):
        return False


@admin.register(Payment)
class PaymentAdmin(admin.ModelAdmin):
    list_display = ["id", "order", "amount_cents", "state", "failure_code", "created_at"]
    list_filter = ["state"]
    search_fields = ["id", "provider_payment_intent_ref", "provider_charge_ref"]
    readonly_fields = ["id", "state", "succeeded_at", "failed_at", "version", "created_at", "updated_at"]
    ordering = ["-created_at"]


@admin.register(Refund)
class RefundAdmin(admin.ModelAdmin):
    """Refunds are append-only; the admin only displays them."""

    list_display = ["id", "payment", "provider_refund_id", "amount_cents", "reason", "status", "created_at"]
    list_filter = ["status", "reason"]
    search_fields = ["provider_refund_id", "payment__provider_charge_ref"]
    ordering = ["-created_at"]

    def has_add_permission(self, request):
        return False

    def has_change_permission(self, request, obj=None):
        return False

    def has_delete_permission(self, request, obj=None):
        return False


@admin.register(SubscriptionPlan)
class SubscriptionPlanAdmin(admin.ModelAdmin):
    list_display = ["name", "provider_price_id", "price_cents", "interval", "trial_days", "is_active"]
    list_filter = ["is_active", "interval"]
    search_fields = ["name", "provider_price_id"]


@admin.register(PromoCode)
class PromoCodeAdmin(admin.ModelAdmin):
    list_display = ["code", "percent_off", "amount_off_cents", "expires_at", "is_active"]
    list_filter = ["is_active"]
    search_fields = ["code", "provider_coupon_id"]


class DunningAttemptInline(admin.TabularInline):
    model = DunningAttempt
    extra = 0
    fields = ["attempt_number", "invoice", "scheduled_for", "executed_at", "outcome", "resolved_at"]
    readonly_fields = fields
    can_delete = False


@admin.register(Subscription)
class SubscriptionAdmin(admin.ModelAdmin):
    list_display = [
        "id",
        "customer",
        "plan",
        "state",
        "cancel_at_period_end",
        "current_period_end",
        "created_at",
    ]
    list_filter = ["state", "cancel_at_period_end", "jurisdiction"]
    search_fields = ["id", "provider_subscription_id", "provider_customer_id", "customer__email"]
    readonly_fields = [
        "id",
        "state",
        "provider_subscription_id",
        "cancelled_at",
        "ended_at",
        "version",
        "created_at",
        "updated_at",
    ]
    ordering = ["-created_at"]
    inlines = [DunningAttemptInline]


@admin.register(Invoice)
class InvoiceAdmin(admin.ModelAdmin):
    list_display = ["provider_invoice_id", "subscription", "total_cents", "status", "paid_at"]
    list_filter = ["status"]
    search_fields = ["provider_invoice_id", "subscription__provider_subscription_id"]
    readonly_fields = ["id", "tax_breakdown", "created_at", "updated_at"]


@admin.register(DunningAttempt)
class DunningAttemptAdmin(admin.ModelAdmin):
    list_display = ["subscription", "invoice", "attempt_number", "scheduled_for", "outcome"]
    list_filter = ["outcome"]
    readonly_fields = ["id", "resolved_at", "created_at", "updated_at"]
    ordering = ["-scheduled_for"]


@admin.register(WebhookEvent)
class WebhookEventAdmin(admin.ModelAdmin):
    """
    Webhook events are an audit trail.

    Failed events can be re-run with the reprocess action.
    """

    list_display = ["provider_event_id", "event_type", "status", "failure_kind", "attempts", "created_at"]
    list_filter = ["status", "event_type", "failure_kind"]
    search_fields = ["provider_event_id"]
    readonly_fields = [
        "id",
        "provider_event_id",
        "event_type",
        "payload",
        "status",
        "processed_at",
        "error_message",
        "error_code",
        "failure_kind",
        "attempts",
        "created_at",
        "updated_at",
    ]
    ordering = ["-created_at"]
    actions = ["reprocess"]

    @admin.action(description="Reprocess selected events")
    def reprocess(self, request, queryset):
        from billing.tasks import reprocess_webhook_event

        count = 0
        for event in queryset.exclude(status="processed"):
            reprocess_webhook_event.delay(str(event.id))
            count += 1
        self.message_user(request, f"Queued {count} event(s) for reprocessing.")

    def has_add_permission(self, request):
        return False
