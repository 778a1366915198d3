"""
Billing app for payment-provider reconciliation.

This app handles:
- Canadian sales tax computation (GST/HST/PST/QST)
- Order and payment lifecycle driven by provider webhooks
- Subscription lifecycle (create, change, cancel, reactivate)
- Dunning (failed-payment recovery) scheduling
- Idempotent webhook dispatch

Related apps:
    - core: base models, exception taxonomy, ServiceResult

Usage:
    from billing.tax import compute_tax
    from billing.services import OrderService, SubscriptionService
    from billing.webhooks import WebhookDispatcher

    calc = compute_tax(10000, "ON")
    outcome = WebhookDispatcher.dispatch(envelope)
"""
