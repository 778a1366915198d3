"""
Provider webhook handling.

- events: closed enum of routed event types
- handlers: one function per event type, calling the services
- dispatcher: idempotent, transactional dispatch of an envelope
- views: signature-verifying HTTP endpoint
"""

from billing.webhooks.dispatcher import DispatchOutcome, WebhookDispatcher
from billing.webhooks.events import WebhookEventType

__all__ = ["DispatchOutcome", "WebhookDispatcher", "WebhookEventType"]
