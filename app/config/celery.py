"""
Celery configuration for the Django application.

Celery runs the billing background work:
- Delivery of side effects recorded by the billing services
  (notifications, access changes, audit entries, provider sync)
- Scheduled dunning retries for failed subscription invoices
- Periodic reprocessing of transiently failed webhook events

This configuration uses Redis as both the message broker and result backend.
Tasks are auto-discovered from all installed Django apps; the periodic
schedule lives in the database (django-celery-beat).

For more information, see:
https://docs.celeryq.dev/en/stable/django/first-steps-with-django.html
"""

import os

from celery import Celery

# Set the default Django settings module for the Celery worker
os.environ.setdefault("DJANGO_SETTINGS_MODULE", "config.settings")

app = Celery("config")

# All Celery settings are prefixed with CELERY_ in settings.py
app.config_from_object("django.conf:settings", namespace="CELERY")

# Celery will look for a tasks.py module in each installed app
app.autodiscover_tasks()
