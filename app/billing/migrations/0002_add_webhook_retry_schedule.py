"""
Add celery-beat schedule for retrying transiently failed webhooks.

The retry_failed_webhooks task runs every 5 minutes and re-queues
webhook events whose last failure was transient and that are still
below BILLING_WEBHOOK_MAX_ATTEMPTS.
"""

from django.db import migrations

TASK_NAME = "Retry Failed Billing Webhooks"


def create_periodic_task(apps, schema_editor):
    IntervalSchedule = apps.get_model("django_celery_beat", "IntervalSchedule")
    PeriodicTask = apps.get_model("django_celery_beat", "PeriodicTask")

    schedule, _ = IntervalSchedule.objects.get_or_create(
        every=5,
        period="minutes",
    )

    PeriodicTask.objects.get_or_create(
        name=TASK_NAME,
        defaults={
            "task": "billing.tasks.retry_failed_webhooks",
            "interval": schedule,
            "enabled": True,
            "description": (
                "Re-queues webhook events that failed transiently so the "
                "dispatcher can process them again."
            ),
        },
    )


def remove_periodic_task(apps, schema_editor):
    PeriodicTask = apps.get_model("django_celery_beat", "PeriodicTask")

    PeriodicTask.objects.filter(name=TASK_NAME).delete()


class Migration(migrations.Migration):
    dependencies = [
        ("billing", "0001_initial"),
        ("django_celery_beat", "0019_alter_periodictasks_options"),
    ]

    operations = [
        migrations.RunPython(create_periodic_task, remove_periodic_task),
    ]
