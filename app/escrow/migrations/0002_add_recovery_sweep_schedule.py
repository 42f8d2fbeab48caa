"""
Add celery-beat schedule for the escrow recovery sweep.

This migration creates the periodic task schedule for the
run_recovery_sweep task, which re-enqueues stranded payouts and
replays deferred provider notifications every
ESCROW_RECOVERY_SWEEP_MINUTES minutes.
"""

from django.conf import settings
from django.db import migrations

TASK_NAME = "Escrow Recovery Sweep"


def create_periodic_task(apps, schema_editor):
    """Create the periodic task for the recovery sweep."""
    IntervalSchedule = apps.get_model("django_celery_beat", "IntervalSchedule")
    PeriodicTask = apps.get_model("django_celery_beat", "PeriodicTask")

    schedule, _ = IntervalSchedule.objects.get_or_create(
        every=settings.ESCROW_RECOVERY_SWEEP_MINUTES,
        period="minutes",
    )

    PeriodicTask.objects.get_or_create(
        name=TASK_NAME,
        defaults={
            "task": "escrow.workers.recovery_sweep.run_recovery_sweep",
            "interval": schedule,
            "enabled": True,
            "description": (
                "Re-enqueues RELEASE payouts that never reached the queue and "
                "replays notifications deferred for a missing contract."
            ),
        },
    )


def remove_periodic_task(apps, schema_editor):
    """Remove the periodic task on migration rollback."""
    PeriodicTask = apps.get_model("django_celery_beat", "PeriodicTask")

    PeriodicTask.objects.filter(name=TASK_NAME).delete()


class Migration(migrations.Migration):
    dependencies = [
        ("escrow", "0001_initial"),
        ("django_celery_beat", "0019_alter_periodictasks_options"),
    ]

    operations = [
        migrations.RunPython(create_periodic_task, remove_periodic_task),
    ]
