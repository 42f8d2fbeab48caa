"""
Celery configuration for the escrow service.

Celery runs the escrow background work:
- execute_payout: one payout job per released contract
- run_recovery_sweep: periodic re-enqueue of stranded payouts and replay
  of deferred provider notifications (scheduled by django-celery-beat)

Redis is both the message broker and result backend. Tasks are
auto-discovered from the tasks.py module of each installed app.

Usage:
    # Worker
    celery -A config worker -l info

    # Scheduler (reads schedules from the database)
    celery -A config beat -l info

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

app.autodiscover_tasks()
