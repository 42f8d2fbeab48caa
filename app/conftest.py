"""
Root pytest configuration for the Django project.

This module configures pytest-django and provides project-wide fixtures.
App-specific fixtures are defined in each app's tests/conftest.py.
"""

import os

import django
import pytest

# Ensure Django settings are configured before any tests run
os.environ.setdefault("DJANGO_SETTINGS_MODULE", "config.settings")


def pytest_configure():
    """Configure Django settings before tests run."""
    django.setup()

    from django.conf import settings

    from config.celery import app as celery_app

    # Disable throttling during tests to prevent rate limit failures
    settings.REST_FRAMEWORK["DEFAULT_THROTTLE_CLASSES"] = []
    settings.REST_FRAMEWORK["DEFAULT_THROTTLE_RATES"] = {}

    # The test client speaks plain HTTP
    settings.SECURE_SSL_REDIRECT = False

    # No Redis in tests: the cache is local memory and lock tests patch
    # escrow.locks.get_redis_connection
    settings.CACHES = {
        "default": {"BACKEND": "django.core.cache.backends.locmem.LocMemCache"}
    }

    # Tasks run inline
    settings.CELERY_TASK_ALWAYS_EAGER = True
    celery_app.conf.task_always_eager = True


def pytest_collection_modifyitems(items):
    """
    Auto-mark tests based on filename patterns.

    Mapping:
    - test_integration.py → e2e (full escrow journeys)
    - test_views.py, test_services.py, test_*_service.py, etc. → integration
    - test_models.py, test_fee_calculator.py, test_locks.py, etc. → unit
    - Unmatched files → integration (safe default for Django)

    Explicit markers on test functions/classes take precedence.
    """
    e2e_patterns = ["test_integration.py"]

    integration_patterns = [
        "test_views.py",
        "test_services.py",
        "test_webhook_views.py",
        "test_escrow_service.py",
        "test_reconciliation_service.py",
        "test_payout_dispatcher.py",
        "test_payout_executor.py",
        "test_recovery_sweep.py",
        "test_concurrency.py",
    ]

    unit_patterns = [
        "test_models.py",
        "test_fee_calculator.py",
        "test_exceptions.py",
        "test_base.py",
        "test_mercadopago_adapter.py",
        "test_stripe_adapter.py",
        "test_sandbox_adapter.py",
        "test_state_transitions.py",
        "test_locks.py",
    ]

    for item in items:
        # Skip if test already has unit/integration/e2e marker
        existing_markers = {m.name for m in item.iter_markers()}
        if existing_markers & {"unit", "integration", "e2e"}:
            continue

        filename = str(item.fspath).split("/")[-1]

        if any(pattern in filename for pattern in e2e_patterns):
            item.add_marker(pytest.mark.e2e)
        elif any(pattern in filename for pattern in integration_patterns):
            item.add_marker(pytest.mark.integration)
        elif any(pattern in filename for pattern in unit_patterns):
            item.add_marker(pytest.mark.unit)
        else:
            item.add_marker(pytest.mark.integration)
